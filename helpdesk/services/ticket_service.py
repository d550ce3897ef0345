from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from uuid import uuid4

from core.config import TicketConfig
from core.errors import ConflictError, ForbiddenError, NotFoundError, StoreUnavailableError, ValidationError
from database.models import MessageRecord, TicketRecord
from database.repositories import MessageRepository, TicketRepository, UserRepository
from services.missed_chat import FreshnessReconciler, resolve_threshold_ms
from services.scope import ALL_TICKETS, Caller, Scope, scope_filter
from services.settings_service import SettingsService
from utils.constants import TICKET_STATUS_IN_PROGRESS, TICKET_STATUS_OPEN, TICKET_STATUS_RESOLVED, TICKET_STATUSES
from utils.time import utc_now

LOGGER = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^\w+([.-]?\w+)*@\w+([.-]?\w+)*(\.\w{2,3})+$")


@dataclass(slots=True)
class TicketServiceDeps:
    ticket_repo: TicketRepository
    message_repo: MessageRepository
    user_repo: UserRepository
    settings_service: SettingsService
    reconciler: FreshnessReconciler


@dataclass(slots=True)
class TicketView:
    ticket: TicketRecord
    last_message: str


@dataclass(slots=True)
class TicketPage:
    tickets: list[TicketView]
    has_more: bool
    next_cursor: str | None


@dataclass(slots=True)
class TicketDetail:
    ticket: TicketRecord
    messages: list[MessageRecord]


@dataclass(slots=True)
class TicketStats:
    all_tickets: int
    resolved_tickets: int
    unresolved_tickets: int
    missed_tickets: int
    open_tickets: int
    in_progress_tickets: int


def _required_text(field_name: str, value: str | None) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{field_name} is required")
    return cleaned


class TicketService:
    def __init__(self, config: TicketConfig, deps: TicketServiceDeps) -> None:
        self.config = config
        self.deps = deps

    async def _threshold_ms(self) -> int:
        timer = await self.deps.settings_service.get_missed_chat_timer()
        return resolve_threshold_ms(timer)

    def _coerce_limit(self, limit: int | str | None) -> int:
        if limit is None or limit == "":
            return self.config.default_page_size
        try:
            value = int(limit)
        except (TypeError, ValueError) as exc:
            raise ValidationError("limit must be an integer") from exc
        return max(1, min(value, self.config.max_page_size))

    async def _load_ticket(self, ticket_id: str) -> TicketRecord:
        ticket = await self.deps.ticket_repo.get_by_id(ticket_id)
        if not ticket:
            raise NotFoundError("Ticket not found")
        return ticket

    async def _load_visible_ticket(self, caller: Caller, ticket_id: str) -> TicketRecord:
        ticket = await self._load_ticket(ticket_id)
        if not scope_filter(caller).permits(ticket):
            raise ForbiddenError("Not authorized to access this ticket")
        return ticket

    async def create_ticket(
        self,
        user_name: str,
        user_email: str,
        user_phone: str,
        initial_message: str | None = None,
    ) -> TicketRecord:
        name = _required_text("userName", user_name)
        email = _required_text("userEmail", user_email).lower()
        phone = _required_text("userPhone", user_phone)
        if not EMAIL_PATTERN.match(email):
            raise ValidationError("userEmail: Please enter a valid email")

        admin = await self.deps.user_repo.get_admin()
        if not admin:
            raise ConflictError("No admin user found. Please create an admin account first.")

        created_at = utc_now()
        ticket = TicketRecord(
            id=str(uuid4()),
            ticket_code=await self.deps.ticket_repo.next_ticket_code(created_at.year),
            user_name=name,
            user_email=email,
            user_phone=phone,
            assigned_to=admin.id,
            status=TICKET_STATUS_OPEN,
            last_message_at=created_at,
            is_missed=False,
            created_at=created_at,
            updated_at=created_at,
        )
        await self.deps.ticket_repo.create(ticket)
        LOGGER.info("Ticket created. id=%s code=%s", ticket.id, ticket.ticket_code)

        if initial_message and initial_message.strip():
            message = await self._append(ticket, sender_id=None, text=initial_message)
            ticket.last_message_at = message.timestamp
        return ticket

    async def _append(self, ticket: TicketRecord, sender_id: str | None, text: str) -> MessageRecord:
        sent_at = utc_now()
        message = MessageRecord(
            id=str(uuid4()),
            ticket_id=ticket.id,
            sender_id=sender_id,
            text=text.strip(),
            timestamp=sent_at,
            created_at=sent_at,
        )
        await self.deps.message_repo.append(message)
        await self.deps.ticket_repo.touch_last_message(ticket.id, sent_at)
        return message

    async def send_message(self, caller: Caller, ticket_id: str, text: str | None) -> MessageRecord:
        body = _required_text("text", text)
        ticket = await self._load_visible_ticket(caller, ticket_id)
        return await self._append(ticket, sender_id=caller.id, text=body)

    async def append_customer_message(self, ticket_id: str, text: str | None) -> MessageRecord:
        body = _required_text("text", text)
        ticket = await self._load_ticket(ticket_id)
        return await self._append(ticket, sender_id=None, text=body)

    async def list_messages(self, caller: Caller, ticket_id: str) -> list[MessageRecord]:
        ticket = await self._load_visible_ticket(caller, ticket_id)
        return await self.deps.message_repo.list_for_ticket(ticket.id)

    async def list_tickets(
        self,
        caller: Caller,
        limit: int | str | None = None,
        cursor: str | None = None,
        status: str | None = None,
        search: str | None = None,
    ) -> TicketPage:
        page_size = self._coerce_limit(limit)
        if status and status not in TICKET_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(TICKET_STATUSES)}")

        scope = scope_filter(caller)
        after: TicketRecord | None = None
        if cursor:
            after = await self.deps.ticket_repo.get_by_id(cursor)
            if after is None:
                raise ValidationError("lastId does not reference a known ticket")

        rows = await self.deps.ticket_repo.list_page(
            scope,
            limit=page_size + 1,
            status=status or None,
            search=(search or "").strip() or None,
            after=after,
        )
        has_more = len(rows) > page_size
        rows = rows[:page_size]

        threshold_ms = await self._threshold_ms()
        now = utc_now()
        views = await asyncio.gather(*(self._enrich(ticket, threshold_ms, now) for ticket in rows))
        return TicketPage(
            tickets=list(views),
            has_more=has_more,
            next_cursor=rows[-1].id if rows else None,
        )

    async def _enrich(self, ticket: TicketRecord, threshold_ms: int, now: datetime) -> TicketView:
        try:
            messages = await self.deps.message_repo.list_for_ticket(ticket.id)
        except StoreUnavailableError:
            LOGGER.warning("Ticket enrichment degraded. ticket=%s", ticket.id)
            ticket.is_missed = False
            return TicketView(ticket=ticket, last_message="")
        self.deps.reconciler.apply(ticket, messages, threshold_ms, now)
        return TicketView(ticket=ticket, last_message=messages[-1].text if messages else "")

    async def get_ticket(self, caller: Caller, ticket_id: str) -> TicketDetail:
        ticket = await self._load_visible_ticket(caller, ticket_id)
        threshold_ms = await self._threshold_ms()
        messages = await self.deps.message_repo.list_for_ticket(ticket.id)
        self.deps.reconciler.apply(ticket, messages, threshold_ms)
        return TicketDetail(ticket=ticket, messages=messages)

    async def _reconcile_scope(self, scope: Scope) -> tuple[list[TicketRecord], int]:
        threshold_ms = await self._threshold_ms()
        tickets = await self.deps.ticket_repo.list_in_scope(scope)
        timelines = await self.deps.message_repo.list_for_scope(scope)
        now = utc_now()
        changed = 0
        for ticket in tickets:
            stored = ticket.is_missed
            if self.deps.reconciler.apply(ticket, timelines.get(ticket.id, []), threshold_ms, now) != stored:
                changed += 1
        return tickets, changed

    async def ticket_stats(self, caller: Caller) -> TicketStats:
        tickets, _ = await self._reconcile_scope(scope_filter(caller))
        resolved = sum(1 for ticket in tickets if ticket.status == TICKET_STATUS_RESOLVED)
        return TicketStats(
            all_tickets=len(tickets),
            resolved_tickets=resolved,
            unresolved_tickets=len(tickets) - resolved,
            missed_tickets=sum(1 for ticket in tickets if ticket.is_missed),
            open_tickets=sum(1 for ticket in tickets if ticket.status == TICKET_STATUS_OPEN),
            in_progress_tickets=sum(1 for ticket in tickets if ticket.status == TICKET_STATUS_IN_PROGRESS),
        )

    async def sweep_missed_flags(self) -> int:
        _, changed = await self._reconcile_scope(ALL_TICKETS)
        await self.deps.reconciler.drain()
        if changed:
            LOGGER.info("Missed-chat sweep corrected %s ticket(s)", changed)
        return changed

    async def update_status(self, caller: Caller, ticket_id: str, status: str | None) -> TicketRecord:
        if status not in TICKET_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(TICKET_STATUSES)}")
        ticket = await self._load_visible_ticket(caller, ticket_id)
        await self.deps.ticket_repo.set_status(ticket.id, status)
        return await self._load_ticket(ticket.id)

    async def assign_ticket(self, caller: Caller, ticket_id: str, user_id: str | None) -> TicketRecord:
        assignee_id = _required_text("assignedTo", user_id)
        ticket = await self._load_visible_ticket(caller, ticket_id)
        assignee = await self.deps.user_repo.get_by_id(assignee_id)
        if not assignee:
            raise NotFoundError("User not found")
        await self.deps.ticket_repo.set_assigned_to(ticket.id, assignee.id)
        LOGGER.info("Ticket %s reassigned from %s to %s", ticket.id, ticket.assigned_to, assignee.id)
        return await self._load_ticket(ticket.id)

    async def delete_ticket(self, caller: Caller, ticket_id: str) -> None:
        if not caller.is_admin:
            raise ForbiddenError("Only the admin can delete tickets")
        ticket = await self._load_ticket(ticket_id)
        await self.deps.ticket_repo.delete(ticket.id)
        LOGGER.info("Ticket deleted. id=%s code=%s", ticket.id, ticket.ticket_code)

    async def reassign_tickets_to_admin(self, caller: Caller, user_id: str) -> int:
        if not caller.is_admin:
            raise ForbiddenError("Only the admin can reassign a member's tickets")
        admin = await self.deps.user_repo.get_admin()
        if not admin:
            raise ConflictError("No admin found to reassign tickets")
        if admin.id == user_id:
            raise ValidationError("Tickets are already assigned to the admin")
        moved = await self.deps.ticket_repo.reassign_all(user_id, admin.id)
        LOGGER.info("Reassigned %s ticket(s) from %s to admin %s", moved, user_id, admin.id)
        return moved
