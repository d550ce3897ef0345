"""Missed-chat evaluation and read-time reconciliation of the stored flag.

A ticket is *missed* when its first customer message has waited longer than
the configured timer without any staff reply after it. The stored
``tickets.is_missed`` column is a denormalised copy of that evaluation; it is
recomputed on every read and corrected in the background when it drifts.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from datetime import datetime, timedelta

from database.models import MessageRecord, MissedChatTimer, TicketRecord
from database.repositories import MessageRepository, TicketRepository
from utils.time import utc_now

LOGGER = logging.getLogger(__name__)


def resolve_threshold_ms(timer: MissedChatTimer | None) -> int:
    """Collapse an ``{hours, minutes, seconds}`` timer into milliseconds.

    ``0`` means the feature is disabled, which is also what an absent timer
    resolves to.
    """
    if timer is None:
        return 0
    hours = int(timer.hours or 0)
    minutes = int(timer.minutes or 0)
    seconds = int(timer.seconds or 0)
    return hours * 3_600_000 + minutes * 60_000 + seconds * 1_000


def first_customer_message(messages: Sequence[MessageRecord]) -> MessageRecord | None:
    for message in messages:
        if message.from_customer and message.sent_at is not None:
            return message
    return None


def first_staff_reply_after(messages: Sequence[MessageRecord], after: datetime) -> MessageRecord | None:
    for message in messages:
        if message.from_customer or message.sent_at is None:
            continue
        if message.sent_at > after:
            return message
    return None


def evaluate(messages: Sequence[MessageRecord], threshold_ms: int, now: datetime) -> bool:
    if threshold_ms <= 0:
        return False
    if not messages:
        return False

    opener = first_customer_message(messages)
    if opener is None or opener.sent_at is None:
        return False

    # Any staff reply after the opening message settles the ticket for good.
    if first_staff_reply_after(messages, opener.sent_at) is not None:
        return False

    return now - opener.sent_at > timedelta(milliseconds=threshold_ms)


class FreshnessReconciler:
    def __init__(self, ticket_repo: TicketRepository, message_repo: MessageRepository) -> None:
        self.ticket_repo = ticket_repo
        self.message_repo = message_repo
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    async def reconcile(self, ticket: TicketRecord, threshold_ms: int, now: datetime | None = None) -> bool:
        messages = await self.message_repo.list_for_ticket(ticket.id)
        return self.apply(ticket, messages, threshold_ms, now)

    def apply(
        self,
        ticket: TicketRecord,
        messages: Sequence[MessageRecord],
        threshold_ms: int,
        now: datetime | None = None,
    ) -> bool:
        """Evaluate ``ticket`` against an already loaded timeline.

        The in-memory record is updated to the fresh value and, when it differs
        from what was stored, a write-back is scheduled without awaiting it.
        """
        computed = evaluate(messages, threshold_ms, now or utc_now())
        if computed != ticket.is_missed:
            self._schedule_write_back(ticket.id, computed)
        ticket.is_missed = computed
        return computed

    def _schedule_write_back(self, ticket_id: str, is_missed: bool) -> None:
        task = asyncio.create_task(self._write_back(ticket_id, is_missed))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write_back(self, ticket_id: str, is_missed: bool) -> None:
        try:
            await self.ticket_repo.set_missed(ticket_id, is_missed)
            LOGGER.debug("Corrected missed flag. ticket=%s is_missed=%s", ticket_id, is_missed)
        except Exception:
            LOGGER.exception("Failed to persist missed flag. ticket=%s is_missed=%s", ticket_id, is_missed)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
