from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Header, Query
from pydantic import BaseModel, ConfigDict, Field

from core.app import HelpdeskApp
from core.errors import UnauthorizedError, register_error_handlers
from database.models import ChatbotSettings, MessageRecord, TicketRecord
from services.analytics_service import ReplyTimeMetric, ResolvedMetric, TotalChatsMetric, WeekBucket
from services.scope import Caller
from services.ticket_service import TicketStats
from utils.constants import ROLE_MEMBER, USER_ROLES
from utils.time import to_iso


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateTicketBody(_Body):
    user_name: str = Field(alias="userName")
    user_email: str = Field(alias="userEmail")
    user_phone: str = Field(alias="userPhone")
    message: str | None = None


class CustomerMessageBody(_Body):
    text: str | None = None


class SendMessageBody(_Body):
    ticket_id: str = Field(alias="ticketId")
    text: str | None = None


class UpdateTicketBody(_Body):
    status: str | None = None


class AssignTicketBody(_Body):
    user_id: str | None = Field(default=None, alias="userId")


class MissedChatTimerBody(_Body):
    hours: int | None = None
    minutes: int | None = None
    seconds: int | None = None


class ChatbotSettingsBody(_Body):
    header_color: str | None = Field(default=None, alias="headerColor")
    background_color: str | None = Field(default=None, alias="backgroundColor")
    custom_messages: dict[str, str | None] | None = Field(default=None, alias="customMessages")
    introduction_form: dict[str, str | None] | None = Field(default=None, alias="introductionForm")
    welcome_message: str | None = Field(default=None, alias="welcomeMessage")
    missed_chat_timer: MissedChatTimerBody | None = Field(default=None, alias="missedChatTimer")


def _ticket_dto(ticket: TicketRecord) -> dict[str, Any]:
    return {
        "id": ticket.id,
        "ticketCode": ticket.ticket_code,
        "userName": ticket.user_name,
        "userEmail": ticket.user_email,
        "userPhone": ticket.user_phone,
        "assignedTo": ticket.assigned_to,
        "status": ticket.status,
        "lastMessageAt": to_iso(ticket.last_message_at),
        "isMissed": ticket.is_missed,
        "createdAt": to_iso(ticket.created_at),
        "updatedAt": to_iso(ticket.updated_at),
    }


def _message_dto(message: MessageRecord) -> dict[str, Any]:
    return {
        "id": message.id,
        "ticketId": message.ticket_id,
        "senderId": message.sender_id,
        "text": message.text,
        "timestamp": to_iso(message.sent_at),
        "createdAt": to_iso(message.created_at),
    }


def _stats_dto(stats: TicketStats) -> dict[str, int]:
    return {
        "allTickets": stats.all_tickets,
        "resolvedTickets": stats.resolved_tickets,
        "unresolvedTickets": stats.unresolved_tickets,
        "missedTickets": stats.missed_tickets,
        "openTickets": stats.open_tickets,
        "inProgressTickets": stats.in_progress_tickets,
    }


def _settings_dto(settings: ChatbotSettings) -> dict[str, Any]:
    return {
        "headerColor": settings.header_color,
        "backgroundColor": settings.background_color,
        "customMessages": dict(settings.custom_messages),
        "introductionForm": dict(settings.introduction_form),
        "welcomeMessage": settings.welcome_message,
        "missedChatTimer": {
            "hours": settings.missed_chat_timer.hours,
            "minutes": settings.missed_chat_timer.minutes,
            "seconds": settings.missed_chat_timer.seconds,
        },
        "createdAt": to_iso(settings.created_at),
        "updatedAt": to_iso(settings.updated_at),
    }


def _reply_time_dto(metric: ReplyTimeMetric) -> dict[str, Any]:
    return {"averageReplyTimeSeconds": metric.average_seconds, "replyCount": metric.count}


def _missed_chats_dto(buckets: list[WeekBucket]) -> list[dict[str, Any]]:
    return [
        {"weekStart": to_iso(bucket.week_start), "weekEnd": to_iso(bucket.week_end), "count": bucket.count}
        for bucket in buckets
    ]


def _resolved_dto(metric: ResolvedMetric) -> dict[str, Any]:
    return {
        "totalTickets": metric.total_tickets,
        "resolvedTickets": metric.resolved_tickets,
        "percentage": metric.percentage,
    }


def _total_chats_dto(metric: TotalChatsMetric) -> dict[str, Any]:
    return {
        "totalChats": metric.total_chats,
        "startDate": to_iso(metric.start_date),
        "endDate": to_iso(metric.end_date),
    }


def _auth(x_api_key: str | None, expected: str) -> None:
    if not expected:
        return
    if x_api_key != expected:
        raise UnauthorizedError("Invalid API key")


def create_api_app(helpdesk: HelpdeskApp) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await helpdesk.start()
        try:
            yield
        finally:
            await helpdesk.close()

    app = FastAPI(title="Helpdesk API", version="1.0.0", lifespan=lifespan)
    register_error_handlers(app, expose_errors=helpdesk.config.api.expose_errors)

    async def current_caller(
        x_api_key: str | None = Header(default=None),
        x_user_id: str | None = Header(default=None),
        x_user_role: str | None = Header(default=None),
    ) -> Caller:
        _auth(x_api_key, helpdesk.config.api.api_key)
        if not x_user_id or not x_user_id.strip():
            raise UnauthorizedError("Not authorized, no user identity supplied")
        role = (x_user_role or ROLE_MEMBER).strip().lower()
        if role not in USER_ROLES:
            raise UnauthorizedError(f"Unknown role: {role}")
        return Caller(id=x_user_id.strip(), role=role)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/tickets", status_code=201)
    async def create_ticket(body: CreateTicketBody) -> dict[str, Any]:
        ticket = await helpdesk.ticket_service.create_ticket(
            user_name=body.user_name,
            user_email=body.user_email,
            user_phone=body.user_phone,
            initial_message=body.message,
        )
        return {"success": True, "ticket": _ticket_dto(ticket)}

    @app.get("/tickets")
    async def list_tickets(
        limit: str | None = Query(default=None),
        last_id: str | None = Query(default=None, alias="lastId"),
        status: str | None = Query(default=None),
        search: str | None = Query(default=None),
        caller: Caller = Depends(current_caller),
    ) -> dict[str, Any]:
        page = await helpdesk.ticket_service.list_tickets(
            caller, limit=limit, cursor=last_id, status=status, search=search
        )
        return {
            "success": True,
            "tickets": [{**_ticket_dto(view.ticket), "lastMessage": view.last_message} for view in page.tickets],
            "hasMore": page.has_more,
            "nextCursor": page.next_cursor,
        }

    @app.get("/tickets/stats")
    async def ticket_stats(caller: Caller = Depends(current_caller)) -> dict[str, Any]:
        stats = await helpdesk.ticket_service.ticket_stats(caller)
        return {"success": True, "stats": _stats_dto(stats)}

    @app.get("/tickets/{ticket_id}")
    async def get_ticket(ticket_id: str, caller: Caller = Depends(current_caller)) -> dict[str, Any]:
        detail = await helpdesk.ticket_service.get_ticket(caller, ticket_id)
        return {
            "success": True,
            "ticket": _ticket_dto(detail.ticket),
            "messages": [_message_dto(message) for message in detail.messages],
        }

    @app.patch("/tickets/{ticket_id}")
    async def update_ticket(
        ticket_id: str, body: UpdateTicketBody, caller: Caller = Depends(current_caller)
    ) -> dict[str, Any]:
        ticket = await helpdesk.ticket_service.update_status(caller, ticket_id, body.status)
        return {"success": True, "ticket": _ticket_dto(ticket)}

    @app.put("/tickets/{ticket_id}/assign")
    async def assign_ticket(
        ticket_id: str, body: AssignTicketBody, caller: Caller = Depends(current_caller)
    ) -> dict[str, Any]:
        ticket = await helpdesk.ticket_service.assign_ticket(caller, ticket_id, body.user_id)
        return {"success": True, "ticket": _ticket_dto(ticket)}

    @app.delete("/tickets/{ticket_id}")
    async def delete_ticket(ticket_id: str, caller: Caller = Depends(current_caller)) -> dict[str, Any]:
        await helpdesk.ticket_service.delete_ticket(caller, ticket_id)
        return {"success": True, "message": "Ticket deleted"}

    @app.post("/tickets/{ticket_id}/customer-messages", status_code=201)
    async def append_customer_message(ticket_id: str, body: CustomerMessageBody) -> dict[str, Any]:
        message = await helpdesk.ticket_service.append_customer_message(ticket_id, body.text)
        return {"success": True, "message": _message_dto(message)}

    @app.get("/messages/{ticket_id}")
    async def list_messages(ticket_id: str, caller: Caller = Depends(current_caller)) -> dict[str, Any]:
        messages = await helpdesk.ticket_service.list_messages(caller, ticket_id)
        return {"success": True, "messages": [_message_dto(message) for message in messages]}

    @app.post("/messages", status_code=201)
    async def send_message(body: SendMessageBody, caller: Caller = Depends(current_caller)) -> dict[str, Any]:
        message = await helpdesk.ticket_service.send_message(caller, body.ticket_id, body.text)
        return {"success": True, "message": _message_dto(message)}

    @app.get("/analytics")
    async def analytics_summary(
        start_date: str | None = Query(default=None, alias="startDate"),
        end_date: str | None = Query(default=None, alias="endDate"),
        weeks: str | None = Query(default=None),
        caller: Caller = Depends(current_caller),
    ) -> dict[str, Any]:
        summary = await helpdesk.analytics_service.summary(caller, start_date, end_date, weeks)
        return {
            "success": True,
            "data": {
                "replyTime": _reply_time_dto(summary.reply_time),
                "missedChats": _missed_chats_dto(summary.missed_chats),
                "resolvedTickets": _resolved_dto(summary.resolved),
                "totalChats": _total_chats_dto(summary.total_chats),
            },
        }

    @app.get("/analytics/reply-time")
    async def reply_time(caller: Caller = Depends(current_caller)) -> dict[str, Any]:
        metric = await helpdesk.analytics_service.average_reply_time(caller)
        return {"success": True, "data": _reply_time_dto(metric)}

    @app.get("/analytics/missed-chats")
    async def missed_chats(
        weeks: str | None = Query(default=None), caller: Caller = Depends(current_caller)
    ) -> dict[str, Any]:
        buckets = await helpdesk.analytics_service.missed_chats_over_time(caller, weeks)
        return {"success": True, "data": _missed_chats_dto(buckets)}

    @app.get("/analytics/resolved-tickets")
    async def resolved_tickets(caller: Caller = Depends(current_caller)) -> dict[str, Any]:
        metric = await helpdesk.analytics_service.resolved_tickets(caller)
        return {"success": True, "data": _resolved_dto(metric)}

    @app.get("/analytics/total-chats")
    async def total_chats(
        start_date: str | None = Query(default=None, alias="startDate"),
        end_date: str | None = Query(default=None, alias="endDate"),
        caller: Caller = Depends(current_caller),
    ) -> dict[str, Any]:
        metric = await helpdesk.analytics_service.total_chats(caller, start_date, end_date)
        return {"success": True, "data": _total_chats_dto(metric)}

    @app.get("/settings/chatbot")
    async def get_chatbot_settings() -> dict[str, Any]:
        settings = await helpdesk.settings_service.get_settings()
        return {"success": True, "settings": _settings_dto(settings)}

    @app.put("/settings/chatbot")
    async def update_chatbot_settings(
        body: ChatbotSettingsBody, caller: Caller = Depends(current_caller)
    ) -> dict[str, Any]:
        settings = await helpdesk.settings_service.update_settings(caller, body.model_dump(exclude_none=True))
        return {"success": True, "settings": _settings_dto(settings)}

    @app.post("/settings/chatbot/reset")
    async def reset_chatbot_settings(caller: Caller = Depends(current_caller)) -> dict[str, Any]:
        settings = await helpdesk.settings_service.reset_settings(caller)
        return {"success": True, "settings": _settings_dto(settings)}

    @app.post("/users/{user_id}/reassign-tickets")
    async def reassign_tickets(user_id: str, caller: Caller = Depends(current_caller)) -> dict[str, Any]:
        moved = await helpdesk.ticket_service.reassign_tickets_to_admin(caller, user_id)
        return {"success": True, "reassigned": moved}

    return app
