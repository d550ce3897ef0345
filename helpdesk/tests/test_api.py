from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from core.api import create_api_app
from core.app import HelpdeskApp
from core.config import ApiConfig, AppConfig
from core.errors import ForbiddenError, StoreUnavailableError, ValidationError
from database.models import ChatbotSettings, MessageRecord, TicketRecord
from services.analytics_service import (
    AnalyticsSummary,
    ReplyTimeMetric,
    ResolvedMetric,
    TotalChatsMetric,
    WeekBucket,
)
from services.scope import Caller
from services.ticket_service import TicketDetail, TicketPage, TicketStats, TicketView

ADMIN_HEADERS = {"X-User-Id": "admin-1", "X-User-Role": "admin"}
MEMBER_HEADERS = {"X-User-Id": "member-1", "X-User-Role": "member"}
CREATED = datetime(2024, 5, 1, 8, 30, tzinfo=UTC)


def _ticket(**overrides) -> TicketRecord:
    values = {
        "id": "t-1",
        "ticket_code": "2024-00001",
        "user_name": "Ann",
        "user_email": "ann@example.com",
        "user_phone": "555-0100",
        "assigned_to": "member-1",
        "status": "open",
        "last_message_at": CREATED,
        "is_missed": True,
        "created_at": CREATED,
        "updated_at": CREATED,
    }
    values.update(overrides)
    return TicketRecord(**values)


def _build_client(api_config: ApiConfig | None = None) -> tuple[TestClient, HelpdeskApp]:
    helpdesk = HelpdeskApp(AppConfig(api=api_config or ApiConfig()))
    helpdesk.ticket_service = MagicMock()
    helpdesk.analytics_service = MagicMock()
    helpdesk.settings_service = MagicMock()
    # No context manager: the lifespan (and with it the database) is never started.
    client = TestClient(create_api_app(helpdesk), raise_server_exceptions=False)
    return client, helpdesk


@pytest.fixture
def api() -> tuple[TestClient, HelpdeskApp]:
    return _build_client()


def test_health(api) -> None:
    client, _ = api
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_staff_routes_require_identity(api) -> None:
    client, helpdesk = api
    helpdesk.ticket_service.list_tickets = AsyncMock()

    response = client.get("/tickets")

    assert response.status_code == 401
    assert response.json()["success"] is False
    helpdesk.ticket_service.list_tickets.assert_not_awaited()


def test_unknown_role_is_rejected(api) -> None:
    client, _ = api
    response = client.get("/tickets/stats", headers={"X-User-Id": "u-1", "X-User-Role": "owner"})
    assert response.status_code == 401


def test_api_key_is_enforced_when_configured() -> None:
    client, helpdesk = _build_client(ApiConfig(api_key="secret"))
    helpdesk.ticket_service.ticket_stats = AsyncMock(
        return_value=TicketStats(
            all_tickets=0,
            resolved_tickets=0,
            unresolved_tickets=0,
            missed_tickets=0,
            open_tickets=0,
            in_progress_tickets=0,
        )
    )

    denied = client.get("/tickets/stats", headers=ADMIN_HEADERS)
    allowed = client.get("/tickets/stats", headers={**ADMIN_HEADERS, "X-Api-Key": "secret"})

    assert denied.status_code == 401
    assert allowed.status_code == 200


def test_list_tickets_shapes_camel_case_page(api) -> None:
    client, helpdesk = api
    page = TicketPage(
        tickets=[TicketView(ticket=_ticket(), last_message="hello?")],
        has_more=True,
        next_cursor="t-1",
    )
    helpdesk.ticket_service.list_tickets = AsyncMock(return_value=page)

    response = client.get(
        "/tickets",
        params={"limit": "1", "lastId": "t-0", "status": "open", "search": "2024"},
        headers=MEMBER_HEADERS,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["hasMore"] is True
    assert body["nextCursor"] == "t-1"
    ticket = body["tickets"][0]
    assert ticket["ticketCode"] == "2024-00001"
    assert ticket["isMissed"] is True
    assert ticket["lastMessage"] == "hello?"
    assert ticket["createdAt"] == "2024-05-01T08:30:00.000000+00:00"
    helpdesk.ticket_service.list_tickets.assert_awaited_once_with(
        Caller(id="member-1", role="member"), limit="1", cursor="t-0", status="open", search="2024"
    )


def test_ticket_detail_and_errors(api) -> None:
    client, helpdesk = api
    detail = TicketDetail(
        ticket=_ticket(is_missed=False),
        messages=[
            MessageRecord(
                id="m-1", ticket_id="t-1", sender_id=None, text="hi", timestamp=CREATED, created_at=CREATED
            )
        ],
    )
    helpdesk.ticket_service.get_ticket = AsyncMock(
        side_effect=[detail, ForbiddenError("Not authorized to access this ticket"), StoreUnavailableError()]
    )

    ok = client.get("/tickets/t-1", headers=MEMBER_HEADERS)
    forbidden = client.get("/tickets/t-1", headers=MEMBER_HEADERS)
    unavailable = client.get("/tickets/t-1", headers=MEMBER_HEADERS)

    assert ok.status_code == 200
    assert ok.json()["messages"][0]["senderId"] is None
    assert ok.json()["ticket"]["isMissed"] is False
    assert forbidden.status_code == 403
    assert forbidden.json() == {"success": False, "message": "Not authorized to access this ticket"}
    assert unavailable.status_code == 503


def test_create_ticket_is_public_and_validates_body(api) -> None:
    client, helpdesk = api
    helpdesk.ticket_service.create_ticket = AsyncMock(return_value=_ticket(assigned_to="admin-1"))

    created = client.post(
        "/tickets",
        json={"userName": "Ann", "userEmail": "ann@example.com", "userPhone": "555", "message": "Hi"},
    )
    invalid = client.post("/tickets", json={"userName": "Ann", "userPhone": "555"})

    assert created.status_code == 201
    assert created.json()["ticket"]["assignedTo"] == "admin-1"
    helpdesk.ticket_service.create_ticket.assert_awaited_once_with(
        user_name="Ann", user_email="ann@example.com", user_phone="555", initial_message="Hi"
    )
    assert invalid.status_code == 400
    assert "userEmail" in invalid.json()["message"]


def test_service_validation_error_renders_400(api) -> None:
    client, helpdesk = api
    helpdesk.ticket_service.update_status = AsyncMock(
        side_effect=ValidationError("status must be one of: open, in_progress, resolved")
    )

    response = client.patch("/tickets/t-1", json={"status": "closed"}, headers=ADMIN_HEADERS)

    assert response.status_code == 400
    assert response.json()["message"].startswith("status must be one of")


def test_unexpected_error_is_hidden(api) -> None:
    client, helpdesk = api
    helpdesk.ticket_service.ticket_stats = AsyncMock(side_effect=RuntimeError("db password leaked"))

    response = client.get("/tickets/stats", headers=ADMIN_HEADERS)

    assert response.status_code == 500
    assert response.json() == {"success": False, "message": "Server Error"}


def test_analytics_summary_shape(api) -> None:
    client, helpdesk = api
    week_end = datetime(2024, 5, 8, tzinfo=UTC)
    helpdesk.analytics_service.summary = AsyncMock(
        return_value=AnalyticsSummary(
            reply_time=ReplyTimeMetric(average_seconds=90.5, count=4),
            missed_chats=[WeekBucket(week_start=CREATED, week_end=week_end, count=2)],
            resolved=ResolvedMetric(total_tickets=3, resolved_tickets=2, percentage=66.7),
            total_chats=TotalChatsMetric(total_chats=3, start_date=None, end_date=None),
        )
    )

    response = client.get(
        "/analytics", params={"startDate": "2024-05-01", "weeks": "abc"}, headers=ADMIN_HEADERS
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["replyTime"] == {"averageReplyTimeSeconds": 90.5, "replyCount": 4}
    assert data["missedChats"][0]["count"] == 2
    assert data["resolvedTickets"]["percentage"] == 66.7
    assert data["totalChats"] == {"totalChats": 3, "startDate": None, "endDate": None}
    helpdesk.analytics_service.summary.assert_awaited_once_with(
        Caller(id="admin-1", role="admin"), "2024-05-01", None, "abc"
    )


def test_individual_analytics_routes(api) -> None:
    client, helpdesk = api
    helpdesk.analytics_service.average_reply_time = AsyncMock(return_value=ReplyTimeMetric(0.0, 0))
    helpdesk.analytics_service.missed_chats_over_time = AsyncMock(return_value=[])
    helpdesk.analytics_service.resolved_tickets = AsyncMock(return_value=ResolvedMetric(0, 0, 0.0))
    helpdesk.analytics_service.total_chats = AsyncMock(return_value=TotalChatsMetric(0, None, None))

    assert client.get("/analytics/reply-time", headers=MEMBER_HEADERS).json()["data"] == {
        "averageReplyTimeSeconds": 0.0,
        "replyCount": 0,
    }
    assert client.get("/analytics/missed-chats?weeks=4", headers=MEMBER_HEADERS).json()["data"] == []
    assert client.get("/analytics/resolved-tickets", headers=MEMBER_HEADERS).json()["data"]["percentage"] == 0
    assert client.get("/analytics/total-chats", headers=MEMBER_HEADERS).json()["data"]["totalChats"] == 0
    helpdesk.analytics_service.missed_chats_over_time.assert_awaited_once_with(
        Caller(id="member-1", role="member"), "4"
    )


def test_settings_routes(api) -> None:
    client, helpdesk = api
    helpdesk.settings_service.get_settings = AsyncMock(return_value=ChatbotSettings())
    helpdesk.settings_service.update_settings = AsyncMock(return_value=ChatbotSettings(header_color="#000000"))

    public = client.get("/settings/chatbot")
    updated = client.put(
        "/settings/chatbot",
        json={"headerColor": "#000000", "missedChatTimer": {"minutes": 5}},
        headers=ADMIN_HEADERS,
    )

    assert public.status_code == 200
    assert public.json()["settings"]["missedChatTimer"] == {"hours": 0, "minutes": 10, "seconds": 0}
    assert updated.json()["settings"]["headerColor"] == "#000000"
    helpdesk.settings_service.update_settings.assert_awaited_once_with(
        Caller(id="admin-1", role="admin"),
        {"header_color": "#000000", "missed_chat_timer": {"minutes": 5}},
    )


def test_message_and_admin_routes(api) -> None:
    client, helpdesk = api
    message = MessageRecord(
        id="m-2", ticket_id="t-1", sender_id="admin-1", text="On it", timestamp=CREATED, created_at=CREATED
    )
    helpdesk.ticket_service.send_message = AsyncMock(return_value=message)
    helpdesk.ticket_service.reassign_tickets_to_admin = AsyncMock(return_value=3)
    helpdesk.ticket_service.delete_ticket = AsyncMock(return_value=None)

    sent = client.post("/messages", json={"ticketId": "t-1", "text": "On it"}, headers=ADMIN_HEADERS)
    moved = client.post("/users/member-1/reassign-tickets", headers=ADMIN_HEADERS)
    deleted = client.delete("/tickets/t-1", headers=ADMIN_HEADERS)

    assert sent.status_code == 201
    assert sent.json()["message"]["senderId"] == "admin-1"
    assert moved.json() == {"success": True, "reassigned": 3}
    assert deleted.json()["success"] is True
