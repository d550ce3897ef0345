from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.config import AnalyticsConfig
from core.errors import StoreUnavailableError, ValidationError
from services.analytics_service import AnalyticsService
from services.scope import Caller
from utils.time import utc_now

ADMIN = Caller(id="admin-1", role="admin")
MEMBER = Caller(id="member-1", role="member")


@pytest.mark.asyncio
async def test_resolved_percentage_is_rounded(harness) -> None:
    await harness.add_ticket(status="resolved")
    await harness.add_ticket(status="resolved")
    await harness.add_ticket(status="open")

    metric = await harness.analytics_service.resolved_tickets(ADMIN)

    assert metric.total_tickets == 3
    assert metric.resolved_tickets == 2
    assert metric.percentage == 66.7


@pytest.mark.asyncio
async def test_empty_scope_yields_zero_metrics(harness) -> None:
    await harness.add_ticket(assigned_to="member-2", status="resolved")

    resolved = await harness.analytics_service.resolved_tickets(MEMBER)
    reply_time = await harness.analytics_service.average_reply_time(MEMBER)

    assert resolved.percentage == 0
    assert resolved.total_tickets == 0
    assert reply_time.average_seconds == 0
    assert reply_time.count == 0


@pytest.mark.asyncio
async def test_average_reply_time_uses_first_reply_after_first_customer_message(harness) -> None:
    start = utc_now() - timedelta(days=1)
    quick = await harness.add_ticket()
    await harness.add_message(quick, start)
    await harness.add_message(quick, start + timedelta(seconds=60), sender_id=ADMIN.id)
    await harness.add_message(quick, start + timedelta(seconds=600), sender_id=ADMIN.id)

    slow = await harness.add_ticket()
    await harness.add_message(slow, start, sender_id=ADMIN.id)
    await harness.add_message(slow, start + timedelta(seconds=10))
    await harness.add_message(slow, start + timedelta(seconds=190), sender_id=ADMIN.id)

    unanswered = await harness.add_ticket()
    await harness.add_message(unanswered, start)

    metric = await harness.analytics_service.average_reply_time(ADMIN)

    assert metric.count == 2
    assert metric.average_seconds == 120.0


@pytest.mark.asyncio
async def test_missed_chats_are_bucketed_oldest_first(harness) -> None:
    now = utc_now()
    for days_ago in (1, 2):
        ticket = await harness.add_ticket()
        await harness.add_message(ticket, now - timedelta(days=days_ago))
    prior = await harness.add_ticket()
    await harness.add_message(prior, now - timedelta(days=8))
    answered = await harness.add_ticket()
    await harness.add_message(answered, now - timedelta(days=3))
    await harness.add_message(answered, now - timedelta(days=3) + timedelta(minutes=2), sender_id=ADMIN.id)
    too_old = await harness.add_ticket()
    await harness.add_message(too_old, now - timedelta(days=20))

    buckets = await harness.analytics_service.missed_chats_over_time(ADMIN, weeks=2, now=now)

    assert [bucket.count for bucket in buckets] == [1, 2]
    assert buckets[-1].week_end == now
    assert buckets[0].week_end == buckets[1].week_start
    assert buckets[0].week_start == now - timedelta(days=14)


@pytest.mark.asyncio
async def test_missed_chats_are_judged_at_bucket_end(harness) -> None:
    now = utc_now()
    late_opener = await harness.add_ticket()
    await harness.add_message(late_opener, now - timedelta(days=7, minutes=5))
    early_opener = await harness.add_ticket()
    await harness.add_message(early_opener, now - timedelta(days=7, minutes=30))

    buckets = await harness.analytics_service.missed_chats_over_time(ADMIN, weeks=2, now=now)

    assert [bucket.count for bucket in buckets] == [1, 0]


@pytest.mark.asyncio
async def test_missed_chats_respect_member_scope(harness) -> None:
    now = utc_now()
    own = await harness.add_ticket(assigned_to=MEMBER.id)
    await harness.add_message(own, now - timedelta(hours=5))
    for _ in range(3):
        foreign = await harness.add_ticket(assigned_to="member-2")
        await harness.add_message(foreign, now - timedelta(hours=5))

    buckets = await harness.analytics_service.missed_chats_over_time(MEMBER, weeks=1, now=now)

    assert [bucket.count for bucket in buckets] == [1]


@pytest.mark.asyncio
async def test_missed_chats_with_disabled_timer(harness) -> None:
    now = utc_now()
    ticket = await harness.add_ticket()
    await harness.add_message(ticket, now - timedelta(days=1))
    await harness.settings_service.update_settings(
        ADMIN, {"missed_chat_timer": {"hours": 0, "minutes": 0, "seconds": 0}}
    )

    buckets = await harness.analytics_service.missed_chats_over_time(ADMIN, weeks=3, now=now)

    assert [bucket.count for bucket in buckets] == [0, 0, 0]


@pytest.mark.parametrize(
    ("weeks", "expected"),
    [(None, 10), ("4", 4), (0, 10), (-3, 10), ("abc", 10), (500, 52)],
)
def test_coerce_weeks(weeks, expected) -> None:
    service = AnalyticsService(AnalyticsConfig(), MagicMock(), MagicMock(), MagicMock())
    assert service.coerce_weeks(weeks) == expected


@pytest.mark.asyncio
async def test_total_chats_counts_inclusive_range(harness) -> None:
    await harness.add_ticket(created_at=datetime(2024, 3, 1, 9, 0, tzinfo=UTC))
    await harness.add_ticket(created_at=datetime(2024, 3, 10, 23, 59, tzinfo=UTC))
    await harness.add_ticket(created_at=datetime(2024, 3, 11, 0, 0, 1, tzinfo=UTC))
    await harness.add_ticket(created_at=datetime(2024, 3, 5, 12, 0, tzinfo=UTC), assigned_to=MEMBER.id)

    ranged = await harness.analytics_service.total_chats(ADMIN, "2024-03-01", "2024-03-10")
    open_start = await harness.analytics_service.total_chats(ADMIN, None, "2024-03-05T12:00:00Z")
    unbounded = await harness.analytics_service.total_chats(ADMIN)
    member = await harness.analytics_service.total_chats(MEMBER)

    assert ranged.total_chats == 3
    assert open_start.total_chats == 2
    assert unbounded.total_chats == 4
    assert member.total_chats == 1


@pytest.mark.asyncio
async def test_invalid_date_range_rejected_before_store_access() -> None:
    ticket_repo = MagicMock()
    ticket_repo.count_created_between = AsyncMock()
    ticket_repo.list_in_scope = AsyncMock()
    service = AnalyticsService(AnalyticsConfig(), ticket_repo, MagicMock(), MagicMock())

    with pytest.raises(ValidationError) as excinfo:
        await service.total_chats(ADMIN, "2024-03-10", "2024-03-01")
    assert "startDate" in excinfo.value.user_message

    with pytest.raises(ValidationError) as excinfo:
        await service.summary(ADMIN, "2024-03-01", "yesterday")
    assert "endDate" in excinfo.value.user_message

    ticket_repo.count_created_between.assert_not_awaited()
    ticket_repo.list_in_scope.assert_not_awaited()


@pytest.mark.asyncio
async def test_summary_degrades_failed_metric_only(harness, monkeypatch) -> None:
    now = utc_now()
    ticket = await harness.add_ticket(status="resolved")
    await harness.add_message(ticket, now - timedelta(hours=2))
    await harness.add_message(ticket, now - timedelta(hours=1), sender_id=ADMIN.id)
    monkeypatch.setattr(
        harness.ticket_repo, "list_in_scope", AsyncMock(side_effect=StoreUnavailableError())
    )

    summary = await harness.analytics_service.summary(ADMIN, weeks=2)

    assert summary.resolved.total_tickets == 0
    assert summary.resolved.percentage == 0
    assert summary.reply_time.count == 1
    assert summary.reply_time.average_seconds == 3600.0
    assert summary.total_chats.total_chats == 1
    assert len(summary.missed_chats) == 2


@pytest.mark.asyncio
async def test_summary_degrades_every_metric_when_store_is_down() -> None:
    failing = AsyncMock(side_effect=StoreUnavailableError())
    ticket_repo = MagicMock(list_in_scope=failing, count_created_between=failing)
    message_repo = MagicMock(list_for_scope=failing)
    settings_service = MagicMock(get_missed_chat_timer=failing)
    service = AnalyticsService(AnalyticsConfig(), ticket_repo, message_repo, settings_service)

    summary = await service.summary(MEMBER, "2024-01-01", "2024-01-31", "3")

    assert summary.reply_time.count == 0
    assert [bucket.count for bucket in summary.missed_chats] == [0, 0, 0]
    assert summary.resolved.percentage == 0
    assert summary.total_chats.total_chats == 0
    assert summary.total_chats.start_date == datetime(2024, 1, 1, tzinfo=UTC)
