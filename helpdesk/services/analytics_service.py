from __future__ import annotations

import asyncio
import logging
import statistics
from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TypeVar

from core.config import AnalyticsConfig
from core.errors import StoreUnavailableError, ValidationError
from database.repositories import MessageRepository, TicketRepository
from services.missed_chat import evaluate, first_customer_message, first_staff_reply_after, resolve_threshold_ms
from services.scope import Caller, scope_filter
from services.settings_service import SettingsService
from utils.constants import TICKET_STATUS_RESOLVED
from utils.time import duration_seconds, parse_date_bound, utc_now

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

WEEK = timedelta(days=7)


@dataclass(slots=True)
class ReplyTimeMetric:
    average_seconds: float
    count: int


@dataclass(slots=True)
class WeekBucket:
    week_start: datetime
    week_end: datetime
    count: int


@dataclass(slots=True)
class ResolvedMetric:
    total_tickets: int
    resolved_tickets: int
    percentage: float


@dataclass(slots=True)
class TotalChatsMetric:
    total_chats: int
    start_date: datetime | None
    end_date: datetime | None


@dataclass(slots=True)
class AnalyticsSummary:
    reply_time: ReplyTimeMetric
    missed_chats: list[WeekBucket]
    resolved: ResolvedMetric
    total_chats: TotalChatsMetric


class AnalyticsService:
    """Role-scoped dashboard metrics.

    Each metric is computed independently over the caller's scope. A store
    failure inside one metric degrades that metric to its empty value instead
    of failing the whole response.
    """

    def __init__(
        self,
        config: AnalyticsConfig,
        ticket_repo: TicketRepository,
        message_repo: MessageRepository,
        settings_service: SettingsService,
    ) -> None:
        self.config = config
        self.ticket_repo = ticket_repo
        self.message_repo = message_repo
        self.settings_service = settings_service

    def coerce_weeks(self, weeks: int | str | None) -> int:
        try:
            value = int(weeks) if weeks is not None else self.config.default_weeks
        except (TypeError, ValueError):
            return self.config.default_weeks
        if value <= 0:
            return self.config.default_weeks
        return min(value, self.config.max_weeks)

    @staticmethod
    def parse_date_range(
        start_date: str | None, end_date: str | None
    ) -> tuple[datetime | None, datetime | None]:
        try:
            start = parse_date_bound(start_date)
        except ValueError as exc:
            raise ValidationError("startDate must be an ISO-8601 date or datetime") from exc
        try:
            end = parse_date_bound(end_date, end_of_day=True)
        except ValueError as exc:
            raise ValidationError("endDate must be an ISO-8601 date or datetime") from exc
        if start and end and start > end:
            raise ValidationError("startDate must not be after endDate")
        return start, end

    async def _degrade(self, name: str, work: Awaitable[T], default: T) -> T:
        try:
            return await work
        except StoreUnavailableError:
            LOGGER.warning("Analytics metric degraded to default: %s", name)
            return default

    @staticmethod
    def _empty_buckets(weeks: int, now: datetime) -> list[WeekBucket]:
        buckets: list[WeekBucket] = []
        for index in range(weeks):
            week_end = now - WEEK * (weeks - 1 - index)
            buckets.append(WeekBucket(week_start=week_end - WEEK, week_end=week_end, count=0))
        return buckets

    async def _compute_reply_time(self, caller: Caller) -> ReplyTimeMetric:
        timelines = await self.message_repo.list_for_scope(scope_filter(caller))
        latencies: list[float] = []
        for messages in timelines.values():
            opener = first_customer_message(messages)
            if opener is None or opener.sent_at is None:
                continue
            reply = first_staff_reply_after(messages, opener.sent_at)
            if reply is None or reply.sent_at is None:
                continue
            latencies.append(duration_seconds(opener.sent_at, reply.sent_at))
        if not latencies:
            return ReplyTimeMetric(average_seconds=0.0, count=0)
        return ReplyTimeMetric(average_seconds=round(statistics.fmean(latencies), 2), count=len(latencies))

    async def _compute_missed_chats(self, caller: Caller, weeks: int, now: datetime) -> list[WeekBucket]:
        buckets = self._empty_buckets(weeks, now)
        timer = await self.settings_service.get_missed_chat_timer()
        threshold_ms = resolve_threshold_ms(timer)
        if threshold_ms == 0:
            return buckets

        timelines = await self.message_repo.list_for_scope(scope_filter(caller))
        window_start = buckets[0].week_start
        for messages in timelines.values():
            opener = first_customer_message(messages)
            if opener is None or opener.sent_at is None:
                continue
            opened_at = opener.sent_at
            if opened_at < window_start or opened_at > now:
                continue
            index = min(int((opened_at - window_start) / WEEK), weeks - 1)
            # Judged as of the bucket's close; the newest bucket closes at now.
            if evaluate(messages, threshold_ms, buckets[index].week_end):
                buckets[index].count += 1
        return buckets

    async def _compute_resolved(self, caller: Caller) -> ResolvedMetric:
        tickets = await self.ticket_repo.list_in_scope(scope_filter(caller))
        total = len(tickets)
        resolved = sum(1 for ticket in tickets if ticket.status == TICKET_STATUS_RESOLVED)
        percentage = round(resolved / total * 100, self.config.percentage_precision) if total else 0.0
        return ResolvedMetric(total_tickets=total, resolved_tickets=resolved, percentage=percentage)

    async def _compute_total_chats(
        self, caller: Caller, start: datetime | None, end: datetime | None
    ) -> TotalChatsMetric:
        count = await self.ticket_repo.count_created_between(scope_filter(caller), start, end)
        return TotalChatsMetric(total_chats=count, start_date=start, end_date=end)

    async def average_reply_time(self, caller: Caller) -> ReplyTimeMetric:
        return await self._degrade(
            "reply_time",
            self._compute_reply_time(caller),
            ReplyTimeMetric(average_seconds=0.0, count=0),
        )

    async def missed_chats_over_time(
        self, caller: Caller, weeks: int | str | None = None, now: datetime | None = None
    ) -> list[WeekBucket]:
        week_count = self.coerce_weeks(weeks)
        now = now or utc_now()
        return await self._degrade(
            "missed_chats",
            self._compute_missed_chats(caller, week_count, now),
            self._empty_buckets(week_count, now),
        )

    async def resolved_tickets(self, caller: Caller) -> ResolvedMetric:
        return await self._degrade(
            "resolved_tickets",
            self._compute_resolved(caller),
            ResolvedMetric(total_tickets=0, resolved_tickets=0, percentage=0.0),
        )

    async def total_chats(
        self, caller: Caller, start_date: str | None = None, end_date: str | None = None
    ) -> TotalChatsMetric:
        start, end = self.parse_date_range(start_date, end_date)
        return await self._degrade(
            "total_chats",
            self._compute_total_chats(caller, start, end),
            TotalChatsMetric(total_chats=0, start_date=start, end_date=end),
        )

    async def summary(
        self,
        caller: Caller,
        start_date: str | None = None,
        end_date: str | None = None,
        weeks: int | str | None = None,
    ) -> AnalyticsSummary:
        # Input is validated before any of the metrics touch the store.
        self.parse_date_range(start_date, end_date)
        reply_time, missed_chats, resolved, total_chats = await asyncio.gather(
            self.average_reply_time(caller),
            self.missed_chats_over_time(caller, weeks),
            self.resolved_tickets(caller),
            self.total_chats(caller, start_date, end_date),
        )
        return AnalyticsSummary(
            reply_time=reply_time,
            missed_chats=missed_chats,
            resolved=resolved,
            total_chats=total_chats,
        )
