from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from uuid import uuid4

import pytest_asyncio

from core.config import AnalyticsConfig, RedisConfig, TicketConfig
from database.base import Database
from database.migrations.runner import run_migrations
from database.models import MessageRecord, TicketRecord, User
from database.repositories import MessageRepository, SettingsRepository, TicketRepository, UserRepository
from services.analytics_service import AnalyticsService
from services.cache import MemoryCache
from services.missed_chat import FreshnessReconciler
from services.scope import Caller
from services.settings_service import SettingsService
from services.ticket_service import TicketService, TicketServiceDeps
from utils.constants import ROLE_ADMIN, ROLE_MEMBER, TICKET_STATUS_OPEN
from utils.time import utc_now

ADMIN = Caller(id="admin-1", role=ROLE_ADMIN)
MEMBER = Caller(id="member-1", role=ROLE_MEMBER)
OTHER_MEMBER = Caller(id="member-2", role=ROLE_MEMBER)


@dataclass
class Harness:
    db: Database
    user_repo: UserRepository
    ticket_repo: TicketRepository
    message_repo: MessageRepository
    settings_repo: SettingsRepository
    cache: MemoryCache
    settings_service: SettingsService
    reconciler: FreshnessReconciler
    ticket_service: TicketService
    analytics_service: AnalyticsService

    @classmethod
    def build(cls, db: Database) -> Harness:
        user_repo = UserRepository(db)
        ticket_repo = TicketRepository(db)
        message_repo = MessageRepository(db)
        settings_repo = SettingsRepository(db)
        cache = MemoryCache()
        settings_service = SettingsService(settings_repo, cache, RedisConfig())
        reconciler = FreshnessReconciler(ticket_repo, message_repo)
        deps = TicketServiceDeps(
            ticket_repo=ticket_repo,
            message_repo=message_repo,
            user_repo=user_repo,
            settings_service=settings_service,
            reconciler=reconciler,
        )
        return cls(
            db=db,
            user_repo=user_repo,
            ticket_repo=ticket_repo,
            message_repo=message_repo,
            settings_repo=settings_repo,
            cache=cache,
            settings_service=settings_service,
            reconciler=reconciler,
            ticket_service=TicketService(TicketConfig(), deps),
            analytics_service=AnalyticsService(AnalyticsConfig(), ticket_repo, message_repo, settings_service),
        )

    async def seed_users(self) -> None:
        await self.user_repo.upsert(User(id=ADMIN.id, name="Admin", email="admin@example.com", role=ROLE_ADMIN))
        await self.user_repo.upsert(User(id=MEMBER.id, name="Mia", email="mia@example.com", role=ROLE_MEMBER))
        await self.user_repo.upsert(
            User(id=OTHER_MEMBER.id, name="Omar", email="omar@example.com", role=ROLE_MEMBER)
        )

    async def add_ticket(
        self,
        assigned_to: str = ADMIN.id,
        status: str = TICKET_STATUS_OPEN,
        created_at: datetime | None = None,
        last_message_at: datetime | None = None,
        is_missed: bool = False,
    ) -> TicketRecord:
        created_at = created_at or utc_now()
        ticket = TicketRecord(
            id=str(uuid4()),
            ticket_code=await self.ticket_repo.next_ticket_code(created_at.year),
            user_name="Customer",
            user_email="customer@example.com",
            user_phone="+1 555 0100",
            assigned_to=assigned_to,
            status=status,
            last_message_at=last_message_at or created_at,
            is_missed=is_missed,
            created_at=created_at,
            updated_at=created_at,
        )
        await self.ticket_repo.create(ticket)
        return ticket

    async def add_message(
        self, ticket: TicketRecord, at: datetime, sender_id: str | None = None, text: str = "hello"
    ) -> MessageRecord:
        message = MessageRecord(
            id=str(uuid4()),
            ticket_id=ticket.id,
            sender_id=sender_id,
            text=text,
            timestamp=at,
            created_at=at,
        )
        await self.message_repo.append(message)
        await self.ticket_repo.touch_last_message(ticket.id, at)
        return message


@pytest_asyncio.fixture
async def db(tmp_path: Path) -> AsyncIterator[Database]:
    database = Database(url=f"sqlite:///{tmp_path / 'helpdesk.db'}")
    await database.connect()
    await run_migrations(database)
    yield database
    await database.close()


@pytest_asyncio.fixture
async def harness(db: Database) -> AsyncIterator[Harness]:
    built = Harness.build(db)
    await built.seed_users()
    yield built
    await built.reconciler.drain()
