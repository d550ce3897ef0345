from __future__ import annotations

import asyncio
import logging
from types import TracebackType

from core.config import AppConfig
from database.base import Database
from database.migrations.runner import run_migrations
from database.repositories import MessageRepository, SettingsRepository, TicketRepository, UserRepository
from services.analytics_service import AnalyticsService
from services.cache import CacheBackend, build_cache
from services.missed_chat import FreshnessReconciler
from services.settings_service import SettingsService
from services.ticket_service import TicketService, TicketServiceDeps

LOGGER = logging.getLogger(__name__)


class HelpdeskApp:
    def __init__(self, config: AppConfig) -> None:
        self.config = config
        self.database = Database(
            url=config.database.url,
            timeout_seconds=config.database.timeout_seconds,
            pool_min_size=config.database.pool_min_size,
            pool_max_size=config.database.pool_max_size,
        )
        self.cache: CacheBackend | None = None
        self._sweep_task: asyncio.Task[None] | None = None

        # Repositories and services are initialized during start.
        self.user_repo: UserRepository
        self.ticket_repo: TicketRepository
        self.message_repo: MessageRepository
        self.settings_repo: SettingsRepository

        self.reconciler: FreshnessReconciler
        self.settings_service: SettingsService
        self.ticket_service: TicketService
        self.analytics_service: AnalyticsService

    async def start(self) -> None:
        await self.database.connect()
        await run_migrations(self.database)
        self.cache = build_cache(self.config.redis)

        self.user_repo = UserRepository(self.database)
        self.ticket_repo = TicketRepository(self.database)
        self.message_repo = MessageRepository(self.database)
        self.settings_repo = SettingsRepository(self.database)

        self.reconciler = FreshnessReconciler(self.ticket_repo, self.message_repo)
        self.settings_service = SettingsService(self.settings_repo, self.cache, self.config.redis)
        deps = TicketServiceDeps(
            ticket_repo=self.ticket_repo,
            message_repo=self.message_repo,
            user_repo=self.user_repo,
            settings_service=self.settings_service,
            reconciler=self.reconciler,
        )
        self.ticket_service = TicketService(self.config.tickets, deps)
        self.analytics_service = AnalyticsService(
            self.config.analytics, self.ticket_repo, self.message_repo, self.settings_service
        )

        interval = self.config.missed_chats.sweep_interval_seconds
        if interval > 0:
            self._sweep_task = asyncio.create_task(self._sweep_loop(interval))
            LOGGER.info("Missed-chat sweep scheduled every %ss", interval)
        LOGGER.info("Helpdesk services ready (driver=%s)", self.database.driver)

    async def _sweep_loop(self, interval: int) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.ticket_service.sweep_missed_flags()
            except Exception:
                LOGGER.exception("Missed-chat sweep failed")

    async def close(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        if hasattr(self, "reconciler"):
            await self.reconciler.drain()
        await self.database.close()
        if self.cache:
            await self.cache.close()
            self.cache = None

    async def __aenter__(self) -> HelpdeskApp:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
