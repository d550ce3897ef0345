from __future__ import annotations

import json
import logging
from dataclasses import asdict
from typing import Any

from core.config import RedisConfig
from core.errors import ForbiddenError, ValidationError
from database.models import ChatbotSettings, MissedChatTimer
from database.repositories import SettingsRepository
from services.cache import CacheBackend
from services.scope import Caller
from utils.constants import (
    CUSTOM_MESSAGE_MAX_LENGTH,
    SETTINGS_CACHE_KEY,
    TIMER_LIMITS,
    WELCOME_MESSAGE_MAX_LENGTH,
)
from utils.time import parse_iso, to_iso

LOGGER = logging.getLogger(__name__)


def _encode(settings: ChatbotSettings) -> str:
    payload = asdict(settings)
    payload["created_at"] = to_iso(settings.created_at)
    payload["updated_at"] = to_iso(settings.updated_at)
    return json.dumps(payload, ensure_ascii=True)


def _decode(raw: str) -> ChatbotSettings:
    payload = json.loads(raw)
    return ChatbotSettings(
        header_color=payload["header_color"],
        background_color=payload["background_color"],
        custom_messages=dict(payload["custom_messages"]),
        introduction_form=dict(payload["introduction_form"]),
        welcome_message=payload["welcome_message"],
        missed_chat_timer=MissedChatTimer(**payload["missed_chat_timer"]),
        created_at=parse_iso(payload.get("created_at")),
        updated_at=parse_iso(payload.get("updated_at")),
    )


def _validate_timer_part(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"missedChatTimer.{name} must be an integer")
    if value < 0 or value > TIMER_LIMITS[name]:
        raise ValidationError(f"missedChatTimer.{name} must be between 0 and {TIMER_LIMITS[name]}")
    return value


def _validate_text(field_name: str, value: Any, max_length: int) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string")
    if len(value) > max_length:
        raise ValidationError(f"{field_name} cannot exceed {max_length} characters")
    return value


def _normalize_changes(changes: dict[str, Any]) -> dict[str, Any]:
    clean: dict[str, Any] = {}
    if changes.get("header_color") is not None:
        clean["header_color"] = _validate_text("headerColor", changes["header_color"], 32)
    if changes.get("background_color") is not None:
        clean["background_color"] = _validate_text("backgroundColor", changes["background_color"], 32)

    custom_messages = changes.get("custom_messages") or {}
    clean["custom_messages"] = {
        key: _validate_text(f"customMessages.{key}", custom_messages[key], CUSTOM_MESSAGE_MAX_LENGTH)
        for key in ("message1", "message2")
        if custom_messages.get(key) is not None
    }

    introduction_form = changes.get("introduction_form") or {}
    clean["introduction_form"] = {
        key: _validate_text(f"introductionForm.{key}", value, CUSTOM_MESSAGE_MAX_LENGTH)
        for key, value in introduction_form.items()
        if value is not None
    }

    if changes.get("welcome_message") is not None:
        clean["welcome_message"] = _validate_text(
            "welcomeMessage", changes["welcome_message"], WELCOME_MESSAGE_MAX_LENGTH
        )

    timer = changes.get("missed_chat_timer") or {}
    clean["missed_chat_timer"] = {
        part: _validate_timer_part(part, timer[part])
        for part in ("hours", "minutes", "seconds")
        if timer.get(part) is not None
    }
    return clean


class SettingsService:
    """Single accessor for the chatbot settings singleton.

    Operations read the record once up front and pass it (or the timer derived
    from it) down explicitly.
    """

    def __init__(self, settings_repo: SettingsRepository, cache: CacheBackend, redis_config: RedisConfig) -> None:
        self.settings_repo = settings_repo
        self.cache = cache
        self.cache_ttl = redis_config.default_ttl

    async def get_settings(self) -> ChatbotSettings:
        cached = await self.cache.get(SETTINGS_CACHE_KEY)
        if cached:
            return _decode(cached)

        settings = await self.settings_repo.get()
        if settings is None:
            LOGGER.info("No chatbot settings stored; creating defaults")
            await self.settings_repo.create_if_missing(ChatbotSettings())
            settings = await self.settings_repo.get() or ChatbotSettings()
        await self.cache.set(SETTINGS_CACHE_KEY, _encode(settings), ttl=self.cache_ttl)
        return settings

    async def get_missed_chat_timer(self) -> MissedChatTimer:
        settings = await self.get_settings()
        return settings.missed_chat_timer

    async def update_settings(self, caller: Caller, changes: dict[str, Any]) -> ChatbotSettings:
        if not caller.is_admin:
            raise ForbiddenError("Only the admin can change chatbot settings.")
        clean = _normalize_changes(changes)
        settings = await self.get_settings()

        settings.header_color = clean.get("header_color", settings.header_color)
        settings.background_color = clean.get("background_color", settings.background_color)
        settings.custom_messages.update(clean.get("custom_messages", {}))
        settings.introduction_form.update(clean.get("introduction_form", {}))
        settings.welcome_message = clean.get("welcome_message", settings.welcome_message)
        for part, value in clean.get("missed_chat_timer", {}).items():
            setattr(settings.missed_chat_timer, part, value)

        await self.settings_repo.save(settings)
        await self.cache.delete(SETTINGS_CACHE_KEY)
        LOGGER.info("Chatbot settings updated by %s", caller.id)
        return await self.get_settings()

    async def reset_settings(self, caller: Caller) -> ChatbotSettings:
        if not caller.is_admin:
            raise ForbiddenError("Only the admin can reset chatbot settings.")
        await self.settings_repo.delete_all()
        await self.cache.delete(SETTINGS_CACHE_KEY)
        LOGGER.info("Chatbot settings reset by %s", caller.id)
        return await self.get_settings()
