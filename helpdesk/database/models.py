from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from utils.constants import (
    DEFAULT_CUSTOM_MESSAGES,
    DEFAULT_INTRODUCTION_FORM,
    DEFAULT_WELCOME_MESSAGE,
    TICKET_STATUS_OPEN,
)


@dataclass(slots=True)
class User:
    id: str
    name: str
    email: str
    role: str
    created_at: datetime | None = None


@dataclass(slots=True)
class TicketRecord:
    id: str
    ticket_code: str
    user_name: str
    user_email: str
    user_phone: str
    assigned_to: str
    status: str = TICKET_STATUS_OPEN
    last_message_at: datetime | None = None
    is_missed: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class MessageRecord:
    id: str
    ticket_id: str
    sender_id: str | None
    text: str
    timestamp: datetime | None
    created_at: datetime | None = None

    @property
    def from_customer(self) -> bool:
        return self.sender_id is None

    @property
    def sent_at(self) -> datetime | None:
        return self.timestamp or self.created_at


@dataclass(slots=True)
class MissedChatTimer:
    hours: int = 0
    minutes: int = 10
    seconds: int = 0


@dataclass(slots=True)
class ChatbotSettings:
    header_color: str = "#334755"
    background_color: str = "#EEEEEE"
    custom_messages: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_CUSTOM_MESSAGES))
    introduction_form: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_INTRODUCTION_FORM))
    welcome_message: str = DEFAULT_WELCOME_MESSAGE
    missed_chat_timer: MissedChatTimer = field(default_factory=MissedChatTimer)
    created_at: datetime | None = None
    updated_at: datetime | None = None
