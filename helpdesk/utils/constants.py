from __future__ import annotations

TICKET_STATUS_OPEN = "open"
TICKET_STATUS_IN_PROGRESS = "in_progress"
TICKET_STATUS_RESOLVED = "resolved"

TICKET_STATUSES = (TICKET_STATUS_OPEN, TICKET_STATUS_IN_PROGRESS, TICKET_STATUS_RESOLVED)

ROLE_ADMIN = "admin"
ROLE_MEMBER = "member"

USER_ROLES = (ROLE_ADMIN, ROLE_MEMBER)

TICKET_CODE_DIGITS = 5

SETTINGS_CACHE_KEY = "settings:chatbot"

DEFAULT_CUSTOM_MESSAGES = {
    "message1": "How can I help you?",
    "message2": "Ask me anything!",
}

DEFAULT_INTRODUCTION_FORM = {
    "nameLabel": "Your name",
    "namePlaceholder": "Your name",
    "phoneLabel": "Your Phone",
    "phonePlaceholder": "+1 (000) 000-0000",
    "emailLabel": "Your Email",
    "emailPlaceholder": "example@gmail.com",
}

DEFAULT_WELCOME_MESSAGE = (
    "👋 Want to chat about Hubly? I'm an chatbot here to help you find your way."
)

CUSTOM_MESSAGE_MAX_LENGTH = 200
WELCOME_MESSAGE_MAX_LENGTH = 500

TIMER_LIMITS = {
    "hours": 23,
    "minutes": 59,
    "seconds": 59,
}
