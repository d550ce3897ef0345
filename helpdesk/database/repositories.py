from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from dataclasses import asdict
from datetime import datetime
from typing import TYPE_CHECKING, Any

from database.base import Database
from database.models import ChatbotSettings, MessageRecord, MissedChatTimer, TicketRecord, User
from utils.constants import ROLE_ADMIN, TICKET_CODE_DIGITS
from utils.time import parse_iso, to_iso, utc_now

if TYPE_CHECKING:
    from services.scope import Scope

SETTINGS_ROW_ID = "chatbot"


def _json_load(value: str | None, default: Any) -> Any:
    if value is None:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _json_dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, separators=(",", ":"))


def _timer_part(timer: dict[str, Any], name: str, default: int) -> int:
    value = timer.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class UserRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def upsert(self, user: User) -> None:
        await self.db.execute(
            """
            INSERT INTO users(id, name, email, role, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                email = excluded.email,
                role = excluded.role;
            """,
            [user.id, user.name, user.email.lower(), user.role, to_iso(user.created_at or utc_now())],
        )

    async def get_by_id(self, user_id: str) -> User | None:
        row = await self.db.fetchone("SELECT * FROM users WHERE id = ?;", [user_id])
        if not row:
            return None
        return self._row_to_user(row)

    async def get_admin(self) -> User | None:
        row = await self.db.fetchone(
            "SELECT * FROM users WHERE role = ? ORDER BY created_at ASC LIMIT 1;",
            [ROLE_ADMIN],
        )
        if not row:
            return None
        return self._row_to_user(row)

    def _row_to_user(self, row: dict[str, Any]) -> User:
        return User(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            role=row["role"],
            created_at=parse_iso(row["created_at"]),
        )


class TicketRepository:
    def __init__(self, db: Database) -> None:
        self.db = db
        self._counter_lock = asyncio.Lock()

    async def next_ticket_code(self, year: int) -> str:
        async with self._counter_lock:
            await self.db.execute(
                """
                INSERT INTO ticket_counters(year, counter)
                VALUES (?, 0)
                ON CONFLICT(year) DO NOTHING;
                """,
                [year],
            )
            await self.db.execute(
                "UPDATE ticket_counters SET counter = counter + 1 WHERE year = ?;",
                [year],
            )
            row = await self.db.fetchone("SELECT counter FROM ticket_counters WHERE year = ?;", [year])
        number = int(row["counter"]) if row else 1
        return f"{year}-{number:0{TICKET_CODE_DIGITS}d}"

    async def create(self, ticket: TicketRecord) -> None:
        await self.db.execute(
            """
            INSERT INTO tickets(
                id, ticket_code, user_name, user_email, user_phone, assigned_to,
                status, last_message_at, is_missed, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            [
                ticket.id,
                ticket.ticket_code,
                ticket.user_name,
                ticket.user_email,
                ticket.user_phone,
                ticket.assigned_to,
                ticket.status,
                to_iso(ticket.last_message_at),
                ticket.is_missed,
                to_iso(ticket.created_at),
                to_iso(ticket.updated_at),
            ],
        )

    async def get_by_id(self, ticket_id: str) -> TicketRecord | None:
        row = await self.db.fetchone("SELECT * FROM tickets WHERE id = ?;", [ticket_id])
        if not row:
            return None
        return self._row_to_ticket(row)

    async def list_page(
        self,
        scope: Scope,
        limit: int,
        status: str | None = None,
        search: str | None = None,
        after: TicketRecord | None = None,
    ) -> list[TicketRecord]:
        predicate, params = scope.sql_predicate()
        clauses = [predicate]
        if status:
            clauses.append("status = ?")
            params.append(status)
        if search:
            clauses.append("LOWER(ticket_code) LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(search.lower())}%")
        if after is not None:
            after_at = to_iso(after.last_message_at)
            clauses.append("(last_message_at < ? OR (last_message_at = ? AND id < ?))")
            params.extend([after_at, after_at, after.id])
        params.append(limit)
        rows = await self.db.fetchall(
            f"""
            SELECT * FROM tickets
            WHERE {" AND ".join(clauses)}
            ORDER BY last_message_at DESC, id DESC
            LIMIT ?;
            """,
            params,
        )
        return [self._row_to_ticket(row) for row in rows]

    async def list_in_scope(self, scope: Scope) -> list[TicketRecord]:
        predicate, params = scope.sql_predicate()
        rows = await self.db.fetchall(
            f"""
            SELECT * FROM tickets
            WHERE {predicate}
            ORDER BY created_at ASC;
            """,
            params,
        )
        return [self._row_to_ticket(row) for row in rows]

    async def count_created_between(
        self, scope: Scope, start: datetime | None = None, end: datetime | None = None
    ) -> int:
        predicate, params = scope.sql_predicate()
        clauses = [predicate]
        if start is not None:
            clauses.append("created_at >= ?")
            params.append(to_iso(start))
        if end is not None:
            clauses.append("created_at <= ?")
            params.append(to_iso(end))
        row = await self.db.fetchone(
            f"SELECT COUNT(*) AS count FROM tickets WHERE {' AND '.join(clauses)};",
            params,
        )
        return int(row["count"]) if row else 0

    async def set_status(self, ticket_id: str, status: str) -> None:
        await self.db.execute(
            "UPDATE tickets SET status = ?, updated_at = ? WHERE id = ?;",
            [status, to_iso(utc_now()), ticket_id],
        )

    async def set_assigned_to(self, ticket_id: str, user_id: str) -> None:
        await self.db.execute(
            "UPDATE tickets SET assigned_to = ?, updated_at = ? WHERE id = ?;",
            [user_id, to_iso(utc_now()), ticket_id],
        )

    async def set_missed(self, ticket_id: str, is_missed: bool) -> None:
        await self.db.execute(
            "UPDATE tickets SET is_missed = ? WHERE id = ?;",
            [is_missed, ticket_id],
        )

    async def touch_last_message(self, ticket_id: str, at: datetime) -> None:
        await self.db.execute(
            "UPDATE tickets SET last_message_at = ?, updated_at = ? WHERE id = ?;",
            [to_iso(at), to_iso(utc_now()), ticket_id],
        )

    async def reassign_all(self, from_user_id: str, to_user_id: str) -> int:
        row = await self.db.fetchone(
            "SELECT COUNT(*) AS count FROM tickets WHERE assigned_to = ?;",
            [from_user_id],
        )
        await self.db.execute(
            "UPDATE tickets SET assigned_to = ?, updated_at = ? WHERE assigned_to = ?;",
            [to_user_id, to_iso(utc_now()), from_user_id],
        )
        return int(row["count"]) if row else 0

    async def delete(self, ticket_id: str) -> None:
        # Messages go with it through ON DELETE CASCADE, in the same statement.
        await self.db.execute("DELETE FROM tickets WHERE id = ?;", [ticket_id])

    def _row_to_ticket(self, row: dict[str, Any]) -> TicketRecord:
        return TicketRecord(
            id=row["id"],
            ticket_code=row["ticket_code"],
            user_name=row["user_name"],
            user_email=row["user_email"],
            user_phone=row["user_phone"],
            assigned_to=row["assigned_to"],
            status=row["status"],
            last_message_at=parse_iso(row["last_message_at"]),
            is_missed=bool(row["is_missed"]),
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )


class MessageRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def append(self, message: MessageRecord) -> None:
        await self.db.execute(
            """
            INSERT INTO messages(id, ticket_id, sender_id, text, timestamp, created_at, seq)
            VALUES (
                ?, ?, ?, ?, ?, ?,
                (SELECT COALESCE(MAX(seq), 0) + 1 FROM messages WHERE ticket_id = ?)
            );
            """,
            [
                message.id,
                message.ticket_id,
                message.sender_id,
                message.text,
                to_iso(message.timestamp),
                to_iso(message.created_at),
                message.ticket_id,
            ],
        )

    async def list_for_ticket(self, ticket_id: str) -> list[MessageRecord]:
        rows = await self.db.fetchall(
            """
            SELECT * FROM messages
            WHERE ticket_id = ?
            ORDER BY timestamp ASC, created_at ASC, seq ASC;
            """,
            [ticket_id],
        )
        return [self._row_to_message(row) for row in rows]

    async def list_for_scope(self, scope: Scope) -> dict[str, list[MessageRecord]]:
        predicate, params = scope.sql_predicate("t.assigned_to")
        rows = await self.db.fetchall(
            f"""
            SELECT m.* FROM messages m
            JOIN tickets t ON t.id = m.ticket_id
            WHERE {predicate}
            ORDER BY m.ticket_id ASC, m.timestamp ASC, m.created_at ASC, m.seq ASC;
            """,
            params,
        )
        timelines: dict[str, list[MessageRecord]] = defaultdict(list)
        for row in rows:
            timelines[row["ticket_id"]].append(self._row_to_message(row))
        return dict(timelines)

    def _row_to_message(self, row: dict[str, Any]) -> MessageRecord:
        return MessageRecord(
            id=row["id"],
            ticket_id=row["ticket_id"],
            sender_id=row["sender_id"],
            text=row["text"],
            timestamp=parse_iso(row["timestamp"]),
            created_at=parse_iso(row["created_at"]),
        )


class SettingsRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def get(self) -> ChatbotSettings | None:
        row = await self.db.fetchone("SELECT * FROM chatbot_settings WHERE id = ?;", [SETTINGS_ROW_ID])
        if not row:
            return None
        return self._row_to_settings(row)

    async def create_if_missing(self, settings: ChatbotSettings) -> None:
        now = to_iso(utc_now())
        await self.db.execute(
            """
            INSERT INTO chatbot_settings(id, payload_json, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO NOTHING;
            """,
            [SETTINGS_ROW_ID, _json_dump(self._payload(settings)), now, now],
        )

    async def save(self, settings: ChatbotSettings) -> None:
        await self.db.execute(
            "UPDATE chatbot_settings SET payload_json = ?, updated_at = ? WHERE id = ?;",
            [_json_dump(self._payload(settings)), to_iso(utc_now()), SETTINGS_ROW_ID],
        )

    async def delete_all(self) -> None:
        await self.db.execute("DELETE FROM chatbot_settings;")

    @staticmethod
    def _payload(settings: ChatbotSettings) -> dict[str, Any]:
        payload = asdict(settings)
        payload.pop("created_at", None)
        payload.pop("updated_at", None)
        return payload

    def _row_to_settings(self, row: dict[str, Any]) -> ChatbotSettings:
        defaults = ChatbotSettings()
        payload = dict(_json_load(row["payload_json"], {}))
        timer = dict(payload.get("missed_chat_timer") or {})
        return ChatbotSettings(
            header_color=str(payload.get("header_color", defaults.header_color)),
            background_color=str(payload.get("background_color", defaults.background_color)),
            custom_messages={**defaults.custom_messages, **dict(payload.get("custom_messages") or {})},
            introduction_form={**defaults.introduction_form, **dict(payload.get("introduction_form") or {})},
            welcome_message=str(payload.get("welcome_message", defaults.welcome_message)),
            missed_chat_timer=MissedChatTimer(
                hours=_timer_part(timer, "hours", defaults.missed_chat_timer.hours),
                minutes=_timer_part(timer, "minutes", defaults.missed_chat_timer.minutes),
                seconds=_timer_part(timer, "seconds", defaults.missed_chat_timer.seconds),
            ),
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )
