"""Visibility scoping shared by ticket listing, statistics and analytics.

Every query that touches more than one ticket goes through :func:`scope_filter`
so a member never sees, or aggregates over, tickets assigned to someone else.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from database.models import TicketRecord
from utils.constants import ROLE_ADMIN


@dataclass(frozen=True, slots=True)
class Caller:
    id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass(frozen=True, slots=True)
class Scope:
    assigned_to: str | None = None

    @property
    def unrestricted(self) -> bool:
        return self.assigned_to is None

    def sql_predicate(self, column: str = "assigned_to") -> tuple[str, list[Any]]:
        if self.assigned_to is None:
            return "1 = 1", []
        return f"{column} = ?", [self.assigned_to]

    def permits(self, ticket: TicketRecord) -> bool:
        return self.assigned_to is None or ticket.assigned_to == self.assigned_to


ALL_TICKETS = Scope()


def scope_filter(caller: Caller) -> Scope:
    if caller.is_admin:
        return ALL_TICKETS
    # Any non-admin role is restricted to its own assignments.
    return Scope(assigned_to=caller.id)
