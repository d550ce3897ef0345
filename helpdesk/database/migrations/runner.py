from __future__ import annotations

import logging
from pathlib import Path

from database.base import Database

LOGGER = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent

MIGRATION_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    id TEXT PRIMARY KEY,
    applied_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""


async def run_migrations(database: Database, migrations_path: Path = MIGRATIONS_DIR) -> list[str]:
    await database.executescript(MIGRATION_TABLE_SQL)
    rows = await database.fetchall("SELECT id FROM schema_migrations;")
    already_applied = {row["id"] for row in rows}

    applied: list[str] = []
    for migration_file in sorted(migrations_path.glob("*.sql")):
        if migration_file.name in already_applied:
            continue
        LOGGER.info("Applying migration %s", migration_file.name)
        await database.executescript(migration_file.read_text(encoding="utf-8"))
        await database.execute("INSERT INTO schema_migrations(id) VALUES (?);", [migration_file.name])
        applied.append(migration_file.name)
    if applied:
        LOGGER.info("Applied %s migration(s)", len(applied))
    return applied
