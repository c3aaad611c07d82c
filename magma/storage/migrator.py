"""Auto-migration runner: applies pending SQL migrations on startup.

Discovers sql/migrations/*.sql files, tracks applied versions in
schema_migrations, and executes pending ones in order inside a single
transaction.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

_MIGRATIONS_DIR = Path(__file__).resolve().parent.parent.parent / "sql" / "migrations"

_BOOTSTRAP_SQL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version    VARCHAR(20) PRIMARY KEY,
    name       VARCHAR(255) NOT NULL,
    checksum   VARCHAR(64) NOT NULL,
    applied_at TIMESTAMPTZ DEFAULT now()
);
"""


def _split_statements(sql: str) -> list[str]:
    # asyncpg prepares one statement per execute()
    return [statement.strip() for statement in sql.split(";") if statement.strip()]


async def run_migrations(engine: AsyncEngine, migrations_dir: Path = _MIGRATIONS_DIR) -> list[str]:
    """Apply pending SQL migrations and return list of newly applied names."""
    if not migrations_dir.is_dir():
        logger.debug("No migrations directory found at %s", migrations_dir)
        return []

    # Sorted by name (e.g. 001_initial.sql)
    files = sorted(migrations_dir.glob("*.sql"))
    if not files:
        return []

    applied: list[str] = []
    async with engine.begin() as conn:
        await conn.execute(text(_BOOTSTRAP_SQL))

        result = await conn.execute(text("SELECT version FROM schema_migrations"))
        existing = {row[0] for row in result}

        for path in files:
            version = path.stem.split("_", 1)[0]
            if version in existing:
                continue

            sql = path.read_text(encoding="utf-8")
            checksum = hashlib.sha256(sql.encode()).hexdigest()

            logger.info("Applying migration %s ...", path.name)
            for statement in _split_statements(sql):
                await conn.execute(text(statement))
            await conn.execute(
                text(
                    "INSERT INTO schema_migrations (version, name, checksum) "
                    "VALUES (:version, :name, :checksum)"
                ),
                {"version": version, "name": path.stem, "checksum": checksum},
            )
            applied.append(path.stem)
            logger.info("Migration %s applied", path.name)

    if applied:
        logger.info("Migrations applied: %s", applied)
    else:
        logger.debug("All migrations up to date")

    return applied
