"""
Versioned schema migrations, kept as alembic revisions under `schema/`.

`apply_migrations` runs `alembic upgrade head` on a connection of the
registry's own engine, so startup and the `alembic` command line share one
revision history.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import Connection
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

SCRIPT_LOCATION = Path(__file__).parent / "schema"


def alembic_config(database_url: Optional[str] = None) -> Config:
    cfg = Config()
    cfg.set_main_option("script_location", str(SCRIPT_LOCATION))
    if database_url:
        cfg.set_main_option("sqlalchemy.url", database_url)
    return cfg


def pending_revisions(connection: Connection, cfg: Config) -> List[str]:
    """Revisions between the database's current one and head, oldest first."""
    current = MigrationContext.configure(connection).get_current_revision()
    script = ScriptDirectory.from_config(cfg)
    revisions = script.iterate_revisions("head", current or "base")
    return [rev.revision for rev in reversed(list(revisions))]


def _upgrade(connection: Connection, cfg: Config) -> List[str]:
    pending = pending_revisions(connection, cfg)
    if not pending:
        return []
    logger.info(f"Upgrading database schema through {', '.join(pending)}")
    cfg.attributes["connection"] = connection
    command.upgrade(cfg, "head")
    return pending


async def apply_migrations(engine: AsyncEngine) -> List[str]:
    """Apply pending revisions in one transaction; return the ids applied."""
    cfg = alembic_config()
    async with engine.begin() as conn:
        applied = await conn.run_sync(_upgrade, cfg)
    if not applied:
        logger.debug("Database schema is up to date")
    return applied
