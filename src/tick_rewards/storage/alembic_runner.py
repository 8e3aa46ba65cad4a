"""Apply the rewards schema migrations from code."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

from tick_rewards.storage.common import ensure_db_parent, sqlite_url

logger = logging.getLogger(__name__)

# src/tick_rewards/storage -> repository root holding alembic.ini and alembic/
PROJECT_ROOT = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path) -> Config:
    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", sqlite_url(db_path))
    return config


def upgrade_head(db_path: Path) -> None:
    """Bring the SQLite database at ``db_path`` up to the latest revision."""

    ensure_db_parent(db_path)
    logger.debug("Applying migrations to %s", db_path)
    command.upgrade(alembic_config(db_path), "head")
