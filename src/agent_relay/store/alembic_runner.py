"""Programmatic access to the bundled Alembic migrations."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory

_ROOT_DIR = Path(__file__).resolve().parents[3]


def _alembic_config(db_path: Path | None = None) -> Config:
    config = Config(str(_ROOT_DIR / "alembic.ini"))
    config.set_main_option("script_location", str(_ROOT_DIR / "alembic"))
    if db_path is not None:
        config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Create the database file if needed and migrate it to head."""

    db_path.parent.mkdir(parents=True, exist_ok=True)
    command.upgrade(_alembic_config(db_path), "head")


def head_revision() -> str | None:
    """Latest migration id shipped with the package."""

    return ScriptDirectory.from_config(_alembic_config()).get_current_head()
