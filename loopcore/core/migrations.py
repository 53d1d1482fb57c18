"""Database migration utilities."""

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import text

from loopcore.database import get_engine
from loopcore.logging_config import get_logger

logger = get_logger(__name__)


def get_alembic_config() -> Config:
    """Get Alembic configuration."""
    # alembic.ini lives at the project root, next to the loopcore package
    project_root = Path(__file__).parent.parent.parent
    alembic_ini = project_root / "alembic.ini"

    if not alembic_ini.exists():
        raise FileNotFoundError(f"alembic.ini not found at {alembic_ini}")

    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(project_root / "migrations"))
    # Keep the application's logging configuration
    config.attributes["skip_logging_config"] = True

    return config


def run_migrations() -> None:
    """
    Run all pending database migrations synchronously.

    The migration environment drives the async engine itself, so this must be
    called outside a running event loop (e.g. via ``asyncio.to_thread``).
    """
    logger.info("Running database migrations...")

    try:
        config = get_alembic_config()
        command.upgrade(config, "head")
        logger.info("Database migrations completed successfully")
    except Exception as e:
        logger.error("Database migration failed", error=str(e))
        raise


async def check_migrations_current() -> bool:
    """
    Check if the database is at the latest migration.

    Returns:
        True if the stored revision matches the head revision, False otherwise.
    """
    head = get_head_revision()
    try:
        async with get_engine().connect() as conn:
            result = await conn.execute(
                text("SELECT version_num FROM alembic_version LIMIT 1")
            )
            row = result.fetchone()
            return row is not None and row[0] == head
    except Exception:
        return False


def get_head_revision() -> str | None:
    """Get the head revision of the migration scripts."""
    try:
        script = ScriptDirectory.from_config(get_alembic_config())
        return script.get_current_head()
    except Exception:
        return None
