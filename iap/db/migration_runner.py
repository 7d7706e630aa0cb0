"""
Migration Runner - Applies pending Alembic migrations at startup.

Enabled with IAP_RUN_MIGRATIONS=true for the postgres store.
"""

import logging
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from iap.config import settings

logger = logging.getLogger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


def get_sync_database_url() -> str:
    """
    Synchronous database URL for migrations.

    Alembic's command API uses synchronous connections, so asyncpg URLs are
    converted to psycopg2 URLs.
    """
    url = settings.database_url
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://") :]
    return url.replace("+asyncpg", "+psycopg2")


def _get_current_revision(engine: Engine) -> str | None:
    with engine.connect() as conn:
        context = MigrationContext.configure(conn)
        return context.get_current_revision()


def _get_head_revision(alembic_cfg: Config) -> str | None:
    script = ScriptDirectory.from_config(alembic_cfg)
    return script.get_current_head()


def run_migrations() -> None:
    """
    Run pending Alembic migrations.

    Only runs migrations if there are pending ones.

    Raises:
        RuntimeError: If a migration fails
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning(f"Alembic config not found at {ALEMBIC_INI_PATH}, skipping migrations")
        return

    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    sync_url = get_sync_database_url()
    alembic_cfg.set_main_option("sqlalchemy.url", sync_url.replace("%", "%%"))
    alembic_cfg.attributes["url_overridden"] = True

    try:
        engine = create_engine(sync_url)
        try:
            current = _get_current_revision(engine)
            head = _get_head_revision(alembic_cfg)

            if current == head:
                logger.info(f"Database schema is up to date (revision: {current})")
                return

            logger.info(f"Running migrations from {current} to {head}")
            command.upgrade(alembic_cfg, "head")
            logger.info(f"Migrations complete. Database now at revision: {head}")
        finally:
            engine.dispose()

    except Exception as e:
        logger.error(f"Migration failed: {e}")
        raise RuntimeError(f"Database migration failed: {e}") from e
