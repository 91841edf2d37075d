"""SQLModel database engine and table creation."""

import logging

from sqlalchemy import event
from sqlmodel import SQLModel, create_engine

from accumulator.config import settings

logger = logging.getLogger(__name__)


def build_engine(database_url: str, **kwargs):
    """Create an engine; SQLite gets check_same_thread=False and FK enforcement."""
    connect_args = kwargs.pop("connect_args", {})
    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        connect_args.setdefault("check_same_thread", False)

    eng = create_engine(database_url, echo=False, connect_args=connect_args, **kwargs)

    if is_sqlite:
        # Trade.job_id cascades on delete; SQLite ignores FKs unless told otherwise
        @event.listens_for(eng, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return eng


engine = build_engine(settings.database_url)


def create_db_and_tables(bind=None):
    """Create all tables. Called on startup."""
    import accumulator.models  # noqa: F401  (populate metadata)

    SQLModel.metadata.create_all(bind or engine)
    logger.debug("Database tables ensured")
