from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
import logging

from .models.base import Base

logger = logging.getLogger(__name__)


def make_engine(database_url: str) -> Engine:
    engine = create_engine(
        database_url,
        connect_args=({"check_same_thread": False} if database_url.startswith("sqlite") else {}),
    )

    # Ensure SQLite enforces foreign key constraints at the connection level.
    # PostgreSQL enforces FKs by default; SQLite requires the PRAGMA to be set per connection.
    if database_url.startswith("sqlite"):
        def _enable_sqlite_foreign_keys(dbapi_con, connection_record):
            try:
                cursor = dbapi_con.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()
            except Exception as exc:
                logger.warning("Could not enable SQLite foreign_keys PRAGMA on connect: %s", exc)

        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    # expire_on_commit=False: rows are converted to documents after commit.
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Initialize database tables."""
    # Import models so their tables are registered with Base.metadata
    # before create_all (these imports are idempotent).
    from .models import agent, alert, device, subscriber  # noqa: F401

    Base.metadata.create_all(bind=engine)
