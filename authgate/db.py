"""Database engine and session management for the AuthGate service."""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Generator, Optional

from dotenv import load_dotenv
from sqlalchemy import Column, DateTime, create_engine, event, func, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

# Load environment from .env if available so database configuration is discoverable.
load_dotenv()

LOGGER = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base declarative class used by all ORM models."""


class TimestampMixin:
    """Mixin that adds created_at/updated_at audit fields."""

    created_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


def _build_sqlite_url() -> str:
    """Construct the default SQLite connection string."""
    sqlite_path_env = os.getenv("AUTHGATE_SQLITE_PATH", "data/authgate.db")

    project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    sqlite_path = os.path.expanduser(sqlite_path_env)
    if not os.path.isabs(sqlite_path):
        sqlite_path = os.path.normpath(os.path.join(project_root, sqlite_path))

    directory = os.path.dirname(sqlite_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    return f"sqlite:///{sqlite_path}"


def build_database_url() -> str:
    """Return the configured database URL, defaulting to a local SQLite file."""
    url = os.getenv("AUTHGATE_DB_URL", "").strip()
    if url:
        return url
    return _build_sqlite_url()


def build_engine(url: str) -> Engine:
    engine_kwargs = {
        "future": True,
        "pool_pre_ping": True,
    }
    if not url.startswith("sqlite"):
        return create_engine(url, **engine_kwargs)

    # SQLite requires disabling same-thread checks for multi-threaded FastAPI workers.
    engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    engine = create_engine(url, **engine_kwargs)

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record) -> None:  # pragma: no cover - driver hook
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


class Database:
    """Engine plus session factory shared by the credential and session stores."""

    def __init__(self, url: Optional[str] = None, *, engine: Optional[Engine] = None) -> None:
        self.url = url or build_database_url()
        self.engine = engine or build_engine(self.url)
        self._session_factory = sessionmaker(
            bind=self.engine,
            expire_on_commit=False,
            autoflush=False,
            future=True,
        )

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Provide a transactional scope around a series of operations."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_schema(self) -> None:
        """Ensure all ORM tables are created in the configured database."""
        # Import models within the function to avoid circular imports.
        from .auth import models  # noqa: F401  # pylint: disable=unused-import

        if self.engine.dialect.name == "sqlite":
            with self.engine.begin() as conn:
                # WAL lets session reads proceed while a login commits.
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.execute(text("PRAGMA synchronous=NORMAL"))

        Base.metadata.create_all(bind=self.engine)
        LOGGER.debug("Auth schema ensured on %s", self.engine.url.render_as_string(hide_password=True))

    def dispose(self) -> None:
        self.engine.dispose()
