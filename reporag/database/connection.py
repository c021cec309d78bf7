"""SQLAlchemy database setup."""
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker, declarative_base

# Base class for models
Base = declarative_base()


class Database:
    """
    Owns the engine and session factory for one database URL.

    Callers acquire a session per operation through session(), which commits
    on success, rolls back on error and always closes.
    """

    def __init__(self, database_url: str, echo: bool = False):
        connect_args = {}
        if database_url.startswith("sqlite"):
            # Sessions are opened from activity worker threads.
            connect_args["check_same_thread"] = False

        self.url = database_url
        self.engine: Engine = create_engine(
            database_url,
            echo=echo,  # Set to True for SQL debugging
            pool_pre_ping=True,  # Verify connections before using
            connect_args=connect_args,
        )
        self._session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine,
        )

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Get a database session scoped to one unit of work."""
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def init_db(self):
        """Initialize database tables."""
        from reporag.database import models  # noqa: F401  (registers tables)
        Base.metadata.create_all(bind=self.engine)

    def dispose(self):
        self.engine.dispose()
