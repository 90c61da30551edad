from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from shotline.config import Settings
from shotline.models.base import Base


class Database:
    """Owns the sync engine and session factory for one process.

    Worker threads share the engine; every unit of work opens its own session.
    """

    def __init__(self, url: str, *, echo: bool = False, **engine_kwargs):
        if url.startswith("sqlite"):
            # Worker threads share the connection pool
            engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
        else:
            engine_kwargs.setdefault("pool_size", 5)
            engine_kwargs.setdefault("max_overflow", 0)
            engine_kwargs.setdefault("pool_pre_ping", True)
            engine_kwargs.setdefault("pool_recycle", 1800)
        self.engine: Engine = create_engine(url, echo=echo, future=True, **engine_kwargs)
        self.session_maker = sessionmaker(self.engine, class_=Session, expire_on_commit=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        url = settings.database_url.replace("postgresql+asyncpg://", "postgresql+psycopg2://")
        return cls(url, echo=settings.database_echo)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Transactional session: commit on success, rollback on error."""
        session = self.session_maker()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()
