from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, ContextManager, Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, scoped_session, sessionmaker

from .config import load_settings

SessionScope = Callable[[], ContextManager[Session]]


def build_engine(database_url: str) -> Engine:
    engine = create_engine(database_url, future=True, echo=False, pool_pre_ping=True)
    if engine.dialect.name == "sqlite":
        # pysqlite defers BEGIN on its own, which breaks SAVEPOINT; emit it ourselves.
        @event.listens_for(engine, "connect")
        def _disable_pysqlite_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _emit_begin(conn):
            conn.exec_driver_sql("BEGIN")

    return engine


def build_session_scope(factory: Callable[[], Session]) -> SessionScope:
    @contextmanager
    def session_scope() -> Iterator[Session]:
        session = factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return session_scope


settings = load_settings()

engine = build_engine(settings.database_url)
SessionLocal = scoped_session(sessionmaker(bind=engine, autoflush=False, future=True))
session_scope = build_session_scope(SessionLocal)
