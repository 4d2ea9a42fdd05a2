from __future__ import annotations

from collections.abc import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from attachsync.config import get_settings

Base = declarative_base()


def configure_sqlite_engine(engine: Engine) -> Engine:
    """Make every SQLite transaction a write transaction.

    pysqlite defers BEGIN until the first write, which lets two claimers read
    the same rows before either updates them. Taking the write lock up front
    turns claim's select-then-update into a single serialized transaction.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):  # noqa: ANN001
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):  # noqa: ANN001
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def create_db_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
            future=True,
        )
        return configure_sqlite_engine(engine)

    return create_engine(url, pool_pre_ping=True, future=True)


settings = get_settings()

engine = create_db_engine(settings.sqlalchemy_database_uri())

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    future=True,
)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
