from __future__ import annotations

import shutil
import tempfile
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from tests._bootstrap import bootstrap_imports, reset_caches


bootstrap_imports()


def make_session_factory() -> sessionmaker:
    """Create an isolated temp-file SQLite database with all models created.

    A file (not `:memory:`) is used so each session gets its own connection
    and concurrent claims really contend for the write lock.
    """
    reset_caches()

    from attachsync.database import Base, configure_sqlite_engine  # noqa: E402

    import attachsync.attachment.models  # noqa: F401,E402
    import attachsync.upload.models  # noqa: F401,E402

    tmpdir = tempfile.mkdtemp(prefix="attachsync-test-")
    engine = create_engine(
        f"sqlite+pysqlite:///{Path(tmpdir) / 'test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        future=True,
    )
    configure_sqlite_engine(engine)
    Base.metadata.create_all(engine)

    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


def dispose_session_factory(factory: sessionmaker) -> None:
    engine = factory.kw["bind"]
    db_path = engine.url.database
    engine.dispose()
    if db_path:
        shutil.rmtree(Path(db_path).parent, ignore_errors=True)


def make_session() -> Session:
    return make_session_factory()()
