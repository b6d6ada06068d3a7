# tillbook/storage/db.py
from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine, Session

from core.settings import BACKUP, DB_PATH, BackupSettings
from storage.backup import ensure_daily_backup

# Ensure SQLModel metadata is populated
import models.sync_queue  # noqa: F401
import models.sync_meta  # noqa: F401
import models.sync_conflict  # noqa: F401
from storage import migrations


SessionFactory = Callable[[], Session]


def _enable_sqlite_savepoints(engine: Engine) -> None:
    # pysqlite opens transactions lazily, which breaks SAVEPOINT; let SQLAlchemy emit BEGIN itself
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_db_engine(path: Optional[Path] = None, *, url: Optional[str] = None, echo: bool = False) -> Engine:
    """Build an engine for the local store; ``url`` wins over ``path``."""

    if url is None:
        target = Path(path or DB_PATH)
        target.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{target.as_posix()}"
    engine = create_engine(url, echo=echo)
    if engine.dialect.name == "sqlite":
        _enable_sqlite_savepoints(engine)
    return engine


def init_db(engine: Engine, *, db_path: Optional[Path] = None, backup: Optional[BackupSettings] = None) -> None:
    backup = backup or BACKUP
    if db_path is not None and backup.enabled:
        ensure_daily_backup(db_path, backup.directory, keep_days=backup.keep_days)
    SQLModel.metadata.create_all(engine)
    migrations.run_all(engine)


def make_session_factory(engine: Engine) -> SessionFactory:
    def factory() -> Session:
        return Session(engine)

    return factory


__all__ = ["SessionFactory", "create_db_engine", "init_db", "make_session_factory"]
