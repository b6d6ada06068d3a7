"""Ad-hoc database migrations for the sync tables."""

from __future__ import annotations

from sqlalchemy import text


def _column_exists(conn, table: str, column: str) -> bool:
    result = conn.execute(text(f"PRAGMA table_info('{table}')"))
    return any(row[1] == column for row in result)


def ensure_sync_queue_columns(conn) -> None:
    # Older databases predate per-transition timestamps
    columns = {
        "updated_at": "DATETIME",
        "locked_at": "DATETIME",
        "retry_delay_sec": "INTEGER",
    }
    for name, ddl_type in columns.items():
        if not _column_exists(conn, "sync_queue", name):
            conn.execute(text(f"ALTER TABLE sync_queue ADD COLUMN {name} {ddl_type}"))

    conn.execute(
        text(
            """
            UPDATE sync_queue
            SET updated_at = COALESCE(updated_at, synced_at, created_at)
            WHERE updated_at IS NULL
            """
        )
    )


def ensure_sync_queue_indexes(conn) -> None:
    conn.execute(
        text(
            """
            CREATE INDEX IF NOT EXISTS ix_sync_queue_status_id
            ON sync_queue (sync_status, id)
            """
        )
    )
    conn.execute(
        text(
            """
            CREATE INDEX IF NOT EXISTS ix_sync_queue_table_record
            ON sync_queue (table_name, record_id)
            """
        )
    )


def ensure_sync_meta_row(conn) -> None:
    conn.execute(
        text(
            """
            INSERT OR IGNORE INTO sync_meta (id, updated_at)
            VALUES (1, CURRENT_TIMESTAMP)
            """
        )
    )


def run_all(engine) -> None:
    with engine.begin() as conn:
        ensure_sync_queue_columns(conn)
        ensure_sync_queue_indexes(conn)
        ensure_sync_meta_row(conn)


__all__ = ["run_all"]
