from __future__ import annotations

from pathlib import Path

from runsheetcapture.core.errors import StorageQuotaError
from runsheetcapture.core.time import now_utc_iso
from runsheetcapture.infrastructure.db.sqlite import get_connection

DEFAULT_QUOTA_BYTES = 64 * 1024


class KeyValueRepo:
    """Small string store with a total byte quota, in the spirit of browser localStorage."""

    def __init__(self, db_path: Path, *, quota_bytes: int = DEFAULT_QUOTA_BYTES) -> None:
        self.db_path = db_path
        self.quota_bytes = quota_bytes

    def get(self, key: str) -> str | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        return str(row["value"]) if row else None

    def set(self, key: str, value: str) -> None:
        size = len(value.encode("utf-8"))
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT COALESCE(SUM(size_bytes), 0) AS used FROM kv_store WHERE key != ?",
                (key,),
            ).fetchone()
            used = int(row["used"] or 0)
            if used + size > self.quota_bytes:
                raise StorageQuotaError(
                    f"Writing {size} bytes to '{key}' exceeds the {self.quota_bytes} byte quota "
                    f"({used} bytes already used)."
                )
            conn.execute(
                """
                INSERT INTO kv_store (key, value, size_bytes, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    size_bytes = excluded.size_bytes,
                    updated_at = excluded.updated_at
                """,
                (key, value, size, now_utc_iso()),
            )
            conn.commit()

    def delete(self, key: str) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()
