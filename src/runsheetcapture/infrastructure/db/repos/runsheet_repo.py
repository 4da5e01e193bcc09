from __future__ import annotations

import json
from pathlib import Path

from runsheetcapture.domain.models.runsheet import Runsheet
from runsheetcapture.infrastructure.db.sqlite import get_connection


class RunsheetRepo:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def get_by_id(self, runsheet_id: str) -> Runsheet | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM runsheets WHERE id = ?",
                (runsheet_id,),
            ).fetchone()
        return self._to_runsheet(row) if row else None

    def get_for_user(self, runsheet_id: str, user_id: str) -> Runsheet | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM runsheets WHERE id = ? AND user_id = ?",
                (runsheet_id, user_id),
            ).fetchone()
        return self._to_runsheet(row) if row else None

    def get_by_name_for_user(self, user_id: str, name: str) -> Runsheet | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM runsheets WHERE user_id = ? AND name = ?",
                (user_id, name),
            ).fetchone()
        return self._to_runsheet(row) if row else None

    def insert(self, runsheet: Runsheet) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO runsheets (
                    id,
                    user_id,
                    name,
                    columns_json,
                    data_json,
                    column_instructions_json,
                    created_at,
                    updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    runsheet.id,
                    runsheet.user_id,
                    runsheet.name,
                    json.dumps(runsheet.columns, ensure_ascii=True),
                    json.dumps(runsheet.data, ensure_ascii=True),
                    json.dumps(runsheet.column_instructions, ensure_ascii=True, sort_keys=True),
                    runsheet.created_at,
                    runsheet.updated_at,
                ),
            )
            conn.commit()

    def update(self, runsheet: Runsheet) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                UPDATE runsheets
                SET name = ?,
                    columns_json = ?,
                    data_json = ?,
                    column_instructions_json = ?,
                    updated_at = ?
                WHERE id = ? AND user_id = ?
                """,
                (
                    runsheet.name,
                    json.dumps(runsheet.columns, ensure_ascii=True),
                    json.dumps(runsheet.data, ensure_ascii=True),
                    json.dumps(runsheet.column_instructions, ensure_ascii=True, sort_keys=True),
                    runsheet.updated_at,
                    runsheet.id,
                    runsheet.user_id,
                ),
            )
            conn.commit()

    def list_runsheets(self, user_id: str | None = None, limit: int = 100) -> list[Runsheet]:
        with get_connection(self.db_path) as conn:
            if user_id:
                rows = conn.execute(
                    """
                    SELECT * FROM runsheets
                    WHERE user_id = ?
                    ORDER BY updated_at DESC
                    LIMIT ?
                    """,
                    (user_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM runsheets
                    ORDER BY updated_at DESC
                    LIMIT ?
                    """,
                    (limit,),
                ).fetchall()
        return [self._to_runsheet(row) for row in rows]

    def count_for_user(self, user_id: str) -> int:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM runsheets WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return int(row["n"] or 0)

    @staticmethod
    def _to_runsheet(row) -> Runsheet:
        return Runsheet(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            columns=json.loads(row["columns_json"]),
            data=json.loads(row["data_json"]),
            column_instructions=json.loads(row["column_instructions_json"] or "{}"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
