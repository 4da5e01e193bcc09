from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from runsheetcapture.core.errors import ValidationError
from runsheetcapture.domain.models.runsheet import DocumentRef, QueueItem


@dataclass(slots=True)
class AnalysisManifest:
    """Everything needed to start one analysis job, as read from JSON."""

    dataset_name: str
    columns: list[str]
    queue: list[QueueItem]
    data: list[dict[str, str]] = field(default_factory=list)
    column_instructions: dict[str, str] = field(default_factory=dict)
    dataset_id: str | None = None
    fill_empty_only: bool = True

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> AnalysisManifest:
        if not isinstance(raw, dict):
            raise ValidationError("Analysis manifest must be a JSON object.")

        name = str(raw.get("name") or raw.get("dataset_name") or "").strip()
        if not name:
            raise ValidationError("Analysis manifest requires a runsheet name.")

        columns_raw = raw.get("columns")
        if not isinstance(columns_raw, list) or not columns_raw:
            raise ValidationError("Analysis manifest requires a non-empty 'columns' list.")
        columns = [str(column) for column in columns_raw]

        instructions_raw = raw.get("column_instructions") or {}
        if not isinstance(instructions_raw, dict):
            raise ValidationError("'column_instructions' must be an object of column -> hint.")

        data_raw = raw.get("data") or []
        if not isinstance(data_raw, list) or any(not isinstance(row, dict) for row in data_raw):
            raise ValidationError("'data' must be a list of row objects.")
        data = [{str(k): "" if v is None else str(v) for k, v in row.items()} for row in data_raw]

        documents_raw = raw.get("documents")
        if not isinstance(documents_raw, list) or not documents_raw:
            raise ValidationError("Analysis manifest requires a non-empty 'documents' list.")
        queue = [_parse_queue_item(entry, position) for position, entry in enumerate(documents_raw)]

        fill_empty_only = raw.get("fill_empty_only", True)
        if not isinstance(fill_empty_only, bool):
            raise ValidationError("'fill_empty_only' must be true or false.")

        dataset_id = raw.get("dataset_id")
        return cls(
            dataset_name=name,
            columns=columns,
            queue=queue,
            data=data,
            column_instructions={str(k): str(v) for k, v in instructions_raw.items()},
            dataset_id=str(dataset_id) if dataset_id else None,
            fill_empty_only=fill_empty_only,
        )


def load_manifest(path: Path) -> AnalysisManifest:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ValidationError(f"Manifest not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Manifest is not valid JSON ({path}): {exc}") from exc
    return AnalysisManifest.from_dict(raw)


def _parse_queue_item(entry: Any, position: int) -> QueueItem:
    if not isinstance(entry, dict):
        raise ValidationError(f"Document entry {position} must be an object.")
    try:
        row_index = int(entry["row_index"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError(f"Document entry {position} needs an integer 'row_index'.") from exc
    if row_index < 0:
        raise ValidationError(f"Document entry {position} has a negative row_index.")

    document = entry.get("document")
    if not isinstance(document, dict):
        raise ValidationError(f"Document entry {position} needs a 'document' object.")
    storage_path = str(document.get("storage_path") or "").strip()
    if not storage_path:
        raise ValidationError(f"Document entry {position} needs a 'storage_path'.")
    stored_filename = str(document.get("stored_filename") or Path(storage_path).name)
    return QueueItem(
        row_index=row_index,
        document=DocumentRef(
            id=str(document.get("id") or storage_path),
            stored_filename=stored_filename,
            storage_path=storage_path,
            content_type=document.get("content_type") or None,
        ),
    )
