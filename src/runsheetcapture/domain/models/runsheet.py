from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class Runsheet:
    id: str
    user_id: str
    name: str
    columns: list[str]
    data: list[dict[str, str]]
    column_instructions: dict[str, str]
    created_at: str
    updated_at: str


@dataclass(slots=True)
class DocumentRef:
    id: str
    stored_filename: str
    storage_path: str
    content_type: str | None = None


@dataclass(slots=True)
class QueueItem:
    row_index: int
    document: DocumentRef


@dataclass(slots=True)
class RunsheetDraft:
    """What a caller hands to the persistence layer for one save."""

    name: str
    columns: list[str]
    data: list[dict[str, str]]
    column_instructions: dict[str, str] = field(default_factory=dict)
    runsheet_id: str | None = None
