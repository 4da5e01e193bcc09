from __future__ import annotations

import base64
import json
import logging
import mimetypes
import re
from dataclasses import dataclass, field
from typing import Any

from runsheetcapture.core.errors import ExtractionFailedError
from runsheetcapture.domain.models.runsheet import DocumentRef
from runsheetcapture.infrastructure.documents.cache import DocumentCache
from runsheetcapture.infrastructure.documents.store import DocumentStore
from runsheetcapture.infrastructure.extraction.http_backend import ExtractionBackend

logger = logging.getLogger(__name__)

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


@dataclass(slots=True)
class ExtractedFields:
    fields: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class AmbiguousDocument:
    instrument_count: int


AnalysisOutcome = ExtractedFields | AmbiguousDocument


class DocumentAnalysisClient:
    def __init__(self, document_store: DocumentStore, backend: ExtractionBackend) -> None:
        self.document_store = document_store
        self.backend = backend

    def analyze(
        self,
        document: DocumentRef,
        columns: list[str],
        column_instructions: dict[str, str],
        cache: DocumentCache | None = None,
    ) -> AnalysisOutcome:
        payload = self._load_payload(document, cache)
        request = {
            "documentPayload": self._data_url(document, payload),
            "fileName": document.stored_filename,
            "contentType": self._content_type(document),
            "schema": list(columns),
            "fieldHints": {column: column_instructions.get(column, "Extract this field") for column in columns},
        }
        response = self.backend.extract(request)
        return self.interpret_response(response, columns)

    def close(self) -> None:
        # Only the HTTP-backed collaborators hold a client.
        for resource in (self.backend, self.document_store):
            close = getattr(resource, "close", None)
            if callable(close):
                close()

    @staticmethod
    def interpret_response(response: dict[str, Any], columns: list[str]) -> AnalysisOutcome:
        if response.get("ambiguous"):
            count = response.get("instrumentCount")
            try:
                instrument_count = int(count)
            except (TypeError, ValueError):
                instrument_count = 2
            return AmbiguousDocument(instrument_count=max(2, instrument_count))

        raw_fields: object
        if "fields" in response:
            raw_fields = response.get("fields")
        elif "generatedText" in response:
            raw_fields = _parse_generated_text(response.get("generatedText"))
        else:
            raise ExtractionFailedError("Extraction response has neither fields nor generatedText.")
        if raw_fields is None:
            raw_fields = {}
        if not isinstance(raw_fields, dict):
            raise ExtractionFailedError("Extraction response fields must be a JSON object.")

        wanted = set(columns)
        filtered: dict[str, str] = {}
        for key, value in raw_fields.items():
            if key not in wanted or value is None or isinstance(value, (dict, list)):
                continue
            text = str(value).strip()
            if text:
                filtered[key] = text
        return ExtractedFields(fields=filtered)

    def _load_payload(self, document: DocumentRef, cache: DocumentCache | None) -> bytes:
        key = document.storage_path
        if cache is not None:
            cached = cache.get(key)
            if cached is not None:
                logger.debug("Document cache hit: %s", key)
                return cached
        payload = self.document_store.read_bytes(key)
        if cache is not None:
            cache.put(key, payload)
        return payload

    @staticmethod
    def _content_type(document: DocumentRef) -> str:
        if document.content_type:
            return document.content_type
        guessed, _ = mimetypes.guess_type(document.stored_filename)
        return guessed or "application/octet-stream"

    def _data_url(self, document: DocumentRef, payload: bytes) -> str:
        encoded = base64.b64encode(payload).decode("ascii")
        return f"data:{self._content_type(document)};base64,{encoded}"


def _parse_generated_text(text: object) -> object:
    if not isinstance(text, str) or not text.strip():
        return {}
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    match = _JSON_OBJECT_RE.search(text)
    if match is None:
        raise ExtractionFailedError("Could not extract valid JSON from AI response")
    try:
        return json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise ExtractionFailedError("Could not extract valid JSON from AI response") from exc
