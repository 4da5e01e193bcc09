from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

import httpx

from runsheetcapture.core.errors import ExtractionFailedError
from runsheetcapture.core.files import ensure_directory, is_within

logger = logging.getLogger(__name__)


class DocumentStore(Protocol):
    def read_bytes(self, storage_path: str) -> bytes: ...


class FileSystemDocumentStore:
    """Documents kept under a local directory, addressed by their relative storage path."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = base_dir

    def abspath(self, storage_path: str) -> Path:
        candidate = (self.base_dir / storage_path.lstrip("/")).resolve()
        if not is_within(self.base_dir, candidate):
            raise ExtractionFailedError(f"Invalid document storage path: {storage_path}")
        return candidate

    def read_bytes(self, storage_path: str) -> bytes:
        path = self.abspath(storage_path)
        if not path.is_file():
            raise ExtractionFailedError(f"Document file missing: {storage_path}")
        return path.read_bytes()

    def write_bytes(self, storage_path: str, content: bytes) -> Path:
        path = self.abspath(storage_path)
        ensure_directory(path.parent)
        path.write_bytes(content)
        return path


class HttpDocumentStore:
    """Documents served by a storage bucket over HTTP (``<base_url>/<storage_path>``)."""

    def __init__(self, base_url: str, *, client: httpx.Client | None = None, timeout: float = 60.0) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout), follow_redirects=True)

    def read_bytes(self, storage_path: str) -> bytes:
        url = f"{self.base_url}/{storage_path.lstrip('/')}"
        try:
            response = self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ExtractionFailedError(
                f"Document download failed ({exc.response.status_code}): {storage_path}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ExtractionFailedError(f"Document download failed: {storage_path}: {exc}") from exc
        logger.debug("Downloaded %s (%d bytes)", storage_path, len(response.content))
        return response.content

    def close(self) -> None:
        self._client.close()
