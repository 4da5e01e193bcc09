from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from runsheetcapture.core.errors import ExtractionFailedError

logger = logging.getLogger(__name__)


class ExtractionBackend(Protocol):
    def extract(self, request: dict[str, Any]) -> dict[str, Any]: ...


class HttpExtractionBackend:
    """POSTs an extraction request to the document-analysis edge function."""

    def __init__(
        self,
        url: str,
        *,
        api_key: str | None = None,
        client: httpx.Client | None = None,
        timeout: float = 120.0,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
        )

    def extract(self, request: dict[str, Any]) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = self._client.post(self.url, json=request, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = _error_detail(exc.response)
            raise ExtractionFailedError(
                f"Extraction service returned {exc.response.status_code}: {detail}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ExtractionFailedError(f"Extraction service unreachable: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise ExtractionFailedError("Extraction service returned malformed JSON.") from exc
        if not isinstance(payload, dict):
            raise ExtractionFailedError("Extraction service returned a non-object JSON payload.")
        return payload

    def close(self) -> None:
        self._client.close()


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])[:200]
    return response.reason_phrase
