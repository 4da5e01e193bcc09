from __future__ import annotations

import threading


class SessionIdentity:
    """Holds the signed-in user for this process; callable as an identity provider."""

    def __init__(self, user_id: str | None = None) -> None:
        self._lock = threading.Lock()
        self._user_id = user_id

    def __call__(self) -> str | None:
        with self._lock:
            return self._user_id

    def sign_in(self, user_id: str) -> None:
        cleaned = user_id.strip()
        if not cleaned:
            raise ValueError("User id must not be empty.")
        with self._lock:
            self._user_id = cleaned

    def sign_out(self) -> None:
        with self._lock:
            self._user_id = None
