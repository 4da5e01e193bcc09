from __future__ import annotations

import copy
import logging
import sqlite3
from typing import Callable

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from runsheetcapture.core.errors import (
    NoAuthenticatedUserError,
    PersistenceFailedError,
    RunsheetNotFoundError,
)
from runsheetcapture.core.ids import new_uuid
from runsheetcapture.core.time import now_utc_iso
from runsheetcapture.domain.models.runsheet import Runsheet, RunsheetDraft
from runsheetcapture.infrastructure.db.repos.runsheet_repo import RunsheetRepo

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 100

IdentityProvider = Callable[[], str | None]


def validate_runsheet_data(draft: RunsheetDraft) -> list[str]:
    errors: list[str] = []
    name = (draft.name or "").strip()
    if not name:
        errors.append("Runsheet name is required")
    elif len(name) > MAX_NAME_LENGTH:
        errors.append(f"Runsheet name must be less than {MAX_NAME_LENGTH} characters")

    if not draft.columns:
        errors.append("At least one column is required")
    elif any(not str(column or "").strip() for column in draft.columns):
        errors.append("All columns must have names")

    seen: set[str] = set()
    duplicates: list[str] = []
    for column in draft.columns:
        if column in seen and column not in duplicates:
            duplicates.append(column)
        seen.add(column)
    if duplicates:
        errors.append(f"Duplicate column names found: {', '.join(duplicates)}")

    known = set(draft.columns)
    for index, row in enumerate(draft.data):
        if not isinstance(row, dict):
            errors.append(f"Row {index + 1} has invalid structure")
            continue
        invalid = [key for key in row if key not in known]
        if invalid:
            errors.append(f"Row {index + 1} contains invalid columns: {', '.join(invalid)}")
    return errors


class RunsheetPersistenceService:
    def __init__(
        self,
        runsheet_repo: RunsheetRepo,
        *,
        identity_provider: IdentityProvider | None = None,
        save_retries: int = 2,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 10.0,
    ) -> None:
        self.runsheet_repo = runsheet_repo
        self.identity_provider = identity_provider
        self.save_retries = max(0, save_retries)
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay

    def current_user_id(self) -> str | None:
        if self.identity_provider is None:
            return None
        user_id = self.identity_provider()
        return user_id.strip() if user_id and user_id.strip() else None

    def save(self, draft: RunsheetDraft, user_id: str | None = None) -> Runsheet:
        """Write the full runsheet, overwriting any earlier copy.

        Resolution order: the record with ``draft.runsheet_id`` owned by the user,
        then the user's record with the same name, then a new record. Returns the
        committed record so callers can adopt its durable id.
        """
        owner = user_id or self.current_user_id()
        if not owner:
            raise NoAuthenticatedUserError("No authenticated user; runsheet was not saved.")

        errors = validate_runsheet_data(draft)
        if errors:
            raise PersistenceFailedError(
                f"Data validation failed: {', '.join(errors)}",
                retryable=False,
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.save_retries + 1),
            wait=wait_exponential(multiplier=self.retry_base_delay, max=self.retry_max_delay),
            retry=retry_if_exception_type(sqlite3.OperationalError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            return retrying(self._upsert, draft, owner)
        except sqlite3.IntegrityError as exc:
            raise PersistenceFailedError(
                f"A runsheet named '{draft.name}' could not be written: {exc}",
                retryable=False,
            ) from exc
        except sqlite3.Error as exc:
            raise PersistenceFailedError(f"Failed to save runsheet '{draft.name}': {exc}") from exc

    def get_runsheet(self, runsheet_id: str) -> Runsheet:
        runsheet = self.runsheet_repo.get_by_id(runsheet_id)
        if runsheet is None:
            raise RunsheetNotFoundError(f"Runsheet not found: {runsheet_id}")
        return runsheet

    def list_runsheets(self, user_id: str | None = None, limit: int = 100) -> list[Runsheet]:
        return self.runsheet_repo.list_runsheets(user_id=user_id, limit=limit)

    def _upsert(self, draft: RunsheetDraft, user_id: str) -> Runsheet:
        now = now_utc_iso()
        existing: Runsheet | None = None
        if draft.runsheet_id:
            existing = self.runsheet_repo.get_for_user(draft.runsheet_id, user_id)
        if existing is None:
            existing = self.runsheet_repo.get_by_name_for_user(user_id, draft.name.strip())

        record = Runsheet(
            id=existing.id if existing is not None else new_uuid(),
            user_id=user_id,
            name=draft.name.strip(),
            columns=list(draft.columns),
            data=copy.deepcopy(draft.data),
            column_instructions=dict(draft.column_instructions),
            created_at=existing.created_at if existing is not None else now,
            updated_at=now,
        )
        if existing is not None:
            self.runsheet_repo.update(record)
            logger.debug("Updated runsheet %s (%d rows)", record.id, len(record.data))
        else:
            self.runsheet_repo.insert(record)
            logger.info("Created runsheet %s '%s'", record.id, record.name)
        return record
