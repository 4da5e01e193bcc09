from __future__ import annotations

import logging
import threading
from typing import Callable

from runsheetcapture.application.services.analysis_job_runner import AnalysisJobRunner
from runsheetcapture.domain.models.analysis import JobStatus

logger = logging.getLogger(__name__)

UNLOAD_MESSAGE = "Document analysis is in progress. Leaving now will cancel the analysis. Are you sure?"
NAVIGATION_MESSAGE = "Document analysis is in progress. Navigating away will pause the analysis. Continue?"

ConfirmCallback = Callable[[str], bool]


class NavigationGuard:
    """Warns a host before it leaves while a job is running.

    The guard only answers questions. It never pauses or cancels the job itself.
    """

    def __init__(self, runner: AnalysisJobRunner) -> None:
        self.runner = runner
        self._prompting = threading.Lock()

    def should_block(self) -> bool:
        job = self.runner.get_status()
        return job is not None and job.status is JobStatus.RUNNING

    def before_unload_message(self) -> str | None:
        return UNLOAD_MESSAGE if self.should_block() else None

    def confirm_navigation(self, confirm: ConfirmCallback) -> bool:
        if not self.should_block():
            return True
        # A second prompt while one is open is answered as "stay".
        if not self._prompting.acquire(blocking=False):
            logger.debug("Navigation prompt already open; suppressing re-entrant prompt")
            return False
        try:
            return bool(confirm(NAVIGATION_MESSAGE))
        finally:
            self._prompting.release()
