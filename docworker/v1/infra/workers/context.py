"""
Per-job context handed to handlers.
"""

from collections.abc import Awaitable, Callable
from typing import Any

from docworker.v1.core.exceptions import JobCancelledError
from docworker.v1.infra.jobs.models import ProcessingJob

ProgressReporter = Callable[
    [int, int, str | None, dict[str, Any] | None], Awaitable[bool]
]


class JobContext:
    """
    Everything a handler may use while processing one claimed job.

    Cancellation is cooperative: the worker sets the flag on timeout or
    forced shutdown and handlers are expected to check it between steps.
    """

    def __init__(
        self,
        job: ProcessingJob,
        worker_id: str,
        progress_reporter: ProgressReporter | None = None,
    ):
        self.job = job
        self.worker_id = worker_id
        self._progress_reporter = progress_reporter
        self._cancelled = False
        self._abandoned = False
        self.cancel_reason: str | None = None

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def job_type(self) -> str:
        return self.job.job_type

    @property
    def doc_id(self) -> str | None:
        return self.job.doc_id

    @property
    def input_params(self) -> dict[str, Any]:
        return self.job.input_params or {}

    @property
    def job_config(self) -> dict[str, Any]:
        return self.job.job_config or {}

    @property
    def file_path(self) -> str | None:
        return self.job.file_path

    @property
    def attempt(self) -> int:
        return self.job.attempts

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def abandoned(self) -> bool:
        """True once the worker gave up on this job and will not write its row."""
        return self._abandoned

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._cancelled:
            self._cancelled = True
            self.cancel_reason = reason

    def abandon(self) -> None:
        self.cancel("abandoned")
        self._abandoned = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise JobCancelledError(f"Job {self.job_id} cancelled: {self.cancel_reason}")

    async def report_progress(
        self,
        current: int,
        total: int,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Persist progress through the worker. Returns False when not recorded."""
        # A cancelled handler no longer owns the row's progress
        if self._cancelled or self._progress_reporter is None:
            return False
        return await self._progress_reporter(current, total, message, details)
