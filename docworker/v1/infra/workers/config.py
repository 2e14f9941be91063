"""
Worker configuration and its validation bounds.
"""

from pydantic import BaseModel, Field

from docworker.v1.core.exceptions import ConfigurationError

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 10
MIN_POLL_INTERVAL_MS = 1_000
MAX_POLL_INTERVAL_MS = 60_000
MIN_RETRIES = 0
MAX_RETRIES = 10
MIN_TIMEOUT_MS = 10_000
MAX_TIMEOUT_MS = 3_600_000


class WorkerConfig(BaseModel):
    """Named configuration for one worker.

    Bounds are not enforced at construction so that the registry can log and
    skip an out-of-range entry instead of failing the whole startup.
    """

    name: str
    queue_name: str
    job_types: list[str] = Field(default_factory=list)
    concurrency: int = 2
    poll_interval_ms: int = 5_000
    max_retries: int = 3
    timeout_ms: int = 300_000
    enabled: bool = True

    @property
    def poll_interval_s(self) -> float:
        return self.poll_interval_ms / 1000

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000

    def validate_bounds(self) -> list[str]:
        """Return a list of human readable problems, empty when valid."""
        errors: list[str] = []

        if not self.name or not self.name.strip():
            errors.append("Worker name is required")
        if not self.queue_name or not self.queue_name.strip():
            errors.append("Queue name is required")
        if not MIN_CONCURRENCY <= self.concurrency <= MAX_CONCURRENCY:
            errors.append(
                f"Concurrency must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}"
            )
        if not MIN_POLL_INTERVAL_MS <= self.poll_interval_ms <= MAX_POLL_INTERVAL_MS:
            errors.append(
                f"Poll interval must be between {MIN_POLL_INTERVAL_MS}ms "
                f"and {MAX_POLL_INTERVAL_MS}ms"
            )
        if not MIN_RETRIES <= self.max_retries <= MAX_RETRIES:
            errors.append(f"Max retries must be between {MIN_RETRIES} and {MAX_RETRIES}")
        if not MIN_TIMEOUT_MS <= self.timeout_ms <= MAX_TIMEOUT_MS:
            errors.append(
                f"Timeout must be between {MIN_TIMEOUT_MS}ms and {MAX_TIMEOUT_MS}ms"
            )

        return errors

    def is_valid(self) -> bool:
        return not self.validate_bounds()

    def ensure_valid(self) -> None:
        """Raise ConfigurationError listing every violated bound."""
        errors = self.validate_bounds()
        if errors:
            raise ConfigurationError(
                f"Invalid configuration for worker '{self.name}'", errors=errors
            )
