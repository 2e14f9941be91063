"""API Endpoint Wrappers"""

from typing import Any

from ..utils.config_manager import config
from .base import APIClient


class DocWorkerClient:
    """High-level client for a running Document Worker service"""

    def __init__(self, base_url: str | None = None, api: APIClient | None = None):
        api_config = config.load_config().get("api", {})
        self.api = api or APIClient(
            base_url=base_url or api_config.get("base_url", "http://localhost:8000"),
            timeout=api_config.get("timeout", 30),
        )

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    def health_check(self) -> dict[str, Any]:
        return self.api.get("/healthz")

    def workers(self) -> dict[str, Any]:
        return self.api.get("/workers")

    def queues(self) -> list[dict[str, Any]]:
        return self.api.get("/queues")

    def cleanup(self) -> dict[str, Any]:
        return self.api.post("/maintenance/cleanup")
