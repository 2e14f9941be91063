"""Base HTTP Client for the Document Worker API"""

from typing import Any

import httpx


class DocWorkerAPIError(Exception):
    """Raised when the API is unreachable or answers with an error envelope"""

    pass


class APIClient:
    """HTTP client for the Document Worker API"""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: int = 30,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.Client(
            base_url=self.base_url, timeout=timeout, transport=transport
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.client.close()

    def _handle_response(self, response: httpx.Response) -> Any:
        """Handle API response and extract data"""
        try:
            data = response.json()
        except ValueError:
            raise DocWorkerAPIError(
                f"Invalid JSON response: {response.status_code}"
            ) from None

        if response.status_code >= 400:
            error_msg = data.get("error", {}).get("message", "Unknown error")
            raise DocWorkerAPIError(f"API Error {response.status_code}: {error_msg}")

        # Handle envelope format (with "ok" field)
        if isinstance(data, dict) and "ok" in data:
            if not data.get("ok", False):
                raise DocWorkerAPIError(
                    data.get("error", {}).get("message", "Request failed")
                )
            return data.get("data", {})

        return data

    def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """Make GET request"""
        try:
            response = self.client.get(f"/v1{path}", params=params)
        except httpx.RequestError as e:
            raise DocWorkerAPIError(f"Connection failed: {e}") from None
        return self._handle_response(response)

    def post(self, path: str, json: dict[str, Any] | None = None) -> Any:
        """Make POST request"""
        try:
            response = self.client.post(f"/v1{path}", json=json)
        except httpx.RequestError as e:
            raise DocWorkerAPIError(f"Connection failed: {e}") from None
        return self._handle_response(response)
