"""HTTP transport for the user-data endpoint."""
import logging
from typing import Any, Dict, Optional

import httpx

from budgetsync.errors import (
    InvalidRequestError,
    NetworkError,
    NotFoundError,
    RateLimitedError,
    RequestTimeoutError,
    ServerError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_ENDPOINT = "/api/user-data"


class HttpTransport:
    """Posts request bodies and maps failures onto the sync error taxonomy."""

    def __init__(
        self,
        base_url: str,
        endpoint: str = DEFAULT_ENDPOINT,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.endpoint = endpoint
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json", **(headers or {})},
        )

    async def post(self, body: Dict[str, Any]) -> Any:
        """Send one request. Returns the decoded JSON body of a 2xx response."""
        try:
            response = await self._client.post(self.endpoint, json=body)
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"Request timed out: {e.__class__.__name__}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Network failure: {e.__class__.__name__}") from e

        status = response.status_code
        if status == 404:
            raise NotFoundError("No data found")
        if status == 429:
            raise RateLimitedError("Server rate limit exceeded")
        if status == 400:
            raise InvalidRequestError(_error_message(response) or "Invalid request")
        if status >= 300:
            raise ServerError(status, _error_message(response))

        try:
            return response.json()
        except ValueError as e:
            raise ServerError(status, "Response was not valid JSON") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return ""
    if isinstance(body, dict) and isinstance(body.get("error"), str):
        return body["error"]
    return ""
