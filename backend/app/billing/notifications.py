"""HTTP clients for the notification and metrics services.

Both are fire-and-forget from the engine's point of view: the outbox calls
them and retries on failure. A call counts as delivered only on a 2xx
response whose body does not say ``"success": false``.
"""

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class ServiceCallError(Exception):
    """An outbound service call failed and should be retried later."""


class _ServiceClient:
    def __init__(self, http: httpx.AsyncClient, base_url: str, api_key: str = "") -> None:
        self._http = http
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key

    def _get_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["x-api-key"] = self._api_key
        return headers

    async def _post(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}{endpoint}"
        try:
            response = await self._http.post(url, json=payload, headers=self._get_headers())
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ServiceCallError(f"{url} returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise ServiceCallError(f"{url} unreachable: {e}") from e

        body: dict[str, Any] = {}
        if response.content:
            try:
                parsed = response.json()
            except ValueError:
                parsed = None
            if isinstance(parsed, dict):
                body = parsed
        if body.get("success") is False:
            raise ServiceCallError(f"{url} reported failure: {body.get('message', 'unknown error')}")
        return body


class NotificationClient(_ServiceClient):
    """Sends templated emails through the notification service."""

    async def send_email(self, kind: str, email: str, data: dict[str, Any]) -> dict[str, Any]:
        logger.info("Sending %s email to %s", kind, email)
        return await self._post(
            "/api/notifications/email", {"type": kind, "email": email, "data": data}
        )


class MetricsClient(_ServiceClient):
    """Records billing usage events (checkout_initiated, subscription_canceled, ...)."""

    async def record_usage_event(self, payload: dict[str, Any]) -> dict[str, Any]:
        logger.debug("Recording usage event %s", payload.get("event"))
        return await self._post("/metrics/usage", payload)
