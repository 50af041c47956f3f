"""HTTP integration adapter.

Classifies responses once, at the adapter boundary:

- 2xx: success
- 429: retryable, with the ``Retry-After`` hint when present
- 408 and 5xx: retryable
- other 4xx: terminal (bad request, auth failure, not found)
- timeouts and transport errors: retryable
"""

from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
import structlog

from hookrelay.errors import RetryableIntegrationError, TerminalIntegrationError
from hookrelay.integrations.base import (
    IntegrationAdapter,
    IntegrationRequest,
    IntegrationResponse,
)

logger = structlog.get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429})


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header given in seconds or as an HTTP date.

    Returns:
        Seconds to wait, or None if the header is absent or unparseable.
    """
    if value is None or not value.strip():
        return None

    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    current = now or datetime.now(UTC)
    return max(0.0, (when - current).total_seconds())


class HttpIntegration(IntegrationAdapter):
    """Adapter for a JSON-over-HTTP downstream API."""

    def __init__(
        self,
        name: str,
        base_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        default_headers: dict[str, str] | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            name: Integration name used in logs and errors.
            base_url: Base URL requests are relative to.
            client: Optional shared client (created if not provided).
            timeout_seconds: Per-request timeout.
            default_headers: Headers sent with every request.
        """
        self.name = name
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_seconds,
            headers={"User-Agent": "HookRelay/1.0", **(default_headers or {})},
        )
        self._logger = logger.bind(component="http_integration", integration=name)

    async def call(self, request: IntegrationRequest) -> IntegrationResponse:
        headers = dict(request.headers)
        if request.idempotency_key:
            headers.setdefault("Idempotency-Key", request.idempotency_key)

        try:
            response = await self._client.request(
                request.method,
                request.path,
                json=request.json_body,
                params=request.params or None,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise RetryableIntegrationError(
                f"{self.name} request timed out", integration=self.name
            ) from e
        except httpx.TransportError as e:
            raise RetryableIntegrationError(
                f"{self.name} transport error: {e}", integration=self.name
            ) from e

        if response.is_success:
            self._logger.debug(
                "integration_call_succeeded",
                path=request.path,
                status_code=response.status_code,
            )
            return IntegrationResponse(
                status_code=response.status_code,
                body=self._decode(response),
                headers=dict(response.headers),
            )

        status = response.status_code
        details = {"path": request.path, "body": response.text[:500]}

        if status in RETRYABLE_STATUS_CODES or status >= 500:
            retry_after = (
                parse_retry_after(response.headers.get("Retry-After")) if status == 429 else None
            )
            self._logger.warning(
                "integration_call_retryable",
                path=request.path,
                status_code=status,
                retry_after=retry_after,
            )
            raise RetryableIntegrationError(
                f"{self.name} returned HTTP {status}",
                retry_after_seconds=retry_after,
                integration=self.name,
                status_code=status,
                details=details,
            )

        self._logger.warning(
            "integration_call_terminal",
            path=request.path,
            status_code=status,
        )
        raise TerminalIntegrationError(
            f"{self.name} returned HTTP {status}",
            integration=self.name,
            status_code=status,
            details=details,
        )

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
