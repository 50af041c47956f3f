"""Downstream integration contract.

Each downstream API is modeled as an adapter with a single ``call``. The
adapter is the only place that decides whether a failure is retryable: it
raises ``RetryableIntegrationError`` (optionally with a retry-after hint) or
``TerminalIntegrationError``, and the retry executor trusts that choice.
"""

from abc import ABC, abstractmethod
from typing import Any

import structlog
from pydantic import BaseModel, Field

from hookrelay.resilience.retry import RetryAttempt, RetryExecutor

logger = structlog.get_logger(__name__)


class IntegrationRequest(BaseModel):
    """Request sent to a downstream integration."""

    method: str = Field(default="POST", description="HTTP method or verb")
    path: str = Field(default="", description="Path relative to the adapter's base")
    json_body: Any | None = Field(default=None, description="JSON body")
    params: dict[str, Any] = Field(default_factory=dict, description="Query parameters")
    headers: dict[str, str] = Field(default_factory=dict, description="Extra headers")
    idempotency_key: str | None = Field(
        default=None,
        description="Forwarded so the downstream can deduplicate retried writes",
    )


class IntegrationResponse(BaseModel):
    """Successful downstream response."""

    status_code: int = 200
    body: Any | None = None
    headers: dict[str, str] = Field(default_factory=dict)


class IntegrationAdapter(ABC):
    """One downstream API."""

    name: str = "integration"

    @abstractmethod
    async def call(self, request: IntegrationRequest) -> IntegrationResponse:
        """Perform one call.

        Raises:
            RetryableIntegrationError: Transient failure.
            TerminalIntegrationError: Permanent failure.
        """

    async def aclose(self) -> None:
        """Release any held resources."""


class ResilientIntegration:
    """An adapter bound to its own rate-limit bucket and the shared executor.

    Example:
        crm = ResilientIntegration(HttpIntegration("crm", base_url), executor, bucket="crm")
        response = await crm.call(IntegrationRequest(path="/contacts", json_body=data))
    """

    def __init__(
        self,
        adapter: IntegrationAdapter,
        executor: RetryExecutor,
        *,
        bucket: str | None = None,
    ) -> None:
        self.adapter = adapter
        self._executor = executor
        self._bucket = bucket

    @property
    def name(self) -> str:
        return self.adapter.name

    async def call(
        self,
        request: IntegrationRequest,
        *,
        attempts: list[RetryAttempt] | None = None,
        deadline_seconds: float | None = None,
    ) -> IntegrationResponse:
        """Call the adapter with rate limiting and retries.

        Args:
            request: Request to send.
            attempts: Receives one RetryAttempt per attempt.
            deadline_seconds: Wall-clock budget for this call.

        Returns:
            The adapter's response.
        """
        return await self._executor.execute(
            lambda: self.adapter.call(request),
            bucket=self._bucket,
            attempts=attempts,
            deadline_seconds=deadline_seconds,
            operation_name=f"{self.adapter.name}:{request.method} {request.path}",
        )
