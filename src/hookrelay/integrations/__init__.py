"""Downstream integration adapters.

This module provides:
- IntegrationAdapter: the one-method contract every downstream implements
- HttpIntegration: JSON-over-HTTP adapter that classifies failures
- ResilientIntegration: adapter bound to a rate-limit bucket and retries
"""

from hookrelay.integrations.base import (
    IntegrationAdapter,
    IntegrationRequest,
    IntegrationResponse,
    ResilientIntegration,
)
from hookrelay.integrations.http import HttpIntegration, parse_retry_after

__all__ = [
    "HttpIntegration",
    "IntegrationAdapter",
    "IntegrationRequest",
    "IntegrationResponse",
    "ResilientIntegration",
    "parse_retry_after",
]
