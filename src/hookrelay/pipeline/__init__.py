"""Event processing pipeline.

This module provides:
- WebhookProcessor: verify, parse, deduplicate and dispatch deliveries
- OutcomeRouter: records exactly one outcome per operation and notifies
"""

from hookrelay.pipeline.processor import (
    ActionContext,
    ActionHandler,
    IngestResult,
    SourceConfig,
    WebhookProcessor,
    acknowledge_only,
)
from hookrelay.pipeline.router import OperationState, OutcomeRouter, describe_error

__all__ = [
    # Processor
    "ActionContext",
    "ActionHandler",
    "IngestResult",
    "SourceConfig",
    "WebhookProcessor",
    "acknowledge_only",
    # Router
    "OperationState",
    "OutcomeRouter",
    "describe_error",
]
