"""HookRelay: resilient, idempotent webhook integration pipeline.

Receives signed webhooks, deduplicates them, drives rate-limited and
retried downstream calls, tracks incremental sync watermarks, and routes
every finished operation to an outcome record and notifications.
"""

__version__ = "0.1.0"
