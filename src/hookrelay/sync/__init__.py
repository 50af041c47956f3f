"""Incremental synchronization.

This module provides:
- WatermarkTracker: durable per-source cursors and run leases
- IncrementalSync: fetch, apply, advance loop over a source and a sink
"""

from hookrelay.sync.incremental import (
    IncrementalSync,
    SyncBatch,
    SyncRecord,
    SyncRunResult,
    SyncSink,
    SyncSource,
)
from hookrelay.sync.watermark import Cursor, SyncWatermark, WatermarkTracker

__all__ = [
    "Cursor",
    "IncrementalSync",
    "SyncBatch",
    "SyncRecord",
    "SyncRunResult",
    "SyncSink",
    "SyncSource",
    "SyncWatermark",
    "WatermarkTracker",
]
