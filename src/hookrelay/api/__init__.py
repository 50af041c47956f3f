"""HTTP surface.

This module provides:
- build_pipeline: constructs every collaborator from settings
- create_app: FastAPI application factory
"""

from hookrelay.api.app import Pipeline, build_channels, build_pipeline, create_app

__all__ = [
    "Pipeline",
    "build_channels",
    "build_pipeline",
    "create_app",
]
