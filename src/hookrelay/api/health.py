"""Health check endpoints.

- /health (liveness): the process is serving requests
- /health/ready (readiness): the database, and Redis when configured,
  answer within a timeout
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

CHECK_TIMEOUT_SECONDS = 2.0


@dataclass
class ComponentCheck:
    """Result of a component health check."""

    name: str
    healthy: bool
    latency_ms: float
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "status": "ok" if self.healthy else "unhealthy",
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.error:
            result["error"] = self.error
        return result


async def _check(name: str, probe: Any) -> ComponentCheck:
    start = time.perf_counter()
    try:
        healthy = bool(await asyncio.wait_for(probe(), timeout=CHECK_TIMEOUT_SECONDS))
        error = None if healthy else "probe returned false"
    except TimeoutError:
        healthy, error = False, "timeout"
    except Exception as e:
        healthy, error = False, str(e)
    latency_ms = (time.perf_counter() - start) * 1000
    if not healthy:
        logger.warning("health_check_failed", component=name, error=error)
    return ComponentCheck(name=name, healthy=healthy, latency_ms=latency_ms, error=error)


@router.get("")
async def liveness() -> dict[str, Any]:
    """Basic liveness check."""
    return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}


@router.get("/ready")
async def readiness(request: Request) -> JSONResponse:
    """Readiness check of the stores the pipeline depends on."""
    pipeline = request.app.state.pipeline
    probes = {"database": pipeline.outcomes.ping}
    if pipeline.redis is not None:
        probes["redis"] = pipeline.redis.ping

    checks = await asyncio.gather(*(_check(name, probe) for name, probe in probes.items()))
    ready = all(check.healthy for check in checks)
    return JSONResponse(
        status_code=200 if ready else 503,
        content={
            "status": "ready" if ready else "not_ready",
            "timestamp": datetime.now(UTC).isoformat(),
            "components": {check.name: check.to_dict() for check in checks},
        },
    )
