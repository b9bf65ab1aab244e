"""Health Check - service and dependency health

Self-Explanatory: Liveness (process up) and readiness (database + object storage reachable).
How: SELECT 1 on the engine, head_bucket on the container; 503 when either fails.

K8s Integration:
- /health/live: Liveness probe (is service running?)
- /health/ready: Readiness probe (can serve traffic?)
"""

import time
from datetime import datetime, timezone
from typing import Dict

import structlog
from fastapi import status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

logger = structlog.get_logger()


class HealthStatus:
    """Health status constants"""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthChecker:
    def __init__(self):
        self.start_time = time.time()

    async def check_database(self, services) -> Dict:
        """Check metadata database connectivity"""
        try:
            start = time.time()
            await run_in_threadpool(services.metadata_store.check_connection)
            latency_ms = (time.time() - start) * 1000
            return {
                "status": HealthStatus.HEALTHY,
                "latency_ms": round(latency_ms, 2),
                "message": "Database connection successful",
            }
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return {
                "status": HealthStatus.UNHEALTHY,
                "error": str(e),
                "message": "Database connection failed",
            }

    async def check_storage(self, services) -> Dict:
        """Check the document container is reachable"""
        try:
            start = time.time()
            await run_in_threadpool(services.storage.check_connection)
            latency_ms = (time.time() - start) * 1000
            return {
                "status": HealthStatus.HEALTHY,
                "latency_ms": round(latency_ms, 2),
                "message": "Object storage reachable",
            }
        except Exception as e:
            logger.error("Storage health check failed", error=str(e))
            return {
                "status": HealthStatus.UNHEALTHY,
                "error": str(e),
                "message": "Object storage unreachable",
            }

    async def liveness_check(self) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={
                "status": "alive",
                "timestamp": _now(),
                "uptime_seconds": int(time.time() - self.start_time),
            },
        )

    async def readiness_check(self, services) -> JSONResponse:
        """Kubernetes readiness probe

        Returns:
            200 if database and storage are healthy, 503 otherwise
        """
        checks = {
            "database": await self.check_database(services),
            "storage": await self.check_storage(services),
        }
        is_ready = all(c["status"] == HealthStatus.HEALTHY for c in checks.values())

        return JSONResponse(
            status_code=status.HTTP_200_OK if is_ready else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "ready" if is_ready else "not_ready",
                "timestamp": _now(),
                "checks": checks,
            },
        )
