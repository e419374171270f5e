"""Health check endpoints for the assistant server.

Provides HTTP health checks for load balancers and orchestration tools
(e.g., Docker healthcheck, Kubernetes liveness checks).
"""

import logging
import time
from typing import Any

from aiohttp import web

logger = logging.getLogger(__name__)


class HealthCheckHandler:
    """Health check handler.

    Provides /health endpoint that checks:
    - Conversation store connectivity (when it is Redis-backed)
    - Active voice session count
    - Service uptime
    """

    def __init__(self, sessions: Any = None, store: Any = None) -> None:
        """Initialize health check handler.

        Args:
            sessions: SessionRegistry instance (optional)
            store: Conversation store (optional)
        """
        self.sessions = sessions
        self.store = store
        self.start_time = time.time()

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 OK: Service is healthy
            503 Service Unavailable: Conversation store unreachable

        Response format:
        {
            "status": "healthy" | "unhealthy",
            "uptime_seconds": float,
            "active_sessions": int,
            "checks": {"store": {"ok": bool, "error": str | null}}
        }
        """
        store_ok = True
        store_error = None
        if self.store is not None and hasattr(self.store, "health_check"):
            try:
                store_ok = await self.store.health_check()
            except Exception as e:
                store_ok = False
                store_error = str(e)
                logger.warning("Store health check failed", extra={"error": str(e)})

        checks = {"store": {"ok": store_ok, "error": store_error}}
        status_code = 200 if store_ok else 503

        response_data = {
            "status": "healthy" if store_ok else "unhealthy",
            "uptime_seconds": time.time() - self.start_time,
            "active_sessions": len(self.sessions) if self.sessions is not None else 0,
            "checks": checks,
        }

        logger.debug(
            "Health check performed",
            extra={"status": response_data["status"], "checks": checks},
        )

        return web.json_response(response_data, status=status_code)

    async def readiness_check(self, request: web.Request) -> web.Response:
        """Readiness check endpoint; same checks as /health."""
        return await self.health_check(request)

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint.

        Returns OK if the process is running, even if dependencies are down.
        """
        return web.json_response(
            {
                "status": "alive",
                "uptime_seconds": time.time() - self.start_time,
            },
            status=200,
        )


def setup_health_routes(app: web.Application, sessions: Any = None, store: Any = None) -> None:
    """Set up health check routes on application.

    Args:
        app: aiohttp Application instance
        sessions: SessionRegistry instance (optional)
        store: Conversation store (optional)
    """
    handler = HealthCheckHandler(sessions=sessions, store=store)

    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/readiness", handler.readiness_check)
    app.router.add_get("/liveness", handler.liveness_check)

    logger.info("Health check endpoints configured: /health, /readiness, /liveness")
