"""
Health checks for readiness/liveness probes.

Checks:
- Database connectivity
"""
from typing import Any, Dict

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = structlog.get_logger(__name__)


class HealthCheck:
    """Health check service for the engine's dependencies."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
            return {"status": "healthy", "service": "database"}
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            return {"status": "unhealthy", "service": "database", "error": str(e)}

    async def check_all(self) -> Dict[str, Any]:
        """Run every check and roll them up into one status."""
        checks = {"database": await self.check_database()}
        healthy = all(check["status"] == "healthy" for check in checks.values())
        return {"status": "healthy" if healthy else "unhealthy", "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        return {"status": "healthy", "message": "Service is alive"}
