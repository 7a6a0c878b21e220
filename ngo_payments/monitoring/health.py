"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- ECPay configuration sanity
"""
from typing import Any, Dict

import structlog
from sqlalchemy import text

from ngo_payments.config import get_settings
from ngo_payments.database.connection import get_session_factory

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    The gateway itself is never called: ECPay has no ping endpoint and the
    checkout is a browser redirect, so only local configuration is checked.
    """

    def __init__(self) -> None:
        """Initialize health check service."""
        self.settings = get_settings()

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def check_ecpay(self) -> Dict[str, Any]:
        """
        Check that the ECPay credentials and callback URL are usable.

        Raises:
            HealthCheckError: If configuration is incomplete
        """
        if not (self.settings.ecpay_hash_key and self.settings.ecpay_hash_iv):
            raise HealthCheckError("ECPay HashKey/HashIV are not configured")
        if self.settings.is_production and self.settings.is_test_mode:
            raise HealthCheckError("Production environment is pointed at ECPay staging")
        if "localhost" in self.settings.callback_url and self.settings.is_production:
            raise HealthCheckError("ReturnURL is not reachable by ECPay")

        return {
            "status": "healthy",
            "service": "ecpay",
            "message": "ECPay configuration present",
            "test_mode": self.settings.is_test_mode,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        for name, check in (("database", self.check_database), ("ecpay", self.check_ecpay)):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {
                    "status": "unhealthy",
                    "service": name,
                    "error": str(e),
                }
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe endpoint."""
        return await self.check_all()
