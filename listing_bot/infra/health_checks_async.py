# listing_bot/infra/health_checks_async.py
"""
Readiness and diagnostics.

``/ready`` runs only the critical checks (database reachable, schema in
place). ``/health/detailed`` adds the intake backlog and scanner freshness,
which degrade the report but never fail readiness.
"""
from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict, Optional

from listing_bot.infra.db_async import get_pool
from listing_bot.infra.logging_config import get_logger
from listing_bot.infra.migrations_async import current_schema_version

logger = get_logger(__name__)

REQUIRED_TABLES = ("sessions", "debounce_markers", "inbound_messages", "dealers", "listings", "listing_media")


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class AsyncHealthCheck:
    name = "check"
    critical = True

    async def check(self) -> Dict[str, Any]:
        """Returns a dict with at least ``status`` and ``details``."""
        raise NotImplementedError


class AsyncDatabaseHealthCheck(AsyncHealthCheck):
    """Round trip, required tables and pool occupancy."""

    name = "database"
    critical = True

    def __init__(self, slow_after_seconds: float = 1.0):
        self.slow_after_seconds = slow_after_seconds

    async def check(self) -> Dict[str, Any]:
        started = time.perf_counter()

        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                missing = await conn.fetchval(
                    "SELECT array_agg(t) FROM unnest($1::text[]) AS t WHERE to_regclass(t) IS NULL",
                    list(REQUIRED_TABLES),
                )
            pool_info = {"size": pool.get_size(), "idle": pool.get_idle_size()}
        except Exception as exc:
            logger.error("Database health check failed", exc_info=True)
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Database unreachable",
                "error": str(exc)[:200],
            }

        elapsed = time.perf_counter() - started
        if missing:
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Missing required tables",
                "error": f"Missing: {', '.join(missing)}",
            }

        return {
            "status": HealthStatus.DEGRADED if elapsed > self.slow_after_seconds else HealthStatus.HEALTHY,
            "details": f"Round trip {elapsed * 1000:.0f}ms",
            "response_time": elapsed,
            "pool": pool_info,
        }


class IntakeBacklogHealthCheck(AsyncHealthCheck):
    """
    Live sessions by status, armed debounce markers, and the backlog: live
    collecting sessions whose marker has lapsed but that no scan has picked
    up yet. A growing backlog means the scanner is not keeping up.
    """

    name = "intake"
    critical = False

    def __init__(self, backlog_threshold: int = 100):
        self.backlog_threshold = backlog_threshold

    async def check(self) -> Dict[str, Any]:
        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    "SELECT status, COUNT(*) AS n FROM sessions WHERE expires_at > now() GROUP BY status"
                )
                armed = await conn.fetchval(
                    "SELECT COUNT(*) FROM debounce_markers WHERE expires_at > now()"
                )
                backlog = await conn.fetchval(
                    """
                    SELECT COUNT(*)
                    FROM sessions s
                    LEFT JOIN debounce_markers d
                      ON d.sender_id = s.sender_id AND d.expires_at > now()
                    WHERE s.status = 'collecting'
                      AND s.expires_at > now()
                      AND d.sender_id IS NULL
                    """
                )
        except Exception as exc:
            logger.error("Intake backlog check failed", exc_info=True)
            return {
                "status": HealthStatus.DEGRADED,
                "details": "Intake backlog check failed",
                "error": str(exc)[:200],
            }

        return {
            "status": HealthStatus.DEGRADED if backlog > self.backlog_threshold else HealthStatus.HEALTHY,
            "details": f"{backlog} sessions waiting for a scan",
            "sessions": {row["status"]: row["n"] for row in rows},
            "armed_markers": armed,
            "backlog": backlog,
        }


class ScannerHealthCheck(AsyncHealthCheck):
    """Degraded when the expiry scanner has not completed a run recently."""

    name = "expiry_scanner"
    critical = False

    def __init__(self, scanner, stale_after_seconds: float):
        self.scanner = scanner
        self.stale_after_seconds = stale_after_seconds

    async def check(self) -> Dict[str, Any]:
        last_run = self.scanner.last_run_at
        if last_run is None:
            return {"status": HealthStatus.DEGRADED, "details": "Scanner has not completed a run yet"}

        age = time.time() - last_run
        if age > self.stale_after_seconds:
            return {
                "status": HealthStatus.DEGRADED,
                "details": f"Last scan {age:.0f}s ago",
                "last_run_age": age,
            }
        return {"status": HealthStatus.HEALTHY, "details": "Scanner running", "last_run_age": age}


class AsyncHealthChecker:
    """Runs the checks in order and folds them into one status."""

    def __init__(self, scanner=None, scanner_interval_seconds: float = 10.0):
        self.checks: list[AsyncHealthCheck] = [
            AsyncDatabaseHealthCheck(),
            IntakeBacklogHealthCheck(),
        ]
        if scanner is not None:
            self.checks.append(ScannerHealthCheck(scanner, stale_after_seconds=scanner_interval_seconds * 6))

    async def run_checks(self, include_non_critical: bool = True) -> Dict[str, Any]:
        """
        Returns:
            {"status": "healthy" | "degraded" | "unhealthy", "checks": {...},
             "schema_version": str | None, "timestamp": float}
        """
        results: Dict[str, Any] = {}
        overall = HealthStatus.HEALTHY

        for check in self.checks:
            if not include_non_critical and not check.critical:
                continue

            result = await check.check()
            results[check.name] = result

            if result["status"] is HealthStatus.UNHEALTHY and check.critical:
                overall = HealthStatus.UNHEALTHY
            elif result["status"] is not HealthStatus.HEALTHY and overall is HealthStatus.HEALTHY:
                overall = HealthStatus.DEGRADED

        schema_version: Optional[str] = None
        try:
            schema_version = await current_schema_version()
        except Exception:
            logger.warning("Could not read schema version", exc_info=True)

        return {
            "status": overall.value,
            "checks": results,
            "schema_version": schema_version,
            "timestamp": time.time(),
        }
