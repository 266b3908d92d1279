"""
Connectivity probing and periodic health checks.

The engine routes all host traffic through its TUN inbound, so a plain HTTP
request from this process tests the path through the engine. The monitor loop
only reads supervisor status and records results; it never starts, stops or
restarts the engine.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx

from .models import HealthLog

logger = logging.getLogger(__name__)


@dataclass
class ProbeResult:
    success: bool
    url: str
    status_code: Optional[int] = None
    latency_ms: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "url": self.url,
            "status_code": self.status_code,
            "latency_ms": self.latency_ms,
            "error": self.error,
        }


class ConnectivityProbe:
    """HTTP reachability check with an explicit request timeout."""

    def __init__(
        self,
        url: str = "https://gstatic.com/generate_204",
        timeout: float = 5.0,
        expected_status: int | None = 204,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.url = url
        self.timeout = timeout
        self.expected_status = expected_status
        self._transport = transport

    async def check(self, url: str = None) -> ProbeResult:
        """Request url (default: the probe URL). Never raises.

        The probe URL must answer with expected_status; any other URL counts as
        reachable on any status below 400.
        """
        target = url or self.url
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(target)
        except httpx.HTTPError as e:
            return ProbeResult(success=False, url=target, error=f"{type(e).__name__}: {e}")

        latency = round((time.monotonic() - started) * 1000, 1)
        if url is None and self.expected_status is not None:
            success = response.status_code == self.expected_status
        else:
            success = response.status_code < 400
        return ProbeResult(
            success=success,
            url=target,
            status_code=response.status_code,
            latency_ms=latency,
            error=None if success else f"unexpected status {response.status_code}",
        )

    async def __call__(self) -> bool:
        return (await self.check()).success


class HealthMonitor:
    """Probes connectivity while the engine runs and records the results."""

    def __init__(
        self,
        supervisor,
        probe: ConnectivityProbe,
        checks: HealthLog,
        interval: int = 60,
        retention_logs: list[HealthLog] = None,
        retention_days: int = 7,
    ):
        self.supervisor = supervisor
        self.probe = probe
        self.checks = checks
        self.interval = interval
        self.retention_logs = retention_logs or [checks]
        self.retention_days = retention_days
        self._running = False
        self._task = None

    async def start(self):
        """Start the monitoring loop."""
        if self._running or self.interval <= 0:
            return

        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info("Health monitor started")

    async def stop(self):
        """Stop the monitoring loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Health monitor stopped")

    async def _monitor_loop(self):
        """Main monitoring loop."""
        while self._running:
            try:
                await self.tick()
                self._cleanup_old_data()
            except Exception as e:
                logger.error(f"Error in health monitor loop: {e}")

            await asyncio.sleep(self.interval)

    async def tick(self) -> ProbeResult | None:
        """Probe once if the engine is running. Returns None when it is not."""
        if not self.supervisor.status()["running"]:
            logger.debug("Engine not running, skipping health check")
            return None
        return await self.check_now()

    async def check_now(self, url: str = None) -> ProbeResult:
        """Probe immediately and record the result."""
        result = await self.probe.check(url)
        self.checks.record(
            success=result.success,
            url=result.url,
            status_code=result.status_code,
            latency_ms=result.latency_ms,
            detail=result.error,
        )
        if result.success:
            logger.debug(f"Connectivity ok: {result.url} in {result.latency_ms}ms")
        else:
            logger.warning(f"Connectivity check failed: {result.url}: {result.error}")
        return result

    def _cleanup_old_data(self):
        """Remove history older than the retention window."""
        try:
            for log in self.retention_logs:
                deleted = log.prune(self.retention_days)
                if deleted:
                    logger.debug(f"Cleaned up {deleted} old {log.model.__name__} rows")
        except Exception as e:
            logger.error(f"Error cleaning up old data: {e}")
