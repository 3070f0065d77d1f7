import asyncio
import logging
import time
from typing import Sequence

import aiohttp
from aiohttp import ClientSession

from .backend import UNREACHABLE, Backend, ProbeResult
from .metrics import MetricsCollector

logger = logging.getLogger(__name__)


class LatencyProber:
    def __init__(
        self,
        session: ClientSession,
        timeout: float = 2.0,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self.metrics = metrics

    async def probe_all(self, backends: Sequence[Backend]) -> list[ProbeResult]:
        return list(await asyncio.gather(*(self.probe(b) for b in backends)))

    async def probe(self, backend: Backend) -> ProbeResult:
        start_time = time.perf_counter()
        try:
            async with self._session.get(backend.url, timeout=self._timeout) as resp:
                # timed through the full body, like a plain GET
                await resp.read()
                latency = (time.perf_counter() - start_time) * 1000
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.warning(f"Probe failed: {backend.url} - {type(e).__name__}: {e}")
            if self.metrics:
                await self.metrics.increment_counter(
                    "probe.total", {"backend": backend.url, "status": "unreachable"}
                )
            return ProbeResult(backend, UNREACHABLE)

        logger.info(f"Probe: {backend.url} ({status}) - {latency:.2f}ms")
        if self.metrics:
            await self.metrics.record_histogram(
                "probe.latency.ms", latency, {"backend": backend.url}
            )
            await self.metrics.increment_counter(
                "probe.total", {"backend": backend.url, "status": "reachable"}
            )
        return ProbeResult(backend, latency)
