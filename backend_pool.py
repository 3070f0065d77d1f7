import asyncio
import logging
from typing import Sequence

from aiohttp import ClientSession
from proxy_core import (
    Backend,
    ConfigError,
    LatencyProber,
    MetricsCollector,
    NoReachableBackendError,
    Selection,
    UnreachablePolicy,
    select_fastest,
)

logger = logging.getLogger(__name__)


class BackendPool:
    """Fixed, ordered set of backends and the currently selected one.

    The selection is published as an immutable Selection snapshot and only
    ever replaced as a whole, so readers need no lock.
    """

    def __init__(
        self,
        backends: Sequence[Backend],
        session: ClientSession,
        probe_timeout: float = 2.0,
        unreachable_policy: UnreachablePolicy = UnreachablePolicy.FIRST,
        refresh_interval: float = 0.0,
        metrics: MetricsCollector | None = None,
    ) -> None:
        if not backends:
            raise ConfigError("at least one backend is required")
        self.backends: tuple[Backend, ...] = tuple(backends)
        self.unreachable_policy = unreachable_policy
        self.metrics = metrics or MetricsCollector()
        self.prober = LatencyProber(session, timeout=probe_timeout, metrics=self.metrics)
        self._selection: Selection | None = None
        self._refresh_interval = refresh_interval
        self._refresh_task: asyncio.Task | None = None

    @property
    def current(self) -> Selection:
        if self._selection is None:
            raise RuntimeError("no backend selected yet, call select() first")
        return self._selection

    def selected_backend(self) -> Backend:
        return self.current.backend

    async def select(self) -> Selection:
        results = await self.prober.probe_all(self.backends)
        backend = select_fastest(results, self.unreachable_policy)
        selection = Selection(backend=backend, results=tuple(results))

        previous = self._selection
        self._selection = selection
        if previous is None or previous.backend != backend:
            logger.info(f"Selected backend: {backend.url}")
        return selection

    async def start_refresh(self):
        if self._refresh_interval > 0 and self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def stop_refresh(self):
        if self._refresh_task:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None

    async def _refresh_loop(self):
        while True:
            await asyncio.sleep(self._refresh_interval)
            try:
                await self.select()
            except NoReachableBackendError as e:
                logger.warning(f"Refresh kept {self.current.backend.url}: {e}")
            logger.debug(f"Refreshed selection: {self.current.backend.url}")

    def show(self) -> dict:
        if self._selection is None:
            return {
                "selected": None,
                "selected_at": None,
                "backends": {b.url: None for b in self.backends},
            }
        return self._selection.as_dict()
