import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from multidict import CIMultiDict

from .backend import Backend
from .errors import ConfigError
from .forwarder import Forwarder, ForwardStatus
from .messages import ProxyRequest, ResponseWriter
from .metrics import MetricsCollector

logger = logging.getLogger(__name__)

FAILURE_STATUS = 500
FAILURE_BODY = b"Failed to process the request."


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    delay: float = 0.5

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.delay < 0:
            raise ConfigError(f"retry delay must not be negative, got {self.delay}")


@dataclass
class RetryState:
    remaining: int
    attempts: int = 0


class RequestStatus(enum.Enum):
    SUCCEEDED = "succeeded"
    TRUNCATED = "truncated"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryOutcome:
    status: RequestStatus
    attempts: int
    backend: Backend
    upstream_status: int | None = None

    @property
    def client_status(self) -> int:
        if self.status is RequestStatus.FAILED:
            return FAILURE_STATUS
        return self.upstream_status


class RetryController:
    def __init__(
        self,
        forwarder: Forwarder,
        backend_provider: Callable[[], Backend],
        policy: RetryPolicy | None = None,
        metrics: MetricsCollector | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.forwarder = forwarder
        self.policy = policy or RetryPolicy()
        self.metrics = metrics
        self._backend_provider = backend_provider
        self._sleep = sleep

    async def handle(self, request: ProxyRequest, writer: ResponseWriter) -> RetryOutcome:
        start_time = time.perf_counter()
        outcome = await self._attempt_until_done(request, writer)
        if outcome.status is RequestStatus.FAILED:
            await self._write_failure(writer)

        if self.metrics:
            duration = (time.perf_counter() - start_time) * 1000
            await self.metrics.increment_counter(
                "requests.total",
                {
                    "backend": outcome.backend.url,
                    "method": request.method,
                    "status": str(outcome.client_status),
                },
            )
            await self.metrics.record_histogram(
                "request.latency.ms", duration, {"backend": outcome.backend.url}
            )
        return outcome

    async def _attempt_until_done(
        self, request: ProxyRequest, writer: ResponseWriter
    ) -> RetryOutcome:
        state = RetryState(remaining=self.policy.max_attempts)

        while True:
            backend = self._backend_provider()
            state.attempts += 1
            result = await self.forwarder.forward(request, backend, writer)
            if self.metrics:
                await self.metrics.increment_counter(
                    "forward.attempts.total",
                    {"backend": backend.url, "result": result.status.value},
                )

            if result.status is ForwardStatus.SUCCEEDED:
                return RetryOutcome(
                    RequestStatus.SUCCEEDED, state.attempts, backend, result.upstream_status
                )
            if result.status is ForwardStatus.TRUNCATED:
                return RetryOutcome(
                    RequestStatus.TRUNCATED, state.attempts, backend, result.upstream_status
                )
            if result.status is ForwardStatus.FAILED:
                logger.error(
                    f"{request.method} {request.path_qs} -> {backend.url} failed "
                    f"after the request body started streaming: {result.error!r}"
                )
                return RetryOutcome(RequestStatus.FAILED, state.attempts, backend)

            state.remaining -= 1
            if state.remaining == 0:
                logger.error(
                    f"{request.method} {request.path_qs} -> {backend.url} failed "
                    f"after {state.attempts} attempts: {result.error!r}"
                )
                return RetryOutcome(RequestStatus.FAILED, state.attempts, backend)

            logger.warning(
                f"Attempt {state.attempts} {request.method} {request.path_qs} -> "
                f"{backend.url} failed ({result.error!r}), retrying in "
                f"{self.policy.delay}s, {state.remaining} left"
            )
            if self.metrics:
                await self.metrics.increment_counter(
                    "forward.retries.total", {"backend": backend.url}
                )
            await self._sleep(self.policy.delay)

    async def _write_failure(self, writer: ResponseWriter):
        headers = CIMultiDict(
            {
                "Content-Type": "text/plain; charset=utf-8",
                "Content-Length": str(len(FAILURE_BODY)),
            }
        )
        await writer.start(FAILURE_STATUS, headers)
        await writer.write(FAILURE_BODY)
        await writer.finish()
