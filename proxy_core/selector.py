import enum
import logging
from typing import Sequence

from .backend import Backend, ProbeResult
from .errors import ConfigError, NoReachableBackendError

logger = logging.getLogger(__name__)


class UnreachablePolicy(enum.Enum):
    FIRST = "first"
    FAIL = "fail"


def select_fastest(
    results: Sequence[ProbeResult],
    policy: UnreachablePolicy = UnreachablePolicy.FIRST,
) -> Backend:
    """Pick the backend with the lowest probe latency.

    Ties go to the backend configured first. When nothing answered the
    probe, FIRST falls back to the first configured backend and FAIL
    raises NoReachableBackendError.
    """
    if not results:
        raise ConfigError("cannot select from an empty backend list")

    if not any(r.reachable for r in results):
        if policy is UnreachablePolicy.FAIL:
            raise NoReachableBackendError(r.backend for r in results)
        logger.warning(
            f"No backend answered the probe, falling back to {results[0].backend.url}"
        )
        return results[0].backend

    _, best = min(enumerate(results), key=lambda item: (item[1].latency_ms, item[0]))
    return best.backend
