import math
import time
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from .errors import ConfigError

UNREACHABLE = math.inf


@dataclass(frozen=True)
class Backend:
    url: str

    def __post_init__(self):
        url = self.url.strip().rstrip("/")
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ConfigError(f"invalid backend url: {self.url!r}")
        if parts.path or parts.query or parts.fragment:
            raise ConfigError(f"backend url must be a base address: {self.url!r}")
        object.__setattr__(self, "url", url)

    def target(self, path_qs: str) -> str:
        if not path_qs.startswith("/"):
            path_qs = "/" + path_qs
        return f"{self.url}{path_qs}"


@dataclass(frozen=True)
class ProbeResult:
    backend: Backend
    latency_ms: float = UNREACHABLE

    @property
    def reachable(self) -> bool:
        return self.latency_ms != UNREACHABLE


@dataclass(frozen=True)
class Selection:
    backend: Backend
    results: tuple[ProbeResult, ...] = ()
    selected_at: float = field(default_factory=time.time)

    def as_dict(self) -> dict:
        return {
            "selected": self.backend.url,
            "selected_at": self.selected_at,
            "backends": {
                r.backend.url: {
                    "latency_ms": round(r.latency_ms, 3) if r.reachable else None,
                    "reachable": r.reachable,
                }
                for r in self.results
            },
        }


def parse_backends(urls) -> list[Backend]:
    backends = [Backend(url) for url in urls]
    if not backends:
        raise ConfigError("at least one backend is required")
    return backends
