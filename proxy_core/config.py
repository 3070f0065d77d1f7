from dataclasses import dataclass, field

from .backend import Backend, parse_backends
from .errors import ConfigError
from .messages import DEFAULT_REPLAY_LIMIT
from .retry import RetryPolicy
from .selector import UnreachablePolicy

DEFAULT_BACKENDS = ("http://localhost:5001", "http://localhost:5002")


@dataclass
class ProxySettings:
    backends: list[Backend]
    host: str = "127.0.0.1"
    port: int = 8080
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    probe_timeout: float = 2.0
    connect_timeout: float = 5.0
    read_timeout: float = 30.0
    chunk_size: int = 65536
    replay_limit: int = DEFAULT_REPLAY_LIMIT
    refresh_interval: float = 0.0
    unreachable_policy: UnreachablePolicy = UnreachablePolicy.FIRST
    preserve_host: bool = True
    metrics_port: int = 9090
    enable_metrics: bool = True

    def __post_init__(self):
        if not self.backends:
            raise ConfigError("at least one backend is required")
        for name in ("probe_timeout", "connect_timeout", "read_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")
        if self.chunk_size <= 0:
            raise ConfigError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.replay_limit < 0:
            raise ConfigError(
                f"replay_limit must not be negative, got {self.replay_limit}"
            )
        if self.refresh_interval < 0:
            raise ConfigError(
                f"refresh_interval must not be negative, got {self.refresh_interval}"
            )

    @classmethod
    def from_args(cls, args) -> "ProxySettings":
        urls = args.backend if args.backend is not None else DEFAULT_BACKENDS
        return cls(
            backends=parse_backends(urls),
            host=args.host,
            port=args.port,
            retry=RetryPolicy(max_attempts=args.attempts, delay=args.retry_delay),
            probe_timeout=args.probe_timeout,
            connect_timeout=args.connect_timeout,
            read_timeout=args.read_timeout,
            chunk_size=args.chunk_size,
            replay_limit=args.replay_limit,
            refresh_interval=args.refresh_interval,
            unreachable_policy=(
                UnreachablePolicy.FAIL
                if args.fail_if_unreachable
                else UnreachablePolicy.FIRST
            ),
            preserve_host=not args.no_preserve_host,
            metrics_port=args.metrics_port,
            enable_metrics=not args.no_metrics,
        )
