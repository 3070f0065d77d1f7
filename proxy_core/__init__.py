from .backend import UNREACHABLE, Backend, ProbeResult, Selection, parse_backends
from .config import DEFAULT_BACKENDS, ProxySettings
from .errors import ConfigError, NoReachableBackendError, ProxyError
from .forwarder import Forwarder, ForwardResult, ForwardStatus
from .messages import (
    DEFAULT_REPLAY_LIMIT,
    BodyStream,
    ProxyRequest,
    StreamResponseWriter,
)
from .metrics import MetricsCollector
from .prober import LatencyProber
from .retry import (
    FAILURE_BODY,
    FAILURE_STATUS,
    RequestStatus,
    RetryController,
    RetryOutcome,
    RetryPolicy,
)
from .selector import UnreachablePolicy, select_fastest
