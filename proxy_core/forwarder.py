import asyncio
import enum
import logging
import re
from dataclasses import dataclass

import aiohttp
from aiohttp import ClientSession
from multidict import CIMultiDict, CIMultiDictProxy
from yarl import URL

from .backend import Backend
from .messages import ProxyRequest, ResponseWriter

logger = logging.getLogger(__name__)

# Framing headers owned by each hop's transport.
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)

_TOKEN = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
_BAD_VALUE_CHARS = re.compile(r"[\r\n\x00]")


class ForwardStatus(enum.Enum):
    SUCCEEDED = "succeeded"
    RETRYABLE = "retryable"
    FAILED = "failed"
    TRUNCATED = "truncated"


@dataclass(frozen=True)
class ForwardResult:
    status: ForwardStatus
    upstream_status: int | None = None
    error: BaseException | None = None


def copy_headers(
    headers: CIMultiDict | CIMultiDictProxy, drop: frozenset[str] = HOP_BY_HOP_HEADERS
) -> CIMultiDict:
    """Copy headers verbatim, keeping duplicates and skipping unsendable ones."""
    copied = CIMultiDict()
    for name, value in headers.items():
        if name.lower() in drop:
            continue
        if not _TOKEN.match(name) or _BAD_VALUE_CHARS.search(value):
            logger.debug(f"Skipping header the transport cannot carry: {name!r}")
            continue
        copied.add(name, value)
    return copied


class Forwarder:
    def __init__(
        self,
        session: ClientSession,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
        chunk_size: int = 65536,
        preserve_host: bool = True,
    ) -> None:
        self._session = session
        self._timeout = aiohttp.ClientTimeout(
            total=None, sock_connect=connect_timeout, sock_read=read_timeout
        )
        self.chunk_size = chunk_size
        self._request_drop = (
            HOP_BY_HOP_HEADERS if preserve_host else HOP_BY_HOP_HEADERS | {"host"}
        )

    async def forward(
        self, request: ProxyRequest, backend: Backend, writer: ResponseWriter
    ) -> ForwardResult:
        """Run one forwarding attempt against ``backend``.

        Transport errors are reported through the returned ForwardResult,
        never raised. Cancellation propagates.
        """
        url = URL(backend.target(request.path_qs), encoded=True)
        headers = copy_headers(request.headers, self._request_drop)
        upstream_status = None

        try:
            async with self._session.request(
                request.method,
                url,
                headers=headers,
                data=request.body,
                timeout=self._timeout,
                allow_redirects=False,
            ) as resp:
                upstream_status = resp.status
                await writer.start(resp.status, copy_headers(resp.headers), resp.reason)
                async for chunk in resp.content.iter_chunked(self.chunk_size):
                    await writer.write(chunk)
                await writer.finish()
        except TRANSPORT_ERRORS as e:
            if writer.started:
                logger.warning(
                    f"Response from {backend.url} interrupted after streaming began: {e!r}"
                )
                return ForwardResult(ForwardStatus.TRUNCATED, upstream_status, e)
            if request.body is not None and not request.body.replayable:
                return ForwardResult(ForwardStatus.FAILED, upstream_status, e)
            return ForwardResult(ForwardStatus.RETRYABLE, upstream_status, e)

        return ForwardResult(ForwardStatus.SUCCEEDED, upstream_status)
