from dataclasses import dataclass, field
from typing import AsyncIterator, Protocol

from aiohttp import web
from multidict import CIMultiDict

DEFAULT_REPLAY_LIMIT = 1024 * 1024


class BodyStream:
    """Request body pulled chunk by chunk by the outbound request.

    Chunks handed out are kept in a replay buffer of at most ``replay_limit``
    bytes, so a retried attempt resends them and then continues with the rest
    of the inbound stream. Once the consumed prefix outgrows the limit the
    buffer is dropped and the body can no longer be replayed.
    """

    def __init__(
        self, chunks: AsyncIterator[bytes], replay_limit: int = DEFAULT_REPLAY_LIMIT
    ) -> None:
        self._chunks = chunks
        self._replay: list[bytes] = []
        self._exhausted = False
        self.replay_limit = replay_limit
        self.consumed = 0
        self.overflowed = False

    @property
    def replayable(self) -> bool:
        return not self.overflowed

    def __aiter__(self):
        if self.overflowed:
            raise RuntimeError("request body exceeded the replay buffer")
        return self._iterate()

    async def _iterate(self):
        for chunk in list(self._replay):
            yield chunk
        while not self._exhausted:
            try:
                chunk = await self._chunks.__anext__()
            except StopAsyncIteration:
                self._exhausted = True
                return
            self.consumed += len(chunk)
            if self.consumed > self.replay_limit:
                self.overflowed = True
                self._replay.clear()
            else:
                self._replay.append(chunk)
            yield chunk


@dataclass
class ProxyRequest:
    method: str
    path_qs: str
    headers: CIMultiDict = field(default_factory=CIMultiDict)
    body: BodyStream | None = None

    @classmethod
    def from_web_request(
        cls,
        request: web.Request,
        chunk_size: int = 65536,
        replay_limit: int = DEFAULT_REPLAY_LIMIT,
    ):
        body = None
        if request.body_exists:
            body = BodyStream(
                request.content.iter_chunked(chunk_size).__aiter__(), replay_limit
            )
        # rel_url drops the scheme and authority of an absolute-form target
        return cls(
            method=request.method,
            path_qs=request.rel_url.raw_path_qs,
            headers=CIMultiDict(request.headers),
            body=body,
        )


class ResponseWriter(Protocol):
    started: bool

    async def start(self, status: int, headers: CIMultiDict, reason: str | None = None):
        ...

    async def write(self, chunk: bytes):
        ...

    async def finish(self):
        ...


class StreamResponseWriter:
    """Relays a proxied response to the inbound aiohttp request as it arrives."""

    def __init__(self, request: web.Request) -> None:
        self._request = request
        self.response: web.StreamResponse | None = None
        self.started = False

    async def start(self, status: int, headers: CIMultiDict, reason: str | None = None):
        self.started = True
        self.response = web.StreamResponse(status=status, reason=reason, headers=headers)
        await self.response.prepare(self._request)

    async def write(self, chunk: bytes):
        await self.response.write(chunk)

    async def finish(self):
        await self.response.write_eof()
