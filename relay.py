"""Streaming relay: upstream SSE in, normalized bytes out."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from typing import AsyncGenerator, AsyncIterator, Iterator, List, Optional

import httpx

from errors import DecodeError
from logger import LOGGER_NAME
from models import ChatRequest, ConversationRequest
from sse_handler import (
    Delta,
    FinishMarker,
    Malformed,
    ParsedEvent,
    SSEEvent,
    SSEParser,
    decode_chat_chunk,
    decode_conversation_chunk,
)
from upstream import PROVIDER_DIFY, PROVIDER_OPENAI, UpstreamClient

log = logging.getLogger(LOGGER_NAME)


class Termination(str, enum.Enum):
    """Why a RelayStream stopped producing bytes."""

    FINISHED = "finished"  # upstream finish marker
    UPSTREAM_EOF = "upstream-eof"  # upstream closed without a finish marker
    IDLE_TIMEOUT = "idle-timeout"
    ERROR = "error"
    ABANDONED = "abandoned"  # consumer stopped pulling

    @property
    def is_clean(self) -> bool:
        return self in (Termination.FINISHED, Termination.UPSTREAM_EOF, Termination.IDLE_TIMEOUT)


class IdleGuard:
    """
    Bound on the gap between upstream events.

    The budget is spent only while waiting on the upstream; time the consumer
    takes to pull does not count. `rearm()` restores the full budget and is
    called for every received event.
    """

    def __init__(self, timeout_s: float) -> None:
        if timeout_s <= 0:
            raise ValueError("idle timeout must be > 0")
        self.timeout_s = float(timeout_s)
        self._remaining = self.timeout_s

    def remaining(self) -> float:
        return self._remaining

    @property
    def expired(self) -> bool:
        return self._remaining <= 0.0

    def rearm(self) -> None:
        self._remaining = self.timeout_s

    def consume(self, elapsed: float) -> None:
        self._remaining = max(0.0, self._remaining - max(0.0, elapsed))

    async def read(self, fragments: AsyncIterator[bytes]) -> bytes:
        """Next fragment, or asyncio.TimeoutError once the budget runs out."""
        loop = asyncio.get_running_loop()
        t0 = loop.time()
        try:
            return await asyncio.wait_for(fragments.__anext__(), timeout=self._remaining)
        finally:
            self.consume(loop.time() - t0)


class ChatTransformer:
    """Chat-completion events -> raw assistant text."""

    def __init__(self) -> None:
        self.finished = False
        self.finish_reason: Optional[str] = None

    def transform(self, event: ParsedEvent) -> bytes:
        chunk = decode_chat_chunk(event.data)
        if isinstance(chunk, FinishMarker):
            self.finished = True
            self.finish_reason = chunk.reason
            return b""
        if isinstance(chunk, Delta):
            return chunk.text.encode("utf-8")
        raise DecodeError(f"Malformed chat chunk ({chunk.reason})", payload=chunk.payload)


class ConversationTransformer:
    """Conversation events -> newline-delimited `{conversation_id, answer}` records."""

    finished = False  # this upstream has no in-band finish marker

    def __init__(self) -> None:
        self.conversation_id: Optional[str] = None

    def transform(self, event: ParsedEvent) -> bytes:
        rec = decode_conversation_chunk(event.data)
        if isinstance(rec, Malformed):
            raise DecodeError(f"Malformed conversation chunk ({rec.reason})", payload=rec.payload)
        if rec.conversation_id:
            self.conversation_id = rec.conversation_id
        return rec.to_line()


class RelayStream:
    """
    Pull-based byte stream fed by an open upstream SSE response.

    Nothing is read from the upstream until the consumer pulls, and at most
    one fragment is in flight at a time. The stream ends cleanly on a finish
    marker, on upstream EOF and on idle timeout; a payload that cannot be
    decoded raises DecodeError from the iterator. Closing (or abandoning) the
    stream releases the upstream response, and the HTTP client when owned.

    Use it as an async context manager so a consumer that stops early still
    releases the upstream:

        async with await dify_stream(client, upstream, req, idle_timeout_s=5.0) as stream:
            async for chunk in stream:
                ...
    """

    def __init__(
        self,
        resp: httpx.Response,
        transformer,
        *,
        provider: str,
        idle_timeout_s: float | None = None,
        client: httpx.AsyncClient | None = None,
        req_id: str = "",
    ) -> None:
        self._resp = resp
        self._transformer = transformer
        self._client = client
        self._guard = IdleGuard(idle_timeout_s) if idle_timeout_s else None
        self.provider = provider
        self.req_id = req_id

        self.termination: Optional[Termination] = None
        self.error: Optional[BaseException] = None
        self.events_seen = 0
        self.bytes_emitted = 0

        self._released = False
        self._gen = self._run()

    @property
    def conversation_id(self) -> Optional[str]:
        """Last conversation id seen on the conversation pipeline."""
        return getattr(self._transformer, "conversation_id", None)

    @property
    def idle_guard(self) -> Optional[IdleGuard]:
        return self._guard

    async def __aenter__(self) -> RelayStream:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def __aiter__(self) -> RelayStream:
        return self

    async def __anext__(self) -> bytes:
        return await self._gen.__anext__()

    async def aclose(self) -> None:
        """Stop the stream and release upstream resources. Safe to call repeatedly."""
        await self._gen.aclose()
        if self.termination is None:
            self.termination = Termination.ABANDONED
        await self._release()

    async def read_all(self) -> bytes:
        """Drain the stream into a single bytes object."""
        parts: List[bytes] = []
        async for b in self:
            parts.append(b)
        return b"".join(parts)

    def _end(self, reason: Termination) -> None:
        if self.termination is None:
            self.termination = reason

    async def _run(self) -> AsyncGenerator[bytes, None]:
        parser = SSEParser()
        fragments = self._resp.aiter_bytes()
        try:
            while True:
                try:
                    if self._guard is not None:
                        chunk = await self._guard.read(fragments)
                    else:
                        chunk = await fragments.__anext__()
                except StopAsyncIteration:
                    parser.close()
                    for out in self._apply(parser.drain()):
                        yield out
                    self._end(Termination.FINISHED if self._transformer.finished else Termination.UPSTREAM_EOF)
                    return
                except asyncio.TimeoutError:
                    log.warning(
                        "Upstream %s idle for >%.1fs; closing stream. req_id=%s events=%d",
                        self.provider,
                        self._guard.timeout_s if self._guard else 0.0,
                        self.req_id,
                        self.events_seen,
                    )
                    self._end(Termination.IDLE_TIMEOUT)
                    return

                parser.feed(chunk)
                for out in self._apply(parser.drain()):
                    yield out
                if self._transformer.finished:
                    self._end(Termination.FINISHED)
                    return
        except DecodeError as e:
            self._end(Termination.ERROR)
            self.error = e
            log.warning(
                "Upstream %s payload decode failed; failing stream. req_id=%s err=%s payload=%r",
                self.provider,
                self.req_id,
                e,
                e.payload[:200],
            )
            raise
        except (GeneratorExit, asyncio.CancelledError):
            self._end(Termination.ABANDONED)
            raise
        except Exception as e:
            self._end(Termination.ERROR)
            self.error = e
            log.warning("Upstream %s stream failed req_id=%s err=%r", self.provider, self.req_id, e)
            raise
        finally:
            with contextlib.suppress(Exception):
                await fragments.aclose()
            await self._release()

    def _apply(self, events: List[SSEEvent]) -> Iterator[bytes]:
        """Transform the events completed by one fragment, stopping at a finish marker."""
        for ev in events:
            if not isinstance(ev, ParsedEvent):
                continue  # reconnect-interval directives carry no payload
            if self._guard is not None:
                self._guard.rearm()
            self.events_seen += 1
            b = self._transformer.transform(ev)
            if self._transformer.finished:
                break
            if b:
                self.bytes_emitted += len(b)
                yield b

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True
        with contextlib.suppress(Exception):
            await self._resp.aclose()
        if self._client is not None:
            with contextlib.suppress(Exception):
                await self._client.aclose()
        log.info(
            "Relay %s closed req_id=%s reason=%s events=%d bytes=%d",
            self.provider,
            self.req_id,
            self.termination.value if self.termination else "unknown",
            self.events_seen,
            self.bytes_emitted,
        )


async def openai_stream(
    client: httpx.AsyncClient,
    upstream: UpstreamClient,
    req: ChatRequest,
    *,
    owns_client: bool = False,
    req_id: str = "",
) -> RelayStream:
    """
    Open the chat-completion pipeline.

    Raises TransportError before any stream exists when the upstream rejects
    the request.
    """
    desc = upstream.build_chat_request(req)
    resp = await upstream.open_stream(client, desc, PROVIDER_OPENAI)
    return RelayStream(
        resp,
        ChatTransformer(),
        provider=PROVIDER_OPENAI,
        client=client if owns_client else None,
        req_id=req_id,
    )


async def dify_stream(
    client: httpx.AsyncClient,
    upstream: UpstreamClient,
    req: ConversationRequest,
    *,
    idle_timeout_s: float,
    owns_client: bool = False,
    req_id: str = "",
) -> RelayStream:
    """
    Open the conversation pipeline with its idle-timeout guard.

    The guard is armed when the stream starts and rearmed on every event.
    """
    desc = upstream.build_conversation_request(req)
    resp = await upstream.open_stream(client, desc, PROVIDER_DIFY)
    return RelayStream(
        resp,
        ConversationTransformer(),
        provider=PROVIDER_DIFY,
        idle_timeout_s=idle_timeout_s,
        client=client if owns_client else None,
        req_id=req_id,
    )
