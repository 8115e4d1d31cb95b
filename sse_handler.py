"""Server-Sent Events (SSE) decoding and per-provider payload decoding."""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Union

from logger import LOGGER_NAME
from models import ConversationRecord

log = logging.getLogger(LOGGER_NAME)

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class ParsedEvent:
    """A data-bearing SSE event."""

    data: str
    event: Optional[str] = None
    id: Optional[str] = None
    type: str = "event"


@dataclass(frozen=True)
class ReconnectInterval:
    """A `retry:` directive. Carries no payload."""

    value: int
    type: str = "reconnect-interval"


SSEEvent = Union[ParsedEvent, ReconnectInterval]


class SSEParser:
    """
    Incremental `text/event-stream` decoder.

    Feed arbitrarily sized byte (or text) fragments with `feed()`, then pull the
    events completed so far with `drain()`. Incomplete trailing data stays
    buffered until a later fragment terminates it. One instance per stream;
    after `close()` the parser cannot be fed again.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buf = ""
        self._first_chunk = True
        self._closed = False

        self._data_lines: List[str] = []
        self._event_name: Optional[str] = None
        self._last_event_id: Optional[str] = None

        self._ready: List[SSEEvent] = []

    @property
    def last_event_id(self) -> Optional[str]:
        return self._last_event_id

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, chunk: Union[bytes, str]) -> None:
        """Append a fragment and decode every line it completes."""
        if self._closed:
            raise RuntimeError("SSEParser is closed; create a new parser for a new stream")

        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        if self._first_chunk and text:
            self._first_chunk = False
            if text.startswith("\ufeff"):
                text = text[1:]
        self._buf += text
        self._consume_lines(final=False)

    def close(self) -> None:
        """Mark end of stream. A record that was never blank-line terminated is dropped."""
        if self._closed:
            return
        self._buf += self._decoder.decode(b"", final=True)
        self._consume_lines(final=True)
        self._closed = True
        if self._buf or self._data_lines:
            log.debug(
                "SSE stream ended with unterminated record (buffered=%d data_lines=%d)",
                len(self._buf),
                len(self._data_lines),
            )
        self._buf = ""
        self._data_lines = []
        self._event_name = None

    def drain(self) -> List[SSEEvent]:
        """Return (and forget) the events completed so far, in order."""
        out = self._ready
        self._ready = []
        return out

    def _consume_lines(self, *, final: bool) -> None:
        buf = self._buf
        pos = 0
        n = len(buf)
        while pos < n:
            cr = buf.find("\r", pos)
            lf = buf.find("\n", pos)
            if cr == -1 and lf == -1:
                break
            if cr == -1 or (lf != -1 and lf < cr):
                self._process_line(buf[pos:lf])
                pos = lf + 1
                continue
            # '\r' terminator; may be the first half of '\r\n'
            if cr == n - 1 and not final:
                break
            self._process_line(buf[pos:cr])
            pos = cr + 2 if cr + 1 < n and buf[cr + 1] == "\n" else cr + 1
        self._buf = buf[pos:]

    def _process_line(self, line: str) -> None:
        if line == "":
            self._dispatch()
            return
        if line.startswith(":"):
            return  # comment

        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if field == "data":
            self._data_lines.append(value)
        elif field == "event":
            self._event_name = value
        elif field == "id":
            if "\x00" not in value:
                self._last_event_id = value
        elif field == "retry":
            if value.isdigit():
                self._ready.append(ReconnectInterval(value=int(value)))
        # unknown fields are ignored

    def _dispatch(self) -> None:
        if self._data_lines:
            self._ready.append(
                ParsedEvent(
                    data="\n".join(self._data_lines),
                    event=self._event_name or None,
                    id=self._last_event_id,
                )
            )
        self._data_lines = []
        self._event_name = None


def sse_events_from_text(text: str) -> List[SSEEvent]:
    """Decode a complete event-stream document in one go."""
    parser = SSEParser()
    parser.feed(text)
    parser.close()
    return parser.drain()


# ---------------------------------------------------------------------------
# Chat-completion payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FinishMarker:
    """Upstream signalled that no further deltas follow."""

    reason: str


@dataclass(frozen=True)
class Delta:
    """Assistant text fragment (may be empty)."""

    text: str


@dataclass(frozen=True)
class Malformed:
    """Payload that does not have the expected shape."""

    reason: str
    payload: str


ChatChunk = Union[FinishMarker, Delta, Malformed]


def _first_choice(obj: Any) -> Optional[dict]:
    if not isinstance(obj, dict):
        return None
    choices = obj.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    ch0 = choices[0]
    return ch0 if isinstance(ch0, dict) else None


def decode_chat_chunk(data: str) -> ChatChunk:
    """
    Decode one chat.completion.chunk payload.

    `choices[0].finish_reason` wins over any delta in the same chunk. A bare
    `[DONE]` payload also counts as a finish marker.
    """
    if data.strip() == DONE_SENTINEL:
        return FinishMarker(reason=DONE_SENTINEL)

    try:
        obj = json.loads(data)
    except json.JSONDecodeError as e:
        return Malformed(reason=f"bad-json: {e}", payload=data)

    ch0 = _first_choice(obj)
    if ch0 is None:
        return Malformed(reason="no-choices: payload has no choices[0]", payload=data)

    finish = ch0.get("finish_reason")
    if finish is not None:
        return FinishMarker(reason=str(finish))

    delta = ch0.get("delta")
    if delta is None:
        return Delta(text="")
    if not isinstance(delta, dict):
        return Malformed(reason="bad-delta: choices[0].delta is not an object", payload=data)

    content = delta.get("content")
    if content is None:
        return Delta(text="")
    if not isinstance(content, str):
        return Malformed(reason="bad-content: choices[0].delta.content is not a string", payload=data)
    return Delta(text=content)


# ---------------------------------------------------------------------------
# Conversation payloads
# ---------------------------------------------------------------------------


def _str_field(obj: dict, name: str) -> Optional[str]:
    """Missing/null -> "", string -> itself, anything else -> None (invalid)."""
    v = obj.get(name)
    if v is None:
        return ""
    if isinstance(v, str):
        return v
    return None


def decode_conversation_chunk(data: str) -> Union[ConversationRecord, Malformed]:
    """Decode one conversation-API payload into a `{conversation_id, answer}` record."""
    try:
        obj = json.loads(data)
    except json.JSONDecodeError as e:
        return Malformed(reason=f"bad-json: {e}", payload=data)
    if not isinstance(obj, dict):
        return Malformed(reason="not-an-object: payload is not a JSON object", payload=data)

    conversation_id = _str_field(obj, "conversation_id")
    answer = _str_field(obj, "answer")
    if conversation_id is None:
        return Malformed(reason="bad-conversation-id: conversation_id is not a string", payload=data)
    if answer is None:
        return Malformed(reason="bad-answer: answer is not a string", payload=data)
    return ConversationRecord(conversation_id=conversation_id, answer=answer)
