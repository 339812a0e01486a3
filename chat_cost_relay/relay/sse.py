"""
Server-sent event framing for the streaming relay.

Parses upstream ``data: <json>`` lines into text deltas, and frames the
trailer and error events the relay appends to the caller's stream.
"""

import codecs
import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"

TRAILER_PREFIX = "<!--CONVERSATION_DATA:"
TRAILER_SUFFIX = "-->"
TRAILER_PATTERN = re.compile(r"<!--CONVERSATION_DATA:(.*?)-->", re.DOTALL)


class LineOutcome(Enum):
    """What a single upstream line contributed to the reply."""
    DELTA = "delta"        # Carried a content delta
    EMPTY = "empty"        # Valid event without content (role, finish_reason, ...)
    DONE = "done"          # The [DONE] sentinel
    IGNORED = "ignored"    # Not a data line, or unparseable payload


@dataclass(frozen=True)
class LineResult:
    outcome: LineOutcome
    delta: str = ""


_IGNORED = LineResult(LineOutcome.IGNORED)


def _content_delta(payload: Any) -> Optional[str]:
    # choices[0].delta.content
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) else None


def parse_event_line(line: str) -> LineResult:
    """Classify one upstream line.

    Never raises: malformed JSON yields an IGNORED result so a bad line
    cannot interrupt relaying.
    """
    line = line.rstrip("\r")
    if not line.startswith(DATA_PREFIX):
        return _IGNORED

    data = line[len(DATA_PREFIX):]
    if data == DONE_SENTINEL:
        return LineResult(LineOutcome.DONE)

    try:
        payload = json.loads(data)
    except ValueError:
        return _IGNORED

    content = _content_delta(payload)
    if content:
        return LineResult(LineOutcome.DELTA, content)
    return LineResult(LineOutcome.EMPTY)


class DeltaAccumulator:
    """Rebuilds the assistant reply from raw upstream chunks.

    Owned by a single relay invocation. A line cut by a chunk boundary is
    held until its newline arrives; the raw chunk itself is never held.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._parts = []
        self.ignored_lines = 0
        self.done = False

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def feed(self, chunk: bytes) -> None:
        self._pending += self._decoder.decode(chunk)
        *lines, self._pending = self._pending.split("\n")
        for line in lines:
            self._consume(line)

    def finish(self) -> str:
        """Flush any trailing partial line and return the full reply."""
        self._pending += self._decoder.decode(b"", final=True)
        if self._pending:
            self._consume(self._pending)
            self._pending = ""
        return self.text

    def _consume(self, line: str) -> None:
        if not line.strip():
            return
        result = parse_event_line(line)
        if result.outcome is LineOutcome.DELTA:
            self._parts.append(result.delta)
        elif result.outcome is LineOutcome.DONE:
            self.done = True
        elif result.outcome is LineOutcome.IGNORED and line.startswith(DATA_PREFIX):
            self.ignored_lines += 1


def _compact_json(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def format_trailer(tokens: int, cost: float, model: str) -> bytes:
    """The marker appended after the last content byte."""
    payload = {"assistantMessage": {"tokens": tokens, "cost": cost, "model": model}}
    return f"{TRAILER_PREFIX}{_compact_json(payload)}{TRAILER_SUFFIX}".encode("utf-8")


def format_error_event(message: str) -> bytes:
    """A single SSE ``error`` event."""
    return f"event: error\ndata: {_compact_json({'error': message})}\n\n".encode("utf-8")


def extract_trailer(body: str) -> Tuple[str, Optional[Dict[str, Any]]]:
    """Split a relayed body into content and trailer payload.

    Returns:
        The body with the trailer removed, and the parsed trailer payload
        (None when the body carries no trailer)
    """
    match = TRAILER_PATTERN.search(body)
    if match is None:
        return body, None
    content = body[:match.start()] + body[match.end():]
    return content, json.loads(match.group(1))
