"""Assistant-text extraction from OpenAI-style completions.

``extract_deltas`` is the pure per-chunk extractor. ``SSEDeltaAccumulator``
wraps it for the streaming forwarder: it decodes bytes incrementally and holds
back an unterminated trailing line until the next chunk completes it, so a
``data:`` event split across two reads is still captured.
"""

from __future__ import annotations

import codecs
import json
from collections.abc import Iterator

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


def extract_deltas(chunk: str) -> Iterator[str]:
    """Yield ``choices[0].delta.content`` fragments found in *chunk*.

    Lines that are not ``data:`` events, the ``[DONE]`` sentinel, and lines
    that fail to parse are skipped.
    """
    for line in chunk.split("\n"):
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX) or DONE_SENTINEL in line:
            continue
        try:
            data = json.loads(line[len(DATA_PREFIX):])
        except json.JSONDecodeError:
            continue
        delta = _delta_content(data)
        if delta:
            yield delta


def _delta_content(data: object) -> str:
    if not isinstance(data, dict):
        return ""
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return ""
    content = delta.get("content")
    return content if isinstance(content, str) else ""


def extract_message_text(payload: object) -> str:
    """Return ``choices[0].message.content`` of a buffered completion, or ``""``."""
    if not isinstance(payload, dict):
        return ""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    return content if isinstance(content, str) else ""


class SSEDeltaAccumulator:
    """Side-channel text capture over a raw SSE byte stream."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._line_buf = ""
        self._fragments: list[str] = []

    def feed(self, raw_chunk: bytes) -> None:
        self._line_buf += self._decoder.decode(raw_chunk)
        if "\n" not in self._line_buf:
            return
        complete, self._line_buf = self._line_buf.rsplit("\n", 1)
        self._fragments.extend(extract_deltas(complete))

    def flush(self) -> None:
        """Process whatever is left once the stream has ended."""
        self._line_buf += self._decoder.decode(b"", final=True)
        if self._line_buf:
            self._fragments.extend(extract_deltas(self._line_buf))
            self._line_buf = ""

    @property
    def fragments(self) -> list[str]:
        return list(self._fragments)

    @property
    def text(self) -> str:
        return "".join(self._fragments)
