"""Server-sent event decoding for the control API event stream.

``iter_sse_events`` turns an async stream of byte chunks (for example
``aiohttp.StreamReader.iter_any()``) into ``ServerSentEvent`` objects.
Chunks may split UTF-8 sequences and event blocks anywhere; decoding is
incremental and a block is only emitted once its terminating blank line
has arrived.
"""

from __future__ import annotations

import codecs
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Optional

logger = logging.getLogger(__name__)

HANDSHAKE_PATTERN = re.compile(r"Tunnel handshaked:.*?in\s+(\d+)\s*ms", re.IGNORECASE)


@dataclass
class ServerSentEvent:
    event: str = "message"
    data: str = ""

    def json(self) -> Any:
        return json.loads(self.data)


def parse_block(block: str) -> Optional[ServerSentEvent]:
    """Parse one blank-line separated block; None for comment-only blocks."""
    if not block.strip():
        return None
    event = ServerSentEvent()
    data_lines: list[str] = []
    for line in block.split("\n"):
        if line.startswith("event:"):
            event.event = line[len("event:"):].strip()
        elif line.startswith("data:"):
            data_lines.append(line[len("data:"):].lstrip())
    if not data_lines and event.event == "message":
        return None
    event.data = "".join(data_lines)
    return event


async def iter_sse_events(chunks: AsyncIterable[bytes]) -> AsyncIterator[ServerSentEvent]:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for chunk in chunks:
        buffer += decoder.decode(chunk).replace("\r\n", "\n")
        blocks = buffer.split("\n\n")
        buffer = blocks.pop()
        for block in blocks:
            event = parse_block(block)
            if event is not None:
                yield event
    buffer += decoder.decode(b"", final=True)
    event = parse_block(buffer)
    if event is not None:
        yield event


def detect_handshake(event: ServerSentEvent) -> Optional[int]:
    """Return the handshake latency in ms if ``event`` reports one.

    Only ``instance`` events whose JSON payload is a ``log`` entry are
    considered.  Malformed payloads are logged and ignored.
    """
    if event.event != "instance" or not event.data:
        return None
    try:
        payload = event.json()
    except ValueError as e:
        logger.warning(f"Unparseable instance event data: {e}; raw: {event.data[:200]}")
        return None
    if not isinstance(payload, dict) or payload.get("type") != "log":
        return None
    logs = payload.get("logs")
    if not isinstance(logs, str):
        return None
    match = HANDSHAKE_PATTERN.search(logs)
    if match is None:
        return None
    return int(match.group(1))
