"""Decoding of the upstream event-stream wire protocol into frames."""
from __future__ import annotations

import json
from typing import Any, AsyncIterator

from loguru import logger

from searchrelay.errors import FrameDecodeError
from searchrelay.models.events import Frame

FRAME_SEPARATOR = b"\n\n"


def _decode_data(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def parse_frame(block: str | bytes) -> Frame | None:
    """Parse one blank-line-terminated block.

    Returns None for blocks that carry nothing (blank or comment-only) and
    raises FrameDecodeError for blocks that are not valid event-stream text.
    """
    if isinstance(block, bytes):
        try:
            text = block.decode("utf-8")
        except UnicodeDecodeError as e:
            raise FrameDecodeError(f"Frame is not valid UTF-8: {e}") from e
    else:
        text = block

    text = text.replace("\r\n", "\n").strip()
    if not text:
        return None

    event: str | None = None
    frame_id: str | None = None
    data_lines: list[str] = []
    recognised = False
    comment_only = True

    for line in text.split("\n"):
        if not line:
            continue
        if line.startswith(":"):
            continue
        comment_only = False
        if line.startswith("event:"):
            event = line[6:].strip() or None
            recognised = True
        elif line.startswith("data:"):
            value = line[5:].strip()
            if value:
                data_lines.append(value)
            recognised = True
        elif line.startswith("id:"):
            frame_id = line[3:].strip() or None
            recognised = True
        elif line.startswith("retry:"):
            recognised = True

    if comment_only:
        return None
    if not recognised:
        raise FrameDecodeError(f"Unrecognised frame: {text[:80]!r}")

    data = _decode_data("\n".join(data_lines)) if data_lines else None
    return Frame(event=event, data=data, id=frame_id)


class FrameBuffer:
    """Accumulates raw chunks and splits out complete frame blocks.

    Works on bytes so a multi-byte character split across two chunks is
    only decoded once the whole block has arrived.
    """

    def __init__(self) -> None:
        self._buffer = b""

    def feed(self, chunk: bytes) -> list[bytes]:
        self._buffer = (self._buffer + chunk).replace(b"\r\n", b"\n")
        *blocks, self._buffer = self._buffer.split(FRAME_SEPARATOR)
        return [block for block in blocks if block.strip()]

    def flush(self) -> bytes | None:
        rest, self._buffer = self._buffer, b""
        return rest if rest.strip() else None

    @property
    def pending(self) -> int:
        return len(self._buffer)


async def decode_frames(chunks: AsyncIterator[bytes]) -> AsyncIterator[Frame]:
    """Turn a stream of raw byte chunks into frames, skipping malformed blocks."""
    buffer = FrameBuffer()

    def _decode(block: bytes) -> Frame | None:
        try:
            return parse_frame(block)
        except FrameDecodeError as e:
            logger.warning(f"Skipping malformed upstream frame: {e}")
            return None

    async for chunk in chunks:
        for block in buffer.feed(chunk):
            frame = _decode(block)
            if frame is not None:
                yield frame

    # Best-effort decode of a dangling partial frame
    tail = buffer.flush()
    if tail is not None:
        frame = _decode(tail)
        if frame is not None:
            yield frame
