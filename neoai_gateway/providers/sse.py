"""Line and server-sent-event decoding shared by the streaming adapters."""

import codecs
import json
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any


async def iter_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Yield complete lines from a byte stream.

    Decoding is incremental, so a multibyte character split across two
    chunks is reassembled.  Trailing ``\\r`` is stripped and a final
    unterminated line is flushed when the stream ends.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for chunk in chunks:
        buffer += decoder.decode(chunk)
        *lines, buffer = buffer.split("\n")
        for line in lines:
            yield line.rstrip("\r")
    buffer += decoder.decode(b"", final=True)
    if buffer:
        yield buffer.rstrip("\r")


async def iter_sse_data(
    chunks: AsyncIterable[bytes], prefix: str = "data:"
) -> AsyncIterator[str]:
    """Yield the payload of every ``data:`` record, skipping ``[DONE]`` and blanks."""
    async for line in iter_lines(chunks):
        if not line.startswith(prefix):
            continue
        payload = line[len(prefix) :].strip()
        if not payload or payload == "[DONE]":
            continue
        yield payload


def parse_json_record(payload: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def dig(record: Any, *path: str | int) -> Any:
    """Walk nested dicts and lists, returning None on any missing step."""
    current = record
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
        elif not isinstance(current, dict):
            return None
        current = current[step] if isinstance(step, int) else current.get(step)
        if current is None:
            return None
    return current
