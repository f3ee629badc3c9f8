"""Server-sent-event decoding for the HTTP harness variants.

Expects lines from an httpx streaming response (``response.aiter_lines()``).
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

logger = logging.getLogger(__name__)


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the ``data`` payload of each event.

    Multi-line ``data:`` fields are joined with newlines; comments and
    other fields are ignored. An event is dispatched on a blank line or at
    end of stream.
    """
    buffer: list[str] = []
    async for line in lines:
        if not line:
            if buffer:
                yield "\n".join(buffer)
                buffer = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if name == "data":
            buffer.append(value[1:] if value.startswith(" ") else value)
    if buffer:
        yield "\n".join(buffer)


async def iter_sse_json(lines: AsyncIterator[str]) -> AsyncIterator[dict[str, Any]]:
    """Decode each event payload as a JSON object, skipping anything else."""
    async for data in iter_sse_data(lines):
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON SSE payload: %.200s", data)
            continue
        if isinstance(parsed, dict):
            yield parsed
