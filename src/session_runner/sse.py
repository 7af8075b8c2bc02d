"""Server-Sent Events framing helpers."""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Keepalive:
    """Marker yielded by ``with_keepalive`` when the source has been quiet."""

    def __repr__(self) -> str:
        return "KEEPALIVE"


KEEPALIVE = Keepalive()


def format_sse_event(event: str, data: Any, event_id: Optional[int] = None) -> str:
    """
    Frame one SSE message.

    ``data`` is JSON-encoded unless it is already a string. Multi-line payloads
    are split across several ``data:`` fields as the SSE format requires.
    """
    payload = data if isinstance(data, str) else json.dumps(data, default=str)
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event}")
    for chunk in payload.split("\n"):
        lines.append(f"data: {chunk}")
    return "\n".join(lines) + "\n\n"


def format_sse_comment(text: str = "keepalive") -> str:
    return f": {text}\n\n"


async def with_keepalive(
    source: AsyncIterator[T], interval: float
) -> AsyncIterator[Union[T, Keepalive]]:
    """
    Forward items from ``source``, yielding ``KEEPALIVE`` after every
    ``interval`` seconds without one.

    The pending read is never cancelled by a keepalive, so no item is lost.
    """
    pending: Optional["asyncio.Task[Any]"] = None
    try:
        while True:
            if pending is None:
                pending = asyncio.ensure_future(source.__anext__())
            done, _ = await asyncio.wait({pending}, timeout=interval)
            if not done:
                yield KEEPALIVE
                continue
            task, pending = pending, None
            try:
                item = task.result()
            except StopAsyncIteration:
                return
            yield item
    finally:
        if pending is not None and not pending.done():
            pending.cancel()
            try:
                await pending
            except (asyncio.CancelledError, StopAsyncIteration):
                pass
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()
