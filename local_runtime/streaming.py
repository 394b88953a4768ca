"""
Stream plumbing shared by pulls and completions.

Two pieces:
- read_chunks: pulls text chunks off a response with an optional stall
  watchdog and abort signal.
- StreamDecoder variants: turn arbitrary chunk boundaries into JSON
  records. Most servers frame records one per line; some model families
  emit objects back to back with no separator and need the aggressive
  decoder.
"""

import asyncio
import json
import logging
import re
from typing import Any, AsyncIterator, Iterable, Optional

from local_runtime.config import get_aggressive_families
from local_runtime.errors import PullStalled

logger = logging.getLogger(__name__)


async def read_chunks(
    chunks: AsyncIterator[str],
    *,
    stall_timeout: Optional[float] = None,
    abort: Optional[asyncio.Event] = None,
) -> AsyncIterator[str]:
    """
    Yield chunks from an async iterator until it ends.

    If stall_timeout is set and no chunk arrives within that many seconds,
    the pending read is cancelled and PullStalled is raised. The window
    restarts on every chunk. If abort is set while waiting, iteration ends
    quietly.
    """
    iterator = chunks.__aiter__()
    abort_wait = asyncio.ensure_future(abort.wait()) if abort is not None else None
    read: Optional[asyncio.Future] = None
    try:
        while True:
            read = asyncio.ensure_future(iterator.__anext__())
            waiters = {read} if abort_wait is None else {read, abort_wait}
            done, _ = await asyncio.wait(
                waiters, timeout=stall_timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if abort_wait is not None and abort_wait in done:
                return
            if read not in done:
                raise PullStalled(stall_timeout)
            try:
                chunk = read.result()
            except StopAsyncIteration:
                return
            read = None
            yield chunk
    finally:
        if read is not None and not read.done():
            read.cancel()
            await asyncio.wait({read})
        if read is not None and read.done() and not read.cancelled():
            read.exception()  # mark retrieved
        if abort_wait is not None:
            abort_wait.cancel()


def _parse_record(text: str) -> Optional[dict[str, Any]]:
    text = text.strip()
    if not text:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed stream record: %.200s", text)
        return None
    return data if isinstance(data, dict) else None


# ─────────────────────────────────────────────────────────────────────
# DECODERS
# ─────────────────────────────────────────────────────────────────────

class StreamDecoder:
    """
    Base decoder: newline-delimited JSON.

    Feed chunks as they arrive and collect the records completed so far.
    Partial lines are buffered across calls. Malformed lines are skipped.
    """

    def __init__(self):
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, text: str) -> list[dict[str, Any]]:
        self._buffer += text
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        return [record for record in map(_parse_record, lines) if record is not None]

    def flush(self) -> list[dict[str, Any]]:
        """One final parse attempt on whatever is left in the buffer."""
        remainder, self._buffer = self._buffer, ""
        record = _parse_record(remainder)
        return [record] if record is not None else []


class StandardDecoder(StreamDecoder):
    """Newline framing only."""


class AggressiveDecoder(StreamDecoder):
    """
    Recovers records from servers that concatenate objects without a
    separator, e.g. ``{...}{...}``.

    Strategies, repeated while any of them makes progress:
    1. Parse the whole buffer when it is small and looks like one object.
    2. Split complete lines on newlines.
    3. Split on ``}{`` boundaries, keeping the last piece buffered.
    """

    WHOLE_BUFFER_LIMIT = 500
    OBJECT_BOUNDARY = re.compile(r"(?<=\})(?=\{)")

    def feed(self, text: str) -> list[dict[str, Any]]:
        self._buffer += text
        records: list[dict[str, Any]] = []
        progressed = True
        while progressed and self._buffer.strip():
            progressed = False

            whole = self._try_whole_buffer()
            if whole is not None:
                records.append(whole)
                self._buffer = ""
                break

            segments: list[str] = []
            if "\n" in self._buffer:
                *lines, self._buffer = self._buffer.split("\n")
                segments.extend(lines)
            pieces = self.OBJECT_BOUNDARY.split(self._buffer)
            if len(pieces) > 1:
                *head, self._buffer = pieces
                segments.extend(head)

            for segment in segments:
                progressed = True
                for piece in self.OBJECT_BOUNDARY.split(segment):
                    record = _parse_record(piece)
                    if record is not None:
                        records.append(record)
        return records

    def flush(self) -> list[dict[str, Any]]:
        remainder, self._buffer = self._buffer, ""
        return [
            record
            for record in map(_parse_record, self.OBJECT_BOUNDARY.split(remainder))
            if record is not None
        ]

    def _try_whole_buffer(self) -> Optional[dict[str, Any]]:
        stripped = self._buffer.strip()
        if len(stripped) >= self.WHOLE_BUFFER_LIMIT:
            return None
        if not (stripped.startswith("{") and stripped.endswith("}")):
            return None
        try:
            data = json.loads(stripped)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None


def decoder_for_model(
    model: Optional[str],
    aggressive_families: Optional[Iterable[str]] = None,
) -> StreamDecoder:
    """
    Get the appropriate decoder for a model name.

    Case-insensitive substring match against the aggressive families
    (default: LOCAL_RUNTIME_AGGRESSIVE_FAMILIES or "qwen").
    """
    if aggressive_families is None:
        aggressive_families = get_aggressive_families()
    if model:
        model_lower = model.lower()
        for family in aggressive_families:
            if family and family.lower() in model_lower:
                logger.debug("Using aggressive decoder for %s", model)
                return AggressiveDecoder()
    return StandardDecoder()
