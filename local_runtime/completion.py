"""
StreamingCompletionClient: chat and generate streaming against the local
server.

Each client holds at most one active request. Starting a new chat or
generate replaces the active one: the previous handle is destroyed first,
and its consumer's iteration ends without further tokens.
"""

import asyncio
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Iterable, Optional

import httpx

from local_runtime.config import CHAT_TIMEOUT_SECONDS, VISION_TIMEOUT_SECONDS
from local_runtime.context import build_contextual_system_prompt, prepend_context
from local_runtime.errors import CompletionError
from local_runtime.schema import (
    ChatEvent,
    ChatRequest,
    GenerateRequest,
    ThinkingChunk,
    ToolCallBatch,
)
from local_runtime.streaming import StandardDecoder, StreamDecoder, decoder_for_model, read_chunks
from local_runtime.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


class ActiveRequest:
    """Handle for the in-flight streaming call. Destroying it cancels the stream."""

    def __init__(self, endpoint: str):
        self.endpoint = endpoint
        self.aborted = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self.aborted.is_set()

    def destroy(self) -> None:
        self.aborted.set()


def chat_events(record: dict[str, Any]) -> list[ChatEvent]:
    """Events carried by one /api/chat record: tool calls, thinking, then content."""
    message = record.get("message") or {}
    events: list[ChatEvent] = []
    if message.get("tool_calls"):
        events.append(ToolCallBatch(tool_calls=message["tool_calls"]))
    if message.get("thinking"):
        events.append(ThinkingChunk(content=message["thinking"]))
    if message.get("content"):
        events.append(message["content"])
    return events


class StreamingCompletionClient:
    """Chat/generate streaming with per-model-family decoding."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        supervisor: ProcessSupervisor,
        *,
        aggressive_families: Optional[Iterable[str]] = None,
    ):
        self._http = http
        self._supervisor = supervisor
        self._aggressive_families = (
            tuple(aggressive_families) if aggressive_families is not None else None
        )
        self._active: Optional[ActiveRequest] = None

    @property
    def active_request(self) -> Optional[ActiveRequest]:
        return self._active

    def cancel_chat(self) -> None:
        """Destroy the active request, if any."""
        if self._active is not None:
            logger.info("Cancelling active %s request", self._active.endpoint)
            self._active.destroy()
            self._active = None

    def _begin(self, endpoint: str) -> ActiveRequest:
        if self._active is not None:
            logger.info("Replacing active %s request", self._active.endpoint)
            self._active.destroy()
        self._active = ActiveRequest(endpoint)
        return self._active

    def _end(self, handle: ActiveRequest) -> None:
        if self._active is handle:
            self._active = None

    async def _records(
        self,
        endpoint: str,
        payload: dict[str, Any],
        timeout: httpx.Timeout,
        decoder: StreamDecoder,
        handle: ActiveRequest,
    ) -> AsyncIterator[dict[str, Any]]:
        """
        Stream decoded records until one has done=true, the body ends, or the
        handle is destroyed. The trailing buffer gets one final parse.
        """
        try:
            async with self._http.stream("POST", endpoint, json=payload, timeout=timeout) as response:
                if response.status_code != 200:
                    body = (await response.aread()).decode(errors="replace")
                    raise CompletionError(f"HTTP {response.status_code}: {body}")

                chunks = read_chunks(response.aiter_text(), abort=handle.aborted)
                async with aclosing(chunks):
                    async for chunk in chunks:
                        for record in decoder.feed(chunk):
                            if handle.cancelled:
                                return
                            if record.get("error"):
                                raise CompletionError(str(record["error"]))
                            yield record
                            if record.get("done"):
                                return
        except httpx.HTTPError as e:
            if handle.cancelled:
                return
            raise CompletionError(f"Request to {endpoint} failed: {e}") from e

        if handle.cancelled:
            return
        for record in decoder.flush():
            if record.get("error"):
                raise CompletionError(str(record["error"]))
            yield record
            if record.get("done"):
                return

    async def chat(self, request: ChatRequest) -> AsyncIterator[ChatEvent]:
        """
        Stream a chat completion.

        Yields str tokens, ToolCallBatch and ThinkingChunk events. Context,
        when present, is prepended to the first user message instead of
        going out as a system message.
        """
        await self._supervisor.ensure_running()

        messages = prepend_context(request.messages, request.context)
        has_images = any(m.has_images() for m in messages)
        timeout = httpx.Timeout(VISION_TIMEOUT_SECONDS if has_images else CHAT_TIMEOUT_SECONDS)

        payload: dict[str, Any] = {
            "model": request.model,
            "messages": [m.to_wire() for m in messages],
            "stream": request.stream,
        }
        if request.tools:
            payload["tools"] = request.tools

        decoder = decoder_for_model(request.model, self._aggressive_families)
        handle = self._begin("/api/chat")
        logger.debug(
            "Chat with %s: %d message(s), images=%s, decoder=%s",
            request.model, len(messages), has_images, type(decoder).__name__,
        )
        try:
            records = self._records("/api/chat", payload, timeout, decoder, handle)
            async with aclosing(records):
                async for record in records:
                    for event in chat_events(record):
                        if handle.cancelled:
                            return
                        yield event
        finally:
            self._end(handle)

    async def generate(self, request: GenerateRequest) -> AsyncIterator[str]:
        """Stream /api/generate, yielding response text as it grows."""
        await self._supervisor.ensure_running()

        system = request.system
        if request.context is not None:
            system = build_contextual_system_prompt(request.system, request.context)

        payload: dict[str, Any] = {
            "model": request.model,
            "prompt": request.prompt,
            "stream": request.stream,
        }
        if request.images:
            payload["images"] = request.images
        if system:
            payload["system"] = system

        handle = self._begin("/api/generate")
        try:
            records = self._records(
                "/api/generate", payload, httpx.Timeout(None), StandardDecoder(), handle
            )
            async with aclosing(records):
                async for record in records:
                    text = record.get("response")
                    if text and not handle.cancelled:
                        yield text
        finally:
            self._end(handle)
