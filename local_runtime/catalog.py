"""
ModelCatalogClient: list, delete and pull models on the local server.

Pulls stream PullProgress records and retry transient failures with
capped exponential backoff. A per-chunk stall watchdog aborts downloads
that stop making progress.
"""

import asyncio
import logging
from contextlib import aclosing
from typing import AsyncIterator, Optional

import httpx
from pydantic import ValidationError

from local_runtime.config import (
    CATALOG_TIMEOUT_SECONDS,
    get_pull_retries,
    get_stall_timeout,
)
from local_runtime.errors import (
    AlreadyPulling,
    CatalogUnavailable,
    DeleteFailed,
    PullFailed,
    ServerReportedError,
    UnexpectedStreamEnd,
    is_retryable_error,
    pull_backoff_seconds,
    pull_failure_message,
)
from local_runtime.schema import InstalledModel, PullProgress
from local_runtime.streaming import StandardDecoder, read_chunks
from local_runtime.supervisor import ProcessSupervisor, Sleep

logger = logging.getLogger(__name__)


class ModelCatalogClient:
    """Model management against /api/tags, /api/delete and /api/pull."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        supervisor: ProcessSupervisor,
        *,
        sleep: Sleep = asyncio.sleep,
        stall_timeout: Optional[float] = None,
    ):
        self._http = http
        self._supervisor = supervisor
        self._sleep = sleep
        self._stall_timeout = stall_timeout if stall_timeout is not None else get_stall_timeout()
        # name -> the PullStream that owns the registration
        self._active_pulls: dict[str, "PullStream"] = {}

    async def list_models(self) -> list[InstalledModel]:
        """Installed models, fresh from the server every call."""
        try:
            await self._supervisor.ensure_running()
            response = await self._http.get("/api/tags", timeout=CATALOG_TIMEOUT_SECONDS)
            response.raise_for_status()
            data = response.json()
            return [InstalledModel.model_validate(m) for m in data.get("models") or []]
        except Exception as e:
            raise CatalogUnavailable(f"Failed to list models: {e}") from e

    async def delete_model(self, name: str) -> None:
        try:
            await self._supervisor.ensure_running()
            response = await self._http.request(
                "DELETE", "/api/delete", json={"name": name}, timeout=CATALOG_TIMEOUT_SECONDS
            )
            response.raise_for_status()
        except Exception as e:
            raise DeleteFailed(name) from e
        logger.info("Deleted model %s", name)

    # ─────────────────────────────────────────────────────────────────
    # PULL
    # ─────────────────────────────────────────────────────────────────

    def is_pulling(self, name: str) -> bool:
        return name in self._active_pulls

    def cancel_pull(self, name: str) -> None:
        """
        Forget the active pull for name.

        Only the registry is updated; an in-flight transfer keeps running
        until its consumer closes the stream or the server ends it.
        """
        self._active_pulls.pop(name, None)

    def pull_model(self, name: str, max_retries: Optional[int] = None) -> "PullStream":
        """
        Start pulling a model and return its progress stream.

        Raises AlreadyPulling immediately, before any network I/O, if a pull
        for the same name is active. The registration is cleared however
        the stream ends, including when the consumer closes it early.
        """
        if name in self._active_pulls:
            raise AlreadyPulling(name)
        if max_retries is None:
            max_retries = get_pull_retries()
        stream = PullStream(self, name)
        stream._events = self._pull_stream(stream, max_retries)
        self._active_pulls[name] = stream
        return stream

    def _release(self, stream: "PullStream") -> None:
        if self._active_pulls.get(stream.name) is stream:
            del self._active_pulls[stream.name]

    async def _pull_stream(self, stream: "PullStream", max_retries: int) -> AsyncIterator[PullProgress]:
        name = stream.name
        try:
            await self._supervisor.ensure_running()
            attempt = 0
            while True:
                if attempt > 0:
                    yield PullProgress(
                        status="retrying",
                        error=f"Retrying download (attempt {attempt + 1}/{max_retries + 1})...",
                    )
                    delay = pull_backoff_seconds(attempt)
                    logger.warning("Retrying pull of %s in %gs", name, delay)
                    await self._sleep(delay)
                try:
                    async with aclosing(self._pull_attempt(name)) as progress:
                        async for record in progress:
                            yield record
                    logger.info("Pulled model %s", name)
                    return
                except Exception as e:
                    if not is_retryable_error(e) or attempt >= max_retries:
                        logger.error("Pull of %s failed after %d attempt(s): %s", name, attempt + 1, e)
                        raise PullFailed(name, pull_failure_message(name, e)) from e
                    logger.warning("Pull attempt %d for %s failed: %s", attempt + 1, name, e)
                    attempt += 1
        finally:
            self._release(stream)

    async def _pull_attempt(self, name: str) -> AsyncIterator[PullProgress]:
        """One download attempt; returns on a terminal success record."""
        decoder = StandardDecoder()
        async with self._http.stream(
            "POST", "/api/pull", json={"name": name}, timeout=httpx.Timeout(None)
        ) as response:
            if response.status_code != 200:
                await response.aread()
                response.raise_for_status()

            chunks = read_chunks(response.aiter_text(), stall_timeout=self._stall_timeout)
            async with aclosing(chunks):
                async for chunk in chunks:
                    for record in decoder.feed(chunk):
                        progress = self._parse_progress(record)
                        if progress is None:
                            continue
                        yield progress
                        if progress.is_error:
                            raise ServerReportedError(progress.error or "Server reported an error")
                        if progress.is_success:
                            return

        for record in decoder.flush():
            progress = self._parse_progress(record)
            if progress is None:
                continue
            yield progress
            if progress.is_error:
                raise ServerReportedError(progress.error or "Server reported an error")
            if progress.is_success:
                return
        raise UnexpectedStreamEnd()

    @staticmethod
    def _parse_progress(record: dict) -> Optional[PullProgress]:
        if "status" not in record and "error" in record:
            # Errors can arrive as a bare {"error": "..."} record
            record = {"status": "error", **record}
        try:
            return PullProgress.model_validate(record)
        except ValidationError as e:
            logger.debug("Skipping unrecognised pull record %r: %s", record, e)
            return None


class PullStream:
    """
    Progress stream for one pull.

    Iterate it with ``async for``. Closing it, even before iterating,
    aborts the transfer and releases the pull registration.
    """

    def __init__(self, client: ModelCatalogClient, name: str):
        self.name = name
        self._client = client
        self._events: Optional[AsyncIterator[PullProgress]] = None

    def __aiter__(self) -> "PullStream":
        return self

    async def __anext__(self) -> PullProgress:
        return await self._events.__anext__()

    async def aclose(self) -> None:
        try:
            await self._events.aclose()
        finally:
            self._client._release(self)
