"""
LocalRuntime: one object wiring the shared HTTP client, the supervisor and
both API clients together.

    async with LocalRuntime() as runtime:
        async for token in runtime.completion.chat(request):
            ...
"""

import asyncio
import logging
from pathlib import Path
from typing import Iterable, Optional

import httpx

from local_runtime.catalog import ModelCatalogClient
from local_runtime.completion import StreamingCompletionClient
from local_runtime.config import get_base_url
from local_runtime.platforms import ProcessControl
from local_runtime.supervisor import ProcessSupervisor, Sleep

logger = logging.getLogger(__name__)


def create_http_client(base_url: Optional[str] = None, **kwargs) -> httpx.AsyncClient:
    """Shared client for all server calls. Streams must not be buffered by decompression."""
    return httpx.AsyncClient(
        base_url=base_url or get_base_url(),
        headers={"Accept-Encoding": "identity"},
        **kwargs,
    )


class LocalRuntime:
    """
    Service facade: supervisor, model catalog and completion client sharing
    one httpx.AsyncClient.

    Pass http to reuse an existing client (tests pass one with a mock
    transport); otherwise one is created and closed by aclose().
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        http: Optional[httpx.AsyncClient] = None,
        control: Optional[ProcessControl] = None,
        resources_dir: Optional[Path] = None,
        sleep: Sleep = asyncio.sleep,
        stall_timeout: Optional[float] = None,
        aggressive_families: Optional[Iterable[str]] = None,
    ):
        self._owns_http = http is None
        self.http = http or create_http_client(base_url)
        self.supervisor = ProcessSupervisor(
            self.http, control, resources_dir, sleep=sleep
        )
        self.catalog = ModelCatalogClient(
            self.http, self.supervisor, sleep=sleep, stall_timeout=stall_timeout
        )
        self.completion = StreamingCompletionClient(
            self.http, self.supervisor, aggressive_families=aggressive_families
        )

    async def startup(self, *, clean_orphans: bool = True) -> None:
        """Clear processes left by a previous crash, then make sure the server is up."""
        if clean_orphans and not await self.supervisor.is_running():
            killed = await self.supervisor.kill_orphan_processes()
            if killed:
                logger.info("Cleaned up %d orphan server process(es)", killed)
        await self.supervisor.ensure_running()

    async def shutdown(self) -> None:
        """Cancel any active completion and stop the supervised server."""
        self.completion.cancel_chat()
        await self.supervisor.stop()

    async def aclose(self) -> None:
        try:
            await self.shutdown()
        finally:
            if self._owns_http:
                await self.http.aclose()

    async def __aenter__(self) -> "LocalRuntime":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
