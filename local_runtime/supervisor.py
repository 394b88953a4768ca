"""
ProcessSupervisor: keeps exactly one healthy server process alive when
needed, and none lingering after shutdown or a crash.

State machine: stopped -> starting -> running -> stopping -> stopped.
Concurrent start() callers await the same startup instead of spawning
duplicates.
"""

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Awaitable, Callable, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_fixed,
)

from local_runtime.config import (
    HEALTH_PROBE_TIMEOUT_SECONDS,
    RESTART_SETTLE_SECONDS,
    STARTUP_POLL_INTERVAL_SECONDS,
    STARTUP_TIMEOUT_SECONDS,
    STOP_GRACE_SECONDS,
    get_resources_dir,
)
from local_runtime.errors import SpawnFailed, StartTimeout, SupervisorBusy
from local_runtime.platforms import ProcessControl, default_process_control
from local_runtime.schema import ProcessStats, ServerState, ServiceStatus

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class ProcessSupervisor:
    """
    Lifecycle of the local server subprocess.

    Dependencies are injected so tests can substitute fakes: the HTTP
    client (base URL = server), the platform ProcessControl, the sleep
    coroutine used between health polls, and a monotonic clock.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        control: Optional[ProcessControl] = None,
        resources_dir: Optional[Path] = None,
        *,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        startup_timeout: float = STARTUP_TIMEOUT_SECONDS,
        poll_interval: float = STARTUP_POLL_INTERVAL_SECONDS,
        stop_grace: float = STOP_GRACE_SECONDS,
    ):
        self._http = http
        self._control = control or default_process_control()
        self._resources_dir = resources_dir or get_resources_dir()
        self._sleep = sleep
        self._clock = clock
        self._startup_timeout = startup_timeout
        self._poll_interval = poll_interval
        self._stop_grace = stop_grace

        self._state = ServerState.STOPPED
        self._process: Optional[asyncio.subprocess.Process] = None
        self._started_at: Optional[float] = None
        self._starting: Optional[asyncio.Future] = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    # ─────────────────────────────────────────────────────────────────
    # HEALTH
    # ─────────────────────────────────────────────────────────────────

    async def is_running(self) -> bool:
        """Short health probe against /api/version. Never raises."""
        try:
            response = await self._http.get("/api/version", timeout=HEALTH_PROBE_TIMEOUT_SECONDS)
            return response.status_code == 200
        except Exception as e:
            logger.debug("Health probe failed: %s", e)
            return False

    async def ensure_running(self) -> None:
        if not await self.is_running():
            await self.start()

    # ─────────────────────────────────────────────────────────────────
    # START / STOP
    # ─────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """
        Start the server unless it is already healthy.

        Raises ExecutableNotFound, UnsupportedPlatform, SpawnFailed,
        StartTimeout, or SupervisorBusy while a stop is in progress.
        """
        async with self._lock:
            if self._state is ServerState.STOPPING:
                raise SupervisorBusy("Server is stopping; try again once it has stopped")
            task = self._starting
            if task is None:
                if await self.is_running():
                    return
                task = self._starting = asyncio.ensure_future(self._start())
                task.add_done_callback(self._startup_finished)
        # Shielded so one cancelled caller does not abort the shared startup
        await asyncio.shield(task)

    def _startup_finished(self, task: asyncio.Future) -> None:
        self._starting = None

    async def _start(self) -> None:
        held = self._process
        if held is not None and held.returncode is None:
            # Our child is alive but missed a probe; never spawn alongside it
            logger.info("Server process %s did not answer, waiting for it", held.pid)
            self._state = ServerState.STARTING
            try:
                await self._wait_until_healthy(held)
            except (SpawnFailed, StartTimeout) as e:
                logger.warning("Replacing unresponsive server process %s: %s", held.pid, e)
                await self.stop()
            else:
                self._state = ServerState.RUNNING
                return
        elif held is not None:
            logger.info("Server process %s exited with code %s", held.pid, held.returncode)
            self._process = None
            self._started_at = None

        executable = self._control.executable_path(self._resources_dir)
        env = self._control.build_environment(os.environ, executable)

        self._state = ServerState.STARTING
        logger.info("Starting server: %s serve", executable)
        try:
            proc = await self._control.spawn(executable, env)
        except OSError as e:
            self._state = ServerState.STOPPED
            raise SpawnFailed(f"Failed to start server: {e}") from e

        self._process = proc
        self._started_at = self._clock()
        try:
            await self._wait_until_healthy(proc)
        except BaseException:
            await self.stop()
            raise
        self._state = ServerState.RUNNING
        logger.info("Server is ready (pid %s)", proc.pid)

    async def _probe_child(self, proc: asyncio.subprocess.Process) -> bool:
        if proc.returncode is not None:
            raise SpawnFailed(f"Server process exited during startup with code {proc.returncode}")
        return await self.is_running()

    async def _wait_until_healthy(self, proc: asyncio.subprocess.Process) -> None:
        max_polls = int(self._startup_timeout / self._poll_interval) + 1
        retrying = AsyncRetrying(
            stop=stop_after_delay(self._startup_timeout) | stop_after_attempt(max_polls),
            wait=wait_fixed(self._poll_interval),
            retry=retry_if_result(lambda healthy: not healthy),
            sleep=self._sleep,
        )
        try:
            await retrying(self._probe_child, proc)
        except RetryError as e:
            raise StartTimeout(
                f"Server failed to become healthy within {self._startup_timeout:g}s"
            ) from e

    async def stop(self) -> None:
        """
        Stop the supervised process. No-op without a handle.

        Graceful terminate, then force kill after the grace period. Failures
        are logged; state is always reset.
        """
        proc = self._process
        if proc is None:
            return

        self._state = ServerState.STOPPING
        logger.info("Stopping server (pid %s)", proc.pid)
        try:
            await self._control.terminate(proc)
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._stop_grace)
            except asyncio.TimeoutError:
                logger.warning(
                    "Server did not exit within %gs, force killing", self._stop_grace
                )
                await self._control.force_kill(proc)
                await asyncio.wait_for(proc.wait(), timeout=self._stop_grace)
        except (OSError, asyncio.TimeoutError) as e:
            logger.error("Error stopping server: %s", e)
        finally:
            self._process = None
            self._started_at = None
            self._state = ServerState.STOPPED

    async def force_kill(self) -> None:
        """
        Kill the supervised process immediately, without a grace period.

        Raises SupervisorBusy if a stop is already in progress. State is
        always reset.
        """
        proc = self._process
        if proc is None:
            logger.info("No server process to kill")
            return
        if self._state is ServerState.STOPPING:
            raise SupervisorBusy("Server is already stopping; use stop() instead")

        self._state = ServerState.STOPPING
        logger.warning("Force killing server (pid %s)", proc.pid)
        try:
            await self._control.force_kill(proc)
            await asyncio.wait_for(proc.wait(), timeout=self._stop_grace)
        except asyncio.TimeoutError:
            logger.warning("Server did not report exit after force kill, cleaning up anyway")
        except OSError as e:
            logger.error("Failed to force kill server: %s", e)
        finally:
            self._process = None
            self._started_at = None
            self._state = ServerState.STOPPED

    async def restart(self) -> None:
        await self.stop()
        await self._sleep(RESTART_SETTLE_SECONDS)
        await self.start()

    async def kill_orphan_processes(self) -> int:
        """
        Force-kill server processes left behind by an earlier crash.

        Returns how many were killed. Failures are logged, never raised.
        """
        try:
            pids = await self._control.find_server_pids()
        except Exception as e:
            logger.warning("Could not enumerate orphan server processes: %s", e)
            return 0

        killed = 0
        for pid in pids:
            if pid == self.pid:
                continue
            try:
                await self._control.kill_pid(pid)
                killed += 1
                logger.info("Killed orphan server process %d", pid)
            except Exception as e:
                logger.warning("Failed to kill orphan server process %d: %s", pid, e)
        return killed

    # ─────────────────────────────────────────────────────────────────
    # STATUS
    # ─────────────────────────────────────────────────────────────────

    async def process_stats(self) -> Optional[ProcessStats]:
        """Resource usage of the server process, or None when unavailable."""
        pid = self.pid
        try:
            if pid is None:
                # Server may have been started outside this supervisor
                pids = await self._control.find_server_pids()
                if not pids:
                    return None
                pid = pids[0]
            stats = await self._control.process_stats(pid)
        except Exception as e:
            logger.warning("Failed to read process stats: %s", e)
            return None
        if stats is None:
            return None

        rss_bytes, cpu_percent = stats
        uptime = int(self._clock() - self._started_at) if self._started_at is not None else 0
        return ProcessStats(
            pid=pid,
            rss_bytes=rss_bytes,
            cpu_percent=cpu_percent,
            uptime_seconds=uptime,
        )

    async def service_status(self) -> ServiceStatus:
        if not await self.is_running():
            return ServiceStatus(
                is_running=False,
                state=self._state,
                error="Server is not running",
            )
        return ServiceStatus(
            is_running=True,
            state=self._state,
            process_stats=await self.process_stats(),
        )
