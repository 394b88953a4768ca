"""
Platform-specific process control for the bundled server.

The supervisor talks to one ProcessControl; each platform supplies its own
way to locate the executable, spawn it, stop it and find stragglers.
"""

import abc
import asyncio
import csv
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Mapping, Optional

from local_runtime.config import (
    GPU_LAYERS_ALL,
    GPU_LAYERS_ENV,
    SERVER_ENV_DEFAULTS,
    SERVER_EXECUTABLE_NAME,
    get_executable_override,
)
from local_runtime.errors import ExecutableNotFound, UnsupportedPlatform

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT_SECONDS = 5.0


async def run_command(*args: str, timeout: float = COMMAND_TIMEOUT_SECONDS) -> tuple[int, str]:
    """Run a short-lived helper command, returning (returncode, stdout)."""
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return proc.returncode, stdout.decode(errors="replace")


class ProcessControl(abc.ABC):
    """
    Strategy interface for starting, stopping and finding server processes.

    Subclasses must implement the abstract platform-specific pieces; spawn
    and the environment are shared.
    """

    platform_dir: str = ""
    relative_executable: tuple[str, ...] = ()

    def executable_path(self, resources_dir: Path) -> Path:
        """Resolve the bundled executable, raising ExecutableNotFound if absent."""
        override = get_executable_override()
        path = override or resources_dir.joinpath("bin", self.platform_dir, *self.relative_executable)
        if not path.exists():
            raise ExecutableNotFound(path)
        return path

    def build_environment(self, base_env: Mapping[str, str], executable: Path) -> dict[str, str]:
        env = dict(base_env)
        env.update(SERVER_ENV_DEFAULTS)
        env.setdefault(GPU_LAYERS_ENV, GPU_LAYERS_ALL)
        return env

    async def spawn(self, executable: Path, env: Mapping[str, str]) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            str(executable),
            "serve",
            env=dict(env),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )

    @abc.abstractmethod
    async def terminate(self, proc: asyncio.subprocess.Process) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def force_kill(self, proc: asyncio.subprocess.Process) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def find_server_pids(self) -> list[int]:
        raise NotImplementedError

    @abc.abstractmethod
    async def kill_pid(self, pid: int) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def process_stats(self, pid: int) -> Optional[tuple[int, float]]:
        """Return (rss_bytes, cpu_percent) for pid, or None if unavailable."""
        raise NotImplementedError


class PosixProcessControl(ProcessControl):
    """macOS and Linux: signals plus pgrep/ps."""

    def __init__(self, platform: str = sys.platform):
        if platform == "darwin":
            self.platform_dir = "darwin"
            self.relative_executable = ("Ollama.app", "Contents", "Resources", SERVER_EXECUTABLE_NAME)
        else:
            self.platform_dir = "linux"
            self.relative_executable = (SERVER_EXECUTABLE_NAME,)

    async def terminate(self, proc: asyncio.subprocess.Process) -> None:
        proc.terminate()

    async def force_kill(self, proc: asyncio.subprocess.Process) -> None:
        proc.kill()

    async def find_server_pids(self) -> list[int]:
        returncode, stdout = await run_command("pgrep", "-x", SERVER_EXECUTABLE_NAME)
        if returncode != 0:
            # pgrep exits 1 when nothing matches
            return []
        own_pid = os.getpid()
        return [
            int(token) for token in stdout.split()
            if token.isdigit() and int(token) != own_pid
        ]

    async def kill_pid(self, pid: int) -> None:
        os.kill(pid, signal.SIGKILL)

    async def process_stats(self, pid: int) -> Optional[tuple[int, float]]:
        returncode, stdout = await run_command("ps", "-p", str(pid), "-o", "rss=,pcpu=")
        fields = stdout.split()
        if returncode != 0 or len(fields) < 2:
            return None
        try:
            # ps reports RSS in KiB
            return int(fields[0]) * 1024, float(fields[1])
        except ValueError:
            logger.warning("Unparseable ps output for pid %d: %r", pid, stdout)
            return None


class WindowsProcessControl(ProcessControl):
    """Windows: taskkill/tasklist, bundled DLLs on PATH."""

    platform_dir = "win32"
    relative_executable = (f"{SERVER_EXECUTABLE_NAME}.exe",)

    @property
    def image_name(self) -> str:
        return self.relative_executable[0]

    def build_environment(self, base_env: Mapping[str, str], executable: Path) -> dict[str, str]:
        env = super().build_environment(base_env, executable)
        lib_dir = executable.parent / "lib" / SERVER_EXECUTABLE_NAME
        env["PATH"] = f"{lib_dir};{executable.parent};{env.get('PATH', '')}"
        return env

    async def terminate(self, proc: asyncio.subprocess.Process) -> None:
        # Kill the whole tree: the server spawns runner subprocesses
        await run_command("taskkill", "/F", "/IM", self.image_name, "/T")

    async def force_kill(self, proc: asyncio.subprocess.Process) -> None:
        await run_command("taskkill", "/F", "/PID", str(proc.pid), "/T")

    async def _tasklist(self, filter_expr: str) -> list[list[str]]:
        returncode, stdout = await run_command("tasklist", "/FI", filter_expr, "/FO", "CSV", "/NH")
        if returncode != 0:
            return []
        return [row for row in csv.reader(stdout.splitlines()) if len(row) >= 2]

    async def find_server_pids(self) -> list[int]:
        rows = await self._tasklist(f"IMAGENAME eq {self.image_name}")
        return [int(row[1]) for row in rows if row[1].isdigit()]

    async def kill_pid(self, pid: int) -> None:
        returncode, _ = await run_command("taskkill", "/F", "/PID", str(pid), "/T")
        if returncode != 0:
            raise OSError(f"taskkill exited with {returncode} for pid {pid}")

    async def process_stats(self, pid: int) -> Optional[tuple[int, float]]:
        rows = await self._tasklist(f"PID eq {pid}")
        if not rows or len(rows[0]) < 5:
            return None
        # Memory column looks like "123,456 K"
        digits = "".join(ch for ch in rows[0][4] if ch.isdigit())
        if not digits:
            return None
        # CPU needs multiple samples on Windows; not reported
        return int(digits) * 1024, 0.0


def default_process_control(platform: str = sys.platform) -> ProcessControl:
    """Pick the process control strategy for the running platform."""
    if platform == "win32":
        return WindowsProcessControl()
    if platform == "darwin" or platform.startswith("linux"):
        return PosixProcessControl(platform)
    raise UnsupportedPlatform(platform)
