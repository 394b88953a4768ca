"""Shared test fixtures for local-runtime tests."""

import asyncio
import json
from pathlib import Path
from typing import AsyncIterator, Callable
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from local_runtime.platforms import ProcessControl


# ─────────────────────────────────────────────────────────────────────
# MOCK DATA
# ─────────────────────────────────────────────────────────────────────

MOCK_BASE_URL = "http://127.0.0.1:11434"

MOCK_MODEL = "llama3.2:3b"
MOCK_QWEN_MODEL = "Qwen2.5-VL:7b"

MOCK_TAGS_RESPONSE = {
    "models": [
        {
            "name": MOCK_MODEL,
            "size": 2019393189,
            "digest": "a80c4f17acd5",
            "modified_at": "2025-01-10T09:12:44.123Z",
        },
        {
            "name": "qwen2.5:7b",
            "size": 4683087332,
            "digest": "845dbda0ea48",
            "modified_at": "2025-01-11T17:03:02.456Z",
        },
    ]
}

MOCK_PULL_RECORDS = [
    {"status": "pulling manifest"},
    {"status": "downloading", "digest": "sha256:abc", "total": 100, "completed": 40},
    {"status": "downloading", "digest": "sha256:abc", "total": 100, "completed": 100},
    {"status": "verifying sha256 digest"},
    {"status": "success"},
]


def ndjson(*records: dict) -> str:
    """Build a newline-delimited JSON body."""
    return "".join(json.dumps(r) + "\n" for r in records)


def chat_record(content: str = "", done: bool = False, **message) -> dict:
    """One /api/chat stream record."""
    if content:
        message["content"] = content
    return {"model": MOCK_MODEL, "message": {"role": "assistant", **message}, "done": done}


async def chunked(*chunks: str, hang: bool = False) -> AsyncIterator[bytes]:
    """Response body that arrives in the given chunks, optionally never finishing."""
    for chunk in chunks:
        yield chunk.encode()
        await asyncio.sleep(0)
    if hang:
        await asyncio.Event().wait()


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    """AsyncClient routed through a MockTransport handler."""
    return httpx.AsyncClient(base_url=MOCK_BASE_URL, transport=httpx.MockTransport(handler))


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and returns immediately."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ─────────────────────────────────────────────────────────────────────
# FAKE PROCESS CONTROL
# ─────────────────────────────────────────────────────────────────────

class FakeProcess:
    """Minimal asyncio.subprocess.Process stand-in."""

    def __init__(self, pid: int = 4242, exits_on_terminate: bool = True):
        self.pid = pid
        self.returncode = None
        self.exits_on_terminate = exits_on_terminate
        self._exited = asyncio.Event()

    def exit(self, code: int = 0) -> None:
        self.returncode = code
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class FakeProcessControl(ProcessControl):
    """Records every call; never touches real processes."""

    def __init__(self, executable: Path, process: FakeProcess = None):
        self.executable = executable
        self.process = process or FakeProcess()
        self.spawn_envs: list[dict] = []
        self.spawn_error: Exception = None
        self.terminate_calls = 0
        self.terminate_error: Exception = None
        self.force_killed: list[int] = []
        self.orphans: list[int] = []
        self.unkillable: set[int] = set()
        self.killed_pids: list[int] = []
        self.stats = (2048 * 1024, 3.5)

    def executable_path(self, resources_dir: Path) -> Path:
        return self.executable

    async def spawn(self, executable, env):
        if self.spawn_error is not None:
            raise self.spawn_error
        self.spawn_envs.append(dict(env))
        return self.process

    async def terminate(self, proc):
        self.terminate_calls += 1
        if self.terminate_error is not None:
            raise self.terminate_error
        if proc.exits_on_terminate:
            proc.exit(0)

    async def force_kill(self, proc):
        self.force_killed.append(proc.pid)
        proc.exit(-9)

    async def find_server_pids(self):
        return list(self.orphans)

    async def kill_pid(self, pid):
        if pid in self.unkillable:
            raise PermissionError(f"Operation not permitted: {pid}")
        self.killed_pids.append(pid)

    async def process_stats(self, pid):
        return self.stats


# ─────────────────────────────────────────────────────────────────────
# FIXTURES
# ─────────────────────────────────────────────────────────────────────

@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def fake_control(tmp_path):
    executable = tmp_path / "ollama"
    executable.write_text("")
    return FakeProcessControl(executable)


@pytest.fixture
def running_supervisor():
    """Supervisor double whose server is always up."""
    supervisor = MagicMock()
    supervisor.ensure_running = AsyncMock()
    supervisor.is_running = AsyncMock(return_value=True)
    return supervisor


@pytest.fixture
def clean_env(monkeypatch):
    """Remove LOCAL_RUNTIME_* overrides so defaults apply."""
    for var in (
        "LOCAL_RUNTIME_URL",
        "LOCAL_RUNTIME_RESOURCES",
        "LOCAL_RUNTIME_EXECUTABLE",
        "LOCAL_RUNTIME_PULL_RETRIES",
        "LOCAL_RUNTIME_STALL_TIMEOUT",
        "LOCAL_RUNTIME_AGGRESSIVE_FAMILIES",
        "OLLAMA_NUM_GPU",
    ):
        monkeypatch.delenv(var, raising=False)
    return monkeypatch
