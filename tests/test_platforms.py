"""Tests for local_runtime.platforms process control strategies."""

import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from local_runtime.errors import ExecutableNotFound, UnsupportedPlatform
from local_runtime.platforms import (
    ProcessControl,
    PosixProcessControl,
    WindowsProcessControl,
    default_process_control,
)


class TestDefaultProcessControl:

    def test_platform_selection(self):
        assert isinstance(default_process_control("win32"), WindowsProcessControl)
        assert isinstance(default_process_control("darwin"), PosixProcessControl)
        assert isinstance(default_process_control("linux"), PosixProcessControl)

    def test_unsupported_platform(self):
        with pytest.raises(UnsupportedPlatform, match="sunos5"):
            default_process_control("sunos5")

    def test_incomplete_strategy_fails_at_construction(self):
        class StopOnly(ProcessControl):
            async def terminate(self, proc):
                pass

        with pytest.raises(TypeError, match="force_kill"):
            StopOnly()


class TestExecutablePath:

    def test_darwin_bundle_layout(self, clean_env, tmp_path):
        exe = tmp_path / "bin" / "darwin" / "Ollama.app" / "Contents" / "Resources" / "ollama"
        exe.parent.mkdir(parents=True)
        exe.write_text("")

        assert PosixProcessControl("darwin").executable_path(tmp_path) == exe

    def test_linux_layout(self, clean_env, tmp_path):
        exe = tmp_path / "bin" / "linux" / "ollama"
        exe.parent.mkdir(parents=True)
        exe.write_text("")

        assert PosixProcessControl("linux").executable_path(tmp_path) == exe

    def test_windows_layout(self, clean_env, tmp_path):
        exe = tmp_path / "bin" / "win32" / "ollama.exe"
        exe.parent.mkdir(parents=True)
        exe.write_text("")

        assert WindowsProcessControl().executable_path(tmp_path) == exe

    def test_missing_executable(self, clean_env, tmp_path):
        with pytest.raises(ExecutableNotFound) as exc_info:
            PosixProcessControl("linux").executable_path(tmp_path)
        assert exc_info.value.path == tmp_path / "bin" / "linux" / "ollama"

    def test_environment_override(self, clean_env, tmp_path):
        exe = tmp_path / "custom-ollama"
        exe.write_text("")
        clean_env.setenv("LOCAL_RUNTIME_EXECUTABLE", str(exe))

        assert PosixProcessControl("linux").executable_path(tmp_path / "elsewhere") == exe


class TestBuildEnvironment:

    def test_gpu_offload_on_by_default(self, tmp_path):
        env = PosixProcessControl("linux").build_environment({"HOME": "/home/u"}, tmp_path / "ollama")

        assert env["OLLAMA_NUM_GPU"] == "999"
        assert env["OLLAMA_NUM_PARALLEL"] == "1"
        assert env["OLLAMA_MAX_LOADED_MODELS"] == "1"
        assert env["HOME"] == "/home/u"

    def test_explicit_gpu_layers_respected(self, tmp_path):
        env = PosixProcessControl("linux").build_environment({"OLLAMA_NUM_GPU": "0"}, tmp_path / "ollama")
        assert env["OLLAMA_NUM_GPU"] == "0"

    def test_windows_prepends_bundled_libraries(self, tmp_path):
        exe = tmp_path / "win32" / "ollama.exe"

        env = WindowsProcessControl().build_environment({"PATH": r"C:\Windows"}, exe)

        lib_dir = str(exe.parent / "lib" / "ollama")
        assert env["PATH"].startswith(lib_dir + ";")
        assert env["PATH"].endswith(r"C:\Windows")


class TestPosixProcessControl:

    @pytest.mark.asyncio
    async def test_find_server_pids_excludes_self(self):
        output = f"123\n{os.getpid()}\n456\n"
        with patch("local_runtime.platforms.run_command", AsyncMock(return_value=(0, output))) as run:
            pids = await PosixProcessControl("linux").find_server_pids()

        assert pids == [123, 456]
        run.assert_awaited_once_with("pgrep", "-x", "ollama")

    @pytest.mark.asyncio
    async def test_find_server_pids_none_running(self):
        with patch("local_runtime.platforms.run_command", AsyncMock(return_value=(1, ""))):
            assert await PosixProcessControl("linux").find_server_pids() == []

    @pytest.mark.asyncio
    async def test_process_stats_parses_ps(self):
        with patch("local_runtime.platforms.run_command", AsyncMock(return_value=(0, "  2048  3.5\n"))):
            stats = await PosixProcessControl("linux").process_stats(123)

        assert stats == (2048 * 1024, 3.5)

    @pytest.mark.asyncio
    async def test_process_stats_missing_process(self):
        with patch("local_runtime.platforms.run_command", AsyncMock(return_value=(1, ""))):
            assert await PosixProcessControl("linux").process_stats(123) is None

    @pytest.mark.asyncio
    async def test_terminate_and_force_kill_signal_process(self):
        proc = MagicMock()
        control = PosixProcessControl("linux")

        await control.terminate(proc)
        await control.force_kill(proc)

        proc.terminate.assert_called_once()
        proc.kill.assert_called_once()


class TestWindowsProcessControl:

    TASKLIST_OUTPUT = (
        '"ollama.exe","1234","Console","1","45,312 K"\r\n'
        '"ollama.exe","5678","Console","1","1,024 K"\r\n'
    )

    @pytest.mark.asyncio
    async def test_find_server_pids_parses_csv(self):
        with patch("local_runtime.platforms.run_command", AsyncMock(return_value=(0, self.TASKLIST_OUTPUT))):
            pids = await WindowsProcessControl().find_server_pids()

        assert pids == [1234, 5678]

    @pytest.mark.asyncio
    async def test_no_match_message_yields_no_pids(self):
        output = "INFO: No tasks are running which match the specified criteria.\r\n"
        with patch("local_runtime.platforms.run_command", AsyncMock(return_value=(0, output))):
            assert await WindowsProcessControl().find_server_pids() == []

    @pytest.mark.asyncio
    async def test_process_stats_reads_memory_column(self):
        with patch("local_runtime.platforms.run_command", AsyncMock(return_value=(0, self.TASKLIST_OUTPUT))):
            stats = await WindowsProcessControl().process_stats(1234)

        assert stats == (45312 * 1024, 0.0)

    @pytest.mark.asyncio
    async def test_terminate_kills_process_tree(self):
        with patch("local_runtime.platforms.run_command", AsyncMock(return_value=(0, ""))) as run:
            await WindowsProcessControl().terminate(MagicMock(pid=1234))

        run.assert_awaited_once_with("taskkill", "/F", "/IM", "ollama.exe", "/T")

    @pytest.mark.asyncio
    async def test_kill_pid_failure_raises(self):
        with patch("local_runtime.platforms.run_command", AsyncMock(return_value=(128, ""))):
            with pytest.raises(OSError):
                await WindowsProcessControl().kill_pid(1234)
