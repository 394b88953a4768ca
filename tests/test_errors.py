"""Tests for local_runtime.errors: retry classification and failure messages."""

import errno

import httpx
import pytest

from local_runtime.errors import (
    CompletionError,
    ExecutableNotFound,
    PullStalled,
    ServerReportedError,
    UnexpectedStreamEnd,
    UnsupportedPlatform,
    error_code,
    is_retryable_error,
    pull_backoff_seconds,
    pull_failure_message,
)


def status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "http://127.0.0.1:11434/api/pull")
    response = httpx.Response(code, request=request)
    return httpx.HTTPStatusError(f"HTTP {code}", request=request, response=response)


class TestIsRetryableError:
    """Transient failures retry; configuration and protocol failures do not."""

    @pytest.mark.parametrize("exc", [
        PullStalled(120),
        UnexpectedStreamEnd(),
        httpx.ConnectError("connection refused"),
        httpx.ReadTimeout("timed out"),
        httpx.RemoteProtocolError("peer closed connection"),
        status_error(408),
        status_error(429),
        status_error(500),
        status_error(503),
        OSError(errno.ECONNRESET, "Connection reset by peer"),
        RuntimeError("socket hang up"),
        RuntimeError("Network is unreachable"),
        RuntimeError("request aborted"),
    ])
    def test_retryable(self, exc):
        assert is_retryable_error(exc) is True

    @pytest.mark.parametrize("exc", [
        ServerReportedError("pull model manifest: file does not exist"),
        CompletionError("HTTP 400: bad request"),
        ExecutableNotFound("/opt/ollama"),
        UnsupportedPlatform("sunos5"),
        status_error(404),
        ValueError("invalid model name"),
    ])
    def test_not_retryable(self, exc):
        assert is_retryable_error(exc) is False

    def test_own_errors_ignore_message_keywords(self):
        # A fatal server error mentioning "network" is still fatal
        assert is_retryable_error(ServerReportedError("network config invalid")) is False


class TestPullBackoff:

    def test_exponential_then_capped(self):
        assert [pull_backoff_seconds(n) for n in (1, 2, 3, 4, 5)] == [2, 4, 8, 8, 8]


class TestErrorCode:

    def test_codes(self):
        assert error_code(PullStalled(120)) == "STALLED"
        assert error_code(httpx.ReadTimeout("timed out")) == "ETIMEDOUT"
        assert error_code(httpx.ConnectError("refused")) == "ECONNREFUSED"
        assert error_code(httpx.ReadError("reset")) == "ECONNRESET"
        assert error_code(status_error(502)) == "HTTP_502"
        assert error_code(OSError(errno.EPIPE, "Broken pipe")) == "EPIPE"
        assert error_code(ValueError("x")) == "UNKNOWN"


class TestPullFailureMessage:
    """User-facing messages always name the model."""

    def test_stall(self):
        message = pull_failure_message("llama3.2:3b", PullStalled(120))
        assert message == "Failed to download model llama3.2:3b: Download stalled. Please try again."

    def test_connection_reset(self):
        message = pull_failure_message("m", httpx.ReadError("reset"))
        assert "Connection was reset" in message

    def test_timeout(self):
        message = pull_failure_message("m", httpx.ConnectTimeout("timed out"))
        assert "Connection timed out" in message

    def test_refused(self):
        message = pull_failure_message("m", httpx.ConnectError("refused"))
        assert "Cannot connect" in message

    def test_server_error_text_included(self):
        message = pull_failure_message("m", ServerReportedError("file does not exist"))
        assert message == "Failed to download model m: file does not exist"

    def test_empty_message_falls_back_to_type(self):
        message = pull_failure_message("m", UnexpectedStreamEnd(""))
        assert message == "Failed to download model m: UnexpectedStreamEnd"
