"""
Error taxonomy, retry classification and user-facing failure messages.

Four classes of failure:
- Retryable-transient: connection resets, timeouts, refused connections,
  DNS failures, broken pipes, HTTP 408/429/5xx, pull stalls.
- Fatal-configuration: missing executable, unsupported platform.
- Fatal-protocol: non-200 on chat/generate, pull record with status=error.
- Catalog failures surfaced directly to the caller.
"""

import errno

import httpx

from local_runtime.config import PULL_BACKOFF_BASE_SECONDS, PULL_BACKOFF_MAX_SECONDS


class RuntimeClientError(Exception):
    """Base class for all local runtime errors."""

    retryable: bool = False


# ─────────────────────────────────────────────────────────────────────
# SUPERVISOR
# ─────────────────────────────────────────────────────────────────────

class ExecutableNotFound(RuntimeClientError):
    def __init__(self, path):
        self.path = path
        super().__init__(
            f"Bundled server executable not found at {path}. Please check the installation."
        )


class UnsupportedPlatform(RuntimeClientError):
    def __init__(self, platform: str):
        self.platform = platform
        super().__init__(f"Unsupported platform: {platform}")


class SpawnFailed(RuntimeClientError):
    pass


class StartTimeout(RuntimeClientError):
    pass


class SupervisorBusy(RuntimeClientError):
    pass


# ─────────────────────────────────────────────────────────────────────
# CATALOG
# ─────────────────────────────────────────────────────────────────────

class CatalogUnavailable(RuntimeClientError):
    pass


class DeleteFailed(RuntimeClientError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Failed to delete model {name}")


class AlreadyPulling(RuntimeClientError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Model {name} is already being downloaded")


class PullStalled(RuntimeClientError):
    retryable = True

    def __init__(self, seconds: float):
        self.seconds = seconds
        super().__init__(f"Download stalled - no progress for {seconds:g}s")


class UnexpectedStreamEnd(RuntimeClientError):
    retryable = True

    def __init__(self, message: str = "Download stream ended unexpectedly"):
        super().__init__(message)


class ServerReportedError(RuntimeClientError):
    """A stream record carried status=error."""


class PullFailed(RuntimeClientError):
    def __init__(self, name: str, message: str):
        self.name = name
        super().__init__(message)


# ─────────────────────────────────────────────────────────────────────
# COMPLETION
# ─────────────────────────────────────────────────────────────────────

class CompletionError(RuntimeClientError):
    pass


# ─────────────────────────────────────────────────────────────────────
# CLASSIFICATION
# ─────────────────────────────────────────────────────────────────────

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
RETRYABLE_ERRNOS = frozenset({
    errno.ECONNRESET,
    errno.ETIMEDOUT,
    errno.ECONNREFUSED,
    errno.EPIPE,
})
_RETRYABLE_PATTERNS = (
    "network",
    "timeout",
    "timed out",
    "socket",
    "aborted",
    "connection reset",
    "connection refused",
    "broken pipe",
    "name resolution",
)


def is_retryable_error(exception: BaseException) -> bool:
    """
    Determine if an exception is worth another attempt.

    Our own errors carry an explicit flag. Transport errors from httpx and
    HTTP 408/429/5xx are transient. Anything else falls back to matching
    the message against known network failure wording.
    """
    if isinstance(exception, RuntimeClientError):
        return exception.retryable
    if isinstance(exception, httpx.HTTPStatusError):
        status = exception.response.status_code
        return status in RETRYABLE_STATUS_CODES or status >= 500
    if isinstance(exception, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    if isinstance(exception, OSError) and exception.errno in RETRYABLE_ERRNOS:
        return True
    error_msg = str(exception).lower()
    return any(pattern in error_msg for pattern in _RETRYABLE_PATTERNS)


def pull_backoff_seconds(attempt: int) -> float:
    """Capped exponential delay before retry number ``attempt`` (1-based): 2s, 4s, 8s."""
    return min(PULL_BACKOFF_BASE_SECONDS * 2 ** (attempt - 1), PULL_BACKOFF_MAX_SECONDS)


def error_code(exception: BaseException) -> str:
    """Short error code in the style of socket errno names."""
    if isinstance(exception, PullStalled):
        return "STALLED"
    if isinstance(exception, (httpx.ConnectTimeout, httpx.ReadTimeout, httpx.WriteTimeout, httpx.PoolTimeout)):
        return "ETIMEDOUT"
    if isinstance(exception, httpx.ConnectError):
        return "ECONNREFUSED"
    if isinstance(exception, (httpx.ReadError, httpx.RemoteProtocolError)):
        return "ECONNRESET"
    if isinstance(exception, httpx.WriteError):
        return "EPIPE"
    if isinstance(exception, httpx.HTTPStatusError):
        return f"HTTP_{exception.response.status_code}"
    if isinstance(exception, OSError) and exception.errno is not None:
        return errno.errorcode.get(exception.errno, "UNKNOWN")
    return "UNKNOWN"


def pull_failure_message(name: str, exception: BaseException) -> str:
    """User-facing message for a pull that ran out of attempts or failed fatally."""
    code = error_code(exception)
    message = f"Failed to download model {name}"
    if code == "ECONNRESET":
        return message + ": Connection was reset. Please check your internet connection."
    if code == "ETIMEDOUT":
        return message + ": Connection timed out. Please check your internet connection."
    if code == "ECONNREFUSED":
        return message + ": Cannot connect to the local runtime server."
    if code == "STALLED" or "stalled" in str(exception).lower():
        return message + ": Download stalled. Please try again."
    return message + f": {str(exception) or type(exception).__name__}"
