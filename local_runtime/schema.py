"""
Pydantic models for the local runtime API surface.

Wire field names follow the server's JSON; Python attribute names are
snake_case with aliases where the two differ.
"""

from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ServerState(str, Enum):
    """Lifecycle of the supervised server process."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


# ─────────────────────────────────────────────────────────────────────
# CATALOG
# ─────────────────────────────────────────────────────────────────────

class InstalledModel(BaseModel):
    """Snapshot of one installed model as reported by /api/tags."""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    size_bytes: int = Field(default=0, alias="size")
    digest: str = ""
    modified_at: str = ""


class PullProgress(BaseModel):
    """One progress record from a model pull stream."""
    model_config = ConfigDict(populate_by_name=True)

    status: str
    completed_bytes: Optional[int] = Field(default=None, alias="completed")
    total_bytes: Optional[int] = Field(default=None, alias="total")
    digest: Optional[str] = None  # content layer within a multi-layer download
    error: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.status in ("success", "complete")

    @property
    def is_error(self) -> bool:
        return self.status == "error"

    @property
    def percent(self) -> Optional[float]:
        """Layer progress as 0-100, or None when totals are unknown."""
        if not self.total_bytes or self.completed_bytes is None:
            return None
        return min(100.0, self.completed_bytes / self.total_bytes * 100)


# ─────────────────────────────────────────────────────────────────────
# CONTEXT
# ─────────────────────────────────────────────────────────────────────

class PageContext(BaseModel):
    """Current page as supplied by the page-context provider."""
    url: Optional[str] = None
    title: Optional[str] = None
    content: Optional[str] = None
    selected_text: Optional[str] = None


class LinkEntry(BaseModel):
    """A history or bookmark entry."""
    model_config = ConfigDict(extra="allow")

    title: Optional[str] = None
    url: str = ""


class AIContext(BaseModel):
    """Per-request browsing context. Never persisted here."""
    page: Optional[PageContext] = None
    browsing_history: Optional[list[LinkEntry]] = None
    bookmarks: Optional[list[LinkEntry]] = None


# ─────────────────────────────────────────────────────────────────────
# COMPLETION
# ─────────────────────────────────────────────────────────────────────

class ChatMessage(BaseModel):
    """A single chat message. Images are base64 payloads."""
    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant", "tool"]
    content: str
    images: Optional[list[str]] = None

    def has_images(self) -> bool:
        return bool(self.images)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class GenerateRequest(BaseModel):
    model: str
    prompt: str
    images: Optional[list[str]] = None
    stream: bool = True
    system: Optional[str] = None
    context: Optional[AIContext] = None


class ChatRequest(BaseModel):
    model: str
    messages: list[ChatMessage]
    stream: bool = True
    context: Optional[AIContext] = None
    tools: Optional[list[dict[str, Any]]] = None


class ToolCallBatch(BaseModel):
    """Tool calls emitted by the model in one stream record."""
    tool_calls: list[dict[str, Any]]


class ThinkingChunk(BaseModel):
    """Reasoning text streamed separately from the answer."""
    content: str


ChatEvent = str | ToolCallBatch | ThinkingChunk


# ─────────────────────────────────────────────────────────────────────
# SERVICE STATUS
# ─────────────────────────────────────────────────────────────────────

class ProcessStats(BaseModel):
    pid: int
    rss_bytes: int = 0
    cpu_percent: float = 0.0
    uptime_seconds: int = 0


class ServiceStatus(BaseModel):
    is_running: bool
    state: ServerState
    process_stats: Optional[ProcessStats] = None
    error: Optional[str] = None
