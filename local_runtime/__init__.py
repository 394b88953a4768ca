"""
local-runtime: supervisor and streaming client for a local model server.
"""

from local_runtime.catalog import ModelCatalogClient, PullStream
from local_runtime.completion import ActiveRequest, StreamingCompletionClient
from local_runtime.context import build_contextual_system_prompt, prepend_context
from local_runtime.errors import RuntimeClientError
from local_runtime.schema import (
    AIContext,
    ChatMessage,
    ChatRequest,
    GenerateRequest,
    InstalledModel,
    LinkEntry,
    PageContext,
    PullProgress,
    ServerState,
    ThinkingChunk,
    ToolCallBatch,
)
from local_runtime.service import LocalRuntime
from local_runtime.supervisor import ProcessSupervisor

__all__ = [
    "AIContext",
    "ActiveRequest",
    "ChatMessage",
    "ChatRequest",
    "GenerateRequest",
    "InstalledModel",
    "LinkEntry",
    "LocalRuntime",
    "ModelCatalogClient",
    "PageContext",
    "ProcessSupervisor",
    "PullProgress",
    "PullStream",
    "RuntimeClientError",
    "ServerState",
    "StreamingCompletionClient",
    "ThinkingChunk",
    "ToolCallBatch",
    "build_contextual_system_prompt",
    "prepend_context",
]
