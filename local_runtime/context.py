"""
Context composition: turns page/history/bookmark context into prompt text.

Pure functions only; nothing here touches the network or persists state.
"""

from dataclasses import dataclass, replace
from typing import Literal, Optional

from local_runtime.config import CONTEXT_ITEMS_LIMIT, PAGE_CONTENT_LIMIT, TRUNCATION_MARKER
from local_runtime.schema import AIContext, ChatMessage, LinkEntry, PageContext


def truncate_text(text: Optional[str], max_length: int) -> str:
    """Truncate text to max_length characters, marking the cut with an ellipsis."""
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return text[:max_length] + TRUNCATION_MARKER


def _link_lines(entries: list[LinkEntry]) -> str:
    return "\n".join(
        f"- {entry.title or 'Untitled'} ({entry.url})"
        for entry in entries[:CONTEXT_ITEMS_LIMIT]
    )


def build_contextual_system_prompt(
    base: Optional[str],
    context: Optional[AIContext],
) -> str:
    """
    Compose the base instructions with browsing context.

    Sections, in order: base instructions, current page (URL, title,
    selected text, content truncated to 5000 characters), up to 10 recent
    history entries, up to 10 bookmarks. Sections whose data is absent
    are omitted.
    """
    if context is None:
        return base or ""

    parts: list[str] = []
    if base:
        parts.append(base)

    page = context.page
    if page is not None:
        parts.append("\n## Current Page Context")
        if page.url:
            parts.append(f"URL: {page.url}")
        if page.title:
            parts.append(f"Page Title: {page.title}")
        if page.selected_text:
            parts.append(f"\nSelected Text:\n{page.selected_text}")
        if page.content:
            parts.append(f"\nPage Content:\n{truncate_text(page.content, PAGE_CONTENT_LIMIT)}")

    if context.browsing_history:
        parts.append("\n## Recent Browsing History")
        parts.append(_link_lines(context.browsing_history))

    if context.bookmarks:
        parts.append("\n## Bookmarks")
        parts.append(_link_lines(context.bookmarks))

    return "\n".join(parts)


def prepend_context(
    messages: list[ChatMessage],
    context: Optional[AIContext],
) -> list[ChatMessage]:
    """
    Return a copy of messages with the composed context prepended to the
    first user message.

    Context goes into the user turn rather than a system message: some
    vision models fail when a system role is combined with streaming.
    """
    result = list(messages)
    if context is None:
        return result
    composed = build_contextual_system_prompt(None, context)
    if not composed:
        return result
    for i, message in enumerate(result):
        if message.role == "user":
            result[i] = message.model_copy(
                update={"content": f"{composed}\n\n{message.content}"}
            )
            break
    return result


# ─────────────────────────────────────────────────────────────────────
# CONTEXT LIMITS
# ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ContextLimits:
    """How much browsing context to send with a request."""

    max_page_content_length: int
    max_history_items: int
    max_bookmark_items: int
    include_history: bool
    include_bookmarks: bool
    prefer_screenshot_for_vision: bool


DEFAULT_LIMITS = ContextLimits(
    max_page_content_length=2000,  # ~500 tokens
    max_history_items=5,
    max_bookmark_items=3,
    include_history=True,
    include_bookmarks=False,
    prefer_screenshot_for_vision=True,
)

MINIMAL_LIMITS = ContextLimits(
    max_page_content_length=500,
    max_history_items=0,
    max_bookmark_items=0,
    include_history=False,
    include_bookmarks=False,
    prefer_screenshot_for_vision=True,
)

FULL_LIMITS = ContextLimits(
    max_page_content_length=PAGE_CONTENT_LIMIT,
    max_history_items=CONTEXT_ITEMS_LIMIT,
    max_bookmark_items=CONTEXT_ITEMS_LIMIT,
    include_history=True,
    include_bookmarks=True,
    prefer_screenshot_for_vision=False,
)

UseCase = Literal["quick-answer", "deep-analysis", "normal"]


def recommended_limits(
    is_vision_model: bool,
    has_screenshot: bool,
    use_case: UseCase = "normal",
) -> ContextLimits:
    """
    Pick context limits for a model and use case.

    Vision models get almost no text: large text context combined with
    streaming makes them fail server-side.
    """
    if is_vision_model and has_screenshot:
        return replace(MINIMAL_LIMITS, max_page_content_length=100)
    if is_vision_model:
        return replace(MINIMAL_LIMITS, max_page_content_length=300)
    if use_case == "quick-answer":
        return MINIMAL_LIMITS
    if use_case == "deep-analysis":
        return replace(FULL_LIMITS, max_page_content_length=3000)
    return DEFAULT_LIMITS


def _trim_links(entries: list[LinkEntry], count: int) -> list[LinkEntry]:
    # Long query strings in URLs inflate prompts without adding meaning.
    return [
        LinkEntry(title=truncate_text(entry.title, 100), url=truncate_text(entry.url, 200))
        for entry in entries[:count]
    ]


def apply_limits(
    context: AIContext,
    limits: ContextLimits,
    *,
    is_vision_model: bool = False,
    has_screenshot: bool = False,
) -> tuple[AIContext, int]:
    """
    Trim a context to the given limits.

    Returns the trimmed context and a rough token estimate
    (~4 characters per token, ~60 tokens per link entry).
    """
    page = context.page or PageContext()
    if is_vision_model and has_screenshot and limits.prefer_screenshot_for_vision:
        content = truncate_text(page.title, 200)
    else:
        content = truncate_text(page.content, limits.max_page_content_length)

    trimmed_page = PageContext(
        url=page.url,
        title=page.title,
        content=content or None,
        selected_text=truncate_text(page.selected_text, 500) or None,
    )
    token_estimate = -(-sum(
        len(value or "")
        for value in (trimmed_page.url, trimmed_page.title, trimmed_page.content, trimmed_page.selected_text)
    ) // 4)

    history = None
    if limits.include_history and limits.max_history_items > 0 and context.browsing_history:
        history = _trim_links(context.browsing_history, limits.max_history_items)
        token_estimate += len(history) * 60

    bookmarks = None
    if limits.include_bookmarks and limits.max_bookmark_items > 0 and context.bookmarks:
        bookmarks = _trim_links(context.bookmarks, limits.max_bookmark_items)
        token_estimate += len(bookmarks) * 60

    trimmed = AIContext(
        page=trimmed_page if context.page is not None else None,
        browsing_history=history,
        bookmarks=bookmarks,
    )
    return trimmed, token_estimate
