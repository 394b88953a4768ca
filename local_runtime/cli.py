"""CLI entry point for local-runtime.

Drives the supervisor, model catalog and completion client from a
terminal. Streamed output goes to stdout; progress and errors to stderr.

Entry point:
    local-runtime status
    local-runtime serve
    local-runtime models [--json]
    local-runtime pull <name> [--retries N]
    local-runtime chat <model> <prompt> [--image PATH]
"""

import argparse
import asyncio
import base64
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from local_runtime.errors import RuntimeClientError
from local_runtime.schema import ChatMessage, ChatRequest, GenerateRequest, ThinkingChunk, ToolCallBatch
from local_runtime.service import LocalRuntime

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────
# ARGUMENT PARSING
# ─────────────────────────────────────────────────────────────────────


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="local-runtime",
        description="Supervise and talk to a local model server.",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable debug logging"
    )
    parser.add_argument("--url", default=None, help="Server base URL (default: LOCAL_RUNTIME_URL)")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("status", help="Show server health and process stats")
    sub.add_parser("serve", help="Start the server and keep it running until interrupted")
    sub.add_parser("cleanup", help="Kill server processes left by a previous crash")

    models_p = sub.add_parser("models", help="List installed models")
    models_p.add_argument(
        "--json", action="store_true", dest="json_output", help="Full JSON output"
    )

    pull_p = sub.add_parser("pull", help="Download a model")
    pull_p.add_argument("name", help="Model name, e.g. llama3.2:3b")
    pull_p.add_argument("--retries", type=int, default=None, help="Max retries on transient failures")

    rm_p = sub.add_parser("rm", help="Delete an installed model")
    rm_p.add_argument("name")

    gen_p = sub.add_parser("generate", help="Stream a single-prompt completion")
    gen_p.add_argument("model")
    gen_p.add_argument("prompt")
    gen_p.add_argument("--system", default=None, help="System prompt")
    gen_p.add_argument("--image", action="append", default=[], help="Image file (repeatable)")

    chat_p = sub.add_parser("chat", help="Stream a one-turn chat")
    chat_p.add_argument("model")
    chat_p.add_argument("prompt")
    chat_p.add_argument("--image", action="append", default=[], help="Image file (repeatable)")

    return parser


def _encode_images(paths: list[str]) -> Optional[list[str]]:
    if not paths:
        return None
    return [base64.b64encode(Path(p).read_bytes()).decode("ascii") for p in paths]


# ─────────────────────────────────────────────────────────────────────
# COMMANDS
# ─────────────────────────────────────────────────────────────────────


async def _cmd_status(runtime: LocalRuntime) -> int:
    """Print service status as JSON. Exit code 0 when healthy."""
    status = await runtime.supervisor.service_status()
    json.dump(status.model_dump(mode="json"), sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0 if status.is_running else 1


async def _cmd_serve(runtime: LocalRuntime) -> int:
    await runtime.startup()
    print(f"Server running at {runtime.http.base_url} (Ctrl-C to stop)", file=sys.stderr)
    await asyncio.Event().wait()
    return 0


async def _cmd_cleanup(runtime: LocalRuntime) -> int:
    killed = await runtime.supervisor.kill_orphan_processes()
    print(f"Killed {killed} orphan process(es)", file=sys.stderr)
    return 0


async def _cmd_models(runtime: LocalRuntime, json_output: bool = False) -> int:
    """List installed models. Returns exit code."""
    models = await runtime.catalog.list_models()

    if json_output:
        json.dump([m.model_dump() for m in models], sys.stdout, indent=2)
        sys.stdout.write("\n")
    else:
        for model in models:
            print(model.name)
    return 0


async def _cmd_pull(runtime: LocalRuntime, name: str, retries: Optional[int] = None) -> int:
    last_status = None
    stream = runtime.catalog.pull_model(name, max_retries=retries)
    try:
        async for progress in stream:
            if progress.status == "retrying":
                print(progress.error, file=sys.stderr)
                continue
            percent = progress.percent
            if percent is not None:
                print(f"{progress.status} {percent:.0f}%", file=sys.stderr)
            elif progress.status != last_status:
                print(progress.status, file=sys.stderr)
            last_status = progress.status
    finally:
        await stream.aclose()
    return 0


async def _cmd_rm(runtime: LocalRuntime, name: str) -> int:
    await runtime.catalog.delete_model(name)
    print(f"Deleted {name}", file=sys.stderr)
    return 0


async def _cmd_generate(
    runtime: LocalRuntime,
    model: str,
    prompt: str,
    system: Optional[str] = None,
    images: Optional[list[str]] = None,
) -> int:
    request = GenerateRequest(model=model, prompt=prompt, system=system, images=images)
    async for text in runtime.completion.generate(request):
        sys.stdout.write(text)
        sys.stdout.flush()
    sys.stdout.write("\n")
    return 0


async def _cmd_chat(
    runtime: LocalRuntime,
    model: str,
    prompt: str,
    images: Optional[list[str]] = None,
) -> int:
    request = ChatRequest(
        model=model,
        messages=[ChatMessage(role="user", content=prompt, images=images)],
    )
    async for event in runtime.completion.chat(request):
        if isinstance(event, ToolCallBatch):
            sys.stdout.write(f"\n**Tool Call:** {json.dumps(event.tool_calls)}\n")
        elif isinstance(event, ThinkingChunk):
            sys.stderr.write(event.content)
        else:
            sys.stdout.write(event)
        sys.stdout.flush()
    sys.stdout.write("\n")
    return 0


async def _run(args: argparse.Namespace) -> int:
    async with LocalRuntime(args.url) as runtime:
        try:
            if args.command == "status":
                return await _cmd_status(runtime)
            if args.command == "serve":
                return await _cmd_serve(runtime)
            if args.command == "cleanup":
                return await _cmd_cleanup(runtime)
            if args.command == "models":
                return await _cmd_models(runtime, json_output=args.json_output)
            if args.command == "pull":
                return await _cmd_pull(runtime, args.name, retries=args.retries)
            if args.command == "rm":
                return await _cmd_rm(runtime, args.name)
            if args.command == "generate":
                return await _cmd_generate(
                    runtime, args.model, args.prompt,
                    system=args.system, images=_encode_images(args.image),
                )
            if args.command == "chat":
                return await _cmd_chat(
                    runtime, args.model, args.prompt, images=_encode_images(args.image),
                )
        except RuntimeClientError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        except OSError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
    return 1


# ─────────────────────────────────────────────────────────────────────
# ENTRY POINT
# ─────────────────────────────────────────────────────────────────────


def main():
    parser = _build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Logging
    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(name)s %(message)s", stream=sys.stderr)

    load_dotenv()

    try:
        code = asyncio.run(_run(args))
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
