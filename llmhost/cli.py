"""CLI entry point for llmhost.

Manages local LLM services and talks to their models from the terminal,
using the same tool layer an embedding application would.

Entry point:
    llmhost status
    llmhost boot
    llmhost models [--json]
    llmhost ps [--json]
    llmhost chat <model> <prompt> [--think] [--system <text>]
    llmhost pull <tag>

Every command tears down before exiting: in-flight prompts are aborted and
services started by this process are stopped (except after `boot`).
"""

import argparse
import asyncio
import json
import logging
import sys

from llmhost.backends.ollama import OLLAMA_NAME
from llmhost.errors import LLMHostError

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────
# ARGUMENT PARSING
# ─────────────────────────────────────────────────────────────────────


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="llmhost",
        description="Manage local LLM services and prompt their models.",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable debug logging"
    )
    parser.add_argument(
        "--backend", default=OLLAMA_NAME, help=f"Backend name (default: {OLLAMA_NAME})"
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("status", help="Check whether the backend service is running")
    sub.add_parser("boot", help="Start the backend service and leave it running")
    sub.add_parser("shutdown", help="Stop the backend service if this process started it")

    models_p = sub.add_parser("models", help="List available models")
    models_p.add_argument("--json", action="store_true", dest="json_output", help="JSON output")

    ps_p = sub.add_parser("ps", help="List loaded models")
    ps_p.add_argument("--json", action="store_true", dest="json_output", help="JSON output")

    chat_p = sub.add_parser("chat", help="Send one prompt and stream the answer")
    chat_p.add_argument("model", help="Model name, as listed by `models`")
    chat_p.add_argument("prompt", help="User message")
    chat_p.add_argument("--think", action="store_true", help="Ask the model to show its reasoning")
    chat_p.add_argument("--system", default=None, help="System message prepended to the chat")

    pull_p = sub.add_parser("pull", help="Download a model (Ollama only)")
    pull_p.add_argument("tag", help="Model tag, e.g. llama3:8b")

    return parser


# ─────────────────────────────────────────────────────────────────────
# COMMANDS
# ─────────────────────────────────────────────────────────────────────


async def _cmd_status(backend: str) -> int:
    from llmhost.tools import is_backend_running

    running = await is_backend_running(backend)
    print(f"{backend}: {'running' if running else 'stopped'}")
    return 0


async def _cmd_boot(backend: str) -> int:
    from llmhost.registry import get_registry
    from llmhost.tools import boot_backend

    await boot_backend(backend)
    instance = get_registry().get(backend)
    detach = getattr(instance, "detach_process", None)
    if detach is not None:
        proc = detach()
        if proc is not None:
            print(f"{backend}: started (pid {proc.pid})")
            return 0
    print(f"{backend}: running")
    return 0


async def _cmd_shutdown(backend: str) -> int:
    from llmhost.tools import get_backend_state, shutdown_backend

    await shutdown_backend(backend)
    print(f"{backend}: {get_backend_state(backend).value}")
    return 0


async def _cmd_models(backend: str, json_output: bool = False) -> int:
    """List available models. Returns exit code."""
    from llmhost.tools import refresh_models

    descriptors = await refresh_models(backend)

    if json_output:
        json.dump([d.model_dump(mode="json") for d in descriptors], sys.stdout, indent=2)
        sys.stdout.write("\n")
    else:
        for d in descriptors:
            caps = ",".join(sorted(c.value for c in d.capabilities))
            print(f"{d.name}\t{d.size / 1e9:.1f} GB\t{caps}")

    return 0


async def _cmd_ps(backend: str, json_output: bool = False) -> int:
    from llmhost.tools import list_running_models

    snapshots = await list_running_models(backend)

    if json_output:
        json.dump([s.model_dump(mode="json") for s in snapshots], sys.stdout, indent=2)
        sys.stdout.write("\n")
    else:
        for s in snapshots:
            print(f"{s.model_name}\t{s.vram_bytes / 1e9:.1f} GB\tuntil {s.expires_at.isoformat()}")

    return 0


async def _cmd_chat(backend: str, model: str, prompt: str, think: bool, system_text) -> int:
    from llmhost import chat
    from llmhost.tools import prompt_model, refresh_models, wait_prompt

    await refresh_models(backend)

    history = [chat.system(system_text)] if system_text else []
    delivered = []

    async def sink(event) -> None:
        if event.is_stop:
            sys.stdout.write("\n")
            delivered.append(event)
            return
        message = event.data.message
        if message.thoughts:
            sys.stderr.write(message.thoughts)
            sys.stderr.flush()
        sys.stdout.write(message.content)
        sys.stdout.flush()

    handle = await prompt_model(backend, model, chat.user(prompt), history, think=think, sink=sink)
    await wait_prompt(handle)
    # No StopEvent delivered means the output went away mid-stream
    return 0 if delivered else 1


async def _cmd_pull(backend: str, tag: str) -> int:
    from llmhost.tools import pull_ollama_model, wait_prompt

    delivered = []
    failed = []

    async def sink(event) -> None:
        if event.is_stop:
            delivered.append(event)
            return
        progress = event.data
        if progress.error:
            failed.append(progress.error)
            print(f"error: {progress.error}", file=sys.stderr)
        elif progress.total:
            pct = 100 * (progress.completed or 0) / progress.total
            print(f"{progress.status} {pct:.0f}%", file=sys.stderr)
        else:
            print(progress.status, file=sys.stderr)

    handle = await pull_ollama_model(backend, tag, sink)
    await wait_prompt(handle)
    return 1 if failed or not delivered else 0


async def _run(args: argparse.Namespace) -> int:
    from llmhost.registry import build_registry, clear_registry, get_registry, set_registry
    from llmhost.tools import abort_all_prompts

    set_registry(build_registry())
    try:
        if args.command == "status":
            return await _cmd_status(args.backend)
        if args.command == "boot":
            return await _cmd_boot(args.backend)
        if args.command == "shutdown":
            return await _cmd_shutdown(args.backend)
        if args.command == "models":
            return await _cmd_models(args.backend, json_output=args.json_output)
        if args.command == "ps":
            return await _cmd_ps(args.backend, json_output=args.json_output)
        if args.command == "chat":
            return await _cmd_chat(args.backend, args.model, args.prompt, args.think, args.system)
        if args.command == "pull":
            return await _cmd_pull(args.backend, args.tag)
        return 1
    except LLMHostError as e:
        print(f"{e.kind}: {e.message}", file=sys.stderr)
        return 1
    finally:
        await abort_all_prompts()
        await get_registry().aclose()
        clear_registry()


def main():
    parser = _build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Logging
    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(name)s %(message)s", stream=sys.stderr)

    # Load env
    from dotenv import load_dotenv
    load_dotenv()

    try:
        code = asyncio.run(_run(args))
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
