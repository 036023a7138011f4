#!/usr/bin/env python3
"""
Codeloop command line entry point.

Runs one request through the agent loop against a local workspace,
printing streamed text and asking on the terminal before any tool
call that needs approval.
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys

from adapters import ProtocolAdapter
from agent import AgentEvent, AgentLoop, ToolCall
from cancellation import AbortController
from config import app_config, llm_config, setup_logging

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a coding assistant working inside the user's project directory. "
    "Use the available tools to inspect and change files, and keep answers concise."
)


async def _print_event(event: AgentEvent) -> None:
    if event.type == "text":
        sys.stdout.write(event.content)
        sys.stdout.flush()
    elif event.type == "tool_result":
        data = event.data or {}
        print(f"\n[{data.get('name', 'tool')}] {data.get('status', '')}")
    elif event.type == "compression":
        print(f"\n[context] {event.content}")
    elif event.type == "error":
        print(f"\nError: {event.content}", file=sys.stderr)


async def _ask_approval(call: ToolCall) -> bool:
    args = json.dumps(call.arguments, indent=2)[:2000]
    print(f"\n{call.name} wants to run with:\n{args}")
    answer = await asyncio.to_thread(input, "Allow? [y/N] ")
    return answer.strip().lower() in ("y", "yes")


async def run_once(prompt: str, working_dir: str, model: str = "") -> int:
    adapter = ProtocolAdapter()
    if not adapter.has_credentials():
        print("Error: LLM_API_KEY and LLM_BASE_URL must be set", file=sys.stderr)
        return 1

    loop = AgentLoop(
        adapter,
        working_directory=working_dir,
        approval_handler=_ask_approval,
        on_event=_print_event,
    )
    controller = AbortController()
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, controller.abort, "Interrupted")
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGINT handler not available on this platform")

    result = await loop.run(prompt, SYSTEM_PROMPT, model=model or None, signal=controller.signal)
    print()
    logger.info(f"Run finished: reason={result.reason.value} iterations={result.iterations}")
    return 0 if result.error is None else 2


def main():
    parser = argparse.ArgumentParser(
        description=f"{app_config.title} - coding agent execution engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py "add a docstring to utils.py"
  python main.py -d ~/my-project "run the tests and fix failures"
        """,
    )
    parser.add_argument("prompt", help="Request to send to the agent")
    parser.add_argument(
        "-d", "--directory",
        default=app_config.working_directory,
        help="Working directory for the agent (default: current directory)",
    )
    parser.add_argument("-m", "--model", default="", help=f"Model name (default: {llm_config.model})")
    parser.add_argument("--log-level", default="", help="Override LOG_LEVEL")

    args = parser.parse_args()
    setup_logging(args.log_level)

    working_dir = os.path.abspath(args.directory)
    if not os.path.isdir(working_dir):
        print(f"Error: {working_dir} is not a directory")
        sys.exit(1)

    sys.exit(asyncio.run(run_once(args.prompt, working_dir, args.model)))


if __name__ == "__main__":
    main()
