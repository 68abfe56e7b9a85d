"""Command-line entry point: send one prompt, stream the answer.

    $ OPENAI_API_KEY=... python -m switchboard "What time is it in UTC?" --demo-tools
    $ python -m switchboard "hello" --provider ollama --model llama3.1
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timedelta, timezone

from switchboard.errors import SwitchboardError
from switchboard.log import configure_logging
from switchboard.message import system, user
from switchboard.pricing import format_cost
from switchboard.runner import orchestrate
from switchboard.settings import Settings
from switchboard.tools import tool


@tool
def current_time(tz_offset_hours: int = 0):
    """Return the current date and time.

    Args:
        tz_offset_hours: Offset from UTC in whole hours.
    """
    now = datetime.now(timezone(timedelta(hours=tz_offset_hours)))
    return now.isoformat(timespec="seconds")


def _write(chunk: str) -> None:
    sys.stdout.write(chunk)
    sys.stdout.flush()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="switchboard", description=__doc__.splitlines()[0])
    parser.add_argument("prompt", help="User message to send")
    parser.add_argument("--provider", default=None, help="Provider id (default: $SWITCHBOARD_PROVIDER or openai)")
    parser.add_argument("--model", default=None)
    parser.add_argument("--system", default=None, help="System prompt")
    parser.add_argument("--base-url", default=None)
    parser.add_argument("--no-stream", action="store_true")
    parser.add_argument("--no-tools", action="store_true", help="Disable tool calling")
    parser.add_argument("--demo-tools", action="store_true", help="Expose a current_time tool")
    parser.add_argument("--log-file", default=None)
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


async def _main(args: argparse.Namespace) -> int:
    overrides = {}
    if args.model:
        overrides["model"] = args.model
    if args.base_url:
        overrides["base_url"] = args.base_url
    if args.no_stream:
        overrides["stream"] = False
    if args.no_tools:
        overrides["tool_calling_enabled"] = False
    settings = Settings.from_env(args.provider, **overrides)

    turns = [user(args.prompt)]
    if args.system:
        turns.insert(0, system(args.system))
    tools = [current_time] if args.demo_tools else []

    try:
        result = await orchestrate(turns, tools, settings, _write)
    except SwitchboardError as e:
        print(f"\nerror: {e}", file=sys.stderr)
        return 1

    print()
    if result.usage is not None:
        line = f"[{result.usage.prompt_tokens} in / {result.usage.completion_tokens} out"
        if result.cost is not None:
            line += f", {format_cost(result.cost.total_cost)}"
        print(line + f", {result.rounds} round(s)]", file=sys.stderr)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.WARNING, args.log_file)
    return asyncio.run(_main(args))


if __name__ == "__main__":
    sys.exit(main())
