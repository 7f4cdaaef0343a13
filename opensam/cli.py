"""The ``opensam`` command: one-shot messages and an interactive prompt."""

import argparse
import asyncio
import logging
import sys
from importlib import metadata
from pathlib import Path

from . import fmt
from .agent import AgentLoop
from .config import generate_config, global_config_dir, resolve_config
from .errors import ConfigError
from .provider import LiteLLMProvider

logger = logging.getLogger(__name__)

REPL_HELP = """\
Commands:
  /help       show this help
  /clear      forget the current session's history
  /sessions   list stored sessions
  /exit       quit (also /quit or Ctrl-D)"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="opensam",
        description="A tool-calling assistant with a sandboxed workspace and persistent sessions.",
    )
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument(
        "-m",
        "--message",
        default=None,
        help="Send one message and print the reply. Without it, start an interactive session.",
    )
    parser.add_argument(
        "-s",
        "--session",
        default="cli:direct",
        help="Session key as channel:chat_id (default: cli:direct).",
    )
    parser.add_argument("--workspace", default=None, help="Workspace directory.")
    parser.add_argument("--model", default=None, help="LiteLLM model string.")
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Maximum model calls per message.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Suppress diagnostics on stderr.",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level for library logging (default: WARNING).",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write a template global config file and exit.",
    )
    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument("--color", action="store_true", help="Force ANSI color.")
    color_group.add_argument("--no-color", action="store_true", help="Disable ANSI color.")
    return parser


def setup_logging(level: str) -> None:
    from rich.logging import RichHandler

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=fmt.console(), show_path=False)],
        force=True,
    )
    # litellm is chatty at INFO
    logging.getLogger("LiteLLM").setLevel(max(logging.getLevelName(level), logging.WARNING))


def init_config() -> int:
    path = global_config_dir() / "config.toml"
    if path.exists():
        fmt.error(f"{path} already exists, not overwriting")
        return 1
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(generate_config(), encoding="utf-8")
    fmt.info(f"Wrote {path}")
    return 0


def build_agent(args: argparse.Namespace) -> AgentLoop:
    config = resolve_config(
        {
            "workspace": args.workspace,
            "model": args.model,
            "max_iterations": args.max_iterations,
        }
    )
    workspace = config.workspace_path
    workspace.mkdir(parents=True, exist_ok=True)
    provider = LiteLLMProvider(api_key=config.api_key, base_url=config.base_url)
    return AgentLoop(provider, workspace, verbose=not args.quiet, **config.agent_kwargs())


async def repl(agent: AgentLoop, key: str) -> None:
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = Path(agent.sessions.sessions_dir) / ".repl_history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    session = PromptSession(history=FileHistory(str(history_path)), enable_history_search=True)
    prompt_text = FormattedText([("bold fg:ansigreen", "opensam> ")])

    if agent.verbose:
        fmt.repl_banner(key)

    while True:
        try:
            line = await session.prompt_async(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)
            break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break
        if line == "/help":
            print(REPL_HELP)
            continue
        if line == "/clear":
            async with agent.sessions.lock:
                stored = agent.sessions.get_or_create(key)
                stored.clear()
                agent.sessions.save(stored)
            fmt.info(f"Cleared session {key}")
            continue
        if line == "/sessions":
            for name in agent.sessions.list_sessions():
                print(name)
            continue

        print(await agent.process_direct(line, key))


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("opensam")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    fmt.init(color=args.color, no_color=args.no_color)
    setup_logging(args.log_level)

    if args.init_config:
        sys.exit(init_config())

    try:
        agent = build_agent(args)
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)

    if args.message is not None:
        print(asyncio.run(agent.process_direct(args.message, args.session)))
        return

    asyncio.run(repl(agent, args.session))


if __name__ == "__main__":
    main()
