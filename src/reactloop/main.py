"""
reactloop/main.py — reactloop Entry Point

Usage:
    reactloop ask "list the files in /tmp"             # blocking run
    reactloop ask "summarise README.md" --stream       # print each step as it completes
    reactloop ask "..." --session work --max-steps 5   # persistent session, step override
    reactloop chat                                     # narration REPL, no tools
    reactloop tools                                    # list registered capabilities
    reactloop --log-level DEBUG --config path/to/config.yaml ask "..."
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from rich import box

console = Console()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="reactloop",
        description="reactloop: a ReAct agent execution engine",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $REACTLOOP_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    ask = sub.add_parser("ask", help="Run the agent on one prompt")
    ask.add_argument("prompt", help="Task for the agent")
    ask.add_argument("--session", default=None, help="Session id to keep history under")
    ask.add_argument("--stream", action="store_true", help="Print steps as they complete")
    ask.add_argument("--max-steps", type=int, default=None, help="Override agent.max_steps")
    ask.add_argument("--system-prompt", default=None, help="Override the agent role prompt")

    chat = sub.add_parser("chat", help="Plain conversation with the model (no tools)")
    chat.add_argument("--session", default=None, help="Session id to keep history under")

    sub.add_parser("tools", help="List registered capabilities")
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if:
      - config.yaml has invalid values (Pydantic ValidationError)
      - cross-field problems are found (ConfigError from validate_all())
    """
    from pydantic import ValidationError

    from reactloop.config.settings import ConfigError, load_settings
    from reactloop.observability.logger import get_logger, setup_logging_from_settings

    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {e['loc'][-1] if e['loc'] else '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError, TypeError) as exc:
        print(f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n", file=sys.stderr)
        sys.exit(1)

    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    setup_logging_from_settings(settings, level=args.log_level)

    if settings.session.backend == "sqlite":
        Path(settings.session.sqlite_path).expanduser().parent.mkdir(parents=True, exist_ok=True)

    return settings, get_logger("reactloop.main")


# ─────────────────────────────────────────────────────────────────────────────
# Commands
# ─────────────────────────────────────────────────────────────────────────────

async def _cmd_ask(args: argparse.Namespace, settings, log) -> int:
    from reactloop.service import AgentRequest, AgentService

    service = await AgentService.build(settings)
    request = AgentRequest(
        prompt=args.prompt,
        session_id=args.session,
        system_prompt=args.system_prompt,
        max_steps=args.max_steps,
    )
    try:
        if args.stream:
            return await _stream_to_console(service, request)

        with console.status("[dim]Thinking...[/]"):
            response = await service.execute_advanced(request)
        if not response.ok:
            console.print(f"[red]❌ {response.message}[/]")
            return 1
        console.print(
            Panel(
                Markdown(response.result or "_(no output)_"),
                title=f"[bold]{settings.agent.name}[/] · {response.agent_state}",
                subtitle=f"{response.execution_time_ms:.0f} ms",
                border_style="cyan",
            )
        )
        return 0
    finally:
        await service.shutdown()


async def _stream_to_console(service, request) -> int:
    channel = await service.execute_advanced_stream(request)
    exit_code = 0
    async for event in channel:
        if event.type == "start":
            console.print(f"[dim]{event.text}[/]")
        elif event.type == "step":
            console.print(f"[cyan]Step {event.data.get('step')}[/] {event.text}")
        elif event.type == "done":
            console.print(f"[green]✓ {event.text}[/] [dim]({event.data.get('state')})[/]")
        elif event.type == "error":
            console.print(f"[red]❌ {event.text}[/]")
            exit_code = 1
        elif event.type == "close":
            console.print(f"[yellow]{event.text}[/]")
    return exit_code


async def _cmd_chat(args: argparse.Namespace, settings, log) -> int:
    import aioconsole

    from reactloop.brain import LLMClientFactory
    from reactloop.memory import create_session_store
    from reactloop.service import ChatService, new_session_id

    llm = LLMClientFactory.from_settings(settings)
    store = await create_session_store(settings)
    chat = ChatService.from_settings(settings, llm, store)
    session_id = args.session or new_session_id()

    console.print(f"[dim]Chatting as session {session_id}. Ctrl+D or /exit to leave.[/]\n")
    try:
        while True:
            try:
                line = await aioconsole.ainput("you › ")
            except (EOFError, KeyboardInterrupt):
                console.print("\n[dim]Goodbye.[/]")
                break
            line = line.strip()
            if not line:
                continue
            if line in ("/exit", "/quit"):
                break

            channel = await chat.chat_stream(line, session_id)
            async for event in channel:
                if event.type == "delta":
                    console.print(event.text, end="", markup=False, highlight=False)
                elif event.type == "error":
                    console.print(f"[red]❌ {event.text}[/]")
            console.print()
    finally:
        await chat.shutdown()
        await store.close()
    log.info("chat.session_ended", session_id=session_id)
    return 0


def _cmd_tools(settings) -> int:
    from reactloop.tools import ToolRegistry, register_builtin_tools

    registry = ToolRegistry()
    register_builtin_tools(registry, settings.tools.terminate_tool)

    table = Table(title="Registered tools", box=box.SIMPLE_HEAVY)
    table.add_column("Name", style="bold cyan")
    table.add_column("Category")
    table.add_column("Terminates")
    table.add_column("Description")
    for schema in registry.list_schemas():
        table.add_row(
            schema.name,
            schema.category,
            "yes" if schema.terminates else "",
            schema.description,
        )
    console.print(table)
    return 0


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings, log = bootstrap(args)

    log.info("reactloop.starting", command=args.command, agent=settings.agent.name, model=settings.llm.model)

    if args.command == "tools":
        return _cmd_tools(settings)
    if args.command == "ask":
        return await _cmd_ask(args, settings, log)
    if args.command == "chat":
        return await _cmd_chat(args, settings, log)
    return 1


def cli() -> None:
    load_dotenv()
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    cli()
