#!/usr/bin/env python3
"""
chatfeedback CLI.

Every command has a primary name and standard aliases:

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    serve           start, up       Start the relay / feedback server
    chat            talk            Chat with a running server from the terminal
    console         tui             Textual chat console
    dump            export          Export stored conversations to JSON
    info            config, stats   Show config, limits and storage stats
"""

import argparse
import asyncio
import contextlib
import getpass
import signal
import threading

from chatfeedback import __version__


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the chatfeedback server."""
    import uvicorn
    from chatfeedback.config import get_config

    cfg = get_config()
    host = args.host or cfg["server"]["host"]
    port = args.port or cfg["server"]["port"]

    print(f"  chatfeedback {__version__} on {host}:{port}")
    print(f"  Backend: {cfg['backend']['url']}")
    print(f"  Model:   {cfg['backend']['default_model']}")
    print()

    uvicorn.run(
        "chatfeedback.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def _client_settings(args) -> tuple[str, str]:
    from chatfeedback.config import get_config

    client_cfg = get_config().get("client") or {}
    base_url = args.url or client_cfg.get("base_url") or "http://localhost:8000"
    username = args.username or client_cfg.get("username") or getpass.getuser()
    return base_url, username


def _print_event(event):
    from chatfeedback.events import ContentEvent

    if isinstance(event, ContentEvent):
        print(event.content, end="", flush=True)


REPL_HELP = """\
  /rate up|down|0-10   rate the last reply
  /end <1-5> <up|down> [comment]   end the chat with overall feedback
  /clear               start over
  /quit                leave (Ctrl-D or Ctrl-C at the prompt work too)
  Ctrl-C while a reply streams stops it."""


async def _prompt(text: str) -> str:
    """input() on a daemon thread, so Ctrl-C can leave the REPL while it blocks."""
    loop = asyncio.get_running_loop()
    fut = loop.create_future()

    def deliver(setter, value):
        if not fut.done():
            setter(value)

    def read():
        try:
            line = input(text)
        except EOFError as e:
            loop.call_soon_threadsafe(deliver, fut.set_exception, e)
        else:
            loop.call_soon_threadsafe(deliver, fut.set_result, line)

    threading.Thread(target=read, daemon=True).start()
    return await fut


def _sigint_handler(session, task: asyncio.Task):
    """Ctrl-C stops a streaming reply; with nothing streaming it ends the REPL."""
    def handler():
        if not session.cancel():
            task.cancel()
    return handler


async def _repl(args):
    import httpx
    from chatfeedback.client import ChatLimits, ChatSession

    base_url, username = _client_settings(args)
    async with httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(10.0, read=None)) as http:
        limits = await ChatLimits.fetch(http)
        session = ChatSession(
            http, username=username, model=args.model, limits=limits, on_event=_print_event,
        )
        loop = asyncio.get_running_loop()
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, _sigint_handler(session, asyncio.current_task()))

        print(f"  Session {session.session_id} as {username} → {base_url}")
        print(REPL_HELP)
        try:
            await _repl_loop(session)
        except asyncio.CancelledError:
            print("\n  (bye)")
        await session.flush()


async def _repl_loop(session):
    from chatfeedback.client import SendRejected

    while True:
        try:
            text = await _prompt("\nyou> ")
        except EOFError:
            break
        text = text.strip()
        if text == "/quit":
            break
        if text == "/clear":
            session.clear()
            print("  (cleared)")
            continue
        if text.startswith("/rate"):
            await _repl_rate(session, text.split()[1:])
            continue
        if text.startswith("/end"):
            if await _repl_end(session, text.split(maxsplit=3)[1:]):
                break
            continue

        print("bot> ", end="", flush=True)
        try:
            reply = await session.send(text)
        except SendRejected as e:
            print(f"\r  ✗ {e}")
            continue
        if reply is None:
            print("\n  (stopped)")
        else:
            print()


async def _repl_rate(session, parts: list[str]):
    last = next(
        (i for i in range(len(session.history) - 1, -1, -1)
         if session.history[i].role == "assistant"),
        None,
    )
    if last is None or not parts:
        print("  ✗ Nothing to rate")
        return
    value = parts[0]
    try:
        if value in ("up", "down"):
            saved = await session.rate_message(last, thumbs=value)
        else:
            saved = await session.rate_message(last, rating=int(value))
    except ValueError as e:
        print(f"  ✗ {e}")
        return
    print("  ✓ Rated" if saved else "  ✗ Rating kept locally, server unavailable")


async def _repl_end(session, parts: list[str]) -> bool:
    import httpx

    try:
        rating, thumbs = int(parts[0]), parts[1]
        comment = parts[2] if len(parts) > 2 else ""
        await session.end_chat(rating, thumbs, comment)
    except (IndexError, ValueError) as e:
        print(f"  ✗ Usage: /end <1-5> <up|down> [comment] ({e})")
        return False
    except httpx.HTTPError as e:
        print(f"  ✗ Failed to submit feedback, try again ({e})")
        return False
    print("  Thank you for your feedback! Your chat session has been completed.")
    return True


def cmd_chat(args):
    """Chat with a running server from the terminal."""
    asyncio.run(_repl(args))


def cmd_console(args):
    """Launch the Textual chat console."""
    from chatfeedback.tui.app import ChatConsoleApp

    base_url, username = _client_settings(args)
    ChatConsoleApp(base_url=base_url, username=username, model=args.model).run()


def cmd_dump(args):
    """Export conversations to JSON."""
    import json
    from chatfeedback.config import get_config
    from chatfeedback.storage.sqlite_store import SQLiteStore

    cfg = get_config()
    store = SQLiteStore(cfg["storage"]["sqlite_path"])
    stats = store.get_stats()

    print(f"  Database: {cfg['storage']['sqlite_path']}")
    print(f"  Conversations: {stats['conversations']} | Completed: {stats['completed']}")

    data = store.export_all_json()
    indent = 2 if args.pretty else None

    with open(args.output, "w") as f:
        json.dump(data, f, indent=indent, ensure_ascii=False)

    print(f"  Dumped {len(data)} conversations to {args.output}")


def cmd_info(args):
    """Show config, limits and storage stats at a glance."""
    from chatfeedback.config import get_config, get_limits, get_models
    from chatfeedback.storage.sqlite_store import SQLiteStore

    cfg = get_config()
    limits = get_limits(cfg)
    gen = cfg.get("generation") or {}

    print("  Configuration")
    print(f"  ├─ Provider:    {cfg['backend'].get('provider', 'openrouter')}")
    print(f"  ├─ Backend:     {cfg['backend']['url']}")
    print(f"  ├─ Model:       {cfg['backend']['default_model']}")
    print(f"  ├─ Temperature: {gen.get('temperature', 0.3)}  max_tokens: {gen.get('max_tokens', 1200)}")
    print(f"  ├─ Models:      {len(get_models(cfg))} in catalog")
    print(f"  └─ SQLite:      {cfg['storage']['sqlite_path']}")
    print()
    print("  Limits")
    context = "unlimited" if limits.context_msg_limit <= 0 else limits.context_msg_limit
    print(f"  ├─ Messages per conversation: {context}")
    print(f"  └─ Words per message:         {limits.max_msg_size}")

    store = SQLiteStore(cfg["storage"]["sqlite_path"])
    stats = store.get_stats()
    print()
    print("  Storage")
    print(f"  ├─ Conversations: {stats['conversations']}")
    print(f"  ├─ Completed:     {stats['completed']}")
    print(f"  ├─ Users:         {stats['users']}")
    print(f"  └─ Avg rating:    {stats['avg_overall_rating'] if stats['avg_overall_rating'] is not None else '—'}")
    for row in store.list_conversations(limit=args.recent):
        done = "✓" if row["is_completed"] else " "
        print(f"     {done} {row['session_id'][:8]}  {row['username']:<16} {row['message_count']:>3} msgs  {row['updated_at'][:19]}")


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def _setup_client(p):
    p.add_argument("--url", "-u", default=None, help="Server URL (default: client.base_url)")
    p.add_argument("--username", default=None, help="Username recorded with the conversation")
    p.add_argument("--model", "-m", default=None, help="Model id (default: server default)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatfeedback",
        description="chatfeedback — streaming LLM chat with feedback capture.",
        epilog="Run 'chatfeedback <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"chatfeedback {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["serve", "start", "up"], "Start the server", cmd_serve, setup_serve)
    _add_command(sub, ["chat", "talk"], "Chat from the terminal", cmd_chat, _setup_client)
    _add_command(sub, ["console", "tui"], "Launch the Textual chat console", cmd_console, _setup_client)

    def setup_dump(p):
        p.add_argument("--output", "-o", default="conversations_export.json", help="Output file")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON")

    _add_command(sub, ["dump", "export"], "Export conversations to JSON", cmd_dump, setup_dump)

    def setup_info(p):
        p.add_argument("--recent", "-n", type=int, default=5, help="Recent sessions to list")

    _add_command(sub, ["info", "config", "stats"], "Show config and stats", cmd_info, setup_info)
    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
