#!/usr/bin/env python3
"""
Orchestrate CLI — streaming multi-model chat from the terminal.

Every command has a short name and standard aliases:

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    serve           start, up       Start the Orchestrate API server
    chat            talk, repl      Interactive chat with Ctrl-C to stop a reply
    models          ls-models       List models offered by the provider
    history         conversations   List stored conversations
    dump            export          Export conversations to JSON
"""

import argparse
import asyncio
import signal
import sys

__version__ = "0.3.0"

CHAT_HELP = """  Commands:
    /websearch <query>   answer with live web results and citations
    /model <id>          switch model for the next reply
    /retry               regenerate the last reply
    /new                 start a new conversation
    exit                 leave
  Ctrl-C while a reply is streaming stops it."""


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the Orchestrate API server."""
    import uvicorn
    from orchestrate.config import get_config

    cfg = get_config()
    host = args.host or cfg["server"]["host"]
    port = args.port or cfg["server"]["port"]

    print(f"  Orchestrate v{__version__} on {host}:{port}")
    print(f"  Backend: {cfg['backend']['url']}")
    print(f"  Model: {cfg['backend']['default_model']}")
    print()

    uvicorn.run(
        "orchestrate.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


class TerminalPrinter:
    """Transcript listener that writes the streaming reply to stdout as it grows."""

    def __init__(self, out=None):
        self.out = out or sys.stdout
        self._index = None
        self._printed = 0

    def __call__(self, kind, index, message):
        if message is None or kind not in ("append", "update"):
            return
        if message.is_streaming and index != self._index:
            self._index = index
            self._printed = 0
            self.out.write(f"\n  [{message.source}] ")
        if index != self._index:
            return
        if len(message.content) < self._printed:
            self._printed = 0
        self.out.write(message.content[self._printed:])
        self.out.flush()
        self._printed = len(message.content)
        if not message.is_streaming:
            self.out.write("\n\n")
            self._index = None


async def _stream_with_abort(session, coro):
    """Run a submit/retry, turning Ctrl-C into an abort of the active stream."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, session.abort)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False
    try:
        return await coro
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def _chat(args):
    from orchestrate.backends import make_backend
    from orchestrate.config import get_config
    from orchestrate.errors import OrchestrateError
    from orchestrate.session import ConversationSession
    from orchestrate.storage.sqlite_store import SQLiteStore

    cfg = get_config()
    store = SQLiteStore(cfg["storage"]["sqlite_path"])
    session = ConversationSession(
        store,
        make_backend(cfg),
        model=args.model or cfg["backend"]["default_model"],
        checkpoint_every=int(cfg.get("streaming", {}).get("checkpoint_every", 100)),
    )
    printer = TerminalPrinter()
    session.transcript.subscribe(printer)

    if args.conversation:
        messages = await session.load(args.conversation)
        if args.model:
            session.set_model(args.model)
        for message in messages:
            print(f"  [{message.source}] {message.content}\n")

    print(f"  Orchestrate v{__version__} — model {session.model}")
    print(CHAT_HELP)
    print()

    while True:
        try:
            text = (await asyncio.to_thread(input, "  you> ")).strip()
        except EOFError:
            break
        if not text:
            continue
        if text.lower() in ("exit", "quit", "q"):
            break
        if text.startswith("/model"):
            model = text[len("/model"):].strip()
            if model:
                session.set_model(model)
            print(f"  model: {session.model}")
            continue
        if text == "/new":
            session = _fresh_session(session, printer)
            print("  new conversation")
            continue

        try:
            if text == "/retry":
                turn = _last_user_turn(session)
                if turn is None:
                    print("  nothing to retry")
                    continue
                await _stream_with_abort(session, session.retry(turn))
            else:
                await _stream_with_abort(session, session.submit(text, search=args.search))
        except (OrchestrateError, ValueError) as e:
            print(f"  ✗ {e}")

    print("  [bye]")


def _fresh_session(session, printer):
    from orchestrate.session import ConversationSession

    fresh = ConversationSession(
        session.store,
        session.backend,
        session.controller,
        model=session.model,
        checkpoint_every=session.checkpointer.every,
    )
    fresh.transcript.subscribe(printer)
    return fresh


def _last_user_turn(session):
    for index in range(len(session.transcript) - 2, -1, -1):
        try:
            session.retry_target(index)
        except ValueError:
            continue
        return index
    return None


def cmd_chat(args):
    """Interactive chat REPL."""
    try:
        asyncio.run(_chat(args))
    except KeyboardInterrupt:
        print("\n  [bye]")


def cmd_models(args):
    """List models offered by the provider."""
    from orchestrate.backends import make_backend
    from orchestrate.config import get_config

    backend = make_backend(get_config())
    models = asyncio.run(backend.list_models())
    if not models:
        print("  No models returned (check backend.api_key)")
        return
    for model in models:
        if args.filter and args.filter.lower() not in model.get("id", "").lower():
            continue
        print(f"  {model.get('id', '?'):<50} {model.get('name', '')}")


def cmd_history(args):
    """List stored conversations, most recent first."""
    from orchestrate.config import get_config
    from orchestrate.storage.sqlite_store import SQLiteStore

    cfg = get_config()
    store = SQLiteStore(cfg["storage"]["sqlite_path"])
    conversations = asyncio.run(store.list_conversations(limit=args.limit))
    if not conversations:
        print("  No conversations yet.")
        return
    for conv in conversations:
        print(f"  {conv.id}  {conv.updated_at[:19]}  {conv.title}")


def cmd_dump(args):
    """Export conversations to JSON."""
    import json
    from orchestrate.config import get_config
    from orchestrate.storage.sqlite_store import SQLiteStore

    cfg = get_config()
    store = SQLiteStore(cfg["storage"]["sqlite_path"])
    data = store.export_all_json()
    indent = 2 if args.pretty else None

    with open(args.output, "w") as f:
        json.dump(data, f, indent=indent, ensure_ascii=False)

    print(f"  Database: {cfg['storage']['sqlite_path']}")
    print(f"  Dumped {len(data)} conversations to {args.output}")


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="orchestrate",
        description="Orchestrate — streaming multi-model chat.",
        epilog="Run 'orchestrate <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"orchestrate {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["serve", "start", "up"],
                 "Start the Orchestrate API server", cmd_serve, setup_serve)

    def setup_chat(p):
        p.add_argument("--model", "-m", default=None, help="Model id (default: from config)")
        p.add_argument("--conversation", "-c", default=None, help="Resume a stored conversation")
        p.add_argument("--search", "-s", action="store_true", help="Web search for every message")

    _add_command(sub, ["chat", "talk", "repl"],
                 "Interactive chat in the terminal", cmd_chat, setup_chat)

    def setup_models(p):
        p.add_argument("--filter", "-f", default=None, help="Only ids containing this text")

    _add_command(sub, ["models", "ls-models"],
                 "List models offered by the provider", cmd_models, setup_models)

    def setup_history(p):
        p.add_argument("--limit", "-n", type=int, default=20, help="How many to show")

    _add_command(sub, ["history", "conversations"],
                 "List stored conversations", cmd_history, setup_history)

    def setup_dump(p):
        p.add_argument("--output", "-o", default="conversations_export.json", help="Output file")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON")

    _add_command(sub, ["dump", "export"],
                 "Export conversations to JSON", cmd_dump, setup_dump)

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
