"""
Cortex command-line interface.
Interactive chat with checkpoints plus session and memory maintenance.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Callable, Optional

from cortex.core.config import get_settings
from cortex.core.errors import CortexError
from cortex.core.logging import setup_logging
from cortex.runtime import Runtime, create_runtime
from cortex.schemas.checkpoint import CheckpointOut, MemoryHitOut, SessionOut
from cortex.services.session_service import Session, with_sampling_overrides

EXIT_WORDS = {"quit", "exit", "/quit", "/exit"}

CHAT_HELP = """Commands:
  /remember TEXT      store TEXT in long-term memory
  /recall QUERY       search long-term memory
  /checkpoint [NAME]  checkpoint the conversation
  /restore ID         return to a checkpoint
  /branch ID          start a new branch from a checkpoint
  /checkpoints        list checkpoints of this session
  /delete ID          delete a leaf checkpoint
  /clear              start over, keeping the system prompt
  /system TEXT        replace the system prompt and start over
  /context            show engine context usage
  /help               show this help
  quit                leave the chat"""


async def cmd_chat(runtime: Runtime, args) -> None:
    """Run an interactive chat loop."""
    session = await runtime.open_session(args.session, system_prompt=args.system)
    params = with_sampling_overrides(
        runtime.options.sampling,
        temperature=args.temperature,
        max_tokens=args.max_tokens,
    )
    print(f"Session {session.id} ({session.status.value}); /help for commands")
    while True:
        try:
            line = await asyncio.to_thread(input, "> ")
        except EOFError:
            break
        line = line.strip()
        if not line:
            continue
        if line.lower() in EXIT_WORDS:
            break
        try:
            if line.startswith("/"):
                await _chat_command(runtime, session, line)
                continue
            await session.stream_chat(line, _print_piece, params=params)
            print()
        except CortexError as exc:
            print(f"\nError [{exc.code}]: {exc.message}", file=sys.stderr)


async def cmd_sessions(runtime: Runtime, args) -> None:
    """List stored sessions."""
    rows = await runtime.list_sessions(limit=args.limit)
    payload = [SessionOut.model_validate(row).model_dump(mode="json") for row in rows]
    print(json.dumps(payload, indent=2))


async def cmd_delete_session(runtime: Runtime, args) -> None:
    """Delete a session with its history and checkpoints."""
    if await runtime.delete_session(args.session_id):
        print(f"Deleted session: {args.session_id}")
    else:
        print(f"No session: {args.session_id}")


async def cmd_memory_search(runtime: Runtime, args) -> None:
    """Search long-term memory."""
    hits = await runtime.memory.search(args.query, args.k, args.threshold)
    payload = [_hit_out(hit).model_dump(mode="json") for hit in hits]
    print(json.dumps(payload, indent=2))


async def cmd_info(runtime: Runtime, args) -> None:
    """Show runtime configuration and store sizes."""
    used, size = runtime.context_usage()
    info = {
        "engine": runtime.engine.engine_id,
        "embedder": f"{runtime.embedder.provider}:{runtime.embedder.model_name}",
        "embedding_dimension": runtime.memory.dimension,
        "memory_entries": len(runtime.memory),
        "max_entries": runtime.memory.max_entries,
        "checkpoints": len(runtime.checkpoints.tree),
        "context_used": used,
        "context_size": size,
        "db_url": runtime.settings.db_url,
        "memory_path": str(runtime.options.memory_path or ""),
    }
    if runtime.memory_load_error is not None:
        info["memory_load_error"] = runtime.memory_load_error.message
    print(json.dumps(info, indent=2))


async def _chat_command(runtime: Runtime, session: Session, line: str) -> None:
    command, _, rest = line.partition(" ")
    rest = rest.strip()
    if command == "/help":
        print(CHAT_HELP)
    elif command == "/remember":
        entry_id = await session.remember(rest)
        print(f"Remembered: {entry_id}")
    elif command == "/recall":
        for hit in await session.recall(rest):
            print(f"{hit.score:.3f}  {hit.entry.text}")
    elif command == "/checkpoint":
        checkpoint = await session.checkpoint(rest or None)
        print(f"Checkpoint {checkpoint.id} ({checkpoint.message_count} messages)")
    elif command == "/restore":
        snapshot = await session.restore(_parse_id(rest))
        print(f"Restored checkpoint {snapshot.checkpoint_id} ({len(snapshot.messages)} messages)")
    elif command == "/branch":
        checkpoint = await session.branch(_parse_id(rest))
        print(f"Branched to checkpoint {checkpoint.id} from {checkpoint.parent_id}")
    elif command == "/checkpoints":
        lineage = {node.id for node in await session.list_checkpoints()}
        for node in session.all_checkpoints():
            out = CheckpointOut.model_validate(node)
            marker = "*" if node.id == session.current_checkpoint_id else ("|" if node.id in lineage else " ")
            print(
                f"{marker} {out.id:>4}  parent={out.parent_id}  messages={out.message_count}"
                f"  {out.name or ''}".rstrip()
            )
    elif command == "/delete":
        deleted = await session.delete_checkpoint(_parse_id(rest))
        print(f"Deleted checkpoint {deleted.id}")
    elif command == "/clear":
        await session.clear()
        print(f"Cleared session {session.id}")
    elif command == "/system":
        await session.set_system(rest)
        print("System prompt replaced")
    elif command == "/context":
        used, size = runtime.context_usage()
        print(f"Context: {used}/{size} tokens")
    else:
        print(f"Unknown command: {command}")


def _parse_id(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise CortexError(f"Expected a checkpoint id, got '{value}'", code="INVALID_INPUT") from None


def _print_piece(piece: str) -> None:
    print(piece, end="", flush=True)


def _hit_out(hit) -> MemoryHitOut:
    return MemoryHitOut(
        id=hit.entry.id,
        text=hit.entry.text,
        score=hit.score,
        metadata=dict(hit.entry.metadata),
    )


COMMANDS: dict[str, Callable] = {
    "chat": cmd_chat,
    "sessions": cmd_sessions,
    "delete-session": cmd_delete_session,
    "memory-search": cmd_memory_search,
    "info": cmd_info,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cortex",
        description="Checkpointable conversations with long-term memory",
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # chat command
    chat_parser = subparsers.add_parser("chat", help="Start an interactive chat")
    chat_parser.add_argument("--session", help="Session id to resume or create")
    chat_parser.add_argument("--system", help="System prompt for a new session")
    chat_parser.add_argument("--temperature", type=float, help="Sampling temperature")
    chat_parser.add_argument("--max-tokens", type=int, help="Maximum tokens per reply")

    # sessions command
    sessions_parser = subparsers.add_parser("sessions", help="List sessions")
    sessions_parser.add_argument("--limit", type=int, default=100, help="Max sessions")

    # delete-session command
    delete_parser = subparsers.add_parser("delete-session", help="Delete a session")
    delete_parser.add_argument("session_id", help="Session id")

    # memory-search command
    search_parser = subparsers.add_parser("memory-search", help="Search long-term memory")
    search_parser.add_argument("query", help="Search query")
    search_parser.add_argument("--k", type=int, default=None, help="Max results")
    search_parser.add_argument("--threshold", type=float, default=None, help="Minimum score")

    # info command
    subparsers.add_parser("info", help="Show runtime information")
    return parser


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    setup_logging(settings.log_level)
    runtime = await create_runtime(settings)
    try:
        await COMMANDS[args.command](runtime, args)
    except CortexError as exc:
        print(f"Error [{exc.code}]: {exc.message}", file=sys.stderr)
        return 1
    finally:
        await runtime.close()
    return 0


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
