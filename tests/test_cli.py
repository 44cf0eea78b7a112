from __future__ import annotations

import json

import pytest

from cortex.cli import build_parser, run


def test_parser_requires_known_subcommands():
    parser = build_parser()

    args = parser.parse_args(["memory-search", "tea", "--k", "3", "--threshold", "0.5"])
    assert args.command == "memory-search"
    assert args.k == 3
    assert args.threshold == 0.5

    with pytest.raises(SystemExit):
        parser.parse_args(["unknown"])


@pytest.mark.anyio
async def test_info_and_sessions_commands(settings, capsys, monkeypatch):
    monkeypatch.setattr("cortex.cli.setup_logging", lambda level: None)
    parser = build_parser()

    assert await run(parser.parse_args(["info"])) == 0
    info = json.loads(capsys.readouterr().out)
    assert info["engine"] == "stub"
    assert info["embedding_dimension"] == 64
    assert info["memory_entries"] == 0
    assert info["context_used"] == 0
    assert info["context_size"] == 8192

    assert await run(parser.parse_args(["sessions"])) == 0
    assert json.loads(capsys.readouterr().out) == []


@pytest.mark.anyio
async def test_chat_loop_drives_a_session(settings, capsys, monkeypatch):
    lines = iter(
        [
            "/remember tea is best served hot",
            "/checkpoint start",
            "hello there",
            "/checkpoints",
            "/recall tea",
            "/restore 1",
            "/branch 1",
            "/delete 999",
            "/context",
            "/system Be brief.",
            "/clear",
            "/bogus",
            "quit",
        ]
    )
    monkeypatch.setattr("builtins.input", lambda prompt="": next(lines))
    monkeypatch.setattr("cortex.cli.setup_logging", lambda level: None)
    parser = build_parser()

    assert await run(parser.parse_args(["chat", "--session", "cli-session"])) == 0

    captured = capsys.readouterr()
    assert "Session cli-session (uninitialized)" in captured.out
    assert "Checkpoint 1 (0 messages)" in captured.out
    assert '[Stub response for: "hello there"' in captured.out
    assert "tea is best served hot" in captured.out
    assert "Restored checkpoint 1 (0 messages)" in captured.out
    assert "Branched to checkpoint 2 from 1" in captured.out
    assert "Unknown command: /bogus" in captured.out
    assert "System prompt replaced" in captured.out
    assert "Cleared session cli-session" in captured.out
    assert "Context: 0/8192 tokens" in captured.out
    assert "Error [NOT_FOUND]" in captured.err

    assert await run(parser.parse_args(["sessions"])) == 0
    sessions = json.loads(capsys.readouterr().out)
    assert [item["id"] for item in sessions] == ["cli-session"]
    assert sessions[0]["current_checkpoint_id"] is None

    assert await run(parser.parse_args(["delete-session", "cli-session"])) == 0
    assert "Deleted session: cli-session" in capsys.readouterr().out
