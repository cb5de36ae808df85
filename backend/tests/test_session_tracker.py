"""Tests for SessionTracker and SessionRegistry.

Covers the session lifecycle, audit completeness, verdict relay,
mid-session rule changes and the never-raise proxy entry point.
"""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from termaudit.core.config import settings
from termaudit.core.exceptions import (
    AuditWriteError,
    SessionAlreadyEndedError,
    SessionAlreadyExistsError,
    SessionNotFoundError,
)
from termaudit.models.terminal_command import TerminalCommand
from termaudit.services.audit_query import AuditQueryService
from termaudit.services.blacklist import BlacklistService
from termaudit.services.interceptor import ProxyDecision
from termaudit.services.session_tracker import recording_enabled_for


async def commands_for(db_session, session_id: int) -> list[TerminalCommand]:
    result = await db_session.execute(
        select(TerminalCommand)
        .where(TerminalCommand.session_id == session_id)
        .order_by(TerminalCommand.id)
    )
    return list(result.scalars().all())


class TestOpenSession:
    async def test_open_registers_tracker(self, registry):
        tracker = await registry.open_session(
            user_id=7, server_id=3, stream_id="s-1", recording_enabled=False
        )

        assert registry.get("s-1") is tracker
        assert registry.get_by_session_id(tracker.session_id) is tracker
        assert tracker.session.command_count == 0
        assert tracker.session.started_at is not None
        assert len(registry) == 1

    async def test_duplicate_live_stream_rejected(self, registry):
        await registry.open_session(user_id=1, server_id=1, stream_id="dup")

        with pytest.raises(SessionAlreadyExistsError):
            await registry.open_session(user_id=1, server_id=1, stream_id="dup")

    async def test_stream_of_ended_session_rejected(self, registry):
        await registry.open_session(user_id=1, server_id=1, stream_id="once")
        await registry.close_session("once")

        with pytest.raises(SessionAlreadyExistsError):
            await registry.open_session(user_id=1, server_id=1, stream_id="once")

    async def test_recording_policy_applied_when_not_given(self, registry, monkeypatch):
        monkeypatch.setattr(settings, "terminal_recording_enabled", True)
        monkeypatch.setattr(settings, "terminal_recording_servers", "9")

        recorded = await registry.open_session(user_id=1, server_id=9, stream_id="a")
        skipped = await registry.open_session(user_id=1, server_id=2, stream_id="b")

        assert recorded.recording_enabled is True
        assert skipped.recording_enabled is False


class TestRecordingPolicy:
    def test_global_switch_off(self, monkeypatch):
        monkeypatch.setattr(settings, "terminal_recording_enabled", False)
        assert recording_enabled_for(1) is False

    def test_empty_allowlist_records_everything(self, monkeypatch):
        monkeypatch.setattr(settings, "terminal_recording_enabled", True)
        monkeypatch.setattr(settings, "terminal_recording_servers", "")
        assert recording_enabled_for(123) is True

    def test_allowlist(self, monkeypatch):
        monkeypatch.setattr(settings, "terminal_recording_enabled", True)
        monkeypatch.setattr(settings, "terminal_recording_servers", "1, 2")
        assert recording_enabled_for(2) is True
        assert recording_enabled_for(3) is False


class TestCommands:
    async def test_blocked_command_recorded_with_reason(self, registry, rule_factory, db_session):
        await rule_factory(pattern=r"^rm\s+-rf.*", description="No recursive deletes")
        tracker = await registry.open_session(user_id=1, server_id=1, stream_id="s")

        result = await tracker.on_command("rm -rf /tmp", working_dir="/root", exit_code=0)

        assert result.verdict.blocked is True
        assert result.verdict.decision == ProxyDecision.DENY
        assert result.durable is True

        [row] = await commands_for(db_session, tracker.session_id)
        assert row.blocked is True
        assert row.block_reason == "No recursive deletes"
        assert row.exit_code is None
        assert row.working_dir == "/root"
        assert row.id == result.command_id

    async def test_every_boundary_is_audited(self, registry, rule_factory, db_session):
        await rule_factory(pattern=r"^rm\s+-rf.*", action="block")
        await rule_factory(pattern=r"^sudo\b", action="warn", description="privileged")
        tracker = await registry.open_session(user_id=1, server_id=1, stream_id="s")
        commands = ["ls", "rm -rf /", "sudo id", "cd /tmp", "rm -rf ~", "echo done"]

        verdicts = [(await tracker.on_command(c)).verdict for c in commands]

        rows = await commands_for(db_session, tracker.session_id)
        assert len(rows) == len(commands)
        assert [r.command for r in rows] == commands
        assert [r.blocked for r in rows] == [v.action == "block" for v in verdicts]
        assert [r.action for r in rows] == ["none", "block", "warn", "none", "block", "none"]

        session = await AuditQueryService(db_session).get_session(tracker.session_id)
        assert session.command_count == len(commands)

    async def test_concurrent_boundaries_serialized(self, registry, db_session):
        tracker = await registry.open_session(user_id=1, server_id=1, stream_id="s")

        await asyncio.gather(*(tracker.on_command(f"echo {i}") for i in range(10)))

        rows = await commands_for(db_session, tracker.session_id)
        assert len(rows) == 10
        session = await AuditQueryService(db_session).get_session(tracker.session_id)
        assert session.command_count == 10
        assert tracker.command_count == 10

    async def test_rule_disabled_mid_session(
        self, registry, rule_factory, db_session, rule_cache
    ):
        rule = await rule_factory(pattern=r"^reboot", action="block")
        tracker = await registry.open_session(user_id=1, server_id=1, stream_id="s")

        before = await tracker.on_command("reboot")
        await BlacklistService(db_session, rule_cache).update(rule.id, enabled=False)
        after = await tracker.on_command("reboot")

        assert before.verdict.blocked is True
        assert after.verdict.blocked is False
        assert after.verdict.matched_rule_id is None
        assert after.verdict.snapshot_version > before.verdict.snapshot_version

    async def test_audit_failure_still_returns_verdict(self, registry, rule_factory):
        await rule_factory(pattern="^rm", action="block")
        tracker = await registry.open_session(user_id=1, server_id=1, stream_id="s")
        tracker.audit_log.append_command = AsyncMock(side_effect=AuditWriteError("db down"))

        result = await tracker.on_command("rm x")

        assert result.verdict.blocked is True
        assert result.durable is False
        assert tracker.audit_degraded is True

    async def test_command_after_end_rejected(self, registry):
        tracker = await registry.open_session(user_id=1, server_id=1, stream_id="s")
        await tracker.end()

        with pytest.raises(SessionAlreadyEndedError):
            await tracker.on_command("ls")


class TestHandleCommand:
    async def test_unknown_stream_gets_allow(self, registry, rule_factory):
        await rule_factory(pattern="^rm", action="block")

        result = await registry.handle_command("nope", "rm -rf /")

        assert result.verdict.allowed is True
        assert result.verdict.action == "none"
        assert result.dropped is True
        assert result.durable is False

    async def test_ended_stream_gets_allow(self, registry, db_session):
        tracker = await registry.open_session(user_id=1, server_id=1, stream_id="s")
        await registry.close_session("s")

        result = await registry.handle_command("s", "ls")

        assert result.dropped is True
        assert await commands_for(db_session, tracker.session_id) == []

    async def test_routes_to_live_tracker(self, registry):
        await registry.open_session(user_id=1, server_id=1, stream_id="s")

        result = await registry.handle_command("s", "ls", working_dir="/", exit_code=0)

        assert result.dropped is False
        assert result.command_id is not None


class TestEnd:
    async def test_close_sets_terminal_fields_and_unregisters(self, registry):
        tracker = await registry.open_session(user_id=1, server_id=1, stream_id="s")
        await tracker.on_command("ls")

        session = await registry.close_session("s", reason="timeout")

        assert session.ended_at is not None
        assert session.end_reason == "timeout"
        assert session.duration is not None
        assert session.command_count == 1
        assert registry.get("s") is None
        assert tracker.ended is True

    async def test_end_twice_rejected(self, registry):
        tracker = await registry.open_session(user_id=1, server_id=1, stream_id="s")
        await tracker.end()

        with pytest.raises(SessionAlreadyEndedError):
            await tracker.end()

    async def test_close_already_ended_stream(self, registry):
        await registry.open_session(user_id=1, server_id=1, stream_id="s")
        await registry.close_session("s")

        with pytest.raises(SessionAlreadyEndedError):
            await registry.close_session("s")

    async def test_close_unknown_stream(self, registry):
        with pytest.raises(SessionNotFoundError):
            await registry.close_session("missing")

    async def test_close_orphaned_row(self, registry, terminal_session_factory):
        orphan = await terminal_session_factory(stream_id="orphan")

        session = await registry.close_session("orphan")

        assert session.id == orphan.id
        assert session.ended_at is not None

    async def test_recording_finalized_on_end(self, registry):
        tracker = await registry.open_session(
            user_id=1, server_id=1, stream_id="rec", recording_enabled=True
        )
        tracker.record(b"$ whoami\r\n")
        tracker.record(b"w", direction="i")

        session = await tracker.end()

        assert session.recording_path is not None
        assert Path(session.recording_path).is_file()
        assert session.recording_degraded is False

    async def test_dropped_frames_flag_live_session(self, registry):
        tracker = await registry.open_session(
            user_id=1, server_id=1, stream_id="busy", recording_enabled=True
        )

        # No awaits in between, so the writer cannot drain the queue
        accepted = [tracker.record(b"x") for _ in range(registry.recorder.queue_size + 5)]
        assert accepted.count(False) == 5

        row = await registry.audit_log.find_session(session_id=tracker.session_id)
        for _ in range(100):
            if row.recording_degraded:
                break
            await asyncio.sleep(0.01)
            row = await registry.audit_log.find_session(session_id=tracker.session_id)

        assert row.recording_degraded is True
        assert row.ended_at is None
        assert registry.get("busy") is tracker

        session = await tracker.end()
        assert session.recording_degraded is True

    async def test_finalize_crash_still_ends_session(self, registry, monkeypatch):
        tracker = await registry.open_session(
            user_id=1, server_id=1, stream_id="rec", recording_enabled=True
        )
        monkeypatch.setattr(
            registry.recorder,
            "finalize",
            AsyncMock(side_effect=ValueError("I/O operation on closed file")),
        )

        session = await tracker.end()

        assert session.ended_at is not None
        assert session.recording_path is None
        assert session.recording_degraded is True
        assert registry.get("rec") is None
        assert tracker.ended is True

    async def test_record_ignored_when_disabled(self, registry):
        tracker = await registry.open_session(
            user_id=1, server_id=1, stream_id="s", recording_enabled=False
        )
        assert tracker.record(b"data") is False
        assert registry.record_frame("unknown", b"data") is False


class TestTerminate:
    async def test_terminate_live_session(self, registry):
        tracker = await registry.open_session(user_id=1, server_id=1, stream_id="s")

        session = await registry.terminate(tracker.session_id)

        assert session.end_reason == "forced"
        assert registry.get("s") is None

    async def test_terminate_orphaned_row(self, registry, terminal_session_factory):
        orphan = await terminal_session_factory()

        session = await registry.terminate(orphan.id)

        assert session.end_reason == "forced"

    async def test_terminate_unknown(self, registry):
        with pytest.raises(SessionNotFoundError):
            await registry.terminate(999)

    async def test_terminate_ended(self, registry):
        tracker = await registry.open_session(user_id=1, server_id=1, stream_id="s")
        await tracker.end()

        with pytest.raises(SessionAlreadyEndedError):
            await registry.terminate(tracker.session_id)

    async def test_end_all(self, registry):
        for i in range(3):
            await registry.open_session(user_id=1, server_id=1, stream_id=f"s{i}")

        ended = await registry.end_all()

        assert ended == 3
        assert len(registry) == 0
