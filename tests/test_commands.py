"""Tests for > commands."""

import hashlib
import json
from datetime import datetime, timezone

import pytest

from sessiondl.commands import (
    BACKUP_SCHEMA,
    COMMANDS,
    NAMING_CONTRACT,
    build_backup_payload,
    run_command,
)
from sessiondl.errors import ClearBlockedError, CommandError, SessionDLError
from sessiondl.models import Commit, LocalState, Session, Settings
from sessiondl.store import KEY_BACKUP_PROOF, StateStore

NOW = datetime(2026, 2, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    StateStore.reset_instance()
    s = StateStore(tmp_path / "state.db")
    yield s
    StateStore.reset_instance()


@pytest.fixture
def state():
    return LocalState(
        sessions={
            "old": Session(id="old", url="https://a.example/", last_seen_at="2026-02-01T00:00:00.000Z"),
            "new": Session(id="new", url="https://b.example/", last_seen_at="2026-02-01T00:00:00.000Z",
                           last_download_at="2026-02-09T00:00:00.000Z"),
        },
        commits=[
            Commit(id="2", session_id="new", captured_at="2026-02-09T00:00:00.000Z", urn="urn:feat:x"),
            Commit(id="1", session_id="old", captured_at="2026-02-01T00:00:00.000Z"),
        ],
    )


class TestRunCommand:
    """Tests for command dispatch."""

    def test_naming(self, store):
        """Test naming and contract return the naming contract."""
        for name in ("naming", "contract", "NAMING"):
            result = run_command(store, name)
            assert result.text == NAMING_CONTRACT
            assert result.action is None

    def test_naming_contract_example(self):
        """Test the contract shows the double-underscore form."""
        assert "urn__feat__sessions__chrome__download-commits.zip" in NAMING_CONTRACT

    def test_ui_commands(self, store):
        """Test close and full are returned as UI actions."""
        assert run_command(store, "close").action == "close"
        assert run_command(store, "full").action == "full"

    def test_every_listed_command_dispatches(self, store):
        """Test each name in COMMANDS is accepted by run_command."""
        for name in COMMANDS:
            if name == "clear":
                continue
            assert run_command(store, name, clock=lambda: NOW).command == name

    def test_unknown_command(self, store):
        """Test unknown names raise CommandError."""
        with pytest.raises(CommandError):
            run_command(store, "explode")
        with pytest.raises(SessionDLError):
            run_command(store, "")


class TestBackup:
    """Tests for the backup command."""

    def test_payload_ordering(self, state):
        """Test sessions newest first and commits oldest first."""
        payload = build_backup_payload(state, "2026-02-10T12:00:00.000Z")
        assert payload["schema"] == BACKUP_SCHEMA
        assert payload["exported_at"] == "2026-02-10T12:00:00.000Z"
        assert list(payload["sessions"]) == ["new", "old"]
        assert [c["id"] for c in payload["commits"]] == ["1", "2"]
        assert payload["commits"][1]["urn"] == "urn:feat:x"

    def test_backup_records_proof(self, store, state):
        """Test the proof hash matches the serialized backup."""
        store.save_state(state)
        result = run_command(store, "backup", clock=lambda: NOW)

        data = json.loads(result.text)
        assert data["schema"] == BACKUP_SCHEMA
        assert data["exported_at"] == "2026-02-10T12:00:00.000Z"
        assert len(data["commits"]) == 2

        proof = store.get(KEY_BACKUP_PROOF)[KEY_BACKUP_PROOF]
        assert proof["created_at"] == "2026-02-10T12:00:00.000Z"
        assert proof["hash"] == hashlib.sha256(result.text.encode()).hexdigest()[:16]
        assert proof["hash"] in result.message

    def test_backup_empty_store(self, store):
        """Test a backup with nothing recorded."""
        data = json.loads(run_command(store, "backup", clock=lambda: NOW).text)
        assert data["sessions"] == {}
        assert data["commits"] == []


class TestClear:
    """Tests for the clear command."""

    def test_blocked_without_backup(self, store, state):
        """Test clear refuses to run before a backup exists."""
        store.save_state(state)
        with pytest.raises(ClearBlockedError):
            run_command(store, "clear")
        assert len(store.load_state().commits) == 2

    def test_clear_after_backup(self, store, state):
        """Test clear removes local records and the proof but keeps settings."""
        store.save_state(state)
        store.save_settings(Settings(urn_only=False))
        store.save_ui_query("urn:feat")

        run_command(store, "backup", clock=lambda: NOW)
        result = run_command(store, "clear")

        assert result.command == "clear"
        loaded = store.load_state()
        assert loaded.sessions == {}
        assert loaded.commits == []
        assert store.load_ui_query() == ""
        assert store.get(KEY_BACKUP_PROOF) == {}
        assert store.load_settings().urn_only is False

        with pytest.raises(ClearBlockedError):
            run_command(store, "clear")
