"""Tests for the download recorder."""

from datetime import datetime, timedelta, timezone

import pytest

from sessiondl.models import Commit, LocalState, NO_URN, PendingDownload, Settings, UrnExtract
from sessiondl.recorder import (
    UNKNOWN_SESSION_URL,
    DownloadRecorder,
    TabInfo,
    accept_download,
    add_commit,
    canonicalize_url,
    ensure_session,
    is_http_url,
    prune_pending,
    session_id_for_url,
    to_iso,
)
from sessiondl.store import KEY_SESSIONS_INDEX, SYNC, StateStore

NOW = datetime(2026, 2, 10, 12, 0, tzinfo=timezone.utc)
CHAT_URL = "https://chatgpt.com/c/abc"


@pytest.fixture
def store(tmp_path):
    StateStore.reset_instance()
    s = StateStore(tmp_path / "state.db")
    yield s
    StateStore.reset_instance()


@pytest.fixture
def recorder(store):
    return DownloadRecorder(store, clock=lambda: NOW)


def created(download_id=1, filename="urn__feat__sessions__chrome.zip", referrer=CHAT_URL, **extra):
    item = {
        "id": download_id,
        "filename": filename,
        "referrer": referrer,
        "url": "https://files.example.com/x.zip",
        "mime": "application/zip",
        "startTime": "2026-02-10T11:59:00.000Z",
        "state": "in_progress",
        "totalBytes": 2048,
    }
    item.update(extra)
    return item


class TestHelpers:
    """Tests for URL and acceptance helpers."""

    def test_to_iso(self):
        """Test UTC timestamps end in Z with milliseconds."""
        assert to_iso(NOW) == "2026-02-10T12:00:00.000Z"

    def test_is_http_url(self):
        """Test only http(s) URLs with a host are accepted."""
        assert is_http_url("https://example.com/x")
        assert is_http_url("http://example.com")
        assert not is_http_url("chrome://downloads")
        assert not is_http_url("about:blank")
        assert not is_http_url("")
        assert not is_http_url(None)

    def test_canonicalize_url(self):
        """Test fragments are dropped and scheme/host lowercased."""
        assert canonicalize_url("HTTPS://ChatGPT.com/c/Abc?x=1#frag") == "https://chatgpt.com/c/Abc?x=1"
        assert canonicalize_url("https://example.com") == "https://example.com/"

    def test_session_id_stable(self):
        """Test URLs differing only in the fragment share a session id."""
        first = session_id_for_url(CHAT_URL)
        assert first == session_id_for_url(CHAT_URL + "#part-2")
        assert len(first) == 12
        assert first != session_id_for_url("https://chatgpt.com/c/other")

    def test_accept_download(self):
        """Test urn-only mode holds back downloads without identifier."""
        found = UrnExtract("urn:feat:a", "filename:urn__")
        assert accept_download(found, urn_only=True)
        assert accept_download(found, urn_only=False)
        assert not accept_download(NO_URN, urn_only=True)
        assert accept_download(NO_URN, urn_only=False)


class TestStateHelpers:
    """Tests for the pure state mutations."""

    def test_add_commit_upserts(self):
        """Test a commit with a known id replaces the old one in place."""
        state = LocalState(commits=[Commit(id="1", state="in_progress"), Commit(id="2")])
        add_commit(state, Commit(id="1", state="complete"))
        assert [c.id for c in state.commits] == ["1", "2"]
        assert state.commits[0].state == "complete"

    def test_add_commit_trims(self, monkeypatch):
        """Test only the newest commits are kept."""
        monkeypatch.setattr("sessiondl.recorder.MAX_COMMITS", 3)
        state = LocalState()
        for i in range(5):
            add_commit(state, Commit(id=str(i)))
        assert [c.id for c in state.commits] == ["2", "3", "4"]

    def test_prune_pending(self):
        """Test pending downloads older than 48 hours are dropped."""
        state = LocalState(pending={
            "old": PendingDownload(id="old", created_at=to_iso(NOW - timedelta(hours=49))),
            "new": PendingDownload(id="new", created_at=to_iso(NOW - timedelta(hours=1))),
            "odd": PendingDownload(id="odd", created_at="not a date"),
        })
        assert prune_pending(state, NOW) == 1
        assert set(state.pending) == {"new", "odd"}

    def test_ensure_session_refreshes(self):
        """Test an existing session keeps its title unless a new one is given."""
        state = LocalState()
        first = ensure_session(state, CHAT_URL, "Chat", "t1")
        again = ensure_session(state, CHAT_URL + "#x", None, "t2")
        assert again is first
        assert again.title == "Chat"
        assert again.last_seen_at == "t2"
        assert again.created_at == "t1"


class TestOnCreated:
    """Tests for new download events."""

    def test_records_commit(self, recorder, store):
        """Test a download with an identifier becomes a commit."""
        recorder.on_created(created())

        state = store.load_state()
        assert len(state.commits) == 1
        commit = state.commits[0]
        assert commit.id == "1"
        assert commit.urn == "urn:feat:sessions:chrome"
        assert commit.urn_source == "filename:urn__"
        assert commit.captured_at == "2026-02-10T12:00:00.000Z"
        assert commit.start_time == "2026-02-10T11:59:00.000Z"
        assert commit.total_bytes == 2048
        assert commit.session_id == session_id_for_url(CHAT_URL)

        session = state.sessions[commit.session_id]
        assert session.url == CHAT_URL
        assert session.download_count == 1
        assert session.last_download_at == "2026-02-10T12:00:00.000Z"

    def test_mirrors_sessions_index(self, recorder, store):
        """Test the sync area gets a minimal session index."""
        recorder.on_created(created())
        index = store.get(KEY_SESSIONS_INDEX, area=SYNC)[KEY_SESSIONS_INDEX]
        sid = session_id_for_url(CHAT_URL)
        assert index[sid]["download_count"] == 1
        assert index[sid]["url"] == CHAT_URL

    def test_holds_download_without_identifier(self, recorder, store):
        """Test urn-only mode keeps unnamed downloads pending."""
        recorder.on_created(created(filename="report.pdf"))

        state = store.load_state()
        assert state.commits == []
        assert state.sessions == {}
        assert state.pending["1"].filename == "report.pdf"
        assert state.pending["1"].session_url == CHAT_URL

    def test_records_unknown_when_urn_only_off(self, recorder, store):
        """Test every download is recorded when urn-only is off."""
        store.save_settings(Settings(urn_only=False))
        recorder.on_created(created(filename="report.pdf"))

        commits = store.load_state().commits
        assert len(commits) == 1
        assert commits[0].urn is None

    def test_active_tab_fallback(self, store):
        """Test the active tab supplies the session when there is no referrer."""
        recorder = DownloadRecorder(
            store,
            active_tab=lambda: TabInfo("https://claude.ai/chat/1", "Claude chat"),
            clock=lambda: NOW,
        )
        recorder.on_created(created(referrer=""))

        state = store.load_state()
        session = state.sessions[state.commits[0].session_id]
        assert session.url == "https://claude.ai/chat/1"
        assert session.title == "Claude chat"

    def test_unknown_session(self, recorder, store):
        """Test downloads with no page context share the unknown session."""
        recorder.on_created(created(referrer=None))
        recorder.on_created(created(download_id=2, referrer="chrome://newtab"))

        state = store.load_state()
        assert len(state.sessions) == 1
        session = next(iter(state.sessions.values()))
        assert session.url == UNKNOWN_SESSION_URL
        assert session.download_count == 2

    def test_ignores_missing_id(self, recorder, store):
        """Test an item without id is skipped."""
        recorder.on_created({"filename": "urn__feat__a.zip"})
        assert store.load_state().commits == []


class TestOnChanged:
    """Tests for download change events."""

    def test_updates_commit(self, recorder, store):
        """Test state, size and end time are applied to the commit."""
        recorder.on_created(created())
        recorder.on_changed({
            "id": 1,
            "state": {"previous": "in_progress", "current": "complete"},
            "totalBytes": {"current": 4096},
            "endTime": {"current": "2026-02-10T12:01:00.000Z"},
        })

        commit = store.load_state().commits[0]
        assert commit.state == "complete"
        assert commit.total_bytes == 4096
        assert commit.end_time == "2026-02-10T12:01:00.000Z"

    def test_renamed_commit_gets_identifier(self, recorder, store):
        """Test a filename change re-runs extraction."""
        recorder.on_created(created(filename="urn__feat__a.zip.crdownload"))
        recorder.on_changed({"id": 1, "filename": {"current": "urn__feat__b.zip"}})

        commit = store.load_state().commits[0]
        assert commit.filename == "urn__feat__b.zip"
        assert commit.urn == "urn:feat:b"

    def test_rename_keeps_identifier_when_none_found(self, recorder, store):
        """Test a later name without identifier does not clear it."""
        recorder.on_created(created())
        recorder.on_changed({"id": 1, "filename": {"current": "final.zip"}})

        commit = store.load_state().commits[0]
        assert commit.filename == "final.zip"
        assert commit.urn == "urn:feat:sessions:chrome"

    def test_promotes_pending(self, recorder, store):
        """Test a pending download is recorded once its name has an identifier."""
        recorder.on_created(created(filename=""))
        assert "1" in store.load_state().pending

        recorder.on_changed({"id": 1, "filename": {"current": "/tmp/urn__test__parser__edge.txt"}})

        state = store.load_state()
        assert state.pending == {}
        assert len(state.commits) == 1
        commit = state.commits[0]
        assert commit.urn == "urn:test:parser:edge"
        assert commit.captured_at == "2026-02-10T12:00:00.000Z"
        assert state.sessions[commit.session_id].url == CHAT_URL

    def test_drops_finished_pending(self, recorder, store):
        """Test a pending download that completes without identifier is dropped."""
        recorder.on_created(created(filename="report.pdf"))
        recorder.on_changed({"id": 1, "state": {"current": "complete"}})

        state = store.load_state()
        assert state.pending == {}
        assert state.commits == []

    def test_keeps_unfinished_pending(self, recorder, store):
        """Test an in-progress pending download stays pending."""
        recorder.on_created(created(filename="report.pdf"))
        recorder.on_changed({"id": 1, "totalBytes": {"current": 10}})

        pending = store.load_state().pending["1"]
        assert pending.total_bytes == 10

    def test_ignores_non_numeric_id(self, recorder, store):
        """Test deltas without an integer id are skipped."""
        recorder.on_created(created())
        recorder.on_changed({"id": "1", "state": {"current": "complete"}})
        assert store.load_state().commits[0].state == "in_progress"

    def test_prunes_old_pending(self, store):
        """Test stale pending downloads are dropped on the next event."""
        clock = {"now": NOW}
        recorder = DownloadRecorder(store, clock=lambda: clock["now"])
        recorder.on_created(created(download_id=1, filename="old.pdf"))

        clock["now"] = NOW + timedelta(hours=49)
        recorder.on_created(created(download_id=2, filename="new.pdf"))

        assert set(store.load_state().pending) == {"2"}


class TestTabsAndEvents:
    """Tests for tab updates and event dispatch."""

    def test_tab_update_sets_title(self, recorder, store):
        """Test a tab update renames a known session."""
        recorder.on_created(created())
        recorder.on_tab_updated(CHAT_URL + "#top", "New title")

        session = store.load_state().sessions[session_id_for_url(CHAT_URL)]
        assert session.title == "New title"

    def test_tab_update_ignores_unknown(self, recorder, store):
        """Test tab updates never create sessions."""
        recorder.on_tab_updated("https://example.com/", "Example")
        assert store.load_state().sessions == {}

    def test_handle_event(self, recorder, store):
        """Test JSON-lines events are dispatched by type."""
        recorder.handle_event({"event": "created", "item": created()})
        recorder.handle_event({"event": "changed", "delta": {"id": 1, "state": {"current": "complete"}}})
        recorder.handle_event({"event": "tab", "url": CHAT_URL, "title": "Chat"})
        recorder.handle_event({"event": "bogus"})

        state = store.load_state()
        assert state.commits[0].state == "complete"
        assert state.sessions[session_id_for_url(CHAT_URL)].title == "Chat"

    def test_failing_handler_does_not_poison(self, recorder, store, monkeypatch):
        """Test an exception in one event is logged and later events still run."""
        original = store.load_state

        def broken():
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(store, "load_state", broken)
        recorder.on_created(created())

        monkeypatch.setattr(store, "load_state", original)
        recorder.on_created(created(download_id=2))

        assert [c.id for c in store.load_state().commits] == ["2"]
