"""Turns download events into sessions and commits.

Events follow the browser download API shape: ``created`` carries a download
item, ``changed`` carries a delta of ``{"field": {"current": value}}`` pairs,
and ``tab`` reports a page title/URL update. Every handler runs a full
load-modify-save cycle on the store under one lock.
"""

import hashlib
import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, NamedTuple, Optional
from urllib.parse import urlsplit, urlunsplit

from .models import Commit, LocalState, PendingDownload, Session, UrnExtract
from .search import parse_timestamp
from .store import KEY_SESSIONS_INDEX, SYNC, StateStore
from .urn import extract_urn_from_filename

logger = logging.getLogger(__name__)

MAX_COMMITS = 5000
MAX_PENDING_AGE = timedelta(hours=48)
UNKNOWN_SESSION_URL = "urn:unknown:session"
UNKNOWN_SESSION_TITLE = "(unknown session)"
FINISHED_STATES = ("complete", "interrupted")


class TabInfo(NamedTuple):
    url: Optional[str]
    title: Optional[str]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def is_http_url(url: Optional[str]) -> bool:
    if not url:
        return False
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def canonicalize_url(url: str) -> str:
    """Drop the fragment; lowercase scheme and host."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.scheme:
        return url
    scheme = parts.scheme.lower()
    netloc = parts.netloc.lower()
    path = parts.path
    if scheme in ("http", "https") and not path:
        path = "/"
    return urlunsplit((scheme, netloc, path, parts.query, ""))


def session_id_for_url(url: str) -> str:
    """Stable session id: first 12 hex chars of sha256(canonical url)."""
    return hashlib.sha256(canonicalize_url(url).encode()).hexdigest()[:12]


def accept_download(extract: UrnExtract, urn_only: bool) -> bool:
    """Whether a download is recorded now rather than held as pending."""
    return bool(extract.urn) or not urn_only


def prune_pending(state: LocalState, now: datetime) -> int:
    """Drop pending downloads older than MAX_PENDING_AGE. Returns the count removed."""
    removed = 0
    for pending_id, pending in list(state.pending.items()):
        created = parse_timestamp(pending.created_at)
        if created is None:
            continue
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        if now - created > MAX_PENDING_AGE:
            del state.pending[pending_id]
            removed += 1
    return removed


def ensure_session(state: LocalState, url: str, title: Optional[str], now: str) -> Session:
    """Create or refresh the session for ``url``."""
    canonical = canonicalize_url(url)
    session_id = session_id_for_url(canonical)

    existing = state.sessions.get(session_id)
    if existing:
        existing.url = canonical
        existing.title = title or existing.title
        existing.last_seen_at = now
        return existing

    created = Session(
        id=session_id,
        url=canonical,
        title=title,
        created_at=now,
        last_seen_at=now,
    )
    state.sessions[session_id] = created
    return created


def add_commit(state: LocalState, commit: Commit) -> None:
    """Upsert a commit by id, keeping at most MAX_COMMITS (newest last)."""
    for idx, existing in enumerate(state.commits):
        if existing.id == commit.id:
            state.commits[idx] = commit
            break
    else:
        state.commits.append(commit)

    if len(state.commits) > MAX_COMMITS:
        state.commits = state.commits[-MAX_COMMITS:]


def update_session_stats(state: LocalState, session_id: str, now: str) -> None:
    session = state.sessions.get(session_id)
    if not session:
        return
    session.last_download_at = now
    session.download_count = (session.download_count or 0) + 1
    session.last_seen_at = now


def _current(delta: dict, name: str):
    entry = delta.get(name)
    if isinstance(entry, dict):
        return entry.get("current")
    return None


def _item_field(item: dict, *names: str):
    for name in names:
        if item.get(name) is not None:
            return item[name]
    return None


def _total_bytes(value) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


class DownloadRecorder:
    """Applies download and tab events to the state store.

    ``active_tab`` is asked for the current page when a download has no
    usable referrer. ``clock`` returns an aware datetime.
    """

    def __init__(
        self,
        store: StateStore,
        active_tab: Optional[Callable[[], Optional[TabInfo]]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.active_tab = active_tab
        self.clock = clock
        self._lock = threading.Lock()

    def _run(self, name: str, handler: Callable[[], None]) -> None:
        with self._lock:
            try:
                handler()
            except Exception:
                logger.exception(f"{name} handler failed")

    def _resolve_session_source(self, referrer: Optional[str]) -> TabInfo:
        # Referrer is the most reliable; fall back to the active tab.
        if is_http_url(referrer):
            return TabInfo(canonicalize_url(referrer), None)
        tab = self.active_tab() if self.active_tab else None
        if tab and is_http_url(tab.url):
            return TabInfo(canonicalize_url(tab.url), tab.title)
        return TabInfo(None, None)

    def _attach_session(self, state: LocalState, source: TabInfo, now: str) -> Session:
        if source.url:
            return ensure_session(state, source.url, source.title, now)
        return ensure_session(state, UNKNOWN_SESSION_URL, UNKNOWN_SESSION_TITLE, now)

    def _sync_sessions_index(self, state: LocalState) -> None:
        index = {
            sid: {
                "id": sid,
                "url": s.url,
                "title": s.title,
                "last_seen_at": s.last_seen_at,
                "last_download_at": s.last_download_at,
                "download_count": s.download_count,
            }
            for sid, s in state.sessions.items()
        }
        try:
            self.store.set({KEY_SESSIONS_INDEX: index}, area=SYNC)
        except sqlite3.Error as e:
            logger.warning(f"Session index sync failed: {e}")

    def _record(self, state: LocalState, commit: Commit, now: str) -> None:
        add_commit(state, commit)
        if commit.session_id:
            update_session_stats(state, commit.session_id, now)
        self.store.save_state(state)
        self._sync_sessions_index(state)
        logger.info(f"Recorded download {commit.id} ({commit.urn or 'unknown urn'})")

    # -- event handlers --

    def on_created(self, item: dict) -> None:
        self._run("download created", lambda: self._on_created(item))

    def _on_created(self, item: dict) -> None:
        if item.get("id") is None:
            logger.debug("Ignoring download event without id")
            return
        settings = self.store.load_settings()
        state = self.store.load_state()
        now_dt = self.clock()
        now = to_iso(now_dt)
        prune_pending(state, now_dt)

        referrer = _item_field(item, "referrer")
        source = self._resolve_session_source(referrer)
        filename = _item_field(item, "filename") or None
        extract = extract_urn_from_filename(filename)
        download_id = str(item["id"])

        fields = dict(
            captured_at=now,
            start_time=_item_field(item, "startTime", "start_time"),
            end_time=None,
            state=_item_field(item, "state") or "in_progress",
            filename=filename,
            url=_item_field(item, "url"),
            final_url=_item_field(item, "finalUrl", "final_url"),
            referrer=referrer,
            mime=_item_field(item, "mime"),
            total_bytes=_total_bytes(_item_field(item, "totalBytes", "total_bytes")),
        )

        if not accept_download(extract, settings.urn_only):
            # Filename may still be empty or temporary; wait for a change event.
            state.pending[download_id] = PendingDownload(
                id=download_id,
                created_at=now,
                session_url=source.url,
                session_title=source.title,
                **fields,
            )
            self.store.save_state(state)
            logger.debug(f"Holding download {download_id} until an identifier appears")
            return

        session = self._attach_session(state, source, now)
        commit = Commit(
            id=download_id,
            session_id=session.id,
            session_url=session.url,
            urn=extract.urn,
            urn_source=extract.source,
            **fields,
        )
        self._record(state, commit, now)

    def on_changed(self, delta: dict) -> None:
        self._run("download changed", lambda: self._on_changed(delta))

    def _on_changed(self, delta: dict) -> None:
        if not isinstance(delta.get("id"), int):
            logger.debug("Ignoring download delta without numeric id")
            return
        download_id = str(delta["id"])

        settings = self.store.load_settings()
        state = self.store.load_state()
        now_dt = self.clock()
        now = to_iso(now_dt)
        prune_pending(state, now_dt)

        new_state = _current(delta, "state")
        new_filename = _current(delta, "filename")
        new_total = _current(delta, "totalBytes")
        new_end = _current(delta, "endTime")

        for commit in state.commits:
            if commit.id != download_id:
                continue
            if new_state:
                commit.state = str(new_state)
            if new_filename:
                commit.filename = str(new_filename)
                extract = extract_urn_from_filename(commit.filename)
                if extract.urn:
                    commit.urn = extract.urn
                    commit.urn_source = extract.source
            if _total_bytes(new_total) is not None:
                commit.total_bytes = _total_bytes(new_total)
            if new_end:
                commit.end_time = str(new_end)
            self.store.save_state(state)
            return

        pending = state.pending.get(download_id)
        if not pending:
            return

        if new_state:
            pending.state = str(new_state)
        if new_filename:
            pending.filename = str(new_filename)
        if _total_bytes(new_total) is not None:
            pending.total_bytes = _total_bytes(new_total)
        if new_end:
            pending.end_time = str(new_end)

        extract = extract_urn_from_filename(pending.filename)
        if accept_download(extract, settings.urn_only):
            source = TabInfo(pending.session_url, pending.session_title)
            session = self._attach_session(state, source, now)
            commit = Commit(
                id=download_id,
                session_id=session.id,
                session_url=session.url,
                captured_at=pending.captured_at,
                start_time=pending.start_time,
                end_time=pending.end_time,
                state=pending.state,
                filename=pending.filename,
                url=pending.url,
                final_url=pending.final_url,
                referrer=pending.referrer,
                mime=pending.mime,
                total_bytes=pending.total_bytes,
                urn=extract.urn,
                urn_source=extract.source,
            )
            del state.pending[download_id]
            logger.info(f"Promoted pending download {download_id}")
            self._record(state, commit, now)
            return

        if pending.state in FINISHED_STATES:
            del state.pending[download_id]
            logger.debug(f"Dropped download {download_id}: finished without identifier")
        self.store.save_state(state)

    def on_tab_updated(self, url: Optional[str], title: Optional[str]) -> None:
        self._run("tab updated", lambda: self._on_tab_updated(url, title))

    def _on_tab_updated(self, url: Optional[str], title: Optional[str]) -> None:
        if not is_http_url(url):
            return
        state = self.store.load_state()
        session = state.sessions.get(session_id_for_url(url))
        if not session:
            return
        session.title = title or session.title
        session.last_seen_at = to_iso(self.clock())
        self.store.save_state(state)
        self._sync_sessions_index(state)

    def handle_event(self, event: dict) -> None:
        """Dispatch one ``{"event": ...}`` record (JSON-lines import)."""
        kind = event.get("event")
        if kind == "created":
            self.on_created(event.get("item") or {})
        elif kind == "changed":
            self.on_changed(event.get("delta") or {})
        elif kind == "tab":
            self.on_tab_updated(event.get("url"), event.get("title"))
        else:
            logger.debug(f"Ignoring unknown event type: {kind!r}")
