"""Search query parsing and matching for sessions and download commits."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Mapping, Optional

from .models import Commit, SearchResult, Session
from .tree import TreeModel, build_container_tree, filter_commits_by_prefix

SUPPORTED_KEYS = frozenset({"session", "file", "urn", "on", "after", "before", "is"})
UNKNOWN_URN_VALUES = frozenset({"unknown", "unknownurn", "unknown_urn"})


@dataclass
class Query:
    """Parsed search box input.

    Keyed lists match if any of their terms is found (OR); the categories
    are combined with AND. Empty lists always pass.
    """

    raw: str = ""
    command: Optional[str] = None
    terms: list[str] = field(default_factory=list)
    session_terms: list[str] = field(default_factory=list)
    file_terms: list[str] = field(default_factory=list)
    urn_terms: list[str] = field(default_factory=list)
    on: Optional[str] = None
    after: Optional[str] = None
    before: Optional[str] = None
    is_unknown_urn: bool = False

    @property
    def has_date_filter(self) -> bool:
        return self.on is not None or self.after is not None or self.before is not None

    @property
    def needs_commits(self) -> bool:
        """True if any filter can only be tested against a commit."""
        return bool(self.file_terms or self.urn_terms or self.has_date_filter or self.is_unknown_urn)


def _norm(text: str) -> str:
    return str(text or "").strip().lower()


def parse_search_query(text: Optional[str]) -> Query:
    """Parse search input with modifiers.

    Syntax:
        >command                - Command (rest of the input is ignored)
        session:chatgpt         - Session title / URL contains
        file:.zip               - Filename / URL / MIME contains
        urn:sessions            - Identifier contains
        on:2026-02-10           - Captured on this local date
        after:2026-02-01        - Captured on or after
        before:2026-02-28       - Captured on or before
        is:unknown              - Only commits without an identifier

    Unrecognized ``key:value`` tokens are plain search terms.
    """
    raw = str(text or "").strip()
    if not raw:
        return Query()

    if raw.startswith(">"):
        words = raw[1:].split()
        return Query(raw=raw, command=words[0].lower() if words else "")

    query = Query(raw=raw)
    for token in raw.split():
        idx = token.find(":")
        if idx > 0:
            key = _norm(token[:idx])
            if key in SUPPORTED_KEYS:
                value = _norm(token[idx + 1:])
                if key == "session":
                    query.session_terms.append(value)
                elif key == "file":
                    query.file_terms.append(value)
                elif key == "urn":
                    query.urn_terms.append(value)
                elif key == "on":
                    query.on = value or None
                elif key == "after":
                    query.after = value or None
                elif key == "before":
                    query.before = value or None
                elif key == "is" and value in UNKNOWN_URN_VALUES:
                    query.is_unknown_urn = True
                continue
        query.terms.append(_norm(token))

    return query


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; None if absent or unparseable."""
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _to_local(dt: datetime) -> datetime:
    # Naive timestamps are already local time
    return dt.astimezone() if dt.tzinfo else dt


def local_date_key(value: Optional[str]) -> Optional[str]:
    """``YYYY-MM-DD`` of a timestamp in local time."""
    dt = parse_timestamp(value)
    if dt is None:
        return None
    return _to_local(dt).strftime("%Y-%m-%d")


def format_local(value: Optional[str]) -> str:
    """``YYYY-MM-DD HH:MM`` in local time, or "" when unparseable."""
    dt = parse_timestamp(value)
    if dt is None:
        return ""
    return _to_local(dt).strftime("%Y-%m-%d %H:%M")


def _includes_any(haystack: str, needles: list[str]) -> bool:
    lowered = haystack.lower()
    for needle in needles:
        if needle and needle in lowered:
            return True
    return not needles


def _date_ok(query: Query, timestamp: Optional[str]) -> bool:
    key = local_date_key(timestamp)
    if key is None:
        return not query.has_date_filter
    if query.on and key != query.on:
        return False
    if query.after and key < query.after:
        return False
    if query.before and key > query.before:
        return False
    return True


def _session_haystack(session: Optional[Session]) -> str:
    if session is None:
        return ""
    return f"{session.title or ''} {session.url or ''}".strip()


def _file_haystack(commit: Commit) -> str:
    return f"{commit.filename or ''} {commit.url or ''} {commit.final_url or ''} {commit.mime or ''}".strip()


def commit_matches(query: Query, commit: Commit, session: Optional[Session]) -> bool:
    """Check a commit (and its session) against a parsed query."""
    if query.is_unknown_urn and commit.urn:
        return False
    if not _date_ok(query, commit.timestamp):
        return False

    session_hay = _session_haystack(session)
    if not _includes_any(session_hay, query.session_terms):
        return False

    file_hay = _file_haystack(commit)
    if not _includes_any(file_hay, query.file_terms):
        return False

    urn_hay = (commit.urn or "").strip().lower()
    if not _includes_any(urn_hay, query.urn_terms):
        return False

    all_hay = f"{session_hay} {file_hay} {urn_hay}".strip()
    return _includes_any(all_hay, query.terms)


def session_matches_without_commits(query: Query, session: Session) -> bool:
    """Check a session on its own, without any of its commits.

    Only session and free terms can be tested; any commit-level filter
    disqualifies the session.
    """
    session_hay = _session_haystack(session)
    if not _includes_any(session_hay, query.session_terms):
        return False
    if not _includes_any(session_hay, query.terms):
        return False
    return not query.needs_commits


def sort_sessions(sessions: Iterable[Session]) -> list[Session]:
    """Newest activity first."""
    return sorted(sessions, key=lambda s: str(s.last_activity), reverse=True)


class SearchEngine:
    """Filters commits and sessions for a query and an optional tree selection."""

    def __init__(self, sessions: Mapping[str, Session], commits: list[Commit]):
        self.sessions = sessions
        self.commits = commits

    def _matching_commits(self, query: Query, prefix: Optional[str]) -> list[Commit]:
        matches = []
        for commit in filter_commits_by_prefix(self.commits, prefix):
            if not commit.session_id:
                continue
            session = self.sessions.get(commit.session_id)
            if session is None:
                continue
            if commit_matches(query, commit, session):
                matches.append(commit)
        return matches

    def search(self, text: str, prefix: Optional[str] = None) -> SearchResult:
        """Commits and sessions visible for ``text`` under tree selection ``prefix``.

        With a tree selection, only sessions backed by a matching commit are
        shown. Without one, sessions whose own title / URL match are shown
        too.
        """
        query = parse_search_query(text)
        if query.command:
            return SearchResult(command=query.command)

        commits = self._matching_commits(query, prefix)
        backed = {c.session_id for c in commits}

        sessions = []
        for session in sort_sessions(self.sessions.values()):
            if session.id in backed:
                sessions.append(session)
            elif not prefix and session_matches_without_commits(query, session):
                sessions.append(session)

        return SearchResult(commits=commits, sessions=sessions)

    def session_commits(self, session_id: str, text: str, prefix: Optional[str] = None) -> list[Commit]:
        """Matching commits of one session, newest capture first."""
        session = self.sessions.get(session_id)
        if session is None:
            return []
        query = parse_search_query(text)
        if query.command:
            query = Query()
        commits = [
            c for c in filter_commits_by_prefix(self.commits, prefix)
            if c.session_id == session_id and commit_matches(query, c, session)
        ]
        commits.sort(key=lambda c: str(c.captured_at), reverse=True)
        return commits

    def tree(self, text: str = "", include_unknown: bool = True) -> TreeModel:
        """Container tree built only from commits matching ``text``."""
        query = parse_search_query(text)
        if query.command:
            query = Query()
        commits = self._matching_commits(query, None)
        return build_container_tree(commits, self.sessions, include_unknown=include_unknown)
