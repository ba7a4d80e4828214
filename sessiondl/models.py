"""Record models shared by the recorder, tree builder and search engine."""

from dataclasses import asdict, dataclass, field, fields
from typing import NamedTuple, Optional


class UrnExtract(NamedTuple):
    """Result of scanning a filename for an identifier token."""

    urn: Optional[str]
    source: Optional[str]  # which filename rule fired, e.g. "filename:urn__"


NO_URN = UrnExtract(None, None)


def _known_fields(cls, data: dict) -> dict:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class Session:
    """A browsing context (canonical URL) that originated downloads."""

    # Identity: sha256(canonical url)[:12]
    id: str
    url: str
    title: Optional[str] = None

    # Timing (ISO-8601 strings)
    created_at: str = ""
    last_seen_at: str = ""
    last_download_at: Optional[str] = None

    download_count: int = 0

    @property
    def last_activity(self) -> str:
        return self.last_download_at or self.last_seen_at or self.created_at

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        return cls(**_known_fields(cls, data))


@dataclass
class Commit:
    """One observed download event, optionally tagged with an identifier."""

    id: str
    session_id: Optional[str] = None
    session_url: Optional[str] = None

    # Timing
    captured_at: str = ""
    start_time: Optional[str] = None
    end_time: Optional[str] = None

    state: Optional[str] = None  # "in_progress", "complete", "interrupted"

    # Download details
    filename: Optional[str] = None
    url: Optional[str] = None
    final_url: Optional[str] = None
    referrer: Optional[str] = None
    mime: Optional[str] = None
    total_bytes: Optional[int] = None

    # Identifier (None = unknown)
    urn: Optional[str] = None
    urn_source: Optional[str] = None

    @property
    def timestamp(self) -> Optional[str]:
        """Capture time, falling back to the download start time."""
        return self.captured_at or self.start_time

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Commit":
        return cls(**_known_fields(cls, data))


@dataclass
class PendingDownload:
    """A download held back until its filename yields an identifier."""

    id: str
    created_at: str
    session_url: Optional[str] = None
    session_title: Optional[str] = None
    captured_at: str = ""
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    state: Optional[str] = None
    filename: Optional[str] = None
    url: Optional[str] = None
    final_url: Optional[str] = None
    referrer: Optional[str] = None
    mime: Optional[str] = None
    total_bytes: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "PendingDownload":
        return cls(**_known_fields(cls, data))


@dataclass
class Settings:
    """User settings kept in the sync area."""

    # Record only downloads whose filename carries an identifier
    urn_only: bool = True

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "Settings":
        raw = data or {}
        return cls(urn_only=raw.get("urn_only") is not False)

    def to_dict(self) -> dict:
        return {"urn_only": self.urn_only}


@dataclass
class LocalState:
    """Snapshot of the local store area handed to the pure engines."""

    sessions: dict[str, Session] = field(default_factory=dict)
    commits: list[Commit] = field(default_factory=list)
    pending: dict[str, PendingDownload] = field(default_factory=dict)


@dataclass
class SearchResult:
    """Commits and sessions visible for one query / tree selection."""

    commits: list[Commit] = field(default_factory=list)
    sessions: list[Session] = field(default_factory=list)
    command: Optional[str] = None

    @property
    def session_ids(self) -> set[str]:
        return {s.id for s in self.sessions}
