"""``>`` commands typed into the search box.

The search engine only recognizes a leading ``>``; the commands themselves
are run here. ``close`` and ``full`` only make sense inside the browser UI,
so they come back as an action for the caller to perform.
"""

import hashlib
import json
import logging
from datetime import datetime
from typing import Callable, NamedTuple, Optional

from .errors import ClearBlockedError, CommandError
from .models import LocalState
from .recorder import to_iso, utc_now
from .search import sort_sessions
from .store import (
    KEY_BACKUP_PROOF,
    KEY_COMMITS,
    KEY_PENDING,
    KEY_SESSIONS,
    KEY_UI,
    StateStore,
)

logger = logging.getLogger(__name__)

BACKUP_SCHEMA = "session-download-commits:backup:v1"

# Commands the UI performs itself
UI_COMMANDS = ("close", "full")
COMMANDS = UI_COMMANDS + ("backup", "naming", "contract", "clear")

NAMING_CONTRACT = "\n".join([
    "[File naming contract: how downloads join the URN tree]",
    "",
    "This tool extracts a URN token from the downloaded file name and files the",
    "download under that URN.",
    "",
    "Rules:",
    "1) Every file name must contain a URN token (preferably at the start).",
    "2) An extension is required (e.g. .zip / .pdf / .html / .tar.gz).",
    "   - Multi-part extensions are allowed (.tar.gz / .jsonl.gz / .zip.crdownload).",
    "3) ':' is not allowed in file names on every platform, so embed the URN as a",
    "   safe token.",
    "4) Token format:",
    "   - Feature: urn__feat__<seg1>__<seg2>__...__<leaf>",
    "   - Test:    urn__test__<seg1>__<seg2>__...__<leaf>",
    "   '__' stands for the URN separator ':'.",
    "5) Segments use only [a-z0-9_-] (no dots, spaces, brackets or non-ASCII).",
    "   - A browser duplicate marker ' (1)' / '(1)' is fine; it is read as part of",
    "     the suffix outside the token.",
    "   - Write versions without dots: v1-2-3 or v1_2_3 (v0.1.2 is rejected).",
    "6) Files without a valid token stay out of the URN tree (with urn-only on they",
    "   are not recorded at all).",
    "",
    "Example) logical URN: urn:feat:sessions:chrome:download-commits",
    "         file name:   urn__feat__sessions__chrome__download-commits.zip",
])


class CommandResult(NamedTuple):
    command: str
    message: str
    text: Optional[str] = None  # payload for the clipboard / output file
    action: Optional[str] = None  # UI action: "close" or "full"


def build_backup_payload(state: LocalState, exported_at: str) -> dict:
    """Backup document: sessions newest first, commits oldest first."""
    sessions = {s.id: s.to_dict() for s in sort_sessions(state.sessions.values())}
    commits = sorted(state.commits, key=lambda c: str(c.captured_at))
    return {
        "schema": BACKUP_SCHEMA,
        "exported_at": exported_at,
        "sessions": sessions,
        "commits": [c.to_dict() for c in commits],
    }


def backup_hash(text: str) -> str:
    return hashlib.sha256(text.encode()).hexdigest()[:16]


def run_backup(store: StateStore, clock: Callable[[], datetime] = utc_now) -> CommandResult:
    """Serialize the local state and record a backup proof."""
    now = to_iso(clock())
    payload = build_backup_payload(store.load_state(), now)
    text = json.dumps(payload, indent=2, ensure_ascii=False)
    digest = backup_hash(text)
    store.set({KEY_BACKUP_PROOF: {"created_at": now, "hash": digest}})
    logger.info(f"Backup taken: {len(payload['commits'])} commits, hash {digest}")
    return CommandResult("backup", f"Backup created (hash {digest})", text=text)


def run_clear(store: StateStore) -> CommandResult:
    """Remove recorded state. Refused until a backup exists."""
    proof = store.get(KEY_BACKUP_PROOF).get(KEY_BACKUP_PROOF)
    if not proof:
        raise ClearBlockedError("clear is blocked: run >backup first")
    store.remove([KEY_SESSIONS, KEY_COMMITS, KEY_PENDING, KEY_UI, KEY_BACKUP_PROOF])
    logger.info("Cleared recorded sessions and commits")
    return CommandResult("clear", "Cleared all sessions and commits")


def run_command(
    store: StateStore,
    name: str,
    clock: Callable[[], datetime] = utc_now,
) -> CommandResult:
    """Run a command by name (without the leading ``>``)."""
    command = (name or "").lower()
    if command not in COMMANDS:
        raise CommandError(f"Unknown command: >{name}")
    if command in UI_COMMANDS:
        return CommandResult(command, "", action=command)
    if command in ("naming", "contract"):
        return CommandResult(command, "Naming contract ready", text=NAMING_CONTRACT)
    if command == "backup":
        return run_backup(store, clock)
    return run_clear(store)
