"""UI widgets for the SessionDL TUI."""

from typing import Optional
from urllib.parse import urlsplit

from rich.text import Text
from textual.app import ComposeResult
from textual.containers import ScrollableContainer
from textual.widgets import ListItem, Static

from ..models import Commit, Session
from ..search import format_local
from ..tree import TreeNode


def truncate(text: str, max_len: int = 100) -> str:
    """Truncate text with ellipsis."""
    if len(text) <= max_len:
        return text
    return text[:max_len - 3] + "..."


def host_from_url(url: str) -> str:
    try:
        return urlsplit(url).netloc or url
    except ValueError:
        return url


def session_display_title(session: Session) -> str:
    return session.title or host_from_url(session.url)


class TreeNodeItem(ListItem):
    """One row of the URN container tree."""

    def __init__(self, node: TreeNode, collapsed: bool = False, selected: bool = False):
        super().__init__()
        self.node = node
        self.collapsed = collapsed
        self.selected = selected
        self._static: Optional[Static] = None

    def compose(self) -> ComposeResult:
        self._static = Static(self._build_text(60))
        yield self._static

    def on_resize(self, event) -> None:
        if self._static:
            self._static.update(self._build_text(self.size.width))

    def _build_text(self, width: int) -> Text:
        node = self.node
        text = Text()
        text.append("  " * node.depth)
        if node.children:
            text.append("▸ " if self.collapsed else "▾ ", style="dim")
        else:
            text.append("  ")

        label_style = "bold yellow" if self.selected else ("bold cyan" if node.depth == 0 else "white")
        chips = f" s:{node.session_count} c:{node.commit_count}"
        date_str = format_local(node.last_at)[:10]
        if date_str:
            chips += f" {date_str}"

        label_width = max(8, width - len(text.plain) - len(chips) - 2)
        text.append(truncate(node.label, label_width), style=label_style)
        text.append(chips, style="dim")
        return text


class SessionItem(ListItem):
    """List item for a session with its identifier counts."""

    def __init__(self, session: Session, known: int = 0, unknown: int = 0):
        super().__init__()
        self.session = session
        self.known = known
        self.unknown = unknown
        self._static: Optional[Static] = None

    def compose(self) -> ComposeResult:
        self._static = Static(self._build_text(60))
        yield self._static

    def on_resize(self, event) -> None:
        if self._static:
            self._static.update(self._build_text(self.size.width))

    def _build_text(self, width: int) -> Text:
        date_str = format_local(self.session.last_activity)[5:] or "??-?? ??:??"

        text = Text()
        text.append(f"{date_str:<11}", style="cyan")
        text.append(" │ ", style="dim")
        text.append(f"{self.known:>3}", style="green bold")
        text.append("/", style="dim")
        text.append(f"{self.unknown:<3}", style="yellow")
        text.append(" │ ", style="dim")

        prefix_width = 25  # date(11) + sep(3) + counts(7) + sep(3) + padding
        desc_width = max(20, width - prefix_width)
        title = session_display_title(self.session).replace("\n", " ").strip()
        text.append(truncate(title, desc_width), style="white")
        return text


class SessionDetailPanel(ScrollableContainer, can_focus=True):
    """Scrollable panel showing a session and its matching commits."""

    def __init__(self, id: str = None):
        super().__init__(id=id)
        self.session: Optional[Session] = None

    def update(self, text: Text) -> None:
        """Update the content (replaces all content)."""
        for child in list(self.children):
            child.remove()
        self.mount(Static(text, markup=False))

    def show_session(self, session: Session, commits: list[Commit], limit: int = 200):
        """Update display with session info and its commits."""
        self.session = session

        text = Text()
        text.append("━━━ Session ━━━\n", style="bold cyan")
        text.append("\n")
        text.append("Title: ", style="bold")
        text.append(f"{truncate(session_display_title(session), 60)}\n")
        text.append("URL: ", style="bold")
        text.append(f"{session.url}\n", style="dim")
        text.append("Downloads: ", style="bold")
        text.append(f"{session.download_count}\n", style="yellow")
        text.append("Last download: ", style="bold")
        text.append(f"{format_local(session.last_download_at) or 'never'}\n")
        text.append("Session ID: ", style="bold")
        text.append(f"{session.id}\n", style="dim")
        text.append("\n")

        text.append(f"┌─ Commits ({len(commits)}) ────────────────\n", style="bold green")
        if not commits:
            text.append("│ ", style="green")
            text.append("(no commits match the current filter)\n", style="dim")
        for commit in commits[:limit]:
            text.append("│ ", style="green")
            text.append(f"{commit.filename or '(no filename)'}\n", style="bold")
            text.append("│   ", style="green")
            text.append(f"{format_local(commit.timestamp)}  ", style="cyan")
            text.append(f"{commit.state or ''}  ", style="magenta")
            text.append(f"{commit.urn or '(unknown)'}\n", style="yellow" if commit.urn else "dim")
        if len(commits) > limit:
            text.append("│ ", style="green")
            text.append(f"... {len(commits) - limit} more\n", style="dim")
        text.append("└───────────────────────────────────\n", style="green")
        text.append("\n")
        text.append("Press ", style="dim")
        text.append("o", style="bold")
        text.append(" to open in browser | ", style="dim")
        text.append("Esc", style="bold")
        text.append(" to deselect", style="dim")

        self.update(text)

    def show_command_hint(self, command: str):
        """Show the command palette while a ``>`` command is typed."""
        self.session = None
        text = Text()
        text.append("Command mode: ", style="bold")
        text.append(f">{command}\n\n", style="bold yellow")
        for name, help_text in (
            ("naming", "copy the file naming contract"),
            ("full", "toggle the full-width view"),
            ("backup", "copy a JSON backup of all records"),
            ("clear", "delete all records (only after a backup)"),
            ("close", "quit"),
        ):
            text.append(f"  >{name:<8}", style="bold cyan")
            text.append(f" {help_text}\n")
        text.append("\nPress ", style="dim")
        text.append("Enter", style="bold")
        text.append(" to run", style="dim")
        self.update(text)

    def show_help(self):
        """Search syntax cheat sheet (shown when nothing is selected)."""
        self.session = None
        text = Text()
        text.append("Select a session to view its downloads.\n\n", style="dim")
        text.append("Search keys ", style="bold")
        text.append("(space separated)\n", style="dim")
        for example, help_text in (
            ("session:chatgpt", "session title / URL"),
            ("file:.zip", "filename / URL / MIME type"),
            ("urn:sessions", "identifier"),
            ("on:2026-02-10", "captured on a day"),
            ("after:2026-02-01", "captured on or after"),
            ("before:2026-02-28", "captured on or before"),
            ("is:unknown", "only downloads without a URN"),
        ):
            text.append(f"  {example:<18}", style="bold cyan")
            text.append(f" {help_text}\n")
        text.append("\nType ", style="dim")
        text.append(">", style="bold")
        text.append(" for commands.", style="dim")
        self.update(text)
