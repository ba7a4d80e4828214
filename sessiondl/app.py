"""SessionDL browser TUI application."""

import logging
import subprocess
import webbrowser
from typing import Optional

from rich.text import Text
from textual import on, work
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.widgets import Footer, Header, Input, ListView, Static

from .commands import run_command
from .errors import CommandError
from .models import LocalState, Session, Settings
from .recorder import is_http_url
from .search import SearchEngine, parse_search_query
from .store import KEY_UI, StateStore
from .tree import TreeModel, TreeNode, ancestors_inclusive, prefix_to_breadcrumb
from .ui import APP_CSS, SessionDetailPanel, SessionItem, TreeNodeItem

logger = logging.getLogger(__name__)

MAX_DISPLAY = 500
POLL_INTERVAL = 1.0


class SessionDLBrowser(App):
    """TUI with the URN tree, matching sessions and a commit detail pane."""

    CSS = APP_CSS

    BINDINGS = [
        Binding("ctrl+p", "focus_search", "Search", priority=True),
        Binding("tab", "switch_pane", "Tab: Panes", priority=True),
        Binding("escape", "back", "Back"),
        Binding("space", "toggle_collapse", "Collapse"),
        Binding("backspace", "breadcrumb_up", "Up", show=False),
        Binding("o", "open_session", "Open"),
        Binding("u", "toggle_urn_only", "URN-only"),
        Binding("q", "quit", "Quit"),
    ]

    def __init__(self, store: Optional[StateStore] = None, initial_query: Optional[str] = None):
        super().__init__()
        self.store = store or StateStore()
        self.initial_query = initial_query

        self.state = LocalState()
        self.settings = Settings()
        self.engine = SearchEngine({}, [])
        self.tree_model: Optional[TreeModel] = None

        self.search_text = ""
        self.selected_prefix: Optional[str] = None
        self.selected_session_id: Optional[str] = None
        self.collapsed: set[str] = set()
        self.full_width = False
        self.focus_pane = "session"

        self._reload_needed = False
        self._query_restored = False

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        yield Input(placeholder="Search... (session: file: urn: on: after: before: is:unknown, > for commands)", id="search-input")
        yield Static("", id="status-bar")
        with Horizontal(id="main"):
            with Vertical(id="tree-container"):
                yield Static("[bold]URN Tree[/]", classes="list-header")
                yield Static("", id="breadcrumb")
                yield ListView(id="tree-list")
            with Vertical(id="session-container"):
                yield Static("[bold]Sessions[/] [dim](newest first)[/]", id="session-header", classes="list-header")
                yield ListView(id="session-list")
            with Vertical(id="detail-container"):
                yield SessionDetailPanel(id="detail-panel")
        yield Footer()

    def on_mount(self):
        self.title = "SessionDL"
        self.store.add_listener(self._on_store_changed)
        self.set_interval(POLL_INTERVAL, self._poll_changes)
        self._load_state_background()

    def on_unmount(self):
        self.store.remove_listener(self._on_store_changed)

    # -- loading --

    def _on_store_changed(self, changes: dict, area: str):
        # Typing only rewrites the saved query; that needs no reload.
        if set(changes) <= {KEY_UI}:
            return
        self._reload_needed = True

    def _poll_changes(self):
        if self._reload_needed or self.store.has_external_changes():
            self._reload_needed = False
            self._load_state_background()

    @work(exclusive=True, thread=True)
    def _load_state_background(self):
        """Load records from the store off the UI thread."""
        try:
            state = self.store.load_state()
            settings = self.store.load_settings()
            saved_query = self.store.load_ui_query()
        except Exception as e:
            logger.exception("Loading state failed")
            self.call_from_thread(self.notify, f"Loading failed: {e}", severity="error")
            return
        self.call_from_thread(self._on_state_loaded, state, settings, saved_query)

    def _on_state_loaded(self, state: LocalState, settings: Settings, saved_query: str):
        self.state = state
        self.settings = settings
        self.engine = SearchEngine(state.sessions, state.commits)

        restore = not self._query_restored
        if restore:
            self._query_restored = True
            query = self.initial_query if self.initial_query is not None else saved_query
            search_input = self.query_one("#search-input", Input)
            with search_input.prevent(Input.Changed):
                search_input.value = query
            self.search_text = query

        self._render_all()
        if restore:
            self.query_one("#session-list", ListView).focus()

    # -- rendering --

    def _render_all(self):
        self._update_status_bar()
        query = parse_search_query(self.search_text)
        if query.command:
            self.query_one("#detail-panel", SessionDetailPanel).show_command_hint(query.command)
            return
        self._populate_tree()
        self._populate_sessions()

    def _update_status_bar(self):
        text = Text()
        text.append(f"{len(self.state.sessions)} sessions", style="dim")
        text.append(" · ", style="dim")
        text.append(f"{len(self.state.commits)} commits", style="dim")
        text.append(" · ", style="dim")
        if self.settings.urn_only:
            text.append("urn-only ON", style="bold green")
        else:
            text.append("urn-only OFF", style="bold yellow")
        if self.state.pending:
            text.append(f" · {len(self.state.pending)} pending", style="dim")
        self.query_one("#status-bar", Static).update(text)

    def _visible_nodes(self, model: TreeModel) -> list[TreeNode]:
        # A selected node's ancestors are always expanded
        forced = set(ancestors_inclusive(model, self.selected_prefix)) if self.selected_prefix else set()
        rows: list[TreeNode] = []

        def walk(node: TreeNode):
            rows.append(node)
            if node.id in self.collapsed and node.id not in forced:
                return
            for child in node.children:
                walk(child)

        for root in model.roots:
            walk(root)
        return rows

    def _populate_tree(self):
        self.tree_model = self.engine.tree(self.search_text, include_unknown=True)
        tree_list = self.query_one("#tree-list", ListView)

        items = []
        selected_index = None
        for i, node in enumerate(self._visible_nodes(self.tree_model)):
            selected = node.id == self.selected_prefix
            if selected:
                selected_index = i
            items.append(TreeNodeItem(node, collapsed=node.id in self.collapsed, selected=selected))

        tree_list.clear()
        tree_list.mount(*items)
        if selected_index is not None:
            tree_list.index = selected_index

        crumbs = prefix_to_breadcrumb(self.selected_prefix)
        self.query_one("#breadcrumb", Static).update(" › ".join(c.label for c in crumbs))

    def _known_unknown_counts(self) -> dict[str, tuple[int, int]]:
        counts: dict[str, list[int]] = {}
        for commit in self.state.commits:
            if not commit.session_id:
                continue
            entry = counts.setdefault(commit.session_id, [0, 0])
            entry[0 if commit.urn else 1] += 1
        return {sid: (known, unknown) for sid, (known, unknown) in counts.items()}

    def _populate_sessions(self):
        result = self.engine.search(self.search_text, prefix=self.selected_prefix)
        sessions = result.sessions[:MAX_DISPLAY]
        counts = self._known_unknown_counts()

        session_list = self.query_one("#session-list", ListView)
        session_list.clear()
        session_list.mount(*[
            SessionItem(s, *counts.get(s.id, (0, 0)))
            for s in sessions
        ])

        total = len(result.sessions)
        count_text = f"{len(sessions)}/{total}" if total > MAX_DISPLAY else str(total)
        self.query_one("#session-header", Static).update(
            f"[bold]Sessions[/] [dim]({count_text}, {len(result.commits)} commits)[/]"
        )

        visible_ids = [s.id for s in sessions]
        if self.selected_session_id in visible_ids:
            session_list.index = visible_ids.index(self.selected_session_id)
            self._show_selected_session()
        else:
            self.selected_session_id = None
            self.query_one("#detail-panel", SessionDetailPanel).show_help()

    def _show_selected_session(self):
        session = self.state.sessions.get(self.selected_session_id or "")
        detail = self.query_one("#detail-panel", SessionDetailPanel)
        if session is None:
            detail.show_help()
            return
        commits = self.engine.session_commits(session.id, self.search_text, prefix=self.selected_prefix)
        detail.show_session(session, commits)

    # -- events --

    @on(Input.Changed, "#search-input")
    def on_search_changed(self, event: Input.Changed):
        self.search_text = event.value
        self.store.save_ui_query(event.value)
        self._render_all()

    @on(Input.Submitted, "#search-input")
    def on_search_submitted(self, event: Input.Submitted):
        query = parse_search_query(event.value)
        if query.command:
            self._run_command(query.command)
        else:
            self.query_one("#session-list", ListView).focus()
            self.focus_pane = "session"

    @on(ListView.Selected, "#tree-list")
    def on_tree_selected(self, event: ListView.Selected):
        if isinstance(event.item, TreeNodeItem):
            node_id = event.item.node.id
            self.selected_prefix = None if self.selected_prefix == node_id else node_id
            self.selected_session_id = None
            self._render_all()

    @on(ListView.Highlighted, "#session-list")
    def on_session_highlighted(self, event: ListView.Highlighted):
        if event.item and isinstance(event.item, SessionItem):
            self.selected_session_id = event.item.session.id
            self._show_selected_session()

    # -- commands --

    def _copy_text(self, text: str) -> bool:
        try:
            subprocess.run(["pbcopy"], input=text.encode(), check=True)
            return True
        except (OSError, subprocess.CalledProcessError):
            pass
        try:
            self.copy_to_clipboard(text)
            return True
        except Exception:
            return False

    def _run_command(self, name: str):
        try:
            result = run_command(self.store, name)
        except CommandError as e:
            self.notify(str(e), severity="error")
            return

        if result.action == "close":
            self.exit()
            return
        if result.action == "full":
            self._toggle_full_width()
            return
        if result.text is not None:
            if self._copy_text(result.text):
                self.notify(f"{result.message} (copied to clipboard)")
            else:
                self.notify("Could not copy to clipboard", severity="error")
        elif result.message:
            self.notify(result.message)

        self._clear_search_input()

    def _clear_search_input(self):
        search_input = self.query_one("#search-input", Input)
        search_input.value = ""

    def _toggle_full_width(self):
        self.full_width = not self.full_width
        self.query_one("#tree-container").set_class(self.full_width, "hidden")
        self.query_one("#session-container").set_class(self.full_width, "wide")
        self._clear_search_input()

    # -- actions --

    def _search_focused(self) -> bool:
        return isinstance(self.focused, Input)

    def action_focus_search(self):
        search_input = self.query_one("#search-input", Input)
        search_input.focus()
        self.focus_pane = "search"

    def action_switch_pane(self):
        """Cycle focus: tree → sessions → detail."""
        order = ["session", "detail"] if self.full_width else ["tree", "session", "detail"]
        current = self.focus_pane if self.focus_pane in order else order[-1]
        self.focus_pane = order[(order.index(current) + 1) % len(order)]
        target = {
            "tree": "#tree-list",
            "session": "#session-list",
            "detail": "#detail-panel",
        }[self.focus_pane]
        self.query_one(target).focus()

    def action_back(self):
        """Escape: leave the search box, then deselect, then quit."""
        if self._search_focused():
            self.query_one("#session-list", ListView).focus()
            self.focus_pane = "session"
            return
        if self.selected_session_id:
            self.selected_session_id = None
            self.query_one("#detail-panel", SessionDetailPanel).show_help()
            return
        if self.selected_prefix:
            self.selected_prefix = None
            self._render_all()
            return
        self.exit()

    def action_toggle_collapse(self):
        if self.focused is not self.query_one("#tree-list", ListView):
            return
        item = self.query_one("#tree-list", ListView).highlighted_child
        if isinstance(item, TreeNodeItem) and item.node.children:
            self.collapsed ^= {item.node.id}
            self._populate_tree()

    def action_breadcrumb_up(self):
        """Move the tree selection one level up."""
        if self._search_focused() or not self.selected_prefix:
            return
        crumbs = prefix_to_breadcrumb(self.selected_prefix)
        parent = crumbs[-2].id if len(crumbs) >= 2 else None
        self.selected_prefix = None if parent in (None, crumbs[0].id) else parent
        self._render_all()

    def action_open_session(self):
        session: Optional[Session] = self.state.sessions.get(self.selected_session_id or "")
        if session and is_http_url(session.url):
            webbrowser.open(session.url)

    def action_toggle_urn_only(self):
        if self._search_focused():
            return
        self.settings = Settings(urn_only=not self.settings.urn_only)
        self.store.save_settings(self.settings)
        self._update_status_bar()
        self.notify(f"urn-only {'ON' if self.settings.urn_only else 'OFF'}")

