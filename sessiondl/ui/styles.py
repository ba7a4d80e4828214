"""CSS styles for the SessionDL TUI."""

APP_CSS = """
Screen {
    layout: vertical;
}

#search-input {
    height: 3;
    border: solid $warning;
    padding: 0 1;
}

#status-bar {
    height: 1;
    padding: 0 1;
    background: $surface;
}

#main {
    height: 1fr;
}

#tree-container {
    width: 35%;
    height: 100%;
    border: solid $primary;
}

#tree-container.hidden {
    display: none;
}

#session-container {
    width: 30%;
    height: 100%;
    border: solid $warning;
}

#session-container.wide {
    width: 45%;
}

#detail-container {
    width: 1fr;
    height: 100%;
    border: solid $secondary;
    padding: 0 1;
}

#tree-list, #session-list {
    height: 1fr;
}

.list-header {
    height: auto;
    background: $surface;
    padding: 0 1;
    text-style: bold;
}

#breadcrumb {
    height: auto;
    padding: 0 1;
    color: $text-muted;
}

#detail-panel {
    height: 100%;
    overflow-y: auto;
    scrollbar-gutter: stable;
}

#detail-panel:focus {
    border: solid $success;
}

TreeNodeItem, SessionItem {
    height: 1;
    padding: 0 1;
}

TreeNodeItem:hover, SessionItem:hover {
    background: $surface-lighten-1;
}

ListView:focus > ListItem.-active {
    background: $primary-darken-1;
}

ListView.-has-focus > ListItem.-active {
    background: $primary;
}

Footer {
    background: $surface;
}
"""
