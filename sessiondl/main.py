#!/usr/bin/env python3
"""SessionDL - browse downloads grouped by the URN in their filenames.

Entry point for the CLI application.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from .store import StateStore


def _open_store(args) -> StateStore:
    return StateStore(Path(args.db).expanduser() if args.db else None)


def cmd_browse(args):
    """Launch the TUI browser."""
    from .app import SessionDLBrowser

    store = _open_store(args)
    store.ensure_settings_defaults()
    app = SessionDLBrowser(store=store, initial_query=getattr(args, "query", None))
    app.run()


def cmd_extract(args):
    """Print the identifier found in each filename."""
    from .urn import extract_urn_from_filename

    for filename in args.filenames:
        result = extract_urn_from_filename(filename)
        if result.urn:
            print(f"{filename}\t{result.urn}\t{result.source}")
        else:
            print(f"{filename}\t-\t-")


def _print_node(node, indent: int = 0):
    from .search import format_local

    date_str = format_local(node.last_at)[:10] or "-"
    print(f"{'  ' * indent}{node.label:<{max(1, 40 - 2 * indent)}} "
          f"{node.commit_count:>6} {node.session_count:>8}  {date_str}")
    for child in node.children:
        _print_node(child, indent + 1)


def cmd_tree(args):
    """Print the URN container tree."""
    from .search import SearchEngine

    state = _open_store(args).load_state()
    engine = SearchEngine(state.sessions, state.commits)
    model = engine.tree(args.query or "", include_unknown=args.unknown)

    if not model.roots:
        print("No commits recorded.")
        return

    print(f"{'Container':<40} {'Commits':>6} {'Sessions':>8}  Last")
    print("-" * 72)
    for root in model.roots:
        _print_node(root)


def cmd_search(args):
    """Search sessions and commits from CLI."""
    from .commands import run_command
    from .errors import CommandError
    from .search import SearchEngine, format_local

    store = _open_store(args)
    state = store.load_state()
    engine = SearchEngine(state.sessions, state.commits)
    result = engine.search(args.query, prefix=args.prefix)

    if result.command:
        try:
            outcome = run_command(store, result.command)
        except CommandError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        if outcome.action:
            print(f">{outcome.command} is only available in the browser.")
        elif outcome.text is not None:
            print(outcome.text)
        else:
            print(outcome.message)
        return

    if not result.sessions:
        print(f"No matches found for: {args.query}")
        return

    print(f"Found {len(result.sessions)} sessions, {len(result.commits)} commits:\n")

    for session in result.sessions[:args.limit]:
        print(f"{format_local(session.last_activity) or '????-??-?? ??:??'}  {session.title or session.url}")
        print(f"   ID: {session.id}")
        print(f"   URL: {session.url}")
        for commit in engine.session_commits(session.id, args.query, prefix=args.prefix)[:5]:
            print(f"   - {commit.filename or '(no filename)'}  {commit.urn or '(unknown)'}")
        print()


def cmd_record(args):
    """Feed JSON-lines download events into the recorder."""
    from .recorder import DownloadRecorder

    store = _open_store(args)
    store.ensure_settings_defaults()
    recorder = DownloadRecorder(store)

    if args.events == "-":
        lines = sys.stdin.read().splitlines()
    else:
        try:
            lines = Path(args.events).read_text().splitlines()
        except OSError as e:
            print(f"Cannot read {args.events}: {e}", file=sys.stderr)
            sys.exit(1)

    handled = 0
    for lineno, line in enumerate(lines, 1):
        line = line.strip()
        if not line:
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            print(f"Skipping line {lineno}: not valid JSON", file=sys.stderr)
            continue
        if not isinstance(event, dict):
            print(f"Skipping line {lineno}: not an event object", file=sys.stderr)
            continue
        recorder.handle_event(event)
        handled += 1

    state = store.load_state()
    print(f"✓ Processed {handled} events")
    print(f"  Sessions: {len(state.sessions)}")
    print(f"  Commits: {len(state.commits)}")
    print(f"  Pending: {len(state.pending)}")


def cmd_settings(args):
    """Show or update settings."""
    from .models import Settings

    store = _open_store(args)
    store.ensure_settings_defaults()
    if args.urn_only is not None:
        store.save_settings(Settings(urn_only=args.urn_only == "on"))

    settings = store.load_settings()
    print("Settings:")
    print(f"  urn-only: {'on' if settings.urn_only else 'off'}")
    print(f"  database: {store.db_path}")


def cmd_backup(args):
    """Write a JSON backup and record the backup proof."""
    from .commands import run_backup

    result = run_backup(_open_store(args))
    if args.output:
        try:
            Path(args.output).write_text(result.text)
        except OSError as e:
            print(f"Cannot write {args.output}: {e}", file=sys.stderr)
            sys.exit(1)
        print(f"✓ {result.message}")
        print(f"  Written to: {args.output}")
    else:
        print(result.text)


def cmd_naming(args):
    """Print the file naming contract."""
    from .commands import NAMING_CONTRACT

    print(NAMING_CONTRACT)


def main():
    """Main entry point for sessiondl CLI."""
    parser = argparse.ArgumentParser(
        description="Browse browser downloads grouped by the URN in their filenames",
        prog="sessiondl",
    )
    parser.add_argument(
        "--version", "-V",
        action="store_true",
        help="Show version"
    )
    parser.add_argument(
        "--db",
        help="State database path (default: $SESSIONDL_DB or ~/.cache/sessiondl/state.db)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Log to stderr"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    browse_parser = subparsers.add_parser("browse", help="Launch TUI browser (default)")
    browse_parser.add_argument("--query", "-q", help="Initial search query")

    extract_parser = subparsers.add_parser("extract", help="Extract URNs from filenames")
    extract_parser.add_argument("filenames", nargs="+", metavar="FILENAME", help="Filenames to scan")

    tree_parser = subparsers.add_parser("tree", help="Print the URN container tree")
    tree_parser.add_argument("--query", "-q", help="Only count commits matching this search")
    tree_parser.add_argument("--unknown", "-u", action="store_true", help="Include commits without a URN")

    search_parser = subparsers.add_parser("search", help="Search sessions and commits")
    search_parser.add_argument("query", help="Search query (or >command)")
    search_parser.add_argument("--prefix", "-p", help="Restrict to a URN prefix (or __unknown__)")
    search_parser.add_argument("--limit", "-l", type=int, default=10, help="Max sessions to show")

    record_parser = subparsers.add_parser("record", help="Record download events (JSON lines)")
    record_parser.add_argument("events", metavar="EVENTS_FILE", help="Events file, or - for stdin")

    settings_parser = subparsers.add_parser("settings", help="Show or change settings")
    settings_parser.add_argument("--urn-only", choices=["on", "off"], help="Only record downloads with a URN")

    backup_parser = subparsers.add_parser("backup", help="Export a JSON backup")
    backup_parser.add_argument("--output", "-o", help="Write to file instead of stdout")

    subparsers.add_parser("naming", help="Print the file naming contract")

    args = parser.parse_args()

    if args.version:
        from . import __version__
        print(f"sessiondl {__version__}")
        return

    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

    if args.command == "extract":
        cmd_extract(args)
    elif args.command == "tree":
        cmd_tree(args)
    elif args.command == "search":
        cmd_search(args)
    elif args.command == "record":
        cmd_record(args)
    elif args.command == "settings":
        cmd_settings(args)
    elif args.command == "backup":
        cmd_backup(args)
    elif args.command == "naming":
        cmd_naming(args)
    elif args.command == "browse":
        cmd_browse(args)
    else:
        browse_args = argparse.Namespace(db=args.db, query=None)
        cmd_browse(browse_args)


if __name__ == "__main__":
    main()
