"""URN container tree: aggregates commits by identifier prefix.

The tree is rebuilt from scratch on every call; nodes are never updated
incrementally. Parent links live in a separate lookup table so each node
only owns its children.
"""

from dataclasses import dataclass, field
from typing import Iterable, Mapping, NamedTuple, Optional

from .models import Commit, Session
from .urn import urn_to_segments

ROOT_FEAT = "urn:feat"
ROOT_TEST = "urn:test"
UNKNOWN_ID = "__unknown__"
ALL_ID = "__all__"


@dataclass
class TreeNode:
    """Aggregated container for one identifier prefix."""

    id: str  # == prefix
    label: str  # last segment; roots use the full label ("urn:feat")
    prefix: str
    depth: int  # root = 0
    commit_count: int = 0
    session_count: int = 0
    last_at: Optional[str] = None
    children: list["TreeNode"] = field(default_factory=list)


@dataclass
class TreeModel:
    roots: list[TreeNode]
    by_id: dict[str, TreeNode]
    parent_by_id: dict[str, Optional[str]]


class Crumb(NamedTuple):
    id: str
    label: str


def matches_urn_prefix(urn: str, prefix: str) -> bool:
    """True if ``urn`` is ``prefix`` or lies beneath it.

    ``urn:feat:sessionsX`` does not match ``urn:feat:sessions``.
    """
    if urn == prefix:
        return True
    if not urn.startswith(prefix):
        return False
    return urn[len(prefix):len(prefix) + 1] in (":", "/", "")


def filter_commits_by_prefix(commits: Iterable[Commit], prefix: Optional[str]) -> list[Commit]:
    """Apply a tree selection to a commit list.

    ``None`` keeps everything, the unknown sentinel keeps commits without an
    identifier, any other prefix keeps commits at or below it.
    """
    if not prefix:
        return list(commits)
    if prefix == UNKNOWN_ID:
        return [c for c in commits if not c.urn]
    return [c for c in commits if c.urn and matches_urn_prefix(c.urn, prefix)]


class _TreeBuilder:
    """Single-use accumulator behind build_container_tree."""

    def __init__(self, sessions_by_id: Mapping[str, Session], include_unknown: bool):
        self.sessions_by_id = sessions_by_id
        self.include_unknown = include_unknown

        self.root_feat = TreeNode(id=ROOT_FEAT, label=ROOT_FEAT, prefix=ROOT_FEAT, depth=0)
        self.root_test = TreeNode(id=ROOT_TEST, label=ROOT_TEST, prefix=ROOT_TEST, depth=0)
        self.root_unknown = TreeNode(id=UNKNOWN_ID, label="(unknown urn)", prefix=UNKNOWN_ID, depth=0)

        self.by_id: dict[str, TreeNode] = {}
        self.parent_by_id: dict[str, Optional[str]] = {}
        for root in self._roots():
            self.by_id[root.id] = root
            self.parent_by_id[root.id] = None

        # Distinct sessions and newest timestamp per node id
        self.sessions_by_node: dict[str, set[str]] = {}
        self.last_by_node: dict[str, str] = {}

    def _roots(self) -> list[TreeNode]:
        roots = [self.root_feat, self.root_test]
        if self.include_unknown:
            roots.append(self.root_unknown)
        return roots

    def _ensure_child(self, parent: TreeNode, label: str, prefix: str) -> TreeNode:
        existing = self.by_id.get(prefix)
        if existing:
            return existing
        node = TreeNode(id=prefix, label=label, prefix=prefix, depth=parent.depth + 1)
        self.by_id[prefix] = node
        self.parent_by_id[prefix] = parent.id
        parent.children.append(node)
        return node

    def _bump(self, node: TreeNode, commit: Commit) -> None:
        node.commit_count += 1

        session_id = commit.session_id
        if session_id and session_id in self.sessions_by_id:
            self.sessions_by_node.setdefault(node.id, set()).add(session_id)

        ts = commit.timestamp
        if ts:
            current = self.last_by_node.get(node.id)
            if current is None or str(ts) > current:
                self.last_by_node[node.id] = str(ts)

    def add(self, commit: Commit) -> None:
        if commit.urn:
            parsed = urn_to_segments(commit.urn)
            if not parsed:
                return
            root_id, segments = parsed
            node = self.root_feat if root_id == ROOT_FEAT else self.root_test
            self._bump(node, commit)

            prefix = root_id
            for segment in segments:
                prefix = f"{prefix}:{segment}"
                node = self._ensure_child(node, segment, prefix)
                self._bump(node, commit)
        elif self.include_unknown:
            self._bump(self.root_unknown, commit)

    def _finalize(self, node: TreeNode) -> None:
        node.session_count = len(self.sessions_by_node.get(node.id, ()))
        node.last_at = self.last_by_node.get(node.id)
        node.children.sort(key=lambda n: n.label)
        for child in node.children:
            self._finalize(child)

    def result(self) -> TreeModel:
        roots = self._roots()
        for root in roots:
            self._finalize(root)
        kept = [r for r in roots if r.commit_count > 0]
        return TreeModel(roots=kept, by_id=self.by_id, parent_by_id=self.parent_by_id)


def build_container_tree(
    commits: Iterable[Commit],
    sessions_by_id: Mapping[str, Session],
    include_unknown: bool = False,
) -> TreeModel:
    """Fold commits into the ``urn:feat`` / ``urn:test`` container forest.

    Every node on a commit's path (root included) counts the commit, the
    commit's session (only if present in ``sessions_by_id``) and its
    timestamp. Session counts are distinct per node, so a parent's count is
    not the sum of its children's. Roots without commits are left out of
    ``roots`` but stay reachable through ``by_id``.
    """
    builder = _TreeBuilder(sessions_by_id, include_unknown)
    for commit in commits:
        builder.add(commit)
    return builder.result()


def ancestors_inclusive(model: TreeModel, node_id: str) -> list[str]:
    """Path from the root down to ``node_id`` (inclusive)."""
    path: list[str] = []
    seen: set[str] = set()
    current: Optional[str] = node_id
    while current:
        if current in seen:
            break
        seen.add(current)
        path.append(current)
        current = model.parent_by_id.get(current)
    path.reverse()
    return path


def prefix_to_breadcrumb(prefix: Optional[str]) -> list[Crumb]:
    """Breadcrumb for a tree selection, starting with "All"."""
    crumbs = [Crumb(ALL_ID, "All")]
    if not prefix:
        return crumbs
    if prefix == UNKNOWN_ID:
        crumbs.append(Crumb(UNKNOWN_ID, "(unknown)"))
        return crumbs

    parts = [p for p in prefix.split(":") if p]
    if len(parts) < 2:
        return crumbs

    current = f"{parts[0]}:{parts[1]}"
    crumbs.append(Crumb(current, current))
    for segment in parts[2:]:
        current = f"{current}:{segment}"
        crumbs.append(Crumb(current, segment))
    return crumbs
