"""
sfvc.core.tree — Version forest reconstructed from ``based_on`` links.

Nodes live in a flat arena; a node's children are indices into that arena,
kept in log order.  Every record with ``based_on == 0`` is a root, so one
path may own several independent trees.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Iterator

from sfvc.core.errors import InconsistentLogError
from sfvc.core.models import VersionRecord

logger = logging.getLogger("sfvc.tree")


@dataclass
class TreeNode:
    record: VersionRecord
    children: list[int] = field(default_factory=list)
    orphan: bool = False                    # parent missing from the log


class VersionTree:
    """A forest of versions for one path, or for every tracked path."""

    def __init__(self) -> None:
        self.nodes: list[TreeNode] = []
        self.roots: list[int] = []

    def __len__(self) -> int:
        return len(self.nodes)

    @classmethod
    def build(cls, records: Iterable[VersionRecord], strict: bool = False) -> "VersionTree":
        """
        Link *records* (in log order) into a forest.

        A record whose parent is missing, or whose parent is not older than
        itself, becomes an extra root flagged ``orphan``.  With *strict* the
        same situation raises :class:`InconsistentLogError`.
        """
        tree = cls()
        lookup: dict[tuple[str, int], int] = {}
        for record in records:
            tree.nodes.append(TreeNode(record=record))
            lookup.setdefault(record.key, len(tree.nodes) - 1)

        for index, node in enumerate(tree.nodes):
            record = node.record
            if record.based_on == 0:
                tree.roots.append(index)
                continue
            parent = lookup.get((record.path, record.based_on))
            if parent is None or record.based_on >= record.version:
                if strict:
                    raise InconsistentLogError(record.path, record.version, record.based_on)
                logger.warning(
                    "Version %s of %s is based on missing version %d; shown as a root",
                    record.label, record.path, record.based_on,
                )
                node.orphan = True
                tree.roots.append(index)
                continue
            tree.nodes[parent].children.append(index)
        return tree

    def children(self, node: TreeNode) -> list[TreeNode]:
        return [self.nodes[i] for i in node.children]

    def root_nodes(self) -> list[TreeNode]:
        return [self.nodes[i] for i in self.roots]

    def roots_for(self, path: str) -> list[TreeNode]:
        return [n for n in self.root_nodes() if n.record.path == path]

    def paths(self) -> list[str]:
        return sorted({n.record.path for n in self.nodes})

    def walk(self, path: str | None = None) -> Iterator[tuple[int, TreeNode]]:
        """Depth-first pre-order traversal yielding ``(depth, node)``."""
        roots = self.root_nodes() if path is None else self.roots_for(path)
        stack = [(0, n) for n in reversed(roots)]
        while stack:
            depth, node = stack.pop()
            yield depth, node
            stack.extend((depth + 1, c) for c in reversed(self.children(node)))
