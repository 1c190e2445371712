"""
R-tree spatial index over mark bounding boxes.

Guttman R-tree with quadratic split. Removal condenses underfull nodes and
reinserts their entries; the root is shortened when it has a single child.
Queries return identities only, so the index never holds mark values.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple

from mpp.errors import DuplicateIdentityError, EntryNotFoundError, IndexDesyncError
from mpp.geometry import BoundingBox

DEFAULT_MAX_ENTRIES = 8
MIN_MAX_ENTRIES = 4


@dataclass
class _Entry:
    box: BoundingBox
    identity: Optional[int] = None
    child: Optional["_Node"] = None


@dataclass(eq=False)
class _Node:
    leaf: bool
    entries: List[_Entry] = field(default_factory=list)
    parent: Optional["_Node"] = None

    def cover(self) -> BoundingBox:
        return BoundingBox.union_all(e.box for e in self.entries)


class SpatialIndex:
    """Set of (identity, box) entries with overlap queries."""

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        if max_entries < MIN_MAX_ENTRIES:
            raise ValueError(f"max_entries must be >= {MIN_MAX_ENTRIES}, got {max_entries}")
        self.max_entries = max_entries
        self.min_entries = max_entries // 2
        self._root = _Node(leaf=True)
        self._boxes: Dict[int, BoundingBox] = {}
        self._leaf_of: Dict[int, _Node] = {}

    # ─── Queries ────────────────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._boxes)

    def __contains__(self, identity: object) -> bool:
        return identity in self._boxes

    def box_for(self, identity: int) -> BoundingBox:
        try:
            return self._boxes[identity]
        except KeyError:
            raise EntryNotFoundError(f"Identity {identity} is not in the index") from None

    def entries(self) -> List[Tuple[int, BoundingBox]]:
        return list(self._boxes.items())

    @property
    def height(self) -> int:
        h = 1
        node = self._root
        while not node.leaf:
            node = node.entries[0].child
            h += 1
        return h

    def intersects_with(self, box: BoundingBox) -> Set[int]:
        """Identities whose boxes overlap `box` (touching does not count)."""
        found: Set[int] = set()
        stack = [self._root]
        while stack:
            node = stack.pop()
            for entry in node.entries:
                if not entry.box.intersects(box):
                    continue
                if node.leaf:
                    found.add(entry.identity)
                else:
                    stack.append(entry.child)
        return found

    def contains_point(self, point: Sequence[float]) -> Set[int]:
        """Identities whose boxes contain `point` (boundary inclusive)."""
        found: Set[int] = set()
        stack = [self._root]
        while stack:
            node = stack.pop()
            for entry in node.entries:
                if not entry.box.contains_point(point):
                    continue
                if node.leaf:
                    found.add(entry.identity)
                else:
                    stack.append(entry.child)
        return found

    # ─── Mutation ───────────────────────────────────────────────────────────

    def insert(self, identity: int, box: BoundingBox) -> None:
        if identity in self._boxes:
            raise DuplicateIdentityError(f"Identity {identity} is already in the index")
        self._boxes[identity] = box
        self._insert_entry(_Entry(box=box, identity=identity))

    def remove(self, identity: int, box: BoundingBox) -> None:
        stored = self._boxes.get(identity)
        if stored is None:
            raise EntryNotFoundError(f"Identity {identity} is not in the index")
        if stored != box:
            raise EntryNotFoundError(
                f"Identity {identity} is indexed with {stored}, not {box}"
            )

        leaf = self._leaf_of.pop(identity)
        del self._boxes[identity]
        leaf.entries = [e for e in leaf.entries if e.identity != identity]
        self._condense(leaf)

        if not self._root.leaf and len(self._root.entries) == 1:
            self._root = self._root.entries[0].child
            self._root.parent = None

    def clear(self) -> None:
        self._root = _Node(leaf=True)
        self._boxes.clear()
        self._leaf_of.clear()

    # ─── Internals ──────────────────────────────────────────────────────────

    def _insert_entry(self, entry: _Entry) -> None:
        leaf = self._choose_leaf(entry.box)
        leaf.entries.append(entry)
        self._leaf_of[entry.identity] = leaf
        split = self._split(leaf) if len(leaf.entries) > self.max_entries else None
        self._adjust(leaf, split)

    def _choose_leaf(self, box: BoundingBox) -> _Node:
        node = self._root
        while not node.leaf:
            best = min(
                node.entries,
                key=lambda e: (e.box.enlargement(box), e.box.volume()),
            )
            node = best.child
        return node

    def _entry_for_child(self, parent: _Node, child: _Node) -> _Entry:
        for entry in parent.entries:
            if entry.child is child:
                return entry
        raise IndexDesyncError("R-tree node is missing from its parent")

    def _adjust(self, node: _Node, split: Optional[_Node]) -> None:
        while node.parent is not None:
            parent = node.parent
            self._entry_for_child(parent, node).box = node.cover()
            if split is not None:
                split.parent = parent
                parent.entries.append(_Entry(box=split.cover(), child=split))
                split = self._split(parent) if len(parent.entries) > self.max_entries else None
            node = parent

        if split is not None:
            root = _Node(leaf=False)
            for child in (node, split):
                child.parent = root
                root.entries.append(_Entry(box=child.cover(), child=child))
            self._root = root

    def _split(self, node: _Node) -> _Node:
        """Quadratic split; `node` keeps one group, the returned sibling the other."""
        entries = node.entries
        seed_a, seed_b = self._pick_seeds(entries)
        group_a = [entries[seed_a]]
        group_b = [entries[seed_b]]
        box_a = group_a[0].box
        box_b = group_b[0].box
        remaining = [e for i, e in enumerate(entries) if i not in (seed_a, seed_b)]

        while remaining:
            if len(group_a) + len(remaining) == self.min_entries:
                group_a.extend(remaining)
                break
            if len(group_b) + len(remaining) == self.min_entries:
                group_b.extend(remaining)
                break

            # Pick the entry with the strongest preference for one group
            best_idx = 0
            best_diff = -1.0
            for i, e in enumerate(remaining):
                diff = abs(box_a.enlargement(e.box) - box_b.enlargement(e.box))
                if diff > best_diff:
                    best_idx, best_diff = i, diff
            entry = remaining.pop(best_idx)

            grow_a = box_a.enlargement(entry.box)
            grow_b = box_b.enlargement(entry.box)
            key_a = (grow_a, box_a.volume(), len(group_a))
            key_b = (grow_b, box_b.volume(), len(group_b))
            if key_a <= key_b:
                group_a.append(entry)
                box_a = box_a.union(entry.box)
            else:
                group_b.append(entry)
                box_b = box_b.union(entry.box)

        sibling = _Node(leaf=node.leaf, entries=group_b, parent=node.parent)
        node.entries = group_a
        self._reparent(node)
        self._reparent(sibling)
        return sibling

    @staticmethod
    def _pick_seeds(entries: List[_Entry]) -> Tuple[int, int]:
        best = (0, 1)
        worst_waste = float("-inf")
        for i in range(len(entries)):
            for j in range(i + 1, len(entries)):
                a, b = entries[i].box, entries[j].box
                waste = a.union(b).volume() - a.volume() - b.volume()
                if waste > worst_waste:
                    worst_waste = waste
                    best = (i, j)
        return best

    def _reparent(self, node: _Node) -> None:
        for entry in node.entries:
            if node.leaf:
                self._leaf_of[entry.identity] = node
            else:
                entry.child.parent = node

    def _condense(self, leaf: _Node) -> None:
        orphans: List[_Entry] = []
        node = leaf
        while node.parent is not None:
            parent = node.parent
            if len(node.entries) < self.min_entries:
                parent.entries = [e for e in parent.entries if e.child is not node]
                orphans.extend(self._leaf_entries(node))
            else:
                self._entry_for_child(parent, node).box = node.cover()
            node = parent

        for entry in orphans:
            self._insert_entry(entry)

    @staticmethod
    def _leaf_entries(node: _Node) -> Iterator[_Entry]:
        stack = [node]
        while stack:
            current = stack.pop()
            if current.leaf:
                yield from current.entries
            else:
                stack.extend(e.child for e in current.entries)

    def check_structure(self) -> None:
        """Raise IndexDesyncError if the tree and its lookup tables disagree."""
        seen: Set[int] = set()
        stack: List[Tuple[_Node, int]] = [(self._root, 1)]
        leaf_depth: Optional[int] = None
        while stack:
            node, depth = stack.pop()
            if node.leaf:
                if leaf_depth is None:
                    leaf_depth = depth
                elif leaf_depth != depth:
                    raise IndexDesyncError("R-tree leaves are at different depths")
                for entry in node.entries:
                    if entry.identity in seen:
                        raise IndexDesyncError(f"Identity {entry.identity} indexed twice")
                    seen.add(entry.identity)
                    if self._leaf_of.get(entry.identity) is not node:
                        raise IndexDesyncError(f"Leaf lookup stale for {entry.identity}")
                    if self._boxes.get(entry.identity) != entry.box:
                        raise IndexDesyncError(f"Box lookup stale for {entry.identity}")
                continue
            for entry in node.entries:
                child = entry.child
                if child.parent is not node:
                    raise IndexDesyncError("R-tree parent pointer is stale")
                if child.entries and entry.box != child.cover():
                    raise IndexDesyncError("R-tree directory box does not cover its child")
                stack.append((child, depth + 1))
        if seen != set(self._boxes):
            raise IndexDesyncError(
                f"R-tree holds {len(seen)} entries but lookup holds {len(self._boxes)}"
            )
