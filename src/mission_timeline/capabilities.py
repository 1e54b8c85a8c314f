from __future__ import annotations

from collections import Counter
from typing import Iterable, Iterator

from .timeline_models import CapabilityGroup


class CapabilityRegistry:
    """
    Tag-keyed child associations, external links and their reverse index.

    Each node owns zero or more capability groups (tag -> ordered child ids,
    duplicates allowed) and at most one external link. Decision branch
    members are recorded here too so that the reverse index covers every kind
    of edge the aggregation engine can follow.

    No existence or cycle checks happen here; ids are plain strings.
    """

    def __init__(self) -> None:
        self._groups: dict[str, dict[str, tuple[str, ...]]] = {}
        self._links: dict[str, str] = {}
        self._branch_refs: dict[str, tuple[str, ...]] = {}
        # child -> parent -> number of edges (a child may sit in several groups of one parent)
        self._referrers: dict[str, Counter[str]] = {}
        # Counters this instance may mutate in place; the rest are shared with copies.
        self._owned: set[str] = set()

    def copy(self) -> "CapabilityRegistry":
        clone = CapabilityRegistry()
        clone._groups = {node_id: dict(groups) for node_id, groups in self._groups.items()}
        clone._links = dict(self._links)
        clone._branch_refs = dict(self._branch_refs)
        clone._referrers = dict(self._referrers)
        self._owned = set()
        return clone

    def groups_of(self, node_id: str) -> tuple[CapabilityGroup, ...]:
        """Groups in the order their tags were first set."""
        groups = self._groups.get(node_id, {})
        return tuple(CapabilityGroup(tag, children) for tag, children in groups.items())

    def group(self, node_id: str, tag: str) -> tuple[str, ...]:
        return self._groups.get(node_id, {}).get(tag, ())

    def set_group(self, node_id: str, tag: str, children: Iterable[str]) -> None:
        """Replace one group; an empty sequence removes the tag."""
        new_children = tuple(children)
        groups = self._groups.get(node_id, {})
        self._drop_edges(node_id, groups.get(tag, ()))
        if new_children:
            groups = dict(groups)
            groups[tag] = new_children
            self._groups[node_id] = groups
            self._add_edges(node_id, new_children)
        elif tag in groups:
            groups = {k: v for k, v in groups.items() if k != tag}
            if groups:
                self._groups[node_id] = groups
            else:
                self._groups.pop(node_id, None)

    def link(self, node_id: str) -> str | None:
        return self._links.get(node_id)

    def set_link(self, node_id: str, target: str | None) -> None:
        previous = self._links.pop(node_id, None)
        if previous is not None:
            self._drop_edges(node_id, (previous,))
        if target is not None:
            self._links[node_id] = target
            self._add_edges(node_id, (target,))

    def set_branch_refs(self, node_id: str, members: Iterable[str]) -> None:
        """Record every member of every branch of a decision (selected or not)."""
        self._drop_edges(node_id, self._branch_refs.pop(node_id, ()))
        refs = tuple(members)
        if refs:
            self._branch_refs[node_id] = refs
            self._add_edges(node_id, refs)

    def children_of(self, node_id: str) -> Iterator[str]:
        """Every group member in group order, then the link target."""
        for children in self._groups.get(node_id, {}).values():
            yield from children
        target = self._links.get(node_id)
        if target is not None:
            yield target

    def referrers(self, node_id: str) -> set[str]:
        """Nodes holding a group entry, link or branch reference to `node_id`."""
        return set(self._referrers.get(node_id, ()))

    def ancestors(self, node_ids: Iterable[str]) -> set[str]:
        """The given nodes plus everything that reaches them through any chain of references."""
        seen: set[str] = set()
        stack = list(node_ids)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._referrers.get(current, ()))
        return seen

    def forget(self, node_id: str) -> None:
        """Drop everything `node_id` owns (its outgoing edges)."""
        for tag in list(self._groups.get(node_id, {})):
            self.set_group(node_id, tag, ())
        self.set_link(node_id, None)
        self.set_branch_refs(node_id, ())

    def purge_references(self, target: str) -> set[str]:
        """
        Remove `target` from every group and link that points at it.

        Branch references are left to the caller, which owns decision nodes.
        Returns the ids of nodes whose groups or link changed.
        """

        touched: set[str] = set()
        for parent in self.referrers(target):
            for tag, children in list(self._groups.get(parent, {}).items()):
                if target in children:
                    self.set_group(parent, tag, [child for child in children if child != target])
                    touched.add(parent)
            if self._links.get(parent) == target:
                self.set_link(parent, None)
                touched.add(parent)
        return touched

    def _add_edges(self, parent: str, children: Iterable[str]) -> None:
        for child in children:
            self._writable(child)[parent] += 1

    def _drop_edges(self, parent: str, children: Iterable[str]) -> None:
        for child in children:
            if child not in self._referrers:
                continue
            parents = self._writable(child)
            parents[parent] -= 1
            if parents[parent] <= 0:
                del parents[parent]
            if not parents:
                del self._referrers[child]
                self._owned.discard(child)

    def _writable(self, child: str) -> Counter[str]:
        if child not in self._owned:
            self._referrers[child] = Counter(self._referrers.get(child, ()))
            self._owned.add(child)
        return self._referrers[child]
