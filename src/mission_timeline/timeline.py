from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Mapping

from .capabilities import CapabilityRegistry
from .errors import (
    ContainmentViolation,
    DanglingReference,
    DuplicateNode,
    EmptyBranch,
    InvalidBranchMember,
    OutOfRange,
    UnknownNode,
    WrongNodeKind,
)
from .timeline_models import (
    ActivityNode,
    CapabilityGroup,
    CostSeries,
    DecisionNode,
    Instant,
    TimelineNode,
    TimeSpan,
    as_span,
)

logger = logging.getLogger(__name__)


@dataclass
class TimelinePolicy:
    """Editing rules a timeline enforces."""

    # Refuse to remove referenced nodes unless the caller asks for cascading cleanup.
    strict_references: bool = False
    # Activities grouped under an activity must stay inside the parent's span.
    enforce_containment: bool = False


@dataclass(frozen=True)
class NodeInvalidated:
    """Change notification: anything derived from `node_id` (cost, duration, drawing) is stale."""

    node_id: str


@dataclass(frozen=True)
class ActivityLinks:
    """Every tag-style child group of a node together with its external link, edited as one value."""

    groups: tuple[CapabilityGroup, ...] = ()
    link: str | None = None


@dataclass(frozen=True)
class TimelineSnapshot:
    """
    Immutable view of the timeline at one generation.

    Edits never touch a published snapshot; they build the next one. Readers
    can therefore traverse a snapshot from any thread without locking.
    """

    generation: int
    nodes: Mapping[str, TimelineNode] = field(default_factory=dict)
    registry: CapabilityRegistry = field(default_factory=CapabilityRegistry)

    def node(self, node_id: str) -> TimelineNode:
        try:
            return self.nodes[node_id]
        except KeyError:
            raise UnknownNode(node_id) from None

    def duration(self, node_id: str) -> TimeSpan:
        """
        Span of an activity, or the hull of the selected chain of a decision.

        A decision with nothing selected, or whose selected chain is empty, has
        no meaningful duration and raises EmptyBranch.
        """

        node = self.node(node_id)
        if isinstance(node, ActivityNode):
            return node.span
        hull = TimeSpan.hull(self.node(member).duration() for member in node.selected_chain)  # type: ignore[union-attr]
        if hull is None:
            raise EmptyBranch(f"Decision '{node_id}' has no activities on its selected branch")
        return hull


Listener = Callable[[NodeInvalidated], None]
InvalidationHook = Callable[[set[str], int], None]


class Timeline:
    """
    Arena of activity and decision nodes plus their capability groups and links.

    Single writer, many readers: every edit runs under one lock, validates
    first, builds a new snapshot, runs invalidation hooks, publishes the
    snapshot and then emits one NodeInvalidated per affected node. A failed
    edit raises before anything is published, so the model is unchanged.
    """

    def __init__(self, name: str = "", policy: TimelinePolicy | None = None) -> None:
        self.name = name
        self.policy = policy or TimelinePolicy()
        self._lock = threading.RLock()
        self._state = TimelineSnapshot(generation=0)
        self._listeners: list[Listener] = []
        self._hooks: list[InvalidationHook] = []
        self._ids = itertools.count(1)

    # -- reading -------------------------------------------------------------

    def snapshot(self) -> TimelineSnapshot:
        return self._state

    @property
    def generation(self) -> int:
        return self._state.generation

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._state.nodes

    def __len__(self) -> int:
        return len(self._state.nodes)

    def node(self, node_id: str) -> TimelineNode:
        return self._state.node(node_id)

    def node_ids(self) -> list[str]:
        return list(self._state.nodes)

    def duration(self, node_id: str) -> TimeSpan:
        return self._state.duration(node_id)

    def groups_of(self, node_id: str) -> tuple[CapabilityGroup, ...]:
        state = self._state
        state.node(node_id)
        return state.registry.groups_of(node_id)

    def link(self, node_id: str) -> str | None:
        state = self._state
        state.node(node_id)
        return state.registry.link(node_id)

    def links_of(self, node_id: str) -> ActivityLinks:
        state = self._state
        state.node(node_id)
        return ActivityLinks(groups=state.registry.groups_of(node_id), link=state.registry.link(node_id))

    # -- subscriptions -------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns a callable that unsubscribes it."""

        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def add_invalidation_hook(self, hook: InvalidationHook) -> None:
        """Hooks run with (affected ids, new generation) before the new snapshot is published."""
        with self._lock:
            self._hooks.append(hook)

    # -- creation ------------------------------------------------------------

    def create_activity(
        self,
        span: TimeSpan | tuple[Instant, Instant],
        costs: Iterable[CostSeries] = (),
        *,
        display_name: str = "",
        activity_type: str = "",
        node_id: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> str:
        span = as_span(span)
        own_costs = _normalise_costs(costs)
        with self._lock:
            state = self._state
            new_id = self._claim_id(state, node_id, "activity")
            node = ActivityNode(
                id=new_id,
                span=span,
                display_name=display_name or new_id,
                own_costs=own_costs,
                activity_type=activity_type,
                meta=meta,
            )
            nodes = dict(state.nodes)
            nodes[new_id] = node
            logger.debug(f"Created activity '{new_id}' spanning [{span.start}, {span.end}]")
            self._commit(state, nodes, state.registry, {new_id})
            return new_id

    def create_decision(
        self,
        branches: Iterable[Iterable[str]] = (),
        selected: int = 0,
        *,
        display_name: str = "",
        node_id: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> str:
        chains = tuple(tuple(chain) for chain in branches)
        with self._lock:
            state = self._state
            for chain in chains:
                _check_branch_members(state, chain)
            chosen = _check_selection(chains, selected)
            new_id = self._claim_id(state, node_id, "decision")
            nodes = dict(state.nodes)
            nodes[new_id] = DecisionNode(
                id=new_id,
                display_name=display_name or new_id,
                branches=chains,
                selected=chosen,
                meta=meta,
            )
            registry = state.registry.copy()
            registry.set_branch_refs(new_id, itertools.chain.from_iterable(chains))
            logger.debug(f"Created decision '{new_id}' with {len(chains)} branch(es)")
            self._commit(state, nodes, registry, {new_id})
            return new_id

    # -- edits ---------------------------------------------------------------

    def set_span(self, node_id: str, span: TimeSpan | tuple[Instant, Instant]) -> None:
        """Move or resize an activity; an invalid span raises InvalidSpan and changes nothing."""
        span = as_span(span)
        with self._lock:
            state = self._state
            node = _require_activity(state, node_id)
            if self.policy.enforce_containment:
                _check_span_containment(state, node_id, span)
            nodes = dict(state.nodes)
            nodes[node_id] = replace(node, span=span)
            logger.debug(f"Span of '{node_id}' set to [{span.start}, {span.end}]")
            self._commit(state, nodes, state.registry, {node_id})

    def set_costs(self, node_id: str, costs: Iterable[CostSeries]) -> None:
        own_costs = _normalise_costs(costs)
        with self._lock:
            state = self._state
            node = _require_activity(state, node_id)
            nodes = dict(state.nodes)
            nodes[node_id] = replace(node, own_costs=own_costs)
            self._commit(state, nodes, state.registry, {node_id})

    def set_display_name(self, node_id: str, display_name: str) -> None:
        with self._lock:
            state = self._state
            node = state.node(node_id)
            nodes = dict(state.nodes)
            nodes[node_id] = replace(node, display_name=display_name)
            self._commit(state, nodes, state.registry, {node_id})

    def set_group(self, node_id: str, tag: str, children: Iterable[str]) -> None:
        """Replace the group `tag` of `node_id`; an empty sequence removes the tag."""
        members = tuple(children)
        with self._lock:
            state = self._state
            self._check_group(state, node_id, members)
            registry = state.registry.copy()
            registry.set_group(node_id, tag, members)
            logger.debug(f"Group '{tag}' of '{node_id}' set to {list(members)}")
            self._commit(state, state.nodes, registry, {node_id})

    def set_link(self, node_id: str, target: str | None) -> None:
        with self._lock:
            state = self._state
            state.node(node_id)
            if target is not None:
                state.node(target)
            registry = state.registry.copy()
            registry.set_link(node_id, target)
            logger.debug(f"Link of '{node_id}' set to {target!r}")
            self._commit(state, state.nodes, registry, {node_id})

    def set_links(self, node_id: str, links: ActivityLinks) -> None:
        """Replace every group and the link of `node_id` in a single edit."""
        with self._lock:
            state = self._state
            for group in links.groups:
                self._check_group(state, node_id, group.children)
            if links.link is not None:
                state.node(links.link)
            registry = state.registry.copy()
            for group in registry.groups_of(node_id):
                registry.set_group(node_id, group.tag, ())
            for group in links.groups:
                registry.set_group(node_id, group.tag, group.children)
            registry.set_link(node_id, links.link)
            self._commit(state, state.nodes, registry, {node_id})

    def set_branch(self, decision_id: str, index: int, members: Iterable[str]) -> None:
        """Replace branch `index`; `index == len(branches)` appends a new branch."""
        chain = tuple(members)
        with self._lock:
            state = self._state
            decision = _require_decision(state, decision_id)
            if not 0 <= index <= len(decision.branches):
                raise OutOfRange(
                    f"Branch {index} out of range for decision '{decision_id}' with {len(decision.branches)} branch(es)"
                )
            _check_branch_members(state, chain)
            branches = list(decision.branches)
            if index == len(branches):
                branches.append(chain)
            else:
                branches[index] = chain
            selected = decision.selected if decision.selected is not None else 0
            self._replace_decision(state, replace(decision, branches=tuple(branches), selected=selected))

    def select_branch(self, decision_id: str, index: int) -> None:
        with self._lock:
            state = self._state
            decision = _require_decision(state, decision_id)
            if not 0 <= index < len(decision.branches):
                raise OutOfRange(
                    f"Branch {index} out of range for decision '{decision_id}' with {len(decision.branches)} branch(es)"
                )
            nodes = dict(state.nodes)
            nodes[decision_id] = replace(decision, selected=index)
            logger.debug(f"Decision '{decision_id}' now follows branch {index}")
            self._commit(state, nodes, state.registry, {decision_id})

    def remove_node(self, node_id: str, cascade: bool | None = None) -> None:
        """
        Remove a node and its outgoing references.

        Incoming references (group entries, links, branch members) are purged
        when cascading. Without cascading a referenced node is not removed and
        DanglingReference is raised instead. `cascade=None` follows the policy:
        cascade unless `strict_references` is set.
        """

        if cascade is None:
            cascade = not self.policy.strict_references
        with self._lock:
            state = self._state
            state.node(node_id)
            referrers = sorted(state.registry.referrers(node_id) - {node_id})
            if referrers and not cascade:
                raise DanglingReference(node_id, referrers)

            nodes = dict(state.nodes)
            registry = state.registry.copy()
            touched = {node_id}
            touched |= registry.purge_references(node_id)
            for parent_id in referrers:
                parent = nodes.get(parent_id)
                if isinstance(parent, DecisionNode) and any(node_id in chain for chain in parent.branches):
                    branches = tuple(tuple(m for m in chain if m != node_id) for chain in parent.branches)
                    nodes[parent_id] = replace(parent, branches=branches)
                    registry.set_branch_refs(parent_id, itertools.chain.from_iterable(branches))
                    touched.add(parent_id)
            registry.forget(node_id)
            del nodes[node_id]
            logger.debug(f"Removed '{node_id}' (purged references from {referrers})")
            self._commit(state, nodes, registry, touched)

    # -- internals -----------------------------------------------------------

    def _replace_decision(self, state: TimelineSnapshot, decision: DecisionNode) -> None:
        nodes = dict(state.nodes)
        nodes[decision.id] = decision
        registry = state.registry.copy()
        registry.set_branch_refs(decision.id, itertools.chain.from_iterable(decision.branches))
        self._commit(state, nodes, registry, {decision.id})

    def _check_group(self, state: TimelineSnapshot, node_id: str, children: Iterable[str]) -> None:
        parent = state.node(node_id)
        for child_id in children:
            child = state.node(child_id)
            if (
                self.policy.enforce_containment
                and isinstance(parent, ActivityNode)
                and isinstance(child, ActivityNode)
                and not parent.span.contains_span(child.span)
            ):
                raise ContainmentViolation(
                    f"Activity '{child_id}' [{child.span.start}, {child.span.end}] does not fit inside "
                    f"'{node_id}' [{parent.span.start}, {parent.span.end}]"
                )

    def _claim_id(self, state: TimelineSnapshot, node_id: str | None, prefix: str) -> str:
        if node_id is not None:
            if node_id in state.nodes:
                raise DuplicateNode(f"Node id '{node_id}' already exists")
            return node_id
        while True:
            candidate = f"{prefix}-{next(self._ids)}"
            if candidate not in state.nodes:
                return candidate

    def _commit(
        self,
        previous: TimelineSnapshot,
        nodes: Mapping[str, TimelineNode],
        registry: CapabilityRegistry,
        touched: set[str],
    ) -> None:
        # Ancestors in the old graph catch edges the edit removed; the new graph catches added ones.
        affected = previous.registry.ancestors(touched) | registry.ancestors(touched)
        generation = previous.generation + 1
        for hook in list(self._hooks):
            hook(affected, generation)
        self._state = TimelineSnapshot(generation=generation, nodes=nodes, registry=registry)
        self._notify(sorted(affected))

    def _notify(self, node_ids: list[str]) -> None:
        for listener in list(self._listeners):
            for node_id in node_ids:
                try:
                    listener(NodeInvalidated(node_id))
                except Exception:
                    logger.exception(f"Change listener failed for NodeInvalidated({node_id!r})")


def _normalise_costs(costs: Iterable[CostSeries]) -> tuple[CostSeries, ...]:
    own: list[CostSeries] = []
    seen: set[str] = set()
    for series in costs:
        if series.dimension in seen:
            raise ValueError(f"Duplicate cost dimension '{series.dimension}'")
        seen.add(series.dimension)
        own.append(series)
    return tuple(own)


def _require_activity(state: TimelineSnapshot, node_id: str) -> ActivityNode:
    node = state.node(node_id)
    if not isinstance(node, ActivityNode):
        raise WrongNodeKind(f"Node '{node_id}' is a {type(node).__name__}, expected ActivityNode")
    return node


def _require_decision(state: TimelineSnapshot, node_id: str) -> DecisionNode:
    node = state.node(node_id)
    if not isinstance(node, DecisionNode):
        raise WrongNodeKind(f"Node '{node_id}' is a {type(node).__name__}, expected DecisionNode")
    return node


def _check_branch_members(state: TimelineSnapshot, chain: Iterable[str]) -> None:
    for member in chain:
        if not isinstance(state.node(member), ActivityNode):
            raise InvalidBranchMember(f"Branch member '{member}' is not an activity")


def _check_selection(chains: tuple[tuple[str, ...], ...], selected: int) -> int | None:
    if not chains:
        return None
    if not 0 <= selected < len(chains):
        raise OutOfRange(f"Branch {selected} out of range for {len(chains)} branch(es)")
    return selected


def _check_span_containment(state: TimelineSnapshot, node_id: str, span: TimeSpan) -> None:
    registry = state.registry
    for parent_id in registry.referrers(node_id):
        parent = state.nodes.get(parent_id)
        if not isinstance(parent, ActivityNode):
            continue
        in_group = any(node_id in group.children for group in registry.groups_of(parent_id))
        if in_group and not parent.span.contains_span(span):
            raise ContainmentViolation(
                f"Span [{span.start}, {span.end}] of '{node_id}' leaves parent '{parent_id}' "
                f"[{parent.span.start}, {parent.span.end}]"
            )
    for group in registry.groups_of(node_id):
        for child_id in group.children:
            child = state.nodes.get(child_id)
            if isinstance(child, ActivityNode) and not span.contains_span(child.span):
                raise ContainmentViolation(
                    f"Child '{child_id}' [{child.span.start}, {child.span.end}] would leave "
                    f"'{node_id}' [{span.start}, {span.end}]"
                )
