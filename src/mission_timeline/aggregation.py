from __future__ import annotations

import logging
import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, Mapping

from .errors import EmptyQuerySpan, QueryAborted
from .timeline import Timeline, TimelineSnapshot
from .timeline_models import ActivityNode, CostSeries, DecisionNode, Instant, TimeSpan

logger = logging.getLogger(__name__)

CacheKey = tuple[str, TimeSpan, "frozenset[str] | None"]


@dataclass(frozen=True)
class CycleDetected:
    """
    Non-fatal diagnostic: the traversal met a node already on its path and cut that edge.

    `path` runs from the repeated node, through the nodes that led back to it,
    to the repeated node again.
    """

    node_id: str
    path: tuple[str, ...]

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return " -> ".join(self.path)


@dataclass(frozen=True)
class CostQuery:
    """Result of one aggregation query."""

    node_id: str
    span: TimeSpan
    costs: Mapping[str, CostSeries]
    diagnostics: tuple[CycleDetected, ...] = ()
    visited: int = 0

    def __getitem__(self, dimension: str) -> CostSeries:
        return self.costs[dimension]

    @property
    def cycles(self) -> bool:
        return bool(self.diagnostics)


@dataclass
class _Outcome:
    """
    Aggregated costs of one node within a traversal.

    `cut` holds every node that was on the path when an edge into it was cut
    somewhere in this subtree; `explored` holds the nodes expanded to produce a
    cut result. A result with an empty `cut` is the same on any path. A cut
    result is only valid again while every node of `cut` is on the path and no
    node of `explored` is.
    """

    costs: dict[str, CostSeries]
    cut: frozenset[str] = frozenset()
    explored: frozenset[str] = frozenset()

    @property
    def truncated(self) -> bool:
        return bool(self.cut)

    def valid_on(self, on_path: set[str]) -> bool:
        return self.cut <= on_path and self.explored.isdisjoint(on_path)


@dataclass
class _Frame:
    node_id: str
    pending: Iterator[str]
    parts: dict[str, list[CostSeries]] = field(default_factory=dict)
    cut: set[str] = field(default_factory=set)
    explored: set[str] = field(default_factory=set)
    expanded_before: int = 0

    def absorb(self, child_id: str, outcome: _Outcome) -> None:
        self.cut |= outcome.cut
        if outcome.truncated:
            self.explored |= outcome.explored
        else:
            self.explored.add(child_id)
        for dimension, series in outcome.costs.items():
            self.parts.setdefault(dimension, []).append(series)


@dataclass
class _CacheEntry:
    generation: int
    result: CostQuery
    truncated: bool = False


def merge_series(dimension: str, parts: Iterable[CostSeries]) -> CostSeries:
    """
    Sum several series of one dimension on the union of their time grids.

    At every grid instant each part contributes its (interpolated) value if
    the instant lies inside the part's own span and nothing otherwise.
    """

    present = [part for part in parts if not part.is_empty]
    if not present:
        return CostSeries(dimension)
    if len(present) == 1:
        return present[0]

    grid = sorted({t for part in present for t, _ in part.samples})
    samples: list[tuple[Instant, float]] = []
    for instant in grid:
        total = 0.0
        for part in present:
            value = part.value_at(instant)
            if value is not None:
                total += value
        samples.append((instant, total))
    return CostSeries(dimension, tuple(samples))


def deadline_after(seconds: float) -> Callable[[], bool]:
    """Build a `should_abort` callback that fires once `seconds` have elapsed."""
    deadline = time.monotonic() + seconds

    def expired() -> bool:
        return time.monotonic() >= deadline

    return expired


class AggregationEngine:
    """
    Hierarchical cost aggregation over a Timeline.

    For a node and query window the engine sums, per dimension, the node's own
    series, the aggregated series of every group member (in group order,
    duplicates counted once per appearance), of the selected branch of a
    decision and of the external link target. All of them are clipped to the
    window.

    Edges that lead back onto the current path are cut and reported as
    CycleDetected diagnostics, so every query terminates. A node is expanded
    again within one query only when a result computed under a different path
    had a cut that no longer applies, so the result never depends on the
    order children are visited in.

    Results are cached per (node, window, dimensions). The timeline calls
    `invalidate` for every edited node and all of its ancestors before it
    publishes the new snapshot; cache entries carry the generation they were
    computed on so a query racing an edit never serves or stores a stale
    result. A result that needed a cut is only served again as the answer to
    the same query, never as part of another traversal.
    """

    def __init__(self, timeline: Timeline, max_entries: int = 4096) -> None:
        self._timeline = timeline
        self._max_entries = max_entries
        self._cache: OrderedDict[CacheKey, _CacheEntry] = OrderedDict()
        self._invalidated_at: dict[str, int] = {}
        self._lock = threading.Lock()
        timeline.add_invalidation_hook(self.invalidate)

    @property
    def timeline(self) -> Timeline:
        return self._timeline

    def query_cost(
        self,
        node_id: str,
        span: TimeSpan | tuple[Instant, Instant],
        dimensions: Iterable[str] | None = None,
        *,
        should_abort: Callable[[], bool] | None = None,
    ) -> CostQuery:
        """
        Aggregate the costs of `node_id` over `span`.

        Raises EmptyQuerySpan for a reversed window, UnknownNode for a missing
        root and QueryAborted when `should_abort` returns true between two node
        visits. Cycles never raise; they show up in `diagnostics`.
        """

        window = _query_window(span)
        wanted = None if dimensions is None else frozenset(dimensions)
        snapshot = self._timeline.snapshot()
        snapshot.node(node_id)

        key: CacheKey = (node_id, window, wanted)
        cached = self._lookup(key, snapshot.generation, allow_truncated=True)
        if cached is not None:
            return cached

        traversal = _Traversal(self, snapshot, window, wanted, should_abort)
        outcome = traversal.run(node_id)

        costs = dict(outcome.costs)
        for dimension in sorted(wanted or ()):
            costs.setdefault(dimension, CostSeries(dimension))
        result = CostQuery(
            node_id=node_id,
            span=window,
            costs=dict(sorted(costs.items())),
            diagnostics=tuple(traversal.diagnostics),
            visited=traversal.expanded,
        )
        self._store(key, snapshot.generation, result, truncated=outcome.truncated)
        return result

    def invalidate(self, node_ids: Iterable[str], generation: int) -> None:
        """Drop cached results for `node_ids` and refuse older results for them from now on."""
        stale = set(node_ids)
        with self._lock:
            for node_id in stale:
                self._invalidated_at[node_id] = generation
            for key in [key for key in self._cache if key[0] in stale]:
                del self._cache[key]
        if stale:
            logger.debug(f"Invalidated cached costs of {sorted(stale)} at generation {generation}")

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def _lookup(self, key: CacheKey, generation: int, allow_truncated: bool = False) -> CostQuery | None:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None or (entry.truncated and not allow_truncated):
                return None
            if self._invalidated_at.get(key[0], -1) > min(entry.generation, generation):
                return None
            self._cache.move_to_end(key)
            return entry.result

    def _store(self, key: CacheKey, generation: int, result: CostQuery, truncated: bool = False) -> None:
        with self._lock:
            if self._invalidated_at.get(key[0], -1) > generation:
                # Computed on a snapshot an edit has already superseded.
                return
            self._cache[key] = _CacheEntry(generation, result, truncated)
            self._cache.move_to_end(key)
            while len(self._cache) > self._max_entries:
                self._cache.popitem(last=False)


class _Traversal:
    """One depth-first walk; iterative so long chains cannot exhaust the interpreter stack."""

    def __init__(
        self,
        engine: AggregationEngine,
        snapshot: TimelineSnapshot,
        window: TimeSpan,
        wanted: frozenset[str] | None,
        should_abort: Callable[[], bool] | None,
    ) -> None:
        self.engine = engine
        self.snapshot = snapshot
        self.window = window
        self.wanted = wanted
        self.should_abort = should_abort
        self.frames: list[_Frame] = []
        self.on_path: set[str] = set()
        self.memo: dict[str, _Outcome] = {}
        self.diagnostics: list[CycleDetected] = []
        self.expanded = 0

    def run(self, root_id: str) -> _Outcome:
        ready = self._enter(root_id)
        if ready is not None:
            return ready

        while True:
            frame = self.frames[-1]
            child_id = next(frame.pending, None)
            if child_id is not None:
                outcome = self._enter(child_id)
                if outcome is not None:
                    frame.absorb(child_id, outcome)
                continue

            self.frames.pop()
            self.on_path.discard(frame.node_id)
            finished = self._finish(frame)
            if not self.frames:
                return finished
            self.frames[-1].absorb(frame.node_id, finished)

    def _enter(self, node_id: str) -> _Outcome | None:
        """Return a ready outcome, or push a frame and return None."""

        if node_id in self.on_path:
            path = [frame.node_id for frame in self.frames]
            cycle = CycleDetected(node_id, tuple(path[path.index(node_id) :]) + (node_id,))
            if cycle not in self.diagnostics:
                self.diagnostics.append(cycle)
                logger.info(f"Cycle detected while aggregating: {cycle}")
            return _Outcome({}, cut=frozenset((node_id,)))

        known = self.memo.get(node_id)
        if known is not None and known.valid_on(self.on_path):
            return known

        node = self.snapshot.nodes.get(node_id)
        if node is None:
            logger.debug(f"Skipping reference to missing node '{node_id}'")
            return _Outcome({})

        shared = self.engine._lookup((node_id, self.window, self.wanted), self.snapshot.generation)
        if shared is not None:
            outcome = _Outcome(dict(shared.costs))
            self.memo[node_id] = outcome
            return outcome

        if self.should_abort is not None and self.should_abort():
            raise QueryAborted(f"Aggregation aborted before visiting '{node_id}'")

        frame = _Frame(node_id=node_id, pending=self._children(node), expanded_before=self.expanded)
        self.expanded += 1
        if isinstance(node, ActivityNode):
            for series in node.own_costs:
                if self._wants(series.dimension):
                    frame.parts.setdefault(series.dimension, []).append(series.window(self.window))
        self.frames.append(frame)
        self.on_path.add(node_id)
        return None

    def _finish(self, frame: _Frame) -> _Outcome:
        merged: dict[str, CostSeries] = {}
        for dimension, parts in frame.parts.items():
            series = merge_series(dimension, parts)
            if not series.is_empty:
                merged[dimension] = series
        if frame.cut:
            outcome = _Outcome(merged, frozenset(frame.cut), frozenset(frame.explored | {frame.node_id}))
        else:
            outcome = _Outcome(merged)
        self.memo[frame.node_id] = outcome

        if not outcome.truncated:
            self.engine._store(
                (frame.node_id, self.window, self.wanted),
                self.snapshot.generation,
                CostQuery(
                    node_id=frame.node_id,
                    span=self.window,
                    costs=dict(sorted(merged.items())),
                    visited=self.expanded - frame.expanded_before,
                ),
            )
        return outcome

    def _children(self, node: ActivityNode | DecisionNode) -> Iterator[str]:
        if isinstance(node, DecisionNode):
            # Only the committed plan contributes; unselected branches are hypotheticals.
            yield from node.selected_chain
        yield from self.snapshot.registry.children_of(node.id)

    def _wants(self, dimension: str) -> bool:
        return self.wanted is None or dimension in self.wanted


def _query_window(span: TimeSpan | tuple[Instant, Instant]) -> TimeSpan:
    if isinstance(span, TimeSpan):
        return span
    start, end = (float(bound) for bound in span)
    if math.isnan(start) or math.isnan(end) or start > end:
        raise EmptyQuerySpan(f"Query window [{start}, {end}] is empty")
    return TimeSpan(start, end)
