from __future__ import annotations

import math
from bisect import bisect_left
from dataclasses import dataclass, field
from typing import Any, Iterable, Literal

from .errors import InvalidSpan


Instant = float
"""Mission-elapsed time. Any consistent unit works; the CLI and renderer assume seconds."""

NodeKind = Literal["activity", "decision"]
"""Allowed render node types: activity (rounded bar) and decision (arrow with a diamond)."""


@dataclass(frozen=True)
class TimeSpan:
    """Inclusive [start, end] window on the timeline. Zero-length spans are instantaneous events."""

    start: Instant
    end: Instant

    def __post_init__(self) -> None:
        if math.isnan(self.start) or math.isnan(self.end):
            raise InvalidSpan(f"Span bounds must be numbers, got [{self.start}, {self.end}]")
        if self.start > self.end:
            raise InvalidSpan(f"Span start {self.start} is after end {self.end}")

    @property
    def length(self) -> float:
        return self.end - self.start

    def contains(self, instant: Instant) -> bool:
        return self.start <= instant <= self.end

    def contains_span(self, other: "TimeSpan") -> bool:
        return self.start <= other.start and other.end <= self.end

    def overlaps(self, other: "TimeSpan") -> bool:
        """Closed-interval overlap; spans touching at one instant overlap."""
        return self.start <= other.end and other.start <= self.end

    def intersection(self, other: "TimeSpan") -> "TimeSpan | None":
        if not self.overlaps(other):
            return None
        return TimeSpan(max(self.start, other.start), min(self.end, other.end))

    def union(self, other: "TimeSpan") -> "TimeSpan":
        """Smallest span covering both (gaps between them are included)."""
        return TimeSpan(min(self.start, other.start), max(self.end, other.end))

    @classmethod
    def hull(cls, spans: Iterable["TimeSpan"]) -> "TimeSpan | None":
        result: TimeSpan | None = None
        for span in spans:
            result = span if result is None else result.union(span)
        return result


@dataclass(frozen=True)
class CostSeries:
    """
    Time-sampled values for one cost dimension (power, consumables, ...).

    Samples are strictly increasing in time. Between samples the series is
    linear; outside its own first..last sample the series has no value at all
    (absent, not zero).
    """

    dimension: str
    samples: tuple[tuple[Instant, float], ...] = ()
    _times: tuple[Instant, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        samples = tuple((float(t), float(v)) for t, v in self.samples)
        for (prev_t, _), (t, _) in zip(samples, samples[1:]):
            if not t > prev_t:
                raise ValueError(
                    f"Cost series '{self.dimension}' samples must be strictly increasing in time ({prev_t} then {t})"
                )
        object.__setattr__(self, "samples", samples)
        object.__setattr__(self, "_times", tuple(t for t, _ in samples))

    @classmethod
    def from_pairs(cls, dimension: str, pairs: Iterable[Iterable[float]]) -> "CostSeries":
        return cls(dimension=dimension, samples=tuple(tuple(pair) for pair in pairs))  # type: ignore[misc]

    @property
    def is_empty(self) -> bool:
        return not self.samples

    @property
    def span(self) -> TimeSpan | None:
        """The series' own extent, or None for an empty series."""
        if not self.samples:
            return None
        return TimeSpan(self._times[0], self._times[-1])

    def value_at(self, instant: Instant) -> float | None:
        """Linearly interpolated value, or None outside the series' own span."""
        times = self._times
        if not times or instant < times[0] or instant > times[-1]:
            return None
        idx = bisect_left(times, instant)
        t1, v1 = self.samples[idx]
        if t1 == instant:
            return v1
        t0, v0 = self.samples[idx - 1]
        return v0 + (v1 - v0) * (instant - t0) / (t1 - t0)

    def window(self, span: TimeSpan) -> "CostSeries":
        """
        Restrict the series to `span`.

        Native samples inside the span are kept and the clipped boundaries get
        interpolated values. No extrapolation: a span that misses the series
        entirely yields an empty series.
        """

        own = self.span
        if own is None:
            return self
        clipped = own.intersection(span)
        if clipped is None:
            return CostSeries(self.dimension)
        if clipped == own:
            return self

        lo, hi = clipped.start, clipped.end
        points: list[tuple[Instant, float]] = [(lo, self.value_at(lo))]  # type: ignore[list-item]
        points.extend((t, v) for t, v in self.samples if lo < t < hi)
        if hi != lo:
            points.append((hi, self.value_at(hi)))  # type: ignore[arg-type]
        return CostSeries(self.dimension, tuple(points))


@dataclass(frozen=True)
class CapabilityGroup:
    """Ordered child references held by a node under one capability tag (e.g. "resource-activity")."""

    tag: str
    children: tuple[str, ...] = ()


@dataclass(frozen=True)
class ActivityNode:
    """Timeline node with a fixed span and optional own cost data."""

    id: str
    span: TimeSpan
    display_name: str = ""
    own_costs: tuple[CostSeries, ...] = ()
    activity_type: str = ""
    meta: dict[str, Any] | None = None

    def duration(self) -> TimeSpan:
        return self.span

    def cost(self, dimension: str) -> CostSeries | None:
        for series in self.own_costs:
            if series.dimension == dimension:
                return series
        return None


@dataclass(frozen=True)
class DecisionNode:
    """
    Branching node: several candidate activity chains, one of them selected.

    `selected` is None only when there are no branches at all.
    """

    id: str
    display_name: str = ""
    branches: tuple[tuple[str, ...], ...] = ()
    selected: int | None = None
    meta: dict[str, Any] | None = None

    @property
    def selected_chain(self) -> tuple[str, ...]:
        """Members of the committed branch; empty when nothing is selected."""
        if self.selected is None:
            return ()
        return self.branches[self.selected]


TimelineNode = ActivityNode | DecisionNode
"""Convenience alias for anything stored in the timeline."""


@dataclass
class FlatRenderRow:
    """
    Flattened view of a timeline used by renderers.

    Only the fields relevant to drawing are kept: positional order,
    indentation level, node kind, span boundaries and the tooltip text.
    """

    order: int
    indent: int
    node_type: NodeKind
    node_id: str
    name: str
    activity_type: str = ""
    start: Instant | None = None
    end: Instant | None = None
    tooltip: str = ""


def as_span(value: TimeSpan | tuple[Instant, Instant]) -> TimeSpan:
    """Accept a TimeSpan or a (start, end) pair; invalid pairs raise InvalidSpan."""
    if isinstance(value, TimeSpan):
        return value
    start, end = value
    return TimeSpan(float(start), float(end))
