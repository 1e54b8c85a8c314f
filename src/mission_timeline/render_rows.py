from __future__ import annotations

from typing import List

from .errors import EmptyBranch
from .timeline import Timeline, TimelineSnapshot
from .timeline_models import ActivityNode, DecisionNode, FlatRenderRow, TimeSpan


def to_render_rows(timeline: Timeline, root_id: str) -> list[FlatRenderRow]:
    """
    Convert the tree under `root_id` into a flat list of render rows with indentation.

    Group members follow their parent in group order; a decision is followed by
    the members of its selected branch. External links are cross-references and
    are not expanded. A node already on the current path is not expanded again.
    """

    snapshot = timeline.snapshot()
    snapshot.node(root_id)
    rows: List[FlatRenderRow] = []
    _append_node(snapshot, root_id, rows, indent=0, path=())
    return rows


def _append_node(
    snapshot: TimelineSnapshot,
    node_id: str,
    rows: List[FlatRenderRow],
    indent: int,
    path: tuple[str, ...],
) -> None:
    """Append the node and its children (if any)."""

    node = snapshot.nodes.get(node_id)
    if node is None or node_id in path:
        return

    if isinstance(node, ActivityNode):
        span: TimeSpan | None = node.span
        node_type = "activity"
        children = list(_group_members(snapshot, node_id))
    elif isinstance(node, DecisionNode):
        try:
            span = snapshot.duration(node_id)
        except EmptyBranch:
            span = None
        node_type = "decision"
        children = list(node.selected_chain) + list(_group_members(snapshot, node_id))
    else:
        # Defensive: unreachable with current node variants.
        raise TypeError(f"Unsupported timeline node type: {type(node)}")

    activity_type = node.activity_type if isinstance(node, ActivityNode) else ""
    rows.append(
        FlatRenderRow(
            order=len(rows),
            indent=indent,
            node_type=node_type,
            node_id=node_id,
            name=node.display_name,
            activity_type=activity_type,
            start=span.start if span else None,
            end=span.end if span else None,
            tooltip=describe(node.display_name, span, activity_type),
        )
    )
    for child_id in children:
        _append_node(snapshot, child_id, rows, indent + 1, path + (node_id,))


def _group_members(snapshot: TimelineSnapshot, node_id: str):
    for group in snapshot.registry.groups_of(node_id):
        yield from group.children


def format_duration(seconds: float) -> str:
    """Format a length of time as `HH:MM:SS`, prefixed with whole days when there are any."""

    total = int(round(seconds))
    days, rest = divmod(total, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)
    clock = f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{days}d {clock}" if days else clock


def describe(name: str, span: TimeSpan | None, activity_type: str = "") -> str:
    """Tooltip text: name, duration and, when known, the activity type in brackets."""

    duration = format_duration(span.length) if span is not None else ""
    text = f"{name} {duration}".rstrip()
    return f"{text} [{activity_type}]" if activity_type else text
