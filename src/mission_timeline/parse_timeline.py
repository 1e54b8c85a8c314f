from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import yaml

from .errors import TimelineError
from .timeline import Timeline, TimelinePolicy
from .timeline_models import CostSeries, TimeSpan


class PlanValidationError(Exception):
    """Raised when a plan file is malformed (bad types, unknown keys, duplicate ids, bad refs)."""


@dataclass(frozen=True)
class _Path:
    """Helper to produce readable YAML path strings like nodes[0].costs.power."""

    parts: tuple[str, ...] = ()

    def child(self, segment: str) -> "_Path":
        return _Path(self.parts + (segment,))

    def __str__(self) -> str:  # pragma: no cover - trivial
        return ".".join(self.parts) if self.parts else "root"


@dataclass
class _PendingRefs:
    """References are wired after every node exists, so plans may refer forward."""

    node_id: str
    path: _Path
    groups: dict[str, list[str]]
    link: str | None


def load_timeline(path: str, policy: TimelinePolicy | None = None) -> Timeline:
    """
    Load a Timeline from a YAML plan file.

    `policy` overrides whatever the file's `timeline.policy` mapping says.
    """

    with open(path, "r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)

    return parse_timeline(raw, policy=policy)


def parse_timeline(data: Any, policy: TimelinePolicy | None = None) -> Timeline:
    """Build a Timeline from already-decoded YAML data."""

    path = _Path()
    if not isinstance(data, dict):
        raise PlanValidationError(f"{path}: expected mapping at top level")
    _assert_allowed_keys(data, {"timeline", "nodes"}, path)

    header = data.get("timeline")
    if not isinstance(header, dict):
        raise PlanValidationError(f"{path}: missing required mapping 'timeline'")
    _assert_allowed_keys(header, {"name", "policy"}, path.child("timeline"))
    name = _require_str(header, "name", path.child("timeline"))
    file_policy = _parse_policy(header.get("policy"), path.child("timeline.policy"))

    nodes_raw = data.get("nodes")
    if nodes_raw is None:
        raise PlanValidationError(f"{path}: missing required field 'nodes'")
    if not isinstance(nodes_raw, list):
        raise PlanValidationError(f"{path}.nodes: expected list")

    timeline = Timeline(name=name, policy=policy or file_policy)
    ids: set[str] = set()
    pending: list[_PendingRefs] = []
    decisions: list[tuple[str, dict[str, Any], _Path]] = []

    for idx, node_raw in enumerate(nodes_raw):
        node_path = path.child(f"nodes[{idx}]")
        refs = _parse_node(timeline, node_raw, node_path, ids, decisions)
        if refs is not None:
            pending.append(refs)

    for node_id, decision_raw, decision_path in decisions:
        _wire_decision(timeline, node_id, decision_raw, decision_path, ids)
    for refs in pending:
        _wire_refs(timeline, refs, ids)
    return timeline


def _parse_node(
    timeline: Timeline,
    data: Any,
    path: _Path,
    ids: set[str],
    decisions: list[tuple[str, dict[str, Any], _Path]],
) -> _PendingRefs | None:
    if not isinstance(data, dict):
        raise PlanValidationError(f"{path}: expected mapping for node")

    _assert_allowed_keys(
        data,
        {"id", "name", "type", "span", "costs", "groups", "link", "decision", "meta"},
        path,
    )
    node_id = _require_id(data, path, ids)
    name = data.get("name", node_id)
    if not isinstance(name, str) or not name.strip():
        raise PlanValidationError(f"{path.child('name')}: expected non-empty string")
    meta = _parse_meta(data.get("meta"), path.child("meta"))

    if "decision" in data:
        if any(key in data for key in ("span", "costs", "type")):
            raise PlanValidationError(f"{path}: decisions must not define span, costs or type")
        decision_raw = data["decision"]
        if not isinstance(decision_raw, dict):
            raise PlanValidationError(f"{path}.decision: expected mapping")
        _assert_allowed_keys(decision_raw, {"branches", "selected"}, path.child("decision"))
        timeline.create_decision(display_name=name, node_id=node_id, meta=meta)
        decisions.append((node_id, decision_raw, path.child("decision")))
    else:
        span = _parse_span(_require_value(data, "span", path), path.child("span"))
        costs = _parse_costs(data.get("costs"), path.child("costs"))
        activity_type = data.get("type", "")
        if not isinstance(activity_type, str):
            raise PlanValidationError(f"{path.child('type')}: expected string")
        timeline.create_activity(
            span,
            costs,
            display_name=name,
            activity_type=activity_type,
            node_id=node_id,
            meta=meta,
        )

    groups = _parse_groups(data.get("groups"), path.child("groups"))
    link = data.get("link")
    if link is not None and not isinstance(link, str):
        raise PlanValidationError(f"{path.child('link')}: expected node id string")
    if not groups and link is None:
        return None
    return _PendingRefs(node_id=node_id, path=path, groups=groups, link=link)


def _wire_decision(
    timeline: Timeline, node_id: str, data: dict[str, Any], path: _Path, ids: set[str]
) -> None:
    branches_raw = data.get("branches", [])
    if not isinstance(branches_raw, list):
        raise PlanValidationError(f"{path}.branches: expected list of id lists")
    for idx, branch_raw in enumerate(branches_raw):
        members = _parse_id_list(branch_raw, path.child(f"branches[{idx}]"), ids)
        try:
            timeline.set_branch(node_id, idx, members)
        except TimelineError as exc:
            raise PlanValidationError(f"{path.child(f'branches[{idx}]')}: {exc}") from exc

    selected = data.get("selected", 0)
    if not isinstance(selected, int) or isinstance(selected, bool):
        raise PlanValidationError(f"{path.child('selected')}: expected integer")
    if not branches_raw:
        if selected != 0:
            raise PlanValidationError(f"{path.child('selected')}: decision has no branches to select from")
        return
    try:
        timeline.select_branch(node_id, selected)
    except TimelineError as exc:
        raise PlanValidationError(f"{path.child('selected')}: {exc}") from exc


def _wire_refs(timeline: Timeline, refs: _PendingRefs, ids: set[str]) -> None:
    for tag, children in refs.groups.items():
        group_path = refs.path.child(f"groups.{tag}")
        for idx, child in enumerate(children):
            _require_known(child, group_path.child(f"[{idx}]"), ids)
        try:
            timeline.set_group(refs.node_id, tag, children)
        except TimelineError as exc:
            raise PlanValidationError(f"{group_path}: {exc}") from exc
    if refs.link is not None:
        _require_known(refs.link, refs.path.child("link"), ids)
        timeline.set_link(refs.node_id, refs.link)


def _parse_policy(value: Any, path: _Path) -> TimelinePolicy:
    if value is None:
        return TimelinePolicy()
    if not isinstance(value, dict):
        raise PlanValidationError(f"{path}: expected mapping for policy")
    _assert_allowed_keys(value, {"strict_references", "enforce_containment"}, path)
    flags: dict[str, bool] = {}
    for key, flag in value.items():
        if not isinstance(flag, bool):
            raise PlanValidationError(f"{path.child(key)}: expected true or false")
        flags[key] = flag
    return TimelinePolicy(**flags)


def _parse_span(value: Any, path: _Path) -> TimeSpan:
    if not isinstance(value, list) or len(value) != 2 or not all(_is_number(bound) for bound in value):
        raise PlanValidationError(f"{path}: expected [start, end] numbers")
    try:
        return TimeSpan(float(value[0]), float(value[1]))
    except TimelineError as exc:
        raise PlanValidationError(f"{path}: {exc}") from exc


def _parse_costs(value: Any, path: _Path) -> list[CostSeries]:
    if value is None:
        return []
    if not isinstance(value, dict):
        raise PlanValidationError(f"{path}: expected mapping of dimension to samples")
    costs: list[CostSeries] = []
    for dimension, samples_raw in value.items():
        series_path = path.child(str(dimension))
        if not isinstance(dimension, str) or not dimension.strip():
            raise PlanValidationError(f"{series_path}: expected non-empty dimension name")
        if not isinstance(samples_raw, list):
            raise PlanValidationError(f"{series_path}: expected list of [time, value] pairs")
        pairs: list[tuple[float, float]] = []
        for idx, pair in enumerate(samples_raw):
            if not isinstance(pair, list) or len(pair) != 2 or not all(_is_number(x) for x in pair):
                raise PlanValidationError(f"{series_path.child(f'[{idx}]')}: expected [time, value] numbers")
            pairs.append((float(pair[0]), float(pair[1])))
        try:
            costs.append(CostSeries.from_pairs(dimension, pairs))
        except ValueError as exc:
            raise PlanValidationError(f"{series_path}: {exc}") from exc
    return costs


def _parse_groups(value: Any, path: _Path) -> dict[str, list[str]]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise PlanValidationError(f"{path}: expected mapping of tag to node ids")
    groups: dict[str, list[str]] = {}
    for tag, children_raw in value.items():
        if not isinstance(tag, str) or not tag.strip():
            raise PlanValidationError(f"{path}: expected non-empty capability tag")
        if not isinstance(children_raw, list) or not all(isinstance(c, str) for c in children_raw):
            raise PlanValidationError(f"{path.child(tag)}: expected list of node ids")
        groups[tag] = list(children_raw)
    return groups


def _parse_id_list(value: Any, path: _Path, ids: set[str]) -> list[str]:
    if not isinstance(value, list):
        raise PlanValidationError(f"{path}: expected list of node ids")
    members: list[str] = []
    for idx, member in enumerate(value):
        if not isinstance(member, str):
            raise PlanValidationError(f"{path.child(f'[{idx}]')}: expected node id string")
        _require_known(member, path.child(f"[{idx}]"), ids)
        members.append(member)
    return members


def _assert_allowed_keys(data: dict[str, Any], allowed: set[str], path: _Path) -> None:
    extras = sorted(set(data.keys()) - allowed)
    if extras:
        raise PlanValidationError(f"{path}: unexpected fields {extras}")


def _require_str(data: dict[str, Any], key: str, path: _Path) -> str:
    value = _require_value(data, key, path)
    if not isinstance(value, str) or not value.strip():
        raise PlanValidationError(f"{path.child(key)}: expected non-empty string")
    return value


def _require_value(data: dict[str, Any], key: str, path: _Path) -> Any:
    if key not in data:
        raise PlanValidationError(f"{path}: missing required field '{key}'")
    return data[key]


def _parse_meta(value: Any, path: _Path) -> dict[str, Any] | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise PlanValidationError(f"{path}: expected mapping for meta")
    return value


def _require_id(data: dict[str, Any], path: _Path, ids: set[str]) -> str:
    node_id = _require_str(data, "id", path)
    if node_id in ids:
        raise PlanValidationError(f"{path.child('id')}: duplicate id '{node_id}'")
    ids.add(node_id)
    return node_id


def _require_known(node_id: str, path: _Path, ids: set[str]) -> None:
    if node_id not in ids:
        raise PlanValidationError(f"{path}: unknown node id '{node_id}'")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
