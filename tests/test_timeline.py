import pytest

from mission_timeline.errors import (
    ContainmentViolation,
    DanglingReference,
    DuplicateNode,
    EmptyBranch,
    InvalidBranchMember,
    InvalidSpan,
    OutOfRange,
    UnknownNode,
    WrongNodeKind,
)
from mission_timeline.timeline import ActivityLinks, NodeInvalidated, Timeline, TimelinePolicy
from mission_timeline.timeline_models import CapabilityGroup, CostSeries, TimeSpan


def _timeline_with_decision():
    timeline = Timeline("test")
    a = timeline.create_activity((0, 10), node_id="A")
    b = timeline.create_activity((20, 45), node_id="B")
    c = timeline.create_activity((50, 60), node_id="C")
    d = timeline.create_decision([[a], [b, c]], selected=0, node_id="D")
    return timeline, d


def test_set_span_updates_and_invalid_span_leaves_prior_value():
    timeline = Timeline()
    node = timeline.create_activity((0, 10))

    timeline.set_span(node, (2, 8))
    with pytest.raises(InvalidSpan):
        timeline.set_span(node, (9, 1))

    assert timeline.duration(node) == TimeSpan(2.0, 8.0)


def test_generated_ids_are_unique_and_explicit_duplicates_rejected():
    timeline = Timeline()
    first = timeline.create_activity((0, 1))
    second = timeline.create_activity((0, 1))

    assert first != second
    with pytest.raises(DuplicateNode):
        timeline.create_activity((0, 1), node_id=first)


def test_decision_duration_follows_selected_branch():
    timeline, d = _timeline_with_decision()

    assert timeline.duration(d) == timeline.duration("A")

    timeline.select_branch(d, 1)

    assert timeline.duration(d) == TimeSpan(20.0, 60.0)


def test_select_branch_out_of_range_leaves_selection():
    timeline, d = _timeline_with_decision()

    with pytest.raises(OutOfRange):
        timeline.select_branch(d, 2)
    with pytest.raises(OutOfRange):
        timeline.select_branch(d, -1)

    assert timeline.node(d).selected == 0


def test_empty_branch_duration_is_an_error():
    timeline = Timeline()
    d = timeline.create_decision([[]])

    with pytest.raises(EmptyBranch):
        timeline.duration(d)


def test_decision_without_branches_has_no_duration():
    timeline = Timeline()
    d = timeline.create_decision()

    assert timeline.node(d).selected is None
    with pytest.raises(EmptyBranch):
        timeline.duration(d)


def test_edits_for_the_other_node_kind_are_rejected():
    timeline, d = _timeline_with_decision()

    with pytest.raises(WrongNodeKind):
        timeline.set_span(d, (0, 1))
    with pytest.raises(WrongNodeKind):
        timeline.select_branch("A", 0)

    assert timeline.node("A").span == TimeSpan(0.0, 10.0)


def test_set_branch_appends_and_validates_members():
    timeline, d = _timeline_with_decision()
    extra = timeline.create_activity((70, 80), node_id="E")

    timeline.set_branch(d, 2, [extra])

    assert timeline.node(d).branches[2] == ("E",)
    with pytest.raises(InvalidBranchMember):
        timeline.set_branch(d, 0, [d])
    with pytest.raises(OutOfRange):
        timeline.set_branch(d, 5, [extra])
    with pytest.raises(UnknownNode):
        timeline.set_branch(d, 0, ["missing"])


def test_set_group_requires_existing_nodes():
    timeline = Timeline()
    root = timeline.create_activity((0, 10))

    with pytest.raises(UnknownNode):
        timeline.set_group(root, "resource-activity", ["missing"])
    with pytest.raises(UnknownNode):
        timeline.set_link(root, "missing")

    assert timeline.groups_of(root) == ()


def test_links_round_trip_as_one_value():
    timeline = Timeline()
    root = timeline.create_activity((0, 10), node_id="root")
    a = timeline.create_activity((0, 5), node_id="a")
    b = timeline.create_activity((5, 10), node_id="b")
    timeline.set_group(root, "old-tag", [a])

    timeline.set_links(
        root,
        ActivityLinks(groups=(CapabilityGroup("resource-activity", (a, b)),), link=b),
    )

    links = timeline.links_of(root)
    assert links.groups == (CapabilityGroup("resource-activity", ("a", "b")),)
    assert links.link == "b"


def test_edit_emits_one_event_per_affected_ancestor():
    timeline = Timeline()
    root = timeline.create_activity((0, 10), node_id="root")
    mid = timeline.create_activity((0, 10), node_id="mid")
    leaf = timeline.create_activity((0, 10), node_id="leaf")
    unrelated = timeline.create_activity((0, 10), node_id="unrelated")
    timeline.set_group(root, "resource-activity", [mid])
    timeline.set_group(mid, "resource-activity", [leaf])

    events = []
    timeline.subscribe(events.append)
    timeline.set_costs(leaf, [CostSeries.from_pairs("power", [(0, 1), (10, 1)])])

    assert events == [NodeInvalidated("leaf"), NodeInvalidated("mid"), NodeInvalidated("root")]
    assert NodeInvalidated(unrelated) not in events


def test_removing_a_child_from_a_group_invalidates_the_former_parent():
    timeline = Timeline()
    root = timeline.create_activity((0, 10), node_id="root")
    child = timeline.create_activity((0, 10), node_id="child")
    timeline.set_group(root, "resource-activity", [child])

    events = []
    timeline.subscribe(events.append)
    timeline.set_group(root, "resource-activity", [])

    assert NodeInvalidated("root") in events


def test_failed_edit_emits_nothing():
    timeline, d = _timeline_with_decision()
    events = []
    timeline.subscribe(events.append)
    generation = timeline.generation

    with pytest.raises(OutOfRange):
        timeline.select_branch(d, 9)

    assert events == []
    assert timeline.generation == generation


def test_failing_listener_does_not_block_others(caplog):
    timeline = Timeline()
    node = timeline.create_activity((0, 1))
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    timeline.subscribe(broken)
    timeline.subscribe(seen.append)
    timeline.set_span(node, (0, 2))

    assert seen == [NodeInvalidated(node)]
    assert "Change listener failed" in caplog.text


def test_unsubscribe_stops_events():
    timeline = Timeline()
    node = timeline.create_activity((0, 1))
    events = []
    unsubscribe = timeline.subscribe(events.append)

    unsubscribe()
    timeline.set_span(node, (0, 2))

    assert events == []


def test_remove_node_purges_references_by_default():
    timeline, d = _timeline_with_decision()
    root = timeline.create_activity((0, 100), node_id="root")
    timeline.set_group(root, "resource-activity", ["A", "B", "A"])
    timeline.set_link("C", "A")

    timeline.remove_node("A")

    assert "A" not in timeline
    assert timeline.groups_of(root) == (CapabilityGroup("resource-activity", ("B",)),)
    assert timeline.link("C") is None
    assert timeline.node(d).branches == ((), ("B", "C"))


def test_strict_removal_refuses_dangling_references_and_changes_nothing():
    timeline = Timeline(policy=TimelinePolicy(strict_references=True))
    root = timeline.create_activity((0, 10), node_id="root")
    child = timeline.create_activity((0, 10), node_id="child")
    timeline.set_group(root, "resource-activity", [child])

    with pytest.raises(DanglingReference) as excinfo:
        timeline.remove_node(child)

    assert excinfo.value.referrers == ["root"]
    assert child in timeline
    assert timeline.groups_of(root) == (CapabilityGroup("resource-activity", ("child",)),)

    timeline.remove_node(child, cascade=True)
    assert child not in timeline
    assert timeline.groups_of(root) == ()


def test_remove_unreferenced_node_in_strict_mode():
    timeline = Timeline(policy=TimelinePolicy(strict_references=True))
    node = timeline.create_activity((0, 10))

    timeline.remove_node(node)

    assert len(timeline) == 0


def test_remove_unknown_node():
    with pytest.raises(UnknownNode):
        Timeline().remove_node("nope")


def test_containment_policy_rejects_children_outside_parent():
    timeline = Timeline(policy=TimelinePolicy(enforce_containment=True))
    parent = timeline.create_activity((0, 10))
    inside = timeline.create_activity((2, 8))
    outside = timeline.create_activity((5, 15))

    timeline.set_group(parent, "resource-activity", [inside])
    with pytest.raises(ContainmentViolation):
        timeline.set_group(parent, "resource-activity", [inside, outside])
    with pytest.raises(ContainmentViolation):
        timeline.set_span(inside, (-1, 3))
    with pytest.raises(ContainmentViolation):
        timeline.set_span(parent, (3, 10))

    assert timeline.duration(inside) == TimeSpan(2.0, 8.0)
    assert timeline.duration(parent) == TimeSpan(0.0, 10.0)


def test_containment_is_not_enforced_by_default():
    timeline = Timeline()
    parent = timeline.create_activity((0, 10))
    child = timeline.create_activity((5, 15))

    timeline.set_group(parent, "resource-activity", [child])

    assert timeline.groups_of(parent)[0].children == (child,)


def test_snapshot_is_unaffected_by_later_edits():
    timeline = Timeline()
    node = timeline.create_activity((0, 10))
    before = timeline.snapshot()

    timeline.set_span(node, (1, 2))

    assert before.duration(node) == TimeSpan(0.0, 10.0)
    assert timeline.snapshot().generation == before.generation + 1


def test_duplicate_cost_dimensions_rejected():
    timeline = Timeline()
    with pytest.raises(ValueError):
        timeline.create_activity(
            (0, 1),
            [CostSeries.from_pairs("power", [(0, 1)]), CostSeries.from_pairs("power", [(1, 1)])],
        )
