from mission_timeline.capabilities import CapabilityRegistry
from mission_timeline.timeline_models import CapabilityGroup


def test_set_group_preserves_order_and_duplicates():
    registry = CapabilityRegistry()

    registry.set_group("root", "resource-activity", ["b", "a", "b"])

    assert registry.groups_of("root") == (CapabilityGroup("resource-activity", ("b", "a", "b")),)
    assert registry.referrers("b") == {"root"}


def test_empty_group_removes_tag():
    registry = CapabilityRegistry()
    registry.set_group("root", "resource-activity", ["a"])
    registry.set_group("root", "ground-event", ["g"])

    registry.set_group("root", "resource-activity", [])

    assert [group.tag for group in registry.groups_of("root")] == ["ground-event"]
    assert registry.referrers("a") == set()


def test_link_replaces_previous_target():
    registry = CapabilityRegistry()
    registry.set_link("x", "y")
    registry.set_link("x", "z")

    assert registry.link("x") == "z"
    assert registry.referrers("y") == set()
    assert registry.referrers("z") == {"x"}

    registry.set_link("x", None)
    assert registry.link("x") is None


def test_reverse_index_counts_edges_per_parent():
    registry = CapabilityRegistry()
    registry.set_group("root", "resource-activity", ["a"])
    registry.set_group("root", "ground-event", ["a"])

    registry.set_group("root", "resource-activity", [])

    # Still referenced through the other tag.
    assert registry.referrers("a") == {"root"}


def test_ancestors_follow_groups_links_and_branches_through_cycles():
    registry = CapabilityRegistry()
    registry.set_group("root", "resource-activity", ["mid"])
    registry.set_link("mid", "leaf")
    registry.set_branch_refs("decision", ["leaf"])
    registry.set_link("leaf", "root")

    assert registry.ancestors(["leaf"]) == {"leaf", "mid", "root", "decision"}


def test_copy_is_independent():
    registry = CapabilityRegistry()
    registry.set_group("root", "resource-activity", ["a"])

    clone = registry.copy()
    clone.set_group("root", "resource-activity", ["b"])

    assert registry.group("root", "resource-activity") == ("a",)
    assert registry.referrers("b") == set()
    assert clone.referrers("a") == set()


def test_purge_references_and_forget():
    registry = CapabilityRegistry()
    registry.set_group("root", "resource-activity", ["a", "b", "a"])
    registry.set_link("other", "a")
    registry.set_group("a", "ground-event", ["b"])

    touched = registry.purge_references("a")
    registry.forget("a")

    assert touched == {"root", "other"}
    assert registry.group("root", "resource-activity") == ("b",)
    assert registry.link("other") is None
    assert registry.referrers("b") == {"root"}


def test_children_of_lists_groups_then_link():
    registry = CapabilityRegistry()
    registry.set_group("n", "resource-activity", ["a", "b"])
    registry.set_group("n", "ground-event", ["c"])
    registry.set_link("n", "d")

    assert list(registry.children_of("n")) == ["a", "b", "c", "d"]
