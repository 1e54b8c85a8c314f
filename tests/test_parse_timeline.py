import textwrap

import pytest

from mission_timeline.__main__ import main
from mission_timeline.parse_timeline import PlanValidationError, load_timeline
from mission_timeline.timeline import TimelinePolicy
from mission_timeline.timeline_models import CapabilityGroup, TimeSpan

PLAN = textwrap.dedent(
    """
    timeline:
      name: Surface EVA
      policy:
        strict_references: true
    nodes:
      - id: root
        name: EVA day
        span: [0, 100]
        groups:
          resource-activity: [drive, choice]
        link: relay
      - id: drive
        name: Rover drive
        type: mobility
        span: [0, 40]
        costs:
          power: [[0, 5], [40, 5]]
      - id: sample
        name: Sample site A
        span: [40, 70]
        costs:
          power: [[40, 2], [70, 2]]
      - id: survey
        name: Survey site B
        span: [40, 90]
        costs:
          power: [[40, 8], [90, 8]]
      - id: choice
        name: Site choice
        decision:
          branches: [[sample], [survey]]
          selected: 0
      - id: relay
        name: Relay pass
        span: [0, 100]
        link: root
    """
)


def _write(tmp_path, text):
    path = tmp_path / "plan.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_load_timeline_builds_nodes_groups_links_and_decisions(tmp_path):
    timeline = load_timeline(str(_write(tmp_path, PLAN)))

    assert timeline.name == "Surface EVA"
    assert timeline.policy == TimelinePolicy(strict_references=True)
    assert timeline.groups_of("root") == (CapabilityGroup("resource-activity", ("drive", "choice")),)
    assert timeline.link("root") == "relay"
    assert timeline.link("relay") == "root"
    assert timeline.node("drive").activity_type == "mobility"
    assert timeline.node("choice").branches == (("sample",), ("survey",))
    assert timeline.duration("choice") == TimeSpan(40.0, 70.0)


def test_policy_argument_overrides_file(tmp_path):
    timeline = load_timeline(str(_write(tmp_path, PLAN)), policy=TimelinePolicy())

    assert timeline.policy == TimelinePolicy()


@pytest.mark.parametrize(
    "text, message",
    [
        ("nodes: []\n", "missing required mapping 'timeline'"),
        ("timeline: {name: x}\nnodes: [{id: a, span: [5, 1]}]\n", "nodes[0].span"),
        ("timeline: {name: x}\nnodes: [{id: a, span: [0, 1]}, {id: a, span: [0, 1]}]\n", "duplicate id 'a'"),
        ("timeline: {name: x}\nnodes: [{id: a, span: [0, 1], groups: {t: [b]}}]\n", "unknown node id 'b'"),
        ("timeline: {name: x}\nnodes: [{id: a, span: [0, 1], colour: red}]\n", "unexpected fields ['colour']"),
        ("timeline: {name: x}\nnodes: [{id: a, span: [0, 1], costs: {power: [[1, 1], [0, 1]]}}]\n", "costs.power"),
        (
            "timeline: {name: x}\nnodes: [{id: a, span: [0, 1]}, {id: d, decision: {branches: [[a]], selected: 3}}]\n",
            "decision.selected",
        ),
        ("timeline: {name: x}\nnodes: [{id: d, decision: {selected: 2}}]\n", "decision has no branches"),
    ],
)
def test_invalid_plans_raise_validation_errors(tmp_path, text, message):
    with pytest.raises(PlanValidationError) as excinfo:
        load_timeline(str(_write(tmp_path, text)))

    assert message in str(excinfo.value)


def test_containment_policy_from_file_is_enforced(tmp_path):
    text = textwrap.dedent(
        """
        timeline:
          name: x
          policy: {enforce_containment: true}
        nodes:
          - {id: parent, span: [0, 10], groups: {resource-activity: [child]}}
          - {id: child, span: [5, 20]}
        """
    )

    with pytest.raises(PlanValidationError) as excinfo:
        load_timeline(str(_write(tmp_path, text)))

    assert "groups.resource-activity" in str(excinfo.value)


def test_cli_prints_costs_and_reports_cycles(tmp_path, capsys):
    path = _write(tmp_path, PLAN)

    code = main([str(path), "--node", "root", "--dimension", "power", "--no-render"])

    out, err = capsys.readouterr()
    assert code == 0
    assert "root: [0, 100]" in out
    assert "power: [(0, 5), (40, 7), (70, 2)]" in out
    assert "CycleDetected('root')" in err


def test_cli_renders_svg(tmp_path, capsys):
    path = _write(tmp_path, PLAN)
    out_file = tmp_path / "chart.svg"

    code = main([str(path), "--node", "root", "--render", "--out", str(out_file)])

    assert code == 0
    assert out_file.exists()
    assert out_file.stat().st_size > 0


def test_cli_reports_validation_errors(tmp_path, capsys):
    path = _write(tmp_path, "timeline: {name: x}\nnodes: {}\n")

    assert main([str(path), "--node", "a"]) == 2
    assert "Error:" in capsys.readouterr().err


def test_cli_reports_missing_file(tmp_path, capsys):
    assert main([str(tmp_path / "nope.yaml"), "--node", "a"]) == 1


def test_cli_rejects_unknown_node_and_reversed_window(tmp_path, capsys):
    path = _write(tmp_path, PLAN)

    assert main([str(path), "--node", "ghost", "--start", "0", "--end", "1"]) == 2
    assert main([str(path), "--node", "root", "--start", "5", "--end", "1"]) == 2
