from __future__ import annotations

import argparse
import logging
import sys
import webbrowser
from pathlib import Path

import yaml

from .aggregation import AggregationEngine
from .errors import EmptyBranch, TimelineError
from .parse_timeline import PlanValidationError, load_timeline
from .render_costs import render_costs
from .render_rows import format_duration, to_render_rows
from .timeline import Timeline, TimelinePolicy

logger = logging.getLogger("mission_timeline")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mission_timeline",
        description="Aggregate mission timeline costs",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("plan", help="Path to timeline YAML")
    parser.add_argument("--node", required=True, help="Node id to aggregate")
    parser.add_argument("--start", type=float, help="Query window start; defaults to the node's duration")
    parser.add_argument("--end", type=float, help="Query window end; defaults to the node's duration")
    parser.add_argument(
        "--dimension",
        dest="dimensions",
        action="append",
        help="Cost dimension to report (repeatable); all dimensions when omitted",
    )
    parser.add_argument("--out", default="output/timeline_costs.svg", help="Output SVG path")
    parser.add_argument(
        "--render",
        dest="render",
        action="store_true",
        default=False,
        help="Render the cost chart to --out",
    )
    parser.add_argument("--no-render", dest="render", action="store_false", help="Only print the costs")
    parser.add_argument("--view", action="store_true", help="Best-effort open the chart after rendering")
    parser.add_argument("--strict", action="store_true", help="Refuse removals that would leave dangling references")
    parser.add_argument(
        "--enforce-containment",
        action="store_true",
        help="Require grouped activities to stay inside their parent's span",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output")
    return parser


def _policy_override(args: argparse.Namespace) -> TimelinePolicy | None:
    if not (args.strict or args.enforce_containment):
        return None
    return TimelinePolicy(strict_references=args.strict, enforce_containment=args.enforce_containment)


def _resolve_window(timeline: Timeline, args: argparse.Namespace) -> tuple[float, float]:
    if args.start is not None and args.end is not None:
        return args.start, args.end
    span = timeline.duration(args.node)
    start = args.start if args.start is not None else span.start
    end = args.end if args.end is not None else span.end
    return start, end


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    plan_path = Path(args.plan)

    try:
        timeline = load_timeline(str(plan_path), policy=_policy_override(args))
    except (yaml.YAMLError, PlanValidationError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    except FileNotFoundError:
        print(f"Error: plan file not found: {plan_path}", file=sys.stderr)
        return 1
    except Exception as exc:  # Unexpected
        print(f"Unexpected error while loading plan: {exc}", file=sys.stderr)
        return 1

    engine = AggregationEngine(timeline)
    try:
        window = _resolve_window(timeline, args)
        result = engine.query_cost(args.node, window, args.dimensions)
    except EmptyBranch as exc:
        print(f"Error: {exc}; pass --start and --end explicitly", file=sys.stderr)
        return 2
    except TimelineError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    for cycle in result.diagnostics:
        print(f"Warning: CycleDetected({cycle.node_id!r}): {cycle}", file=sys.stderr)

    try:
        duration = timeline.duration(args.node)
        print(f"{args.node}: [{duration.start:g}, {duration.end:g}] ({format_duration(duration.length)})")
    except EmptyBranch:
        print(f"{args.node}: no activities on the selected branch")
    print(f"window: [{result.span.start:g}, {result.span.end:g}]")
    for dimension, series in result.costs.items():
        samples = ", ".join(f"({t:g}, {v:g})" for t, v in series.samples)
        print(f"{dimension}: [{samples}]")

    if not args.render:
        return 0

    rows = to_render_rows(timeline, args.node)
    try:
        render_costs(rows=rows, result=result, out_path=args.out, title=timeline.name)
    except Exception as exc:
        print(f"Unexpected error while rendering: {exc}", file=sys.stderr)
        return 1

    if args.view:
        try:
            webbrowser.open(Path(args.out).resolve().as_uri())
        except Exception:
            logger.debug("Could not open a browser for the rendered chart")

    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
