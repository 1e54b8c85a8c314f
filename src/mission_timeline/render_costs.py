from __future__ import annotations

from importlib import metadata
from pathlib import Path
from typing import Iterable

import matplotlib

matplotlib.use("Agg")  # ensure headless, deterministic output
import matplotlib.pyplot as plt
from matplotlib.patches import Polygon

from .aggregation import CostQuery
from .timeline_models import FlatRenderRow, Instant

FONT_SCALE = 1.0
TITLE_FONT = 14 * FONT_SCALE
LABEL_FONT = 9 * FONT_SCALE
FOOTER_FONT = 8 * FONT_SCALE
TICK_FONT = 9 * FONT_SCALE
ROW_HEIGHT = 0.6
INDENT_STEP = 0.04  # axes fraction per indent level in the label column
DECISION_COLOR = "#dcdcdc"
DEFAULT_ACTIVITY_COLOR = "#c8c8c8"
TITLE_Y = 0.985


def render_costs(
    rows: list[FlatRenderRow],
    result: CostQuery,
    out_path: str,
    title: str,
) -> None:
    """
    Render a static SVG with the aggregated cost curves above the activity lanes.

    - Expects rows from `to_render_rows` and a finished `CostQuery`.
    - The x axis is the query window; rows outside it are clipped by the axes.
    - Activity colours are deterministic per activity type.
    """

    if not rows:
        raise ValueError("rows must not be empty")

    x_min, x_max = _resolve_window(result)
    type_colors = _type_colors(rows)

    fig_height = max(4.0, ROW_HEIGHT * len(rows) + 4.0)
    fig = plt.figure(figsize=(14.0, fig_height))
    gs = fig.add_gridspec(
        2,
        2,
        width_ratios=[1.2, 4.0],
        height_ratios=[2.0, max(1.0, ROW_HEIGHT * len(rows))],
        wspace=0.05,
        hspace=0.08,
        left=0.04,
        right=0.98,
        top=0.9,
        bottom=0.08,
    )
    cost_ax = fig.add_subplot(gs[0, 1])
    lane_ax = fig.add_subplot(gs[1, 1], sharex=cost_ax)
    label_ax = fig.add_subplot(gs[1, 0], sharey=lane_ax)
    fig.add_subplot(gs[0, 0]).axis("off")

    _draw_costs(cost_ax, result)
    cost_ax.set_xlim(x_min, x_max)
    cost_ax.tick_params(axis="x", labelbottom=False)
    cost_ax.tick_params(axis="y", labelsize=TICK_FONT)
    cost_ax.grid(True, axis="both", linestyle="--", alpha=0.4)

    lane_ax.set_ylim(-1, len(rows))
    lane_ax.invert_yaxis()
    lane_ax.set_yticks([])
    lane_ax.tick_params(axis="x", labelsize=TICK_FONT)
    lane_ax.grid(True, axis="x", linestyle=":", alpha=0.3)

    label_ax.set_xlim(0, 1)
    label_ax.axis("off")

    fig.suptitle(title, x=0.5, fontsize=TITLE_FONT, y=TITLE_Y)
    footer = f"mission_timeline v{_tool_version()} · window [{x_min:g}, {x_max:g}]"
    fig.text(0.99, 0.01, footer, ha="right", va="bottom", fontsize=FOOTER_FONT, alpha=0.8)

    for idx, row in enumerate(rows):
        y = idx
        label_ax.text(
            0.98 - INDENT_STEP * row.indent,
            y,
            row.name,
            ha="right",
            va="center",
            fontsize=LABEL_FONT,
            fontstyle="italic" if row.node_type == "decision" else "normal",
            transform=label_ax.transData,
        )
        if row.start is None or row.end is None:
            continue

        if row.node_type == "activity":
            color = type_colors.get(row.activity_type, DEFAULT_ACTIVITY_COLOR)
            width = max(row.end - row.start, (x_max - x_min) * 0.002)
            lane_ax.barh(
                y,
                width=width,
                left=row.start,
                height=ROW_HEIGHT,
                color=color,
                edgecolor=matplotlib.colors.to_hex(_darker(color)),
                linewidth=1.2,
            )
        elif row.node_type == "decision":
            lane_ax.add_patch(Polygon(_decision_arrow(row.start, row.end, y), closed=True, facecolor=DECISION_COLOR))

    Path(out_path).parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_path, format="svg", bbox_inches="tight")
    plt.close(fig)


def _draw_costs(ax: plt.Axes, result: CostQuery) -> None:
    drawn = False
    for dimension, series in result.costs.items():
        if series.is_empty:
            continue
        times = [t for t, _ in series.samples]
        values = [v for _, v in series.samples]
        ax.plot(times, values, marker="o", markersize=2.5, linewidth=1.2, label=dimension)
        drawn = True
    if drawn:
        ax.legend(loc="upper right", fontsize=LABEL_FONT)
    else:
        ax.text(0.5, 0.5, "no cost data in window", ha="center", va="center", transform=ax.transAxes, alpha=0.6)


def _decision_arrow(start: Instant, end: Instant, y: float) -> list[tuple[float, float]]:
    """Horizontal arrow spanning the decision; the head takes the last tenth of the span."""
    head = (end - start) * 0.1
    shaft = ROW_HEIGHT / 5
    return [
        (start, y - shaft),
        (end - head, y - shaft),
        (end - head, y - ROW_HEIGHT / 2),
        (end, y),
        (end - head, y + ROW_HEIGHT / 2),
        (end - head, y + shaft),
        (start, y + shaft),
    ]


def _type_colors(rows: Iterable[FlatRenderRow]) -> dict[str, str]:
    type_ids = sorted({row.activity_type for row in rows if row.activity_type})
    palette = plt.get_cmap("tab20")
    return {tid: matplotlib.colors.to_hex(palette(i % palette.N)) for i, tid in enumerate(type_ids)}


def _darker(color: str) -> tuple[float, float, float]:
    r, g, b = matplotlib.colors.to_rgb(color)
    return (r * 0.7, g * 0.7, b * 0.7)


def _resolve_window(result: CostQuery) -> tuple[float, float]:
    x_min, x_max = result.span.start, result.span.end
    if x_min == x_max:
        # Instantaneous window: widen so the axes have a non-zero range.
        return x_min - 0.5, x_max + 0.5
    return x_min, x_max


def _tool_version() -> str:
    try:
        return metadata.version("mission_timeline")
    except Exception:
        return "0.0.0"
