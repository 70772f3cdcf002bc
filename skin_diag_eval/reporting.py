from __future__ import annotations
import logging
import os
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

from .calibration import CalibrationModel, calibrate_rows, resolve_curve_with_level
from .eval_metrics import (
    DEFAULT_BINS,
    brier_for_rows,
    confidence_label_pairs,
    ece_for_rows,
    group_label,
    grouped_metrics,
    metric_delta,
    reliability_table,
)
from .evaluation_rows import EvaluationRow, build_rows
from .matching import DEFAULT_IOU_THRESHOLD, clamp_iou_threshold
from .normalize import round3

logger = logging.getLogger(__name__)

DEFAULT_GROUP_BY: List[Any] = ["tone_bucket", "region_bucket", "lighting_bucket"]


def _metric_block(rows: Sequence[EvaluationRow], field: str, bins: int) -> Dict[str, Optional[float]]:
    return {"ece": ece_for_rows(rows, field, bins), "brier": brier_for_rows(rows, field)}


def build_calibration_report(
    model: CalibrationModel,
    model_outputs: List[Dict[str, Any]],
    gold_labels: List[Dict[str, Any]],
    iou_threshold: float = DEFAULT_IOU_THRESHOLD,
    bins: int = DEFAULT_BINS,
    group_by: Optional[List[Any]] = None,
    model_source: Optional[str] = None,
    model_error: Optional[str] = None,
) -> Dict[str, Any]:
    threshold = clamp_iou_threshold(iou_threshold)
    rows, counts = build_rows(model_outputs, gold_labels, threshold)
    calibrate_rows(model, rows)

    levels = Counter(resolve_curve_with_level(model, r)[1] for r in rows) if model.is_current else Counter()
    raw = _metric_block(rows, "raw_confidence", bins)
    calibrated = _metric_block(rows, "calibrated_confidence", bins)

    grouped: Dict[str, Any] = {}
    for key in (group_by if group_by is not None else DEFAULT_GROUP_BY):
        grouped[group_label(key)] = grouped_metrics(rows, "calibrated_confidence", key, bins)

    report = {
        "model_version": model.model_version,
        "schema_version": model.schema_version,
        "model_source": model_source,
        "model_error": model_error,
        "iou_threshold": round3(threshold),
        "bins": bins,
        "input_counts": counts,
        "curve_resolution": dict(sorted(levels.items())),
        "metrics": {
            "raw": raw,
            "calibrated": calibrated,
            "delta": {
                "ece": metric_delta(raw["ece"], calibrated["ece"]),
                "brier": metric_delta(raw["brier"], calibrated["brier"]),
            },
        },
        "grouped": grouped,
        "reliability": {
            "raw": reliability_table(*confidence_label_pairs(rows, "raw_confidence"), bins=bins),
            "calibrated": reliability_table(*confidence_label_pairs(rows, "calibrated_confidence"), bins=bins),
        },
    }
    logger.info(
        "calibration report: %d rows, ece %s -> %s, brier %s -> %s",
        len(rows), raw["ece"], calibrated["ece"], raw["brier"], calibrated["brier"],
    )
    return report


def _fmt(v: Any) -> str:
    return "n/a" if v is None else str(v)


def render_calibration_markdown(report: Dict[str, Any]) -> str:
    m = report.get("metrics", {})
    lines = [
        "# Diagnosis Calibration Report",
        "",
        f"- Model version: {_fmt(report.get('model_version'))}",
        f"- Model source: {_fmt(report.get('model_source'))}",
        f"- IoU threshold: {_fmt(report.get('iou_threshold'))}",
        f"- Eval rows: {_fmt(report.get('input_counts', {}).get('eval_rows'))}",
        "",
        "## Overall",
        "",
        "| confidence | ece | brier |",
        "|---|---:|---:|",
    ]
    for name in ("raw", "calibrated", "delta"):
        block = m.get(name, {})
        lines.append(f"| {name} | {_fmt(block.get('ece'))} | {_fmt(block.get('brier'))} |")
    for group_name, buckets in report.get("grouped", {}).items():
        lines += ["", f"## By {group_name}", "", "| bucket | samples | ece | brier |", "|---|---:|---:|---:|"]
        for bucket, vals in buckets.items():
            lines.append(f"| {bucket} | {vals['samples']} | {_fmt(vals['ece'])} | {_fmt(vals['brier'])} |")
    lines.append("")
    return "\n".join(lines)


def plot_reliability_diagram(report: Dict[str, Any], out_path: str) -> str:
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    fig, ax = plt.subplots(figsize=(6, 6), dpi=150)
    ax.plot([0, 1], [0, 1], linestyle="--", color="gray", linewidth=1, label="perfect")
    palette = {"raw": "#E64B35", "calibrated": "#4DBBD5"}
    for name, table in report.get("reliability", {}).items():
        pts = [(b["mean_confidence"], b["mean_label"]) for b in table if b["n"]]
        if not pts:
            continue
        xs, ys = zip(*pts)
        ece = report.get("metrics", {}).get(name, {}).get("ece")
        ax.plot(xs, ys, marker="o", color=palette.get(name), label=f"{name} (ECE={_fmt(ece)})")
    ax.set_xlim(0, 1)
    ax.set_ylim(0, 1)
    ax.set_xlabel("Mean confidence")
    ax.set_ylabel("Observed match rate")
    ax.set_title("Reliability diagram", fontweight="bold")
    ax.grid(linestyle="--", alpha=0.3)
    ax.legend(loc="upper left")
    os.makedirs(os.path.dirname(out_path) or ".", exist_ok=True)
    fig.tight_layout()
    fig.savefig(out_path, bbox_inches="tight")
    plt.close(fig)
    return out_path
