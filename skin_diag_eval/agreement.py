from __future__ import annotations
from typing import Any, Dict, List, Optional

import pandas as pd

from .normalize import as_float, normalize_bucket, round3

GROUP_KEYS = ["quality_grade", "skin_tone_bucket", "lighting_bucket"]
TYPE_GROUP_KEYS = ["type"] + GROUP_KEYS

# output column -> path inside a sample's ``metrics``
SAMPLE_METRICS = {
    "overall_agreement_avg": ("overall",),
    "type_jaccard_avg": ("type_level", "jaccard"),
    "type_weighted_f1_avg": ("type_level", "weighted_f1"),
    "region_iou_avg": ("region_level", "mean_iou"),
    "severity_mae_avg": ("severity_level", "mae"),
    "severity_interval_overlap_avg": ("severity_level", "interval_overlap"),
}
SAMPLE_RATES = {
    "pseudo_label_eligible_rate": "pseudo_label_eligible",
    "pseudo_label_emitted_rate": "pseudo_label_emitted",
}
TYPE_METRICS = {
    "iou_avg": "iou",
    "heatmap_correlation_avg": "heatmap_correlation",
    "heatmap_kl_avg": "heatmap_kl",
    "severity_mae_avg": "severity_mae",
    "interval_overlap_avg": "interval_overlap",
}


def _dig(d: Any, path: tuple) -> Any:
    for key in path:
        if not isinstance(d, dict):
            return None
        d = d.get(key)
    return d


def _avg(series: pd.Series) -> Optional[float]:
    """Mean of the numeric entries, or None when there are none."""
    vals = series.dropna()
    if vals.empty:
        return None
    return round3(float(vals.mean()))


def sample_frame(samples: List[Dict[str, Any]]) -> pd.DataFrame:
    records = []
    for s in samples:
        if not isinstance(s, dict):
            continue
        rec = {k: normalize_bucket(s.get(k)) for k in GROUP_KEYS}
        metrics = s.get("metrics") if isinstance(s.get("metrics"), dict) else {}
        for col, path in SAMPLE_METRICS.items():
            rec[col] = as_float(_dig(metrics, path))
        for col, key in SAMPLE_RATES.items():
            rec[col] = 1.0 if s.get(key) else 0.0
        records.append(rec)
    return pd.DataFrame(records, columns=GROUP_KEYS + list(SAMPLE_METRICS) + list(SAMPLE_RATES))


def type_frame(samples: List[Dict[str, Any]]) -> pd.DataFrame:
    records = []
    for s in samples:
        if not isinstance(s, dict):
            continue
        by_type = _dig(s, ("metrics", "by_type"))
        if not isinstance(by_type, list):
            continue
        keys = {k: normalize_bucket(s.get(k)) for k in GROUP_KEYS}
        for item in by_type:
            if not isinstance(item, dict):
                continue
            rec = {"type": normalize_bucket(item.get("type"), "other"), **keys}
            for col, key in TYPE_METRICS.items():
                rec[col] = as_float(item.get(key))
            records.append(rec)
    return pd.DataFrame(records, columns=TYPE_GROUP_KEYS + list(TYPE_METRICS))


def _grouped(df: pd.DataFrame, keys: List[str], value_cols: List[str]) -> List[Dict[str, Any]]:
    rows = []
    if df.empty:
        return rows
    for group_vals, group in df.groupby(keys, sort=True):
        row = dict(zip(keys, group_vals))
        row["samples"] = len(group)
        for col in value_cols:
            row[col] = _avg(group[col])
        rows.append(row)
    return rows


def summarize(samples: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Overall and grouped means of per-sample agreement metrics.

    ``grouped`` is keyed by (quality_grade, skin_tone_bucket, lighting_bucket);
    ``by_type_grouped`` additionally by concern type. A metric with no numeric
    value in a group averages to None.
    """
    df = sample_frame(samples)
    tf = type_frame(samples)
    overall = {
        "samples": len(df),
        "overall_agreement_avg": _avg(df["overall_agreement_avg"]),
        "pseudo_label_eligible_rate": _avg(df["pseudo_label_eligible_rate"]),
        "pseudo_label_emitted_rate": _avg(df["pseudo_label_emitted_rate"]),
    }
    return {
        "overall": overall,
        "grouped": _grouped(df, GROUP_KEYS, list(SAMPLE_METRICS) + list(SAMPLE_RATES)),
        "by_type_grouped": _grouped(tf, TYPE_GROUP_KEYS, list(TYPE_METRICS)),
    }


def summary_table(summary: Dict[str, Any], section: str = "grouped") -> pd.DataFrame:
    return pd.DataFrame(summary.get(section, []))


def _cell(v: Any) -> str:
    return "n/a" if v is None else str(v)


def render_markdown(summary: Dict[str, Any]) -> str:
    overall = summary.get("overall", {})
    lines = [
        "# Diagnosis Agreement Report",
        "",
        "## Overall",
        "",
        f"- Samples: {overall.get('samples', 0)}",
        f"- Avg agreement: {_cell(overall.get('overall_agreement_avg'))}",
        f"- Pseudo-label eligible rate: {_cell(overall.get('pseudo_label_eligible_rate'))}",
        f"- Pseudo-label emitted rate: {_cell(overall.get('pseudo_label_emitted_rate'))}",
        "",
        "## By Quality / Skin Tone / Lighting",
        "",
        "| quality | skin_tone | lighting | samples | agreement | type_f1 | region_iou | severity_mae | overlap | emit_rate |",
        "|---|---|---|---:|---:|---:|---:|---:|---:|---:|",
    ]
    cols = ["quality_grade", "skin_tone_bucket", "lighting_bucket", "samples", "overall_agreement_avg",
            "type_weighted_f1_avg", "region_iou_avg", "severity_mae_avg", "severity_interval_overlap_avg",
            "pseudo_label_emitted_rate"]
    for row in summary.get("grouped", []):
        lines.append("| " + " | ".join(_cell(row.get(c)) for c in cols) + " |")
    lines += [
        "",
        "## By Type",
        "",
        "| type | quality | skin_tone | lighting | samples | iou | heat_corr | heat_kl | sev_mae | overlap |",
        "|---|---|---|---|---:|---:|---:|---:|---:|---:|",
    ]
    type_cols = TYPE_GROUP_KEYS + ["samples"] + list(TYPE_METRICS)
    for row in summary.get("by_type_grouped", []):
        lines.append("| " + " | ".join(_cell(row.get(c)) for c in type_cols) + " |")
    lines.append("")
    return "\n".join(lines)
