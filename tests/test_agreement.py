"""Grouped agreement summaries."""

import pytest

from skin_diag_eval.agreement import render_markdown, summarize, summary_table


def _sample(quality, tone, lighting, overall, emitted=False, by_type=None, iou=None):
    return {
        "quality_grade": quality,
        "skin_tone_bucket": tone,
        "lighting_bucket": lighting,
        "pseudo_label_eligible": True,
        "pseudo_label_emitted": emitted,
        "metrics": {
            "overall": overall,
            "type_level": {"jaccard": 0.5, "weighted_f1": 0.6},
            "region_level": {"mean_iou": iou},
            "severity_level": {"mae": 0.2, "interval_overlap": 0.9},
            "by_type": by_type or [],
        },
    }


SAMPLES = [
    _sample("pass", "light", "daylight", 0.8, emitted=True, iou=0.4,
            by_type=[{"type": "redness", "iou": 0.5, "heatmap_correlation": 0.7, "heatmap_kl": 0.1}]),
    _sample("pass", "light", "daylight", 0.6, iou=0.6,
            by_type=[{"type": "redness", "iou": 0.3}, {"type": "acne", "iou": 0.9}]),
    _sample("degraded", None, "indoor", None),
]


def test_overall_means_and_rates():
    overall = summarize(SAMPLES)["overall"]
    assert overall["samples"] == 3
    assert overall["overall_agreement_avg"] == pytest.approx(0.7)
    assert overall["pseudo_label_eligible_rate"] == 1.0
    assert overall["pseudo_label_emitted_rate"] == pytest.approx(0.333)


def test_grouped_rows_sorted_and_averaged():
    grouped = summarize(SAMPLES)["grouped"]
    keys = [(g["quality_grade"], g["skin_tone_bucket"], g["lighting_bucket"]) for g in grouped]
    assert keys == [("degraded", "unknown", "indoor"), ("pass", "light", "daylight")]
    degraded, passing = grouped
    assert passing["samples"] == 2
    assert passing["region_iou_avg"] == pytest.approx(0.5)
    assert passing["pseudo_label_emitted_rate"] == 0.5
    # no numeric value in the group -> None, not 0
    assert degraded["overall_agreement_avg"] is None
    assert degraded["region_iou_avg"] is None


def test_by_type_grouping():
    by_type = summarize(SAMPLES)["by_type_grouped"]
    assert [(r["type"], r["samples"]) for r in by_type] == [("acne", 1), ("redness", 2)]
    redness = by_type[1]
    assert redness["iou_avg"] == pytest.approx(0.4)
    assert redness["heatmap_correlation_avg"] == pytest.approx(0.7)
    assert redness["severity_mae_avg"] is None


def test_empty_input():
    summary = summarize([])
    assert summary["overall"]["samples"] == 0
    assert summary["overall"]["overall_agreement_avg"] is None
    assert summary["grouped"] == [] and summary["by_type_grouped"] == []


def test_markdown_and_table():
    summary = summarize(SAMPLES)
    md = render_markdown(summary)
    assert md.startswith("# Diagnosis Agreement Report")
    assert "| pass | light | daylight | 2 |" in md
    assert "| degraded | unknown | indoor | 1 | n/a |" in md
    assert list(summary_table(summary)["samples"]) == [1, 2]
