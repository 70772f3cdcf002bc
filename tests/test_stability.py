"""Stability analyzer over per-variant diagnosis outcomes."""

import pytest

from skin_diag_eval.findings import DiagnosisResult, parse_diagnosis_payload
from skin_diag_eval.stability import (
    VariantOutcome,
    build_image_stability_report,
    build_stability_report,
    corr_sign,
)


def _outcome(variant, kind, grade, issues, quality_factor=0.8):
    quality = {"grade": grade, "reasons": []}
    if quality_factor is not None:
        quality["quality_factor"] = quality_factor
    payload = {
        "ok": True,
        "diagnosis": {
            "quality": quality,
            "issues": issues,
        },
    }
    return VariantOutcome(variant, kind, parse_diagnosis_payload(payload))


def _issue(issue_type, score, confidence=0.7, level=2, label="moderate"):
    return {"issue_type": issue_type, "severity_score": score, "confidence": confidence,
            "severity_level": level, "severity": label}


def _three_variant_outcomes():
    return [
        _outcome("original", "identity", "degraded", [_issue("pores", 0.70)]),
        _outcome("noise", "noise", "degraded", [_issue("pores", 0.80)]),
        _outcome("jpeg", "jpeg", "degraded", []),
    ]


def test_missing_finding_is_not_scored_as_zero():
    report = build_image_stability_report("img.png", _three_variant_outcomes())
    pores = report["issue_stability"]["pores"]
    assert pores["severity_score_range"] == pytest.approx(0.10)
    assert pores["severity_score_min"] == pytest.approx(0.70)
    assert pores["missing_in_compared_variants_n"] == 1
    assert pores["compared_variants_n"] == 3
    assert pores["appearance_flip_rate"] == 0.333


def test_range_without_quality_factor():
    outcomes = [
        _outcome("original", "identity", "degraded", [_issue("pores", 0.70)], quality_factor=None),
        _outcome("noise", "noise", "degraded", [_issue("pores", 0.80)], quality_factor=None),
        _outcome("jpeg", "jpeg", "degraded", [], quality_factor=None),
    ]
    pores = build_image_stability_report("img.png", outcomes)["issue_stability"]["pores"]
    assert pores["severity_score_range"] == pytest.approx(0.10)
    assert pores["missing_in_compared_variants_n"] == 1
    assert pores["appearance_flip_rate"] == 0.333
    assert pores["confidence_min"] == pytest.approx(0.7)
    assert pores["confidence_vs_quality_factor"] == "insufficient"


def test_min_max_refs_point_at_variants():
    report = build_image_stability_report("img.png", _three_variant_outcomes())
    pores = report["issue_stability"]["pores"]
    # variants are ordered by name: jpeg, noise, original
    assert pores["severity_score_min_ref"]["variant"] == "original"
    assert pores["severity_score_min_ref"]["run_index"] == 2
    assert pores["severity_score_max_ref"]["variant"] == "noise"
    worst = report["top_k_worst"][0]
    assert worst["issue_type"] == "pores"
    assert worst["run_ids"] == [2, 1]
    assert report["worst_severity_score_range"] == pytest.approx(0.10)


def test_fail_grade_never_contributes_to_range():
    outcomes = _three_variant_outcomes() + [
        _outcome("temp_warm", "temp", "fail", [_issue("pores", 0.0)]),
    ]
    report = build_image_stability_report("img.png", outcomes)
    pores = report["issue_stability"]["pores"]
    assert pores["severity_score_range"] == pytest.approx(0.10)
    assert pores["compared_variants_n"] == 3
    assert report["excluded_variants"] == {"not_ok_n": 0, "quality_fail_n": 1, "quality_unknown_n": 0}
    assert report["quality_grade_counts"]["fail"] == 1


def test_not_ok_and_unknown_grade_are_excluded():
    outcomes = _three_variant_outcomes() + [
        VariantOutcome("crop_jitter_a", "crop", DiagnosisResult.failure("timeout")),
        _outcome("resize_095", "resize", None, [_issue("pores", 0.1)]),
    ]
    report = build_image_stability_report("img.png", outcomes)
    assert report["excluded_variants"] == {"not_ok_n": 1, "quality_fail_n": 0, "quality_unknown_n": 1}
    assert report["issue_stability"]["pores"]["severity_score_range"] == pytest.approx(0.10)
    failed = next(v for v in report["variants"] if v["variant"] == "crop_jitter_a")
    assert failed["ok"] is False and failed["reason"] == "timeout"


def test_issue_only_in_fail_variant_has_no_range():
    outcomes = _three_variant_outcomes() + [
        _outcome("temp_cool", "temp", "fail", [_issue("redness", 0.9)]),
    ]
    report = build_image_stability_report("img.png", outcomes)
    redness = report["issue_stability"]["redness"]
    assert redness["severity_score_range"] is None
    assert redness["missing_in_compared_variants_n"] == 3
    assert redness["appearance_flip_rate"] == 1.0
    assert redness["confidence_vs_quality_factor"] == "insufficient"
    assert [w["issue_type"] for w in report["top_k_worst"]] == ["pores"]


def test_per_transform_summary_uses_baseline():
    outcomes = _three_variant_outcomes() + [
        _outcome("noise_b", "noise", "pass", [_issue("pores", 0.60)]),
    ]
    report = build_image_stability_report("img.png", outcomes)
    by_kind = {s["variant_kind"]: s for s in report["per_transform_summary"]}
    assert set(by_kind) == {"identity", "jpeg", "noise"}
    noise = by_kind["noise"]
    assert noise["variants_compared_n"] == 2
    assert noise["avg_abs_delta_by_issue"]["pores"] == pytest.approx(0.1)
    assert noise["max_abs_delta_by_issue"]["pores"] == pytest.approx(0.1)
    assert by_kind["jpeg"]["avg_abs_delta_by_issue"]["pores"] is None
    assert "baseline_variant=original" in noise["notes"]


def test_per_transform_summary_without_comparable_baseline():
    outcomes = [
        _outcome("original", "identity", "fail", [_issue("pores", 0.2)]),
        _outcome("noise", "noise", "pass", [_issue("pores", 0.8)]),
    ]
    report = build_image_stability_report("img.png", outcomes)
    noise = next(s for s in report["per_transform_summary"] if s["variant_kind"] == "noise")
    assert noise["avg_abs_delta_by_issue"]["pores"] is None
    assert "baseline_variant_unavailable" in noise["notes"]


def test_top_k_ranking():
    outcomes = [
        _outcome("a", "noise", "pass", [_issue("pores", 0.1), _issue("redness", 0.5), _issue("acne", 0.3)]),
        _outcome("b", "noise", "pass", [_issue("pores", 0.4), _issue("redness", 0.55), _issue("acne", 0.9)]),
    ]
    report = build_image_stability_report("img.png", outcomes, top_k=2)
    assert [w["issue_type"] for w in report["top_k_worst"]] == ["acne", "pores"]
    assert report["worst_issue_type"] == "acne"


@pytest.mark.parametrize(
    "xs,ys,expected",
    [
        ([0.1, 0.2], [0.1, 0.2], "insufficient"),
        ([0.1, 0.2, 0.3], [0.5, 0.6, 0.7], "positive"),
        ([0.1, 0.2, 0.3], [0.7, 0.6, 0.5], "negative"),
        ([0.5, 0.5, 0.5], [0.1, 0.2, 0.3], "flat"),
    ],
)
def test_corr_sign(xs, ys, expected):
    assert corr_sign(xs, ys) == expected


def test_batch_report_summary():
    report = build_stability_report({
        "b.png": _three_variant_outcomes(),
        "a.png": [_outcome("original", "identity", "pass", [])],
    })
    assert report["schema_version"] == "aurora.stability_report.v1"
    assert report["generated_at"].endswith("Z")
    assert [img["image"] for img in report["images"]] == ["a.png", "b.png"]
    assert report["summary"]["images_n"] == 2
    assert report["summary"]["variants_n"] == 4
    assert report["summary"]["worst_severity_score_range"] == pytest.approx(0.10)
