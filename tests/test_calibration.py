"""Calibration resolver: curve lookup, fallback chain, quality adjustment, loading."""

import json

import pytest

from skin_diag_eval.calibration import (
    CALIBRATION_SCHEMA_VERSION,
    CalibrationModel,
    IsotonicCurve,
    calibrate,
    find_latest_model,
    load_calibration_model,
    quality_factor,
    resolve_curve_with_level,
    resolve_provider_weight,
    smooth_severity,
)
from skin_diag_eval.evaluation_rows import EvaluationRow, QualityFeatures


def _curve(y):
    return {"kind": "isotonic_step_v1", "x": [0.2, 0.5, 0.8], "y": y, "samples": 50}


def _model_doc(**overrides):
    doc = {
        "schema_version": CALIBRATION_SCHEMA_VERSION,
        "model_version": "diag_calibration_v1_test",
        "calibration": {
            "global": _curve([0.1, 0.4, 0.7]),
            "by_provider": {"gemini": _curve([0.11, 0.41, 0.71])},
            "by_group": {
                "gemini|pass": _curve([0.12, 0.42, 0.72]),
                "gemini|pass|light": _curve([0.13, 0.43, 0.73]),
                "gemini|pass|light|daylight": _curve([0.14, 0.44, 0.74]),
                "gemini|pass|light|daylight|mk0|ft0": _curve([0.15, 0.45, 0.75]),
            },
        },
    }
    doc.update(overrides)
    return doc


def _row(raw=0.4, provider="gemini", quality="pass", tone="light", lighting="daylight",
         quality_features=None):
    return EvaluationRow(
        inference_id="inf-1",
        provider=provider,
        type="redness",
        quality_grade=quality,
        tone_bucket=tone,
        lighting_bucket=lighting,
        region_bucket="unknown",
        raw_confidence=raw,
        label=1,
        quality=quality_features or QualityFeatures(exposure_score=0.5),
    )


def test_isotonic_lookup_scans_breakpoints():
    curve = IsotonicCurve.from_dict(_curve([0.1, 0.4, 0.7]))
    assert curve.predict(0.2) == 0.1
    assert curve.predict(0.21) == 0.4
    assert curve.predict(0.95) == 0.7


def test_isotonic_is_monotone():
    curve = IsotonicCurve.from_dict({"x": [0.1, 0.3, 0.6, 0.9], "y": [0.05, 0.2, 0.6, 0.95]})
    xs = [i / 100 for i in range(-10, 111)]
    ys = [curve.predict(x) for x in xs]
    assert all(a <= b for a, b in zip(ys, ys[1:]))


@pytest.mark.parametrize("raw", [{"x": [], "y": []}, {"x": [0.5], "y": [0.1, 0.2]}, {"x": ["a"], "y": [0.1]}, None])
def test_unusable_curves_are_dropped(raw):
    assert IsotonicCurve.from_dict(raw) is None


@pytest.mark.parametrize(
    "row_kwargs,level,expected_y",
    [
        ({}, "provider_quality_tone_lighting_flags", 0.45),
        ({"quality_features": QualityFeatures(exposure_score=0.5, makeup_detected=True)},
         "provider_quality_tone_lighting", 0.44),
        ({"lighting": "indoor"}, "provider_quality_tone", 0.43),
        ({"tone": "deep", "lighting": "indoor"}, "provider_quality", 0.42),
        ({"quality": "degraded"}, "provider", 0.41),
        ({"provider": "other"}, "global", 0.4),
    ],
)
def test_fallback_chain_prefers_most_specific(row_kwargs, level, expected_y):
    model = CalibrationModel.from_dict(_model_doc())
    curve, got_level = resolve_curve_with_level(model, _row(**row_kwargs))
    assert got_level == level
    assert curve.predict(0.4) == expected_y


def test_calibrate_applies_curve_and_quality_factor():
    model = CalibrationModel.from_dict(_model_doc())
    # neutral quality: factor 1.0
    assert calibrate(model, _row(raw=0.4)) == 0.45
    degraded = QualityFeatures(exposure_score=0.5, reflection_score=1.0)
    assert calibrate(model, _row(raw=0.4, quality_features=degraded)) == pytest.approx(round(0.45 * 0.88, 3))


def test_quality_factor_bounds():
    worst = QualityFeatures(exposure_score=0.0, reflection_score=1.0, filter_score=1.0,
                            makeup_detected=True, filter_detected=True)
    assert quality_factor(worst) == pytest.approx(0.56)
    # feature scores are clamped to [0, 1] before use
    assert quality_factor(QualityFeatures(exposure_score=5.0, reflection_score=-2.0)) == pytest.approx(1.05)
    assert 0.55 <= quality_factor(worst) <= 1.12


@pytest.mark.parametrize("raw", [-3.0, -0.01, 0.0, 0.5, 1.0, 1.7, 99.0])
def test_calibrated_confidence_stays_in_unit_interval(raw):
    generous = {"x": [0.5, 1.0], "y": [1.0, 1.0]}
    model = CalibrationModel.from_dict(_model_doc(calibration={"global": generous}))
    boost = QualityFeatures(exposure_score=1.0)
    value = calibrate(model, _row(raw=raw, provider="nobody", quality_features=boost))
    assert 0.0 <= value <= 1.0


def test_version_mismatch_passes_raw_through():
    model = CalibrationModel.from_dict(_model_doc(schema_version="aurora.diag.calibration_model.v0"))
    assert calibrate(model, _row(raw=0.4)) == 0.4
    assert calibrate(model, _row(raw=1.4)) == 1.0
    assert calibrate(None, _row(raw=-0.2)) == 0.0


def test_missing_curves_pass_through():
    model = CalibrationModel.from_dict(_model_doc(calibration={}))
    assert calibrate(model, _row(raw=0.37)) == 0.37


def test_load_model_fallbacks(tmp_path):
    model, source, error = load_calibration_model(str(tmp_path / "missing.json"))
    assert (source, error) == ("default_fallback", "NOT_FOUND")
    assert calibrate(model, _row(raw=0.33)) == 1.0  # identity curve steps to 1.0 above 0

    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    assert load_calibration_model(str(bad))[1:] == ("default_fallback", "LOAD_FAILED")

    old = tmp_path / "old.json"
    old.write_text(json.dumps(_model_doc(schema_version="v0")), encoding="utf-8")
    assert load_calibration_model(str(old))[1:] == ("default_fallback", "SCHEMA_MISMATCH")

    good = tmp_path / "diag_calibration_v1_2026.json"
    good.write_text(json.dumps(_model_doc()), encoding="utf-8")
    model, source, error = load_calibration_model(str(good))
    assert error is None and source == str(good)
    assert model.model_version == "diag_calibration_v1_test"


def test_find_latest_model(tmp_path):
    for name in ["diag_calibration_v1_20260101.json", "diag_calibration_v1_20260301.json", "other.json"]:
        (tmp_path / name).write_text("{}", encoding="utf-8")
    assert find_latest_model(str(tmp_path)).endswith("diag_calibration_v1_20260301.json")
    assert find_latest_model(str(tmp_path / "nope")) is None


def test_provider_weights_resolution():
    model = CalibrationModel.from_dict(_model_doc(provider_weights={
        "default": 0.9,
        "by_provider": {"gemini": 1.3},
        "by_bucket": {"gemini|redness|pass|light": {"weight": 9.0}},
    }))
    assert resolve_provider_weight(model, "Gemini", "erythema", "pass", "light") == 2.5
    assert resolve_provider_weight(model, "gemini", "acne", "pass", "light") == 1.3
    assert resolve_provider_weight(model, "other", "acne", "pass", "light") == 0.9


def test_severity_smoothing():
    model = CalibrationModel.from_dict(_model_doc())
    assert smooth_severity(model, 3.0, 1.0) == 3.0
    assert smooth_severity(model, 3.0, 0.0) == pytest.approx(2.16)
    assert smooth_severity(model, 9.0, 1.0) == 4.0
    old = CalibrationModel.from_dict(_model_doc(schema_version="v0"))
    assert smooth_severity(old, 3.0, 0.0) == 3.0
