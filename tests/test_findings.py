"""Ingestion-boundary parsing of engine payloads and label concerns."""

import pytest

from skin_diag_eval.findings import parse_diagnosis_payload, parse_finding
from skin_diag_eval.normalize import as_bool, as_float, normalize_bucket, normalize_finding_type


@pytest.mark.parametrize(
    "raw,expected",
    [("Erythema", "redness"), ("breakouts", "acne"), (" pores ", "texture"),
     ("sensitivity", "barrier"), ("wrinkles", "other"), (None, "other")],
)
def test_finding_type_aliases(raw, expected):
    assert normalize_finding_type(raw) == expected


def test_scalar_normalizers():
    assert normalize_bucket("  ") == "unknown"
    assert normalize_bucket(None, "unknown_provider") == "unknown_provider"
    assert as_float("0.5") == 0.5
    assert as_float(True) is None
    assert as_float(float("nan")) is None
    assert as_bool("Yes") is True
    assert as_bool("maybe", fallback=True) is True


def test_absent_fields_stay_none():
    f = parse_finding({"issue_type": "pores"})
    assert f.confidence is None
    assert f.severity_score is None
    assert f.severity_level is None
    assert f.box is None
    assert f.type == "texture"


def test_finding_without_type_is_dropped():
    assert parse_finding({"confidence": 0.9}) is None
    assert parse_finding("acne") is None


def test_confidence_is_clamped_and_rounded():
    assert parse_finding({"type": "acne", "confidence": 1.7}).confidence == 1.0
    assert parse_finding({"type": "acne", "confidence": 0.12345}).confidence == 0.123


def test_payload_envelope_and_bare():
    envelope = {"ok": True, "diagnosis": {"quality": {"grade": "PASS", "quality_factor": 0.9},
                                           "issues": [{"issue_type": "redness"}, {"bad": 1}]}}
    result = parse_diagnosis_payload(envelope)
    assert result.ok and result.quality.grade == "pass"
    assert [f.issue_type for f in result.findings] == ["redness"]

    bare = parse_diagnosis_payload({"findings": []})
    assert bare.ok and bare.quality is None


@pytest.mark.parametrize(
    "payload,reason",
    [
        ({"ok": False}, "diagnosis_failed"),
        ({"ok": False, "reason": "no_face"}, "no_face"),
        ({"ok": True, "diagnosis": None}, "invalid_payload"),
        ({"quality": {"grade": "pass"}}, "invalid_payload"),
        ({"findings": "redness"}, "invalid_payload"),
        ([1, 2], "invalid_payload"),
    ],
)
def test_payload_failures(payload, reason):
    result = parse_diagnosis_payload(payload)
    assert not result.ok
    assert result.reason == reason


@pytest.mark.parametrize("raw,expected", [(2, 2), ("3", 3), (2.0, 2), (1.5, 1.5), (None, None)])
def test_severity_level_is_ordinal(raw, expected):
    level = parse_finding({"issue_type": "acne", "severity_level": raw}).severity_level
    assert level == expected
    if expected is not None and float(expected).is_integer():
        assert isinstance(level, int)
