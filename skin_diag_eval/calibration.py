"""
Apply a pre-built hierarchical isotonic calibration model to raw confidences.

The model is a read-only JSON artifact (see ``CalibrationModel.from_dict``):

    {
      "schema_version": "aurora.diag.calibration_model.v1",
      "model_version": "...",
      "calibration": {
        "global": {"kind": "isotonic_step_v1", "x": [...], "y": [...]},
        "by_provider": {"<provider>": {...}},
        "by_group": {"<provider>|<quality>|<tone>|<lighting>|mk0|ft0": {...}, ...}
      },
      "provider_weights": {...},
      "severity_smoothing": {...}
    }

Nothing here fits curves; the artifact is produced elsewhere.
"""
from __future__ import annotations
import glob
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .evaluation_rows import EvaluationRow, QualityFeatures
from .normalize import as_float, clamp, clamp01, normalize_bucket, normalize_finding_type, round3

logger = logging.getLogger(__name__)

CALIBRATION_SCHEMA_VERSION = "aurora.diag.calibration_model.v1"
MODEL_FILE_PREFIX = "diag_calibration_v1"

QUALITY_FACTOR_MIN = 0.55
QUALITY_FACTOR_MAX = 1.12
PROVIDER_WEIGHT_MIN = 0.2
PROVIDER_WEIGHT_MAX = 2.5
SEVERITY_MAX = 4.0

HIERARCHY = (
    "provider_quality_tone_lighting_flags",
    "provider_quality_tone_lighting",
    "provider_quality_tone",
    "provider_quality",
    "provider",
    "global",
)


@dataclass(frozen=True)
class IsotonicCurve:
    """Monotonic step function: first y[i] with raw <= x[i], else y[-1]."""
    x: Tuple[float, ...]
    y: Tuple[float, ...]
    samples: int = 0

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["IsotonicCurve"]:
        if not isinstance(raw, dict):
            return None
        xs, ys = raw.get("x"), raw.get("y")
        if not isinstance(xs, list) or not isinstance(ys, list) or not xs or len(xs) != len(ys):
            return None
        x = [as_float(v) for v in xs]
        if any(v is None for v in x):
            return None
        return cls(tuple(x), tuple(clamp01(v) for v in ys), int(as_float(raw.get("samples")) or 0))

    def predict(self, raw_confidence: float) -> float:
        safe = clamp01(raw_confidence)
        for x_val, y_val in zip(self.x, self.y):
            if safe <= x_val:
                return y_val
        return self.y[-1]

    def as_arrays(self) -> Tuple[np.ndarray, np.ndarray]:
        return np.asarray(self.x, dtype=np.float64), np.asarray(self.y, dtype=np.float64)


@dataclass(frozen=True)
class CalibrationModel:
    schema_version: Optional[str]
    model_version: Optional[str] = None
    global_curve: Optional[IsotonicCurve] = None
    by_provider: Dict[str, IsotonicCurve] = field(default_factory=dict)
    by_group: Dict[str, IsotonicCurve] = field(default_factory=dict)
    provider_weights: Dict[str, Any] = field(default_factory=dict)
    severity_smoothing: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_current(self) -> bool:
        return self.schema_version == CALIBRATION_SCHEMA_VERSION

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "CalibrationModel":
        cal = raw.get("calibration") if isinstance(raw.get("calibration"), dict) else {}

        def _curves(section: Any) -> Dict[str, IsotonicCurve]:
            if not isinstance(section, dict):
                return {}
            out = {}
            for key, val in section.items():
                curve = IsotonicCurve.from_dict(val)
                if curve is not None:
                    out[str(key)] = curve
            return out

        pw = raw.get("provider_weights")
        ss = raw.get("severity_smoothing")
        return cls(
            schema_version=raw.get("schema_version"),
            model_version=raw.get("model_version"),
            global_curve=IsotonicCurve.from_dict(cal.get("global")),
            by_provider=_curves(cal.get("by_provider")),
            by_group=_curves(cal.get("by_group")),
            provider_weights=pw if isinstance(pw, dict) else {},
            severity_smoothing=ss if isinstance(ss, dict) else {},
        )

    @classmethod
    def identity(cls) -> "CalibrationModel":
        return cls(
            schema_version=CALIBRATION_SCHEMA_VERSION,
            model_version=f"{MODEL_FILE_PREFIX}_identity",
            global_curve=IsotonicCurve((0.0, 1.0), (0.0, 1.0)),
        )


def load_calibration_model(path: str) -> Tuple[CalibrationModel, str, Optional[str]]:
    """
    Returns (model, source, error). Any load problem falls back to the identity
    model with source "default_fallback"; this never raises.
    """
    if not path or not os.path.exists(path):
        logger.warning("calibration model not found at %r, using identity model", path)
        return CalibrationModel.identity(), "default_fallback", "NOT_FOUND"
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("failed to load calibration model %s: %s", path, e)
        return CalibrationModel.identity(), "default_fallback", "LOAD_FAILED"
    if not isinstance(raw, dict) or raw.get("schema_version") != CALIBRATION_SCHEMA_VERSION:
        logger.warning("calibration model %s has unexpected schema, using identity model", path)
        return CalibrationModel.identity(), "default_fallback", "SCHEMA_MISMATCH"
    return CalibrationModel.from_dict(raw), path, None


def find_latest_model(registry_dir: str) -> Optional[str]:
    if not registry_dir or not os.path.isdir(registry_dir):
        return None
    paths = sorted(glob.glob(os.path.join(registry_dir, f"{MODEL_FILE_PREFIX}*.json")))
    return paths[-1] if paths else None


def candidate_keys(provider: str, quality: str, tone: str, lighting: str,
                   makeup: bool, filtered: bool) -> List[str]:
    mk = "mk1" if makeup else "mk0"
    ft = "ft1" if filtered else "ft0"
    return [
        f"{provider}|{quality}|{tone}|{lighting}|{mk}|{ft}",
        f"{provider}|{quality}|{tone}|{lighting}",
        f"{provider}|{quality}|{tone}",
        f"{provider}|{quality}",
    ]


def resolve_curve_with_level(model: CalibrationModel, row: EvaluationRow) -> Tuple[Optional[IsotonicCurve], str]:
    """Most specific curve for the row, and the hierarchy level it came from."""
    provider = normalize_bucket(row.provider, "unknown_provider")
    keys = candidate_keys(
        provider,
        normalize_bucket(row.quality_grade),
        normalize_bucket(row.tone_bucket),
        normalize_bucket(row.lighting_bucket),
        row.quality.makeup_detected,
        row.quality.filter_detected,
    )
    for key, level in zip(keys, HIERARCHY):
        if key in model.by_group:
            return model.by_group[key], level
    if provider in model.by_provider:
        return model.by_provider[provider], "provider"
    return model.global_curve, "global"


def resolve_curve(model: CalibrationModel, row: EvaluationRow) -> Optional[IsotonicCurve]:
    return resolve_curve_with_level(model, row)[0]


def quality_factor(q: QualityFeatures) -> float:
    factor = 1.0
    factor += (clamp01(q.exposure_score) - 0.5) * 0.1
    factor -= clamp01(q.reflection_score) * 0.12
    factor -= clamp01(q.filter_score) * 0.16
    if q.makeup_detected:
        factor -= 0.05
    if q.filter_detected:
        factor -= 0.06
    return clamp(factor, QUALITY_FACTOR_MIN, QUALITY_FACTOR_MAX)


def calibrate(model: Optional[CalibrationModel], row: EvaluationRow) -> float:
    safe_raw = clamp01(row.raw_confidence)
    if model is None or not model.is_current:
        return round3(safe_raw)
    curve = resolve_curve(model, row)
    iso = curve.predict(safe_raw) if curve is not None else safe_raw
    return round3(clamp01(iso * quality_factor(row.quality)))


def calibrate_rows(model: Optional[CalibrationModel], rows: List[EvaluationRow]) -> List[EvaluationRow]:
    for row in rows:
        row.calibrated_confidence = calibrate(model, row)
    return rows


def resolve_provider_weight(model: CalibrationModel, provider: Any, finding_type: Any,
                            quality_grade: Any, tone_bucket: Any) -> float:
    pw = model.provider_weights
    safe_provider = normalize_bucket(provider, "unknown_provider")
    key = "|".join([
        safe_provider,
        normalize_finding_type(finding_type),
        normalize_bucket(quality_grade),
        normalize_bucket(tone_bucket),
    ])
    by_bucket = pw.get("by_bucket") if isinstance(pw.get("by_bucket"), dict) else {}
    bucket = by_bucket.get(key)
    if isinstance(bucket, dict) and as_float(bucket.get("weight")) is not None:
        return clamp(bucket["weight"], PROVIDER_WEIGHT_MIN, PROVIDER_WEIGHT_MAX)
    by_provider = pw.get("by_provider") if isinstance(pw.get("by_provider"), dict) else {}
    if as_float(by_provider.get(safe_provider)) is not None:
        return clamp(by_provider[safe_provider], PROVIDER_WEIGHT_MIN, PROVIDER_WEIGHT_MAX)
    default = as_float(pw.get("default"))
    return clamp(default if default else 1.0, PROVIDER_WEIGHT_MIN, PROVIDER_WEIGHT_MAX)


def smooth_severity(model: Optional[CalibrationModel], severity: Any, calibrated_confidence: Any) -> float:
    """Shrink a severity toward zero when calibrated confidence is low."""
    safe_severity = clamp(severity, 0.0, SEVERITY_MAX)
    if model is None or not model.is_current:
        return round3(safe_severity)
    sm = model.severity_smoothing
    min_scale = clamp(as_float(sm.get("min_scale")) or 0.72, 0.5, 1.0)
    max_scale = clamp(as_float(sm.get("max_scale")) or 1.0, min_scale, 1.2)
    gamma = clamp(as_float(sm.get("confidence_gamma")) or 1.0, 0.5, 2.0)
    scale = min_scale + (max_scale - min_scale) * clamp01(calibrated_confidence) ** gamma
    return round3(clamp(safe_severity * scale, 0.0, SEVERITY_MAX))
