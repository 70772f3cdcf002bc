"""
Typed records for diagnosis-engine output and label-store concerns.

Everything coming from JSON-like sources is validated here, once, at the
ingestion boundary. Optional fields stay ``None`` when absent; nothing is
defaulted to a "safe" numeric value.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from .geom import Box, Region, primary_box, region_from_dict
from .normalize import as_float, clamp01, normalize_finding_type, normalize_token, round3

QUALITY_METRIC_KEYS = (
    "skin_coverage",
    "mean_luma",
    "laplacian_energy",
    "blur_factor",
    "exposure_factor",
    "wb_factor",
    "coverage_factor",
)


@dataclass(frozen=True)
class Finding:
    issue_type: str                 # type string as emitted by the engine
    type: str                       # canonical type after alias lookup
    confidence: Optional[float] = None
    severity_score: Optional[float] = None
    severity_level: Optional[Union[int, float]] = None   # ordinal, int when integral
    severity_label: Optional[str] = None
    regions: Tuple[Region, ...] = ()
    box: Optional[Box] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issue_type": self.issue_type,
            "severity_score": self.severity_score,
            "severity": self.severity_label,
            "severity_level": self.severity_level,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class QualityInfo:
    grade: Optional[str] = None
    quality_factor: Optional[float] = None
    reasons: Tuple[str, ...] = ()
    metrics: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "grade": self.grade,
            "quality_factor": self.quality_factor,
            "reasons": list(self.reasons),
            "metrics": dict(self.metrics),
        }


@dataclass(frozen=True)
class DiagnosisResult:
    ok: bool
    reason: Optional[str] = None
    quality: Optional[QualityInfo] = None
    findings: Tuple[Finding, ...] = ()

    @classmethod
    def failure(cls, reason: str) -> "DiagnosisResult":
        return cls(ok=False, reason=reason)

    def finding(self, issue_type: str) -> Optional[Finding]:
        return next((f for f in self.findings if f.issue_type == issue_type), None)


def _str_or_none(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _as_level(value: Any) -> Optional[Union[int, float]]:
    level = as_float(value)
    if level is not None and level.is_integer():
        return int(level)
    return level


def parse_finding(raw: Any) -> Optional[Finding]:
    """Parse one engine issue / label-store concern. Records without a type are dropped."""
    if not isinstance(raw, dict):
        return None
    issue_type = _str_or_none(raw.get("issue_type")) or _str_or_none(raw.get("type"))
    if issue_type is None:
        return None

    regions_raw = raw.get("regions")
    if not isinstance(regions_raw, list):
        single = raw.get("region")
        regions_raw = [single] if isinstance(single, dict) else []
    regions = tuple(r for r in (region_from_dict(x) for x in regions_raw) if r is not None)

    confidence = as_float(raw.get("confidence"))
    return Finding(
        issue_type=issue_type,
        type=normalize_finding_type(issue_type),
        confidence=round3(clamp01(confidence)) if confidence is not None else None,
        severity_score=as_float(raw.get("severity_score")),
        severity_level=_as_level(raw.get("severity_level")),
        severity_label=_str_or_none(raw.get("severity")) or _str_or_none(raw.get("severity_label")),
        regions=regions,
        box=primary_box(regions),
    )


def parse_findings(raw: Any) -> List[Finding]:
    if not isinstance(raw, list):
        return []
    return [f for f in (parse_finding(x) for x in raw) if f is not None]


def parse_quality(raw: Any) -> Optional[QualityInfo]:
    if not isinstance(raw, dict):
        return None
    grade = normalize_token(raw.get("grade")) or None
    reasons = raw.get("reasons") if isinstance(raw.get("reasons"), list) else []
    metrics = raw.get("metrics") if isinstance(raw.get("metrics"), dict) else {}
    return QualityInfo(
        grade=grade,
        quality_factor=as_float(raw.get("quality_factor")),
        reasons=tuple(str(r) for r in reasons[:10]),
        metrics={k: metrics.get(k) for k in QUALITY_METRIC_KEYS},
    )


def parse_diagnosis_payload(payload: Any) -> DiagnosisResult:
    """
    Accepts either an envelope ``{ok, reason, diagnosis: {...}}`` or a bare
    diagnosis ``{quality, findings | issues}``.
    """
    if not isinstance(payload, dict):
        return DiagnosisResult.failure("invalid_payload")
    if "ok" in payload or "diagnosis" in payload:
        if not payload.get("ok", True):
            return DiagnosisResult.failure(str(payload.get("reason") or "diagnosis_failed"))
        diag = payload.get("diagnosis")
    else:
        diag = payload
    if not isinstance(diag, dict):
        return DiagnosisResult.failure("invalid_payload")

    items = diag.get("findings") if "findings" in diag else diag.get("issues")
    if not isinstance(items, list):
        return DiagnosisResult.failure("invalid_payload")
    return DiagnosisResult(
        ok=True,
        quality=parse_quality(diag.get("quality")),
        findings=tuple(parse_findings(items)),
    )
