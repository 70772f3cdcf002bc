"""
Stability of diagnosis output across perturbed variants of one image.

Only *comparable* variants feed the statistics: the diagnosis call succeeded
and the quality grade is a known non-fail grade. A fail grade means the
quality gate asked for a retake, so its (usually conservative) findings are
excluded from ranges and deltas but still counted in ``excluded_variants``.

A finding type absent from a comparable variant is counted as missing; it is
never scored as severity 0.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np
from tqdm import tqdm

from .engines import DiagnosisEngine, DiagnosisJob, run_diagnosis_jobs
from .findings import DiagnosisResult, Finding
from .normalize import round3
from .perturb import BASELINE_VARIANT, DEFAULT_BASE_SEED, generate_variants, image_seed, variant_specs

logger = logging.getLogger(__name__)

STABILITY_SCHEMA_VERSION = "aurora.stability_report.v1"
DEFAULT_TOP_K = 10
COMPARABLE_GRADES = ("pass", "degraded")
GRADES = ("pass", "degraded", "fail", "unknown")
MAX_SEVERITY_LABELS = 6


@dataclass(frozen=True)
class VariantOutcome:
    variant: str
    variant_kind: str
    result: DiagnosisResult


def _grade(outcome: VariantOutcome) -> str:
    q = outcome.result.quality
    grade = q.grade if q is not None else None
    return grade if grade in GRADES else "unknown"


def _quality_factor(outcome: VariantOutcome) -> Optional[float]:
    q = outcome.result.quality
    return q.quality_factor if q is not None else None


def corr_sign(xs: Sequence[float], ys: Sequence[float]) -> str:
    """Sign of the covariance: positive, negative, flat, or insufficient (< 3 points)."""
    if len(xs) < 3 or len(xs) != len(ys):
        return "insufficient"
    mx = sum(xs) / len(xs)
    my = sum(ys) / len(ys)
    vx = sum((x - mx) ** 2 for x in xs)
    vy = sum((y - my) ** 2 for y in ys)
    if vx <= 1e-12 or vy <= 1e-12:
        return "flat"
    cov = sum((x - mx) * (y - my) for x, y in zip(xs, ys))
    if abs(cov) <= 1e-9:
        return "flat"
    return "positive" if cov > 0 else "negative"


def _variant_dict(outcome: VariantOutcome, run_index: int) -> Dict[str, Any]:
    q = outcome.result.quality
    return {
        "variant": outcome.variant,
        "variant_kind": outcome.variant_kind,
        "run_index": run_index,
        "ok": outcome.result.ok,
        "reason": outcome.result.reason,
        "quality": {
            "grade": q.grade if q else None,
            "quality_factor": q.quality_factor if q else None,
            "reasons": list(q.reasons) if q else [],
            "metrics": dict(q.metrics) if q else {},
        },
        "issues": [f.to_dict() for f in outcome.result.findings],
    }


def _variant_ref(outcome: VariantOutcome, run_index: int) -> Dict[str, Any]:
    return {
        "variant": outcome.variant,
        "variant_kind": outcome.variant_kind,
        "run_index": run_index,
        "quality_grade": _grade(outcome),
    }


def _issue_stability(itype: str, comparable: List[tuple]) -> tuple:
    """Returns (stability entry, worst-range entry or None). ``comparable`` holds (run_index, outcome)."""
    missing = 0
    points: List[Dict[str, Any]] = []
    labels = set()
    corr_conf: List[float] = []
    corr_qf: List[float] = []
    for run_index, outcome in comparable:
        finding: Optional[Finding] = outcome.result.finding(itype)
        if finding is None:
            missing += 1
            continue
        if finding.severity_label:
            labels.add(finding.severity_label)
        if finding.severity_score is None:
            continue
        points.append({
            "score": finding.severity_score,
            "confidence": finding.confidence,
            "level": finding.severity_level,
            "ref": _variant_ref(outcome, run_index),
        })
        qf = _quality_factor(outcome)
        # only the correlation needs a quality factor
        if finding.confidence is not None and qf is not None:
            corr_conf.append(finding.confidence)
            corr_qf.append(qf)

    compared_n = len(comparable)
    presence = {
        "compared_variants_n": compared_n,
        "missing_in_compared_variants_n": missing if compared_n else None,
        "appearance_flip_rate": round3(missing / compared_n) if compared_n else None,
    }
    if not points:
        return {
            "severity_score_min": None,
            "severity_score_max": None,
            "severity_score_range": None,
            "confidence_vs_quality_factor": "insufficient",
            **presence,
        }, None

    scores = [p["score"] for p in points]
    mn, mx = min(scores), max(scores)
    min_pt = next(p for p in points if p["score"] == mn)
    max_pt = next(p for p in points if p["score"] == mx)
    levels = [p["level"] for p in points if p["level"] is not None]
    confs = [p["confidence"] for p in points if p["confidence"] is not None]
    rng = round3(mx - mn)
    entry = {
        "severity_score_min": round3(mn),
        "severity_score_max": round3(mx),
        "severity_score_range": rng,
        "severity_score_min_ref": min_pt["ref"],
        "severity_score_max_ref": max_pt["ref"],
        "severity_level_min": min(levels) if levels else None,
        "severity_level_max": max(levels) if levels else None,
        "severity_labels": sorted(labels)[:MAX_SEVERITY_LABELS],
        "confidence_min": min(confs) if confs else None,
        "confidence_max": max(confs) if confs else None,
        "confidence_vs_quality_factor": corr_sign(corr_conf, corr_qf),
        **presence,
    }
    worst = {
        "issue_type": itype,
        "transform_min": min_pt["ref"],
        "transform_max": max_pt["ref"],
        "score_min": round3(mn),
        "score_max": round3(mx),
        "range": rng,
        "run_ids": [min_pt["ref"]["run_index"], max_pt["ref"]["run_index"]],
    }
    return entry, worst


def _mean(xs: List[float]) -> Optional[float]:
    return round3(sum(xs) / len(xs)) if xs else None


def _per_transform_summary(ordered: List[VariantOutcome], comparable: List[tuple],
                           issue_types: List[str], baseline_scores: Dict[str, float],
                           baseline_comparable: bool) -> List[Dict[str, Any]]:
    out = []
    kinds = sorted({o.variant_kind or "unknown" for o in ordered})
    for kind in kinds:
        total = [o for o in ordered if (o.variant_kind or "unknown") == kind]
        compared = [o for _, o in comparable if (o.variant_kind or "unknown") == kind]
        deltas: Dict[str, List[float]] = {t: [] for t in issue_types}
        for outcome in compared:
            for itype, base in baseline_scores.items():
                finding = outcome.result.finding(itype)
                if finding is None or finding.severity_score is None:
                    continue
                deltas[itype].append(abs(finding.severity_score - base))
        out.append({
            "variant_kind": kind,
            "variants_total_n": len(total),
            "variants_compared_n": len(compared),
            "avg_abs_delta_by_issue": {t: _mean(xs) for t, xs in deltas.items()},
            "max_abs_delta_by_issue": {t: (round3(max(xs)) if xs else None) for t, xs in deltas.items()},
            "notes": [
                f"baseline_variant={BASELINE_VARIANT}" if baseline_comparable else "baseline_variant_unavailable",
                "deltas_computed_on=quality_nonfail",
            ],
        })
    return out


def build_image_stability_report(image_name: str, outcomes: Iterable[VariantOutcome],
                                 top_k: int = DEFAULT_TOP_K) -> Dict[str, Any]:
    ordered = sorted(outcomes, key=lambda o: o.variant)

    grade_counts = {g: 0 for g in GRADES}
    not_ok = fail_n = unknown_n = 0
    comparable: List[tuple] = []
    for run_index, outcome in enumerate(ordered):
        if not outcome.result.ok:
            not_ok += 1
            continue
        grade = _grade(outcome)
        grade_counts[grade] += 1
        if grade == "fail":
            fail_n += 1
        elif grade == "unknown":
            unknown_n += 1
        else:
            comparable.append((run_index, outcome))

    issue_types = sorted({f.issue_type for o in ordered for f in o.result.findings})

    issue_stability: Dict[str, Any] = {}
    worst_by_range: List[Dict[str, Any]] = []
    for itype in issue_types:
        entry, worst = _issue_stability(itype, comparable)
        issue_stability[itype] = entry
        if worst is not None:
            worst["notes"] = [
                "range_computed_on=quality_nonfail",
                f"excluded_quality_fail_n={fail_n}",
                f"excluded_not_ok_n={not_ok}",
            ]
            worst_by_range.append(worst)

    baseline = next((o for o in ordered if o.variant == BASELINE_VARIANT), None)
    baseline_comparable = bool(baseline and baseline.result.ok and _grade(baseline) in COMPARABLE_GRADES)
    baseline_scores: Dict[str, float] = {}
    if baseline_comparable:
        for f in baseline.result.findings:
            if f.severity_score is not None and f.issue_type not in baseline_scores:
                baseline_scores[f.issue_type] = f.severity_score

    # stable sort keeps issue-type order among equal ranges
    top_k_worst = sorted(worst_by_range, key=lambda w: w["range"], reverse=True)[:max(0, int(top_k))]
    worst = top_k_worst[0] if top_k_worst else None

    if not_ok:
        logger.info("%s: %d of %d variants not ok", image_name, not_ok, len(ordered))
    return {
        "image": image_name,
        "variants": [_variant_dict(o, i) for i, o in enumerate(ordered)],
        "issue_stability": issue_stability,
        "quality_grade_counts": grade_counts,
        "excluded_variants": {
            "not_ok_n": not_ok,
            "quality_fail_n": fail_n,
            "quality_unknown_n": unknown_n,
        },
        "per_transform_summary": _per_transform_summary(
            ordered, comparable, issue_types, baseline_scores, baseline_comparable
        ),
        "top_k_worst": top_k_worst,
        "worst_issue_type": worst["issue_type"] if worst else None,
        "worst_severity_score_range": worst["range"] if worst else None,
    }


def build_stability_report(per_image: Dict[str, List[VariantOutcome]],
                           top_k: int = DEFAULT_TOP_K) -> Dict[str, Any]:
    images = [build_image_stability_report(name, outs, top_k) for name, outs in sorted(per_image.items())]
    ranges = [img["worst_severity_score_range"] for img in images if img["worst_severity_score_range"] is not None]
    return {
        "schema_version": STABILITY_SCHEMA_VERSION,
        "generated_at": datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
        "summary": {
            "images_n": len(images),
            "variants_n": sum(len(img["variants"]) for img in images),
            "not_ok_n": sum(img["excluded_variants"]["not_ok_n"] for img in images),
            "worst_severity_score_range": max(ranges) if ranges else None,
        },
        "images": images,
    }


def run_stability(
    engine: DiagnosisEngine,
    images: Sequence[tuple],
    n_perturbations: int = 10,
    base_seed: int = DEFAULT_BASE_SEED,
    max_workers: int = 4,
    call_timeout: Optional[float] = 60.0,
    top_k: int = DEFAULT_TOP_K,
    context: Optional[Dict[str, Any]] = None,
    progress: bool = True,
) -> Dict[str, Any]:
    """
    ``images`` is a sequence of (name, BGR array). Image i is perturbed with seed
    ``base_seed + 17 * i``; all variants of one image go through the engine pool
    together. A None array marks an unreadable image: every variant of it is
    reported as read_failed.
    """
    per_image: Dict[str, List[VariantOutcome]] = {}
    for idx, (name, img) in enumerate(tqdm(images, desc="Stability", disable=not progress)):
        if img is None:
            per_image[name] = [VariantOutcome(s.name, s.kind, DiagnosisResult.failure("read_failed"))
                               for s in variant_specs(n_perturbations)]
            continue
        variants = generate_variants(np.asarray(img), seed=image_seed(idx, base_seed), n_perturbations=n_perturbations)
        jobs = [
            DiagnosisJob(key=f"{name}:{v.name}", image_bytes=v.encoded,
                         context={**(context or {}), "variant": v.name})
            for v in variants
        ]
        results = run_diagnosis_jobs(engine, jobs, max_workers=max_workers, call_timeout=call_timeout)
        per_image[name] = [VariantOutcome(v.name, v.kind, r) for v, r in zip(variants, results)]
    return build_stability_report(per_image, top_k=top_k)
