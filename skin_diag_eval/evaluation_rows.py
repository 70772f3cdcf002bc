"""
Reconcile model-output records with gold labels into EvaluationRow units.

One row per usable predicted finding; ``label`` is 1 when the finding was
matched to a gold finding of the same type (see ``matching.greedy_match``).
"""
from __future__ import annotations
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Tuple

from .findings import Finding, parse_findings
from .matching import DEFAULT_IOU_THRESHOLD, greedy_match
from .normalize import as_bool, clamp01, normalize_bucket, normalize_token, round3

logger = logging.getLogger(__name__)

APPROVED_QA_STATUSES = {"approved", "gold", "accepted"}


@dataclass
class QualityFeatures:
    exposure_score: float = 0.0
    reflection_score: float = 0.0
    filter_score: float = 0.0
    makeup_detected: bool = False
    filter_detected: bool = False


@dataclass
class EvaluationRow:
    inference_id: str
    provider: str
    type: str
    quality_grade: str
    tone_bucket: str
    lighting_bucket: str
    region_bucket: str
    raw_confidence: float
    label: int
    quality: QualityFeatures
    calibrated_confidence: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out.update(out.pop("quality"))
        return out


def _inference_id(record: Dict[str, Any], *keys: str) -> str:
    for k in keys:
        v = record.get(k)
        if v is not None and str(v).strip():
            return str(v).strip()
    return ""


def load_gold_by_inference(gold_rows: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Approved gold records keyed by inference id; a later record replaces an earlier one."""
    out: Dict[str, Dict[str, Any]] = {}
    for row in gold_rows:
        if not isinstance(row, dict):
            continue
        status = normalize_token(row.get("qa_status") or row.get("status") or row.get("label_status") or "approved")
        if status not in APPROVED_QA_STATUSES:
            continue
        inference_id = _inference_id(row, "inference_id", "inferenceId", "trace_id")
        if not inference_id:
            continue
        out[inference_id] = row
    return out


def _nested(record: Dict[str, Any], *path: str) -> Any:
    cur: Any = record
    for key in path:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _first_present(source: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if source.get(k) is not None:
            return source[k]
    return None


def normalize_quality_features(record: Dict[str, Any], gold: Dict[str, Any]) -> QualityFeatures:
    merged: Dict[str, Any] = {}
    for src in (
        _nested(record, "quality_features"),
        _nested(record, "output_json", "quality_features"),
        _nested(record, "metadata", "quality_features"),
        _nested(gold, "quality_features"),
        _nested(gold, "metadata", "quality_features"),
    ):
        if isinstance(src, dict):
            merged.update(src)
    return QualityFeatures(
        exposure_score=round3(clamp01(_first_present(merged, "exposure_score", "exposure", "brightness_score") or 0.0)),
        reflection_score=round3(clamp01(_first_present(merged, "reflection_score", "glare_score", "specular_score") or 0.0)),
        filter_score=round3(clamp01(_first_present(merged, "filter_score", "filter_probability", "synthetic_filter_score") or 0.0)),
        makeup_detected=as_bool(_first_present(merged, "makeup_detected", "has_makeup")),
        filter_detected=as_bool(_first_present(merged, "filter_detected", "has_filter")),
    )


def _list_at(record: Dict[str, Any], *paths: Tuple[str, ...]) -> List[Any]:
    for path in paths:
        v = _nested(record, *path)
        if isinstance(v, list):
            return v
    return []


def extract_predicted(record: Dict[str, Any]) -> List[Finding]:
    return parse_findings(_list_at(record, ("output_json", "concerns"), ("concerns",)))


def extract_gold(gold: Dict[str, Any]) -> List[Finding]:
    return parse_findings(_list_at(gold, ("concerns",), ("canonical", "concerns"), ("output_json", "concerns")))


def build_rows(
    model_outputs: List[Dict[str, Any]],
    gold_rows: List[Dict[str, Any]],
    iou_threshold: float = DEFAULT_IOU_THRESHOLD,
) -> Tuple[List[EvaluationRow], Dict[str, int]]:
    """Returns (rows, counts). Unusable records are skipped and counted, never raised."""
    gold_by_inf = load_gold_by_inference(gold_rows)
    counts = {
        "model_outputs": len(model_outputs),
        "gold_labels": len(gold_rows),
        "gold_usable": len(gold_by_inf),
        "records_without_inference_id": 0,
        "records_without_gold": 0,
        "records_used": 0,
        "findings_without_confidence": 0,
        "eval_rows": 0,
    }
    rows: List[EvaluationRow] = []
    for record in model_outputs:
        if not isinstance(record, dict):
            counts["records_without_inference_id"] += 1
            continue
        inference_id = _inference_id(record, "inference_id", "inferenceId")
        if not inference_id:
            counts["records_without_inference_id"] += 1
            continue
        gold = gold_by_inf.get(inference_id)
        if gold is None:
            counts["records_without_gold"] += 1
            continue
        counts["records_used"] += 1

        meta = gold.get("metadata") if isinstance(gold.get("metadata"), dict) else {}
        provider = normalize_bucket(record.get("provider"), "unknown_provider")
        quality_grade = normalize_bucket(record.get("quality_grade") or gold.get("quality_grade"))
        tone_bucket = normalize_bucket(record.get("skin_tone_bucket") or gold.get("skin_tone_bucket"))
        lighting_bucket = normalize_bucket(record.get("lighting_bucket") or gold.get("lighting_bucket"))
        region_bucket = normalize_bucket(
            record.get("region_bucket") or meta.get("region") or meta.get("country") or gold.get("region_bucket")
        )
        quality = normalize_quality_features(record, gold)

        # only findings that become rows take part in matching
        preds = []
        for pred in extract_predicted(record):
            if pred.confidence is None:
                counts["findings_without_confidence"] += 1
            else:
                preds.append(pred)
        matched = greedy_match(preds, extract_gold(gold), iou_threshold)
        for idx, pred in enumerate(preds):
            rows.append(EvaluationRow(
                inference_id=inference_id,
                provider=provider,
                type=pred.type,
                quality_grade=quality_grade,
                tone_bucket=tone_bucket,
                lighting_bucket=lighting_bucket,
                region_bucket=region_bucket,
                raw_confidence=pred.confidence,
                label=1 if idx in matched else 0,
                quality=quality,
            ))
    counts["eval_rows"] = len(rows)
    if counts["records_without_gold"] or counts["records_without_inference_id"]:
        logger.info(
            "skipped %d records without gold, %d without inference id",
            counts["records_without_gold"], counts["records_without_inference_id"],
        )
    return rows, counts
