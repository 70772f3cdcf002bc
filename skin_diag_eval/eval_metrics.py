from __future__ import annotations
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .evaluation_rows import EvaluationRow
from .normalize import normalize_bucket, round3

DEFAULT_BINS = 10
MIN_BINS = 2

GroupKey = Union[str, Sequence[str]]


def _arrays(confidences: Sequence[float], labels: Sequence[float]) -> Tuple[np.ndarray, np.ndarray]:
    p = np.clip(np.asarray(confidences, dtype=np.float64), 0.0, 1.0)
    y = np.clip(np.asarray(labels, dtype=np.float64), 0.0, 1.0)
    return p, y


def brier_score(confidences: Sequence[float], labels: Sequence[float]) -> Optional[float]:
    p, y = _arrays(confidences, labels)
    if p.size == 0:
        return None
    return round3(float(np.mean((p - y) ** 2)))


def _bin_stats(p: np.ndarray, y: np.ndarray, bins: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    idx = np.minimum(bins - 1, np.floor(p * bins).astype(np.int64))
    count = np.bincount(idx, minlength=bins).astype(np.float64)
    conf_sum = np.bincount(idx, weights=p, minlength=bins)
    label_sum = np.bincount(idx, weights=y, minlength=bins)
    return count, conf_sum, label_sum


def expected_calibration_error(confidences: Sequence[float], labels: Sequence[float],
                               bins: int = DEFAULT_BINS) -> Optional[float]:
    p, y = _arrays(confidences, labels)
    if p.size == 0:
        return None
    bins = max(MIN_BINS, int(bins))
    count, conf_sum, label_sum = _bin_stats(p, y, bins)
    nz = count > 0
    gaps = np.abs(conf_sum[nz] / count[nz] - label_sum[nz] / count[nz])
    return round3(float(np.sum(count[nz] / p.size * gaps)))


def reliability_table(confidences: Sequence[float], labels: Sequence[float],
                      bins: int = DEFAULT_BINS) -> List[Dict[str, Any]]:
    """Per-bin count / mean confidence / mean label; empty bins keep None means."""
    bins = max(MIN_BINS, int(bins))
    p, y = _arrays(confidences, labels)
    count, conf_sum, label_sum = _bin_stats(p, y, bins) if p.size else (np.zeros(bins), np.zeros(bins), np.zeros(bins))
    out = []
    for i in range(bins):
        n = int(count[i])
        mean_conf = round3(conf_sum[i] / n) if n else None
        mean_label = round3(label_sum[i] / n) if n else None
        out.append({
            "bin": i,
            "lo": round3(i / bins),
            "hi": round3((i + 1) / bins),
            "n": n,
            "mean_confidence": mean_conf,
            "mean_label": mean_label,
            "gap": round3(abs(mean_conf - mean_label)) if n else None,
        })
    return out


def confidence_label_pairs(rows: Sequence[EvaluationRow], field: str) -> Tuple[List[float], List[int]]:
    ps, ys = [], []
    for row in rows:
        v = getattr(row, field)
        if v is None:
            continue
        ps.append(v)
        ys.append(row.label)
    return ps, ys


def ece_for_rows(rows: Sequence[EvaluationRow], field: str = "calibrated_confidence",
                 bins: int = DEFAULT_BINS) -> Optional[float]:
    return expected_calibration_error(*confidence_label_pairs(rows, field), bins=bins)


def brier_for_rows(rows: Sequence[EvaluationRow], field: str = "calibrated_confidence") -> Optional[float]:
    return brier_score(*confidence_label_pairs(rows, field))


def rows_frame(rows: Sequence[EvaluationRow]) -> pd.DataFrame:
    return pd.DataFrame([r.to_dict() for r in rows])


def group_label(group_key: GroupKey) -> str:
    return group_key if isinstance(group_key, str) else "+".join(group_key)


def grouped_metrics(rows: Sequence[EvaluationRow], field: str, group_key: GroupKey,
                    bins: int = DEFAULT_BINS) -> Dict[str, Dict[str, Any]]:
    """
    ECE and Brier per bucket. Missing/empty bucket values become "unknown";
    composite keys are joined with "|". Buckets come back sorted by key.
    """
    if not rows:
        return {}
    keys = [group_key] if isinstance(group_key, str) else list(group_key)
    df = rows_frame(rows)
    df["_row"] = range(len(rows))
    df["_bucket"] = df[keys].apply(
        lambda r: "|".join(normalize_bucket(v if not pd.isna(v) else None) for v in r), axis=1
    )
    out: Dict[str, Dict[str, Any]] = {}
    for bucket, group in df.groupby("_bucket", sort=True):
        samples = [rows[i] for i in group["_row"]]
        out[str(bucket)] = {
            "samples": len(samples),
            "ece": ece_for_rows(samples, field, bins),
            "brier": brier_for_rows(samples, field),
        }
    return out


def metric_delta(raw: Optional[float], calibrated: Optional[float]) -> Optional[float]:
    """raw - calibrated; positive means calibration improved the metric."""
    if raw is None or calibrated is None:
        return None
    return round3(raw - calibrated)
