from __future__ import annotations
from typing import Dict, Sequence, Set

from .findings import Finding
from .geom import iou
from .normalize import clamp

DEFAULT_IOU_THRESHOLD = 0.3
MIN_IOU_THRESHOLD = 0.05
MAX_IOU_THRESHOLD = 0.95


def clamp_iou_threshold(value: float) -> float:
    return clamp(value, MIN_IOU_THRESHOLD, MAX_IOU_THRESHOLD)


def greedy_match(
    preds: Sequence[Finding],
    golds: Sequence[Finding],
    iou_threshold: float = DEFAULT_IOU_THRESHOLD,
) -> Dict[int, int]:
    """
    One-to-one greedy matching of predictions to gold findings.

    Predictions are visited in list order. Each takes the still-unmatched gold
    finding of the same canonical type with the strictly highest IoU at or above
    the threshold; on equal IoU the earlier gold index wins. There is no
    backtracking, so the result depends on both list orders.

    Returns {pred_index: gold_index} for matched pairs only.
    """
    # TODO: offer a Hungarian (global-optimum) assignment behind a flag once
    # downstream reports no longer depend on the greedy tie-break.
    matched_gold: Set[int] = set()
    mapping: Dict[int, int] = {}
    for p_idx, pred in enumerate(preds):
        best = -1
        best_iou = 0.0
        for g_idx, gold in enumerate(golds):
            if g_idx in matched_gold or pred.type != gold.type:
                continue
            overlap = iou(pred.box, gold.box)
            if overlap >= iou_threshold and overlap > best_iou:
                best = g_idx
                best_iou = overlap
        if best >= 0:
            matched_gold.add(best)
            mapping[p_idx] = best
    return mapping
