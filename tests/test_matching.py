"""Greedy one-to-one matching of predicted and gold findings."""

from skin_diag_eval.findings import parse_findings
from skin_diag_eval.matching import clamp_iou_threshold, greedy_match


def _concern(issue_type, box, confidence=0.5):
    x0, y0, x1, y1 = box
    return {
        "type": issue_type,
        "confidence": confidence,
        "region": {"kind": "bbox", "bbox_norm": {"x0": x0, "y0": y0, "x1": x1, "y1": y1}},
    }


def test_matches_same_type_above_threshold():
    preds = parse_findings([_concern("redness", (0.1, 0.1, 0.5, 0.5))])
    golds = parse_findings([_concern("redness", (0.12, 0.1, 0.5, 0.5))])
    assert greedy_match(preds, golds, 0.3) == {0: 0}


def test_type_mismatch_never_matches():
    preds = parse_findings([_concern("acne", (0.1, 0.1, 0.5, 0.5))])
    golds = parse_findings([_concern("redness", (0.1, 0.1, 0.5, 0.5))])
    assert greedy_match(preds, golds, 0.3) == {}


def test_aliases_match_canonical_type():
    preds = parse_findings([_concern("erythema", (0.1, 0.1, 0.5, 0.5))])
    golds = parse_findings([_concern("redness", (0.1, 0.1, 0.5, 0.5))])
    assert greedy_match(preds, golds, 0.3) == {0: 0}


def test_below_threshold_is_unmatched():
    preds = parse_findings([_concern("redness", (0.0, 0.0, 0.4, 0.4))])
    golds = parse_findings([_concern("redness", (0.3, 0.3, 0.7, 0.7))])
    assert greedy_match(preds, golds, 0.3) == {}


def test_missing_region_cannot_match():
    preds = parse_findings([{"type": "redness", "confidence": 0.9}])
    golds = parse_findings([_concern("redness", (0.1, 0.1, 0.5, 0.5))])
    assert greedy_match(preds, golds, 0.05) == {}


def test_equal_iou_tie_goes_to_earlier_gold():
    box = (0.2, 0.2, 0.6, 0.6)
    preds = parse_findings([_concern("acne", box)])
    golds = parse_findings([_concern("acne", box), _concern("acne", box)])
    assert greedy_match(preds, golds, 0.3) == {0: 0}


def test_greedy_is_order_dependent_and_one_to_one():
    # pred 0 grabs the gold that pred 1 fits best; pred 1 takes the leftover
    preds = parse_findings([
        _concern("texture", (0.1, 0.1, 0.5, 0.5)),
        _concern("texture", (0.1, 0.1, 0.5, 0.5)),
    ])
    golds = parse_findings([
        _concern("texture", (0.1, 0.1, 0.5, 0.5)),
        _concern("texture", (0.1, 0.1, 0.5, 0.45)),
    ])
    assert greedy_match(preds, golds, 0.3) == {0: 0, 1: 1}


def test_matching_is_deterministic():
    preds = parse_findings([_concern("shine", (0.1 * i, 0.1, 0.1 * i + 0.3, 0.4)) for i in range(5)])
    golds = parse_findings([_concern("shine", (0.1 * i + 0.05, 0.1, 0.1 * i + 0.35, 0.4)) for i in range(5)])
    first = greedy_match(preds, golds, 0.3)
    for _ in range(5):
        assert greedy_match(preds, golds, 0.3) == first


def test_threshold_is_clamped():
    assert clamp_iou_threshold(0.0) == 0.05
    assert clamp_iou_threshold(1.5) == 0.95
    assert clamp_iou_threshold(0.3) == 0.3
