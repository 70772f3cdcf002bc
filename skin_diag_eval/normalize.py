from __future__ import annotations
import math
from typing import Any, Dict

CANONICAL_TYPES = ("redness", "acne", "shine", "texture", "tone", "dryness", "barrier", "other")

# Loaded once; never mutated.
FINDING_TYPE_ALIASES: Dict[str, str] = {
    "redness": "redness",
    "irritation": "redness",
    "erythema": "redness",
    "acne": "acne",
    "breakout": "acne",
    "breakouts": "acne",
    "pimple": "acne",
    "shine": "shine",
    "oiliness": "shine",
    "sebum": "shine",
    "texture": "texture",
    "pores": "texture",
    "roughness": "texture",
    "tone": "tone",
    "dark_spots": "tone",
    "hyperpigmentation": "tone",
    "dryness": "dryness",
    "dehydration": "dryness",
    "barrier": "barrier",
    "barrier_stress": "barrier",
    "sensitivity": "barrier",
    "other": "other",
}

_TRUE_TOKENS = {"1", "true", "yes", "on", "y"}
_FALSE_TOKENS = {"0", "false", "no", "off", "n"}


def normalize_token(value: Any) -> str:
    return str("" if value is None else value).strip().lower()


def normalize_bucket(value: Any, fallback: str = "unknown") -> str:
    token = normalize_token(value)
    return token if token else fallback


def normalize_finding_type(raw_type: Any) -> str:
    return FINDING_TYPE_ALIASES.get(normalize_token(raw_type), "other")


def as_float(value: Any) -> float | None:
    """Numeric value or None; bools, NaN and non-numeric strings are rejected."""
    if value is None or isinstance(value, bool):
        return None
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(v):
        return None
    return v


def clamp(value: Any, lo: float, hi: float) -> float:
    v = as_float(value)
    if v is None:
        return lo
    return float(max(lo, min(hi, v)))


def clamp01(value: Any) -> float:
    return clamp(value, 0.0, 1.0)


def as_bool(value: Any, fallback: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    token = normalize_token(value)
    if not token:
        return fallback
    if token in _TRUE_TOKENS:
        return True
    if token in _FALSE_TOKENS:
        return False
    return fallback


def round3(value: float) -> float:
    return float(f"{value:.3f}")
