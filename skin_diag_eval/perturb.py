"""
Deterministic image perturbations for stability measurement.

Images are handled as cv2 BGR uint8 arrays. Every variant is a pure function of
(source image, base seed, variant spec), so the same input always yields the
same variant family byte-for-byte.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

import cv2
import numpy as np

MIN_PERTURBATIONS = 8
MAX_PERTURBATIONS = 12
MIN_DIM = 8
DEFAULT_BASE_SEED = 1000
IMAGE_SEED_STRIDE = 17
BASELINE_VARIANT = "original"

WARM_GAIN = (1.02, 0.99)   # (R, B)
COOL_GAIN = (0.99, 1.02)


@dataclass(frozen=True)
class VariantSpec:
    name: str
    kind: str
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, eq=False)
class Variant:
    name: str
    kind: str
    image: np.ndarray
    encoded: bytes
    mime_type: str


# Order is part of the report contract.
PERTURBATION_SPECS: Tuple[VariantSpec, ...] = (
    VariantSpec("resize_097", "resize", {"scale": 0.97}),
    VariantSpec("resize_095", "resize", {"scale": 0.95}),
    VariantSpec("crop_jitter_a", "crop", {"crop_frac": 0.98, "offset_xy": (0.02, -0.02)}),
    VariantSpec("crop_jitter_b", "crop", {"crop_frac": 0.98, "offset_xy": (-0.02, 0.02)}),
    VariantSpec("noise_sigma1_5", "noise", {"sigma": 1.5, "seed_offset": 10}),
    VariantSpec("jpeg_q90", "jpeg", {"quality": 90}),
    VariantSpec("jpeg_q82", "jpeg", {"quality": 82}),
    VariantSpec("temp_warm", "temp", {"warm": True}),
    VariantSpec("temp_cool", "temp", {"warm": False}),
    VariantSpec("noise_sigma2_5", "noise", {"sigma": 2.5, "seed_offset": 20}),
    VariantSpec("jpeg_q75", "jpeg", {"quality": 75}),
    VariantSpec("resize_092", "resize", {"scale": 0.92}),
)


def variant_specs(n_perturbations: int = 10) -> List[VariantSpec]:
    """Baseline plus the first N perturbations, N clamped to [8, 12]."""
    n = max(MIN_PERTURBATIONS, min(MAX_PERTURBATIONS, int(n_perturbations)))
    return [VariantSpec(BASELINE_VARIANT, "identity")] + list(PERTURBATION_SPECS[:n])


def image_seed(image_index: int, base_seed: int = DEFAULT_BASE_SEED) -> int:
    return base_seed + image_index * IMAGE_SEED_STRIDE


def _clamp_u8(arr: np.ndarray) -> np.ndarray:
    return np.clip(arr, 0, 255).astype(np.uint8)


def _as_bgr(img: np.ndarray) -> np.ndarray:
    if img.ndim == 2:
        return cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
    if img.shape[2] == 4:
        return cv2.cvtColor(img, cv2.COLOR_BGRA2BGR)
    return img


def apply_resize(img: np.ndarray, scale: float) -> np.ndarray:
    h, w = img.shape[:2]
    nw = max(MIN_DIM, int(round(w * scale)))
    nh = max(MIN_DIM, int(round(h * scale)))
    small = cv2.resize(img, (nw, nh), interpolation=cv2.INTER_LINEAR)
    return cv2.resize(small, (w, h), interpolation=cv2.INTER_LINEAR)


def apply_crop_jitter(img: np.ndarray, crop_frac: float, offset_xy: Tuple[float, float]) -> np.ndarray:
    h, w = img.shape[:2]
    cw = min(w, max(MIN_DIM, int(round(w * crop_frac))))
    ch = min(h, max(MIN_DIM, int(round(h * crop_frac))))
    ox = int(round((w - cw) * (0.5 + offset_xy[0])))
    oy = int(round((h - ch) * (0.5 + offset_xy[1])))
    ox = max(0, min(w - cw, ox))
    oy = max(0, min(h - ch, oy))
    cropped = img[oy:oy + ch, ox:ox + cw]
    return cv2.resize(cropped, (w, h), interpolation=cv2.INTER_LINEAR)


def apply_gaussian_noise(img: np.ndarray, sigma: float, seed: int) -> np.ndarray:
    rng = np.random.default_rng(seed)
    noise = rng.normal(0.0, float(sigma), size=img.shape).astype(np.float32)
    return _clamp_u8(img.astype(np.float32) + noise)


def apply_color_temp(img: np.ndarray, warm: bool) -> np.ndarray:
    r_gain, b_gain = WARM_GAIN if warm else COOL_GAIN
    arr = img.astype(np.float32)
    arr[..., 2] *= r_gain  # BGR: index 2 is red
    arr[..., 0] *= b_gain
    return _clamp_u8(arr)


def encode_png(img: np.ndarray) -> bytes:
    ok, buf = cv2.imencode(".png", img)
    if not ok:
        raise ValueError("PNG encoding failed")
    return buf.tobytes()


def encode_jpeg(img: np.ndarray, quality: int) -> bytes:
    ok, buf = cv2.imencode(".jpg", img, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise ValueError("JPEG encoding failed")
    return buf.tobytes()


def decode_image(data: bytes) -> np.ndarray:
    img = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
    if img is None:
        raise ValueError("could not decode image bytes")
    return img


def apply_variant(img: np.ndarray, spec: VariantSpec, seed: int) -> Variant:
    p = spec.params
    if spec.kind == "identity":
        out = img.copy()
    elif spec.kind == "resize":
        out = apply_resize(img, float(p["scale"]))
    elif spec.kind == "crop":
        ox, oy = p["offset_xy"]
        out = apply_crop_jitter(img, float(p["crop_frac"]), (float(ox), float(oy)))
    elif spec.kind == "noise":
        out = apply_gaussian_noise(img, float(p["sigma"]), seed + int(p.get("seed_offset", 0)))
    elif spec.kind == "temp":
        out = apply_color_temp(img, bool(p["warm"]))
    elif spec.kind == "jpeg":
        # the JPEG bytes themselves are the variant; the array is what the engine would decode
        data = encode_jpeg(img, int(p.get("quality") or 80))
        return Variant(spec.name, spec.kind, decode_image(data), data, "image/jpeg")
    else:
        raise ValueError(f"unknown variant kind: {spec.kind}")
    return Variant(spec.name, spec.kind, out, encode_png(out), "image/png")


def generate_variants(img: np.ndarray, seed: int = DEFAULT_BASE_SEED,
                      n_perturbations: int = 10) -> List[Variant]:
    img = _as_bgr(img)
    return [apply_variant(img, spec, seed) for spec in variant_specs(n_perturbations)]


def make_synthetic_image(seed: int = 42, size: int = 256) -> np.ndarray:
    """Seeded skin-toned patch with a mild gradient and texture (BGR)."""
    rng = np.random.default_rng(seed)
    base = np.zeros((size, size, 3), dtype=np.float32)
    base[..., 2] = 155  # R
    base[..., 1] = 140  # G
    base[..., 0] = 135  # B

    xx = np.linspace(-1.0, 1.0, size, dtype=np.float32)[None, :]
    yy = np.linspace(-1.0, 1.0, size, dtype=np.float32)[:, None]
    shade = xx * 4.0 + yy * 2.0
    base[..., 2] += shade
    base[..., 1] += shade * 0.9
    base[..., 0] += shade * 0.8

    noise = rng.normal(0.0, 8.0, size=base.shape).astype(np.float32)
    return _clamp_u8(base + noise)
