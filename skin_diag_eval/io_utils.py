from __future__ import annotations
import json
import logging
import os
from typing import Any, Dict, List, Sequence

import cv2
import numpy as np

logger = logging.getLogger(__name__)

IMAGE_EXTS = {".jpg", ".jpeg", ".png", ".webp"}


def read_ndjson(path: str) -> List[Dict[str, Any]]:
    """Object lines of an NDJSON file; blank and malformed lines are skipped."""
    out: List[Dict[str, Any]] = []
    skipped = 0
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            raw = line.strip()
            if not raw:
                continue
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                skipped += 1
                continue
            if isinstance(parsed, dict):
                out.append(parsed)
            else:
                skipped += 1
    if skipped:
        logger.warning("%s: skipped %d malformed lines", path, skipped)
    return out


def read_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def write_json(path: str, payload: Any) -> str:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2)
        f.write("\n")
    return path


def write_text(path: str, text: str) -> str:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)
    return path


def collect_images(paths: Sequence[str]) -> List[str]:
    """Image files named directly or found (recursively, sorted) under directories."""
    out: List[str] = []
    for raw in paths:
        if os.path.isdir(raw):
            for root, dirs, files in os.walk(raw):
                dirs.sort()
                for name in sorted(files):
                    if os.path.splitext(name)[1].lower() in IMAGE_EXTS:
                        out.append(os.path.join(root, name))
        elif os.path.isfile(raw) and os.path.splitext(raw)[1].lower() in IMAGE_EXTS:
            out.append(raw)
    return out


def read_image(path: str) -> np.ndarray:
    img = cv2.imread(path, cv2.IMREAD_COLOR)
    if img is None:
        raise FileNotFoundError(path)
    return img
