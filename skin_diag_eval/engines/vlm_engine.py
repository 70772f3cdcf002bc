from __future__ import annotations
import json
import logging
from typing import Any, Dict, Optional

from ..api_client import VisionClient
from ..findings import DiagnosisResult, parse_diagnosis_payload
from .base import DiagnosisEngine, DiagnosisEngineError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a dermatology photo triage assistant.
Inspect the face photo and report visible skin concerns.
Respond with one JSON object:
{
  "quality": {"grade": "pass|degraded|fail", "quality_factor": 0.0-1.0, "reasons": [string]},
  "findings": [
    {"issue_type": string, "confidence": 0.0-1.0, "severity_score": 0.0-1.0,
     "severity_level": 0-4, "severity": "none|mild|moderate|severe",
     "region": {"kind": "bbox", "bbox_norm": {"x0": 0-1, "y0": 0-1, "x1": 0-1, "y1": 0-1}}}
  ]
}
Use grade "fail" when the photo is too dark, blurry, or does not show skin.
"""


def _sniff_mime(image_bytes: bytes) -> str:
    if image_bytes[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    return "image/png"


class VisionLLMDiagnosisEngine(DiagnosisEngine):
    def __init__(self, client: VisionClient, temperature: float = 0.0,
                 system_prompt: str = SYSTEM_PROMPT):
        self.client = client
        self.temperature = temperature
        self.system_prompt = system_prompt

    @property
    def name(self) -> str:
        return f"vlm:{self.client.provider}:{self.client.model}"

    def diagnose(self, image_bytes: bytes, context: Optional[Dict[str, Any]] = None) -> DiagnosisResult:
        user_text = "Diagnose this photo."
        if context:
            user_text += "\nContext: " + json.dumps(context, ensure_ascii=False, sort_keys=True)
        payload = self.client.vision_json(
            self.system_prompt,
            user_text,
            image_bytes,
            mime_type=_sniff_mime(image_bytes),
            temperature=self.temperature,
        )
        if not payload:
            raise DiagnosisEngineError(f"{self.name} returned no JSON")
        return parse_diagnosis_payload(payload)
