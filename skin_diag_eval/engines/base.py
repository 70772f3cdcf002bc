"""
DiagnosisEngine: the one seam between the evaluator and the external visual
diagnosis model.

Backends turn an encoded image plus a small context dict into a
``DiagnosisResult``. Transport or protocol problems are raised as
``DiagnosisEngineError``; the runner turns those into not-ok results so that one
bad variant never aborts a batch.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from ..findings import DiagnosisResult


class DiagnosisEngineError(RuntimeError):
    """Engine call failed before a usable payload came back."""

    def __init__(self, message: str, reason: str = "engine_error"):
        super().__init__(message)
        self.reason = reason


class DiagnosisEngine(ABC):

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def diagnose(self, image_bytes: bytes, context: Optional[Dict[str, Any]] = None) -> DiagnosisResult:
        """Diagnose one encoded image. Must not retry indefinitely."""
        ...
