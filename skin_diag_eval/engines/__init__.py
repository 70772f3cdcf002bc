"""Diagnosis engine backends and the bounded-concurrency runner."""

from .base import DiagnosisEngine, DiagnosisEngineError
from .runner import DiagnosisJob, call_engine, run_diagnosis_jobs
from .subprocess_engine import SubprocessDiagnosisEngine
from .vlm_engine import VisionLLMDiagnosisEngine

__all__ = [
    "DiagnosisEngine", "DiagnosisEngineError",
    "DiagnosisJob", "call_engine", "run_diagnosis_jobs",
    "SubprocessDiagnosisEngine", "VisionLLMDiagnosisEngine",
]
