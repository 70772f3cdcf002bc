from __future__ import annotations
import base64
import json
import logging
import os
import shlex
import subprocess
from typing import Any, Dict, List, Optional, Sequence, Union

from ..findings import DiagnosisResult, parse_diagnosis_payload
from .base import DiagnosisEngine, DiagnosisEngineError

logger = logging.getLogger(__name__)


class SubprocessDiagnosisEngine(DiagnosisEngine):
    """
    Runs an out-of-process engine once per image.

    stdin:  {"image_b64": "...", "context": {...}}
    stdout: one JSON object, either {ok, reason?, diagnosis: {...}} or a bare diagnosis.
    """

    def __init__(self, command: Union[str, Sequence[str]], cwd: Optional[str] = None,
                 timeout: float = 60.0, env: Optional[Dict[str, str]] = None):
        self.command: List[str] = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.command:
            raise ValueError("engine command is empty")
        self.cwd = cwd
        self.timeout = float(timeout)
        self.env = env

    @property
    def name(self) -> str:
        return f"subprocess:{os.path.basename(self.command[0])}"

    def diagnose(self, image_bytes: bytes, context: Optional[Dict[str, Any]] = None) -> DiagnosisResult:
        payload = json.dumps({
            "image_b64": base64.b64encode(image_bytes).decode("ascii"),
            "context": context or {},
        }, ensure_ascii=False)
        try:
            proc = subprocess.run(
                self.command,
                input=payload,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.cwd,
                env={**os.environ, **(self.env or {})},
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise DiagnosisEngineError(f"engine exceeded {self.timeout}s", reason="timeout") from e
        except OSError as e:
            raise DiagnosisEngineError(f"could not start engine: {e}") from e

        if proc.returncode != 0:
            raise DiagnosisEngineError(
                f"engine exited {proc.returncode}: {proc.stderr.strip()[:500]}"
            )
        try:
            out = json.loads(proc.stdout)
        except json.JSONDecodeError as e:
            logger.warning("engine stdout is not JSON: %s", proc.stdout[:200])
            raise DiagnosisEngineError(f"engine did not output JSON: {e}", reason="invalid_payload") from e
        return parse_diagnosis_payload(out)
