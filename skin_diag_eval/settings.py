from __future__ import annotations
import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)


def _read_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("ignoring non-numeric setting %r", value)
        return default


def load_env_file(path: str) -> None:
    """Copy KEY=VALUE lines into os.environ without overriding what is already set."""
    if not os.path.exists(path):
        return
    try:
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, val = line.split("=", 1)
                os.environ.setdefault(key.strip(), val.strip().strip('"').strip("'"))
    except OSError as e:
        logger.warning("could not read env file %s: %s", path, e)


@dataclass
class EngineSettings:
    engine_kind: str = "subprocess"   # "subprocess" or "vlm"
    engine_command: str = ""
    engine_timeout: float = 60.0
    openai_base_url: str = "http://localhost:11434/v1"
    openai_api_key: str = "ollama"
    openai_model: str = "gemini-2.5-flash"
    llm_provider: str = "gemini"      # "gemini", "openai" or "ollama"

    def __init__(self):
        load_env_file(os.getenv("ENV_FILE", ".env"))
        self.engine_kind = os.getenv("DIAG_ENGINE_KIND", self.engine_kind).strip().lower()
        self.engine_command = os.getenv("DIAG_ENGINE_COMMAND", self.engine_command)
        self.engine_timeout = _read_float(os.getenv("DIAG_ENGINE_TIMEOUT"), self.engine_timeout)
        self.openai_base_url = os.getenv("OPENAI_BASE_URL", self.openai_base_url)
        self.openai_api_key = os.getenv("OPENAI_API_KEY", self.openai_api_key)
        self.openai_model = os.getenv("OPENAI_MODEL", self.openai_model)
        self.llm_provider = os.getenv("LLM_PROVIDER", self.llm_provider).strip().lower()
