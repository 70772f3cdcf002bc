"""
Vision LLM client used by the vision-LLM diagnosis backend.

Two transports:
- Google Gemini (google-genai SDK)
- OpenAI-compatible endpoints, including local Ollama (openai SDK)

Every call makes at most ``max_retries`` attempts; a failed call returns an
empty dict, never raises.
"""
from __future__ import annotations

import base64
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class VisionClient:
    base_url: str       # OpenAI-compatible only; ignored for Gemini
    api_key: str
    model: str          # e.g. "gemini-2.5-flash" or "qwen2.5vl:7b"
    timeout: float = 60.0
    provider: str = "gemini"  # "gemini", "openai" or "ollama"
    max_retries: int = 2

    _gemini_client: Any = field(default=None, repr=False, init=False)
    _openai_client: Any = field(default=None, repr=False, init=False)

    def _get_gemini_client(self):
        if self._gemini_client is None:
            from google import genai
            self._gemini_client = genai.Client(api_key=self.api_key)
        return self._gemini_client

    def _get_openai_client(self):
        if self._openai_client is None:
            from openai import OpenAI
            self._openai_client = OpenAI(
                base_url=self.base_url,
                api_key=self.api_key,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._openai_client

    def _reinforce_system(self, system: str) -> str:
        if self.provider == "ollama":
            suffix = "\n\nCRITICAL: You MUST respond with valid JSON only. No prose, no markdown."
            if suffix.strip() not in system:
                return system + suffix
        return system

    @staticmethod
    def extract_json(text: str) -> Dict[str, Any]:
        """First JSON object in ``text`` (markdown fences stripped), or {}."""
        text = re.sub(r"```(?:json)?\s*", "", text or "")
        text = text.replace("```", "")
        match = re.search(r"\{.*\}", text, re.DOTALL)
        if match:
            try:
                parsed = json.loads(match.group(0), strict=False)
            except json.JSONDecodeError:
                return {}
            return parsed if isinstance(parsed, dict) else {}
        return {}

    @staticmethod
    def _is_rate_limit(err: Exception) -> bool:
        s = str(err)
        return "429" in s or "RESOURCE_EXHAUSTED" in s or "rate limit" in s.lower()

    def _generate_gemini(self, contents: list, system: str, temperature: float, max_tokens: int) -> str:
        from google.genai import types

        client = self._get_gemini_client()
        config = types.GenerateContentConfig(
            temperature=temperature,
            max_output_tokens=max_tokens,
            response_mime_type="application/json",
            system_instruction=system or None,
        )
        for attempt in range(self.max_retries):
            logger.debug("requesting %s via google-genai (attempt %d)", self.model, attempt + 1)
            try:
                response = client.models.generate_content(model=self.model, contents=contents, config=config)
            except Exception as e:
                if self._is_rate_limit(e) and attempt < self.max_retries - 1:
                    wait = 5 * (attempt + 1)
                    logger.warning("rate limited, waiting %ds (%d/%d)", wait, attempt + 1, self.max_retries)
                    time.sleep(wait)
                    continue
                logger.warning("gemini request failed: %s", e)
                return ""
            if response.text:
                return response.text
            for cand in response.candidates or []:
                if cand.content and cand.content.parts:
                    texts = [p.text for p in cand.content.parts if p.text]
                    if texts:
                        return "\n".join(texts)
            logger.warning("gemini returned an empty response")
            return ""
        return ""

    def _generate_openai(self, messages: List[Dict[str, Any]], temperature: float, max_tokens: int) -> str:
        client = self._get_openai_client()
        # gpt-5 family only accepts max_completion_tokens
        token_key = "max_completion_tokens" if self.model.startswith("gpt-5") else "max_tokens"
        for attempt in range(self.max_retries):
            logger.debug("requesting %s via %s (attempt %d)", self.model, self.base_url, attempt + 1)
            try:
                response = client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    temperature=temperature,
                    response_format={"type": "json_object"},
                    **{token_key: max_tokens},
                )
            except Exception as e:
                err = str(e).lower()
                if token_key == "max_tokens" and "max_completion_tokens" in err and "unsupported parameter" in err:
                    token_key = "max_completion_tokens"
                    continue
                if self._is_rate_limit(e) and attempt < self.max_retries - 1:
                    wait = 5 * (attempt + 1)
                    logger.warning("rate limited, waiting %ds (%d/%d)", wait, attempt + 1, self.max_retries)
                    time.sleep(wait)
                    continue
                if "connection refused" in err or "connect" in err:
                    logger.warning("connection refused by %s; is the server running?", self.base_url)
                else:
                    logger.warning("request failed: %s", e)
                return ""
            if response.choices:
                msg = response.choices[0].message
                refusal = getattr(msg, "refusal", None)
                if refusal:
                    logger.warning("model refused: %s", refusal)
                if msg.content:
                    return msg.content
            logger.warning("empty response from %s", self.model)
            return ""
        return ""

    def vision_json(self, system: str, user_text: str, image_bytes: bytes,
                    mime_type: str = "image/png", temperature: float = 0.0,
                    max_tokens: int = 4096) -> Dict[str, Any]:
        """Text + one image -> parsed JSON object ({} on any failure)."""
        if self.provider == "gemini":
            from google.genai import types

            img_part = types.Part.from_bytes(data=image_bytes, mime_type=mime_type)
            text = self._generate_gemini([user_text, img_part], system, temperature, max_tokens)
        else:
            b64 = base64.b64encode(image_bytes).decode("utf-8")
            messages = [
                {"role": "system", "content": self._reinforce_system(system)},
                {"role": "user", "content": [
                    {"type": "text", "text": user_text},
                    {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{b64}"}},
                ]},
            ]
            text = self._generate_openai(messages, temperature, max_tokens)
        if not text:
            return {}
        return self.extract_json(text)
