from __future__ import annotations

import json
import time
from dataclasses import dataclass

import requests

from .settings import settings


@dataclass
class InferenceResult:
    response: dict
    model_used: str
    latency_seconds: float

    @property
    def text(self) -> str:
        return str(self.response.get("response", "") or "")

    def parsed(self) -> dict:
        """Decode the model's JSON answer; an unparseable answer becomes ``{"message": text}``."""
        text = self.text.strip()
        if not text:
            return {}
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return {"message": text}
        return data if isinstance(data, dict) else {"message": str(data)}


class OllamaClient:
    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        timeout_seconds: int | None = None,
    ) -> None:
        self.base_url = (base_url or settings.ollama_base_url).rstrip("/")
        self.model = model or settings.ollama_model
        self.timeout_seconds = timeout_seconds or settings.ollama_timeout_seconds

    def generate(self, prompt: str, max_tokens: int | None = None, timeout: float | None = None) -> InferenceResult:
        """Single-shot JSON generate. Retries and fallbacks belong to the plan executor."""
        payload = {
            "model": self.model,
            "prompt": prompt,
            "format": "json",
            "stream": False,
            "keep_alive": settings.ollama_keep_alive,
            "options": {
                "num_ctx": 2048,
                "num_predict": max_tokens or settings.ollama_num_predict,
                "temperature": 0.3,
            },
        }

        start = time.perf_counter()
        response = requests.post(
            f"{self.base_url}/api/generate",
            json=payload,
            timeout=min(timeout, self.timeout_seconds) if timeout else self.timeout_seconds,
        )
        response.raise_for_status()
        latency = time.perf_counter() - start

        return InferenceResult(
            response=response.json(),
            model_used=self.model,
            latency_seconds=latency,
        )
