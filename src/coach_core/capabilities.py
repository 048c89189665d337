from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Protocol

from loguru import logger

from .errors import CapabilityError
from .models import RetryPolicy


GET_GSI_INFO = "GetGSIInfo"
ANALYZE_POSITIONING = "AnalyzePositioning"
CALL_LLM = "CallLLM"
PIPER_TTS = "PiperTTS"
SUGGEST_ECONOMY_BUY = "SuggestEconomyBuy"
GET_TRACKER_STATS = "GetTrackerGGStats"
UPDATE_PLAYER_PROFILE = "UpdatePlayerProfile"
SUMMARIZE_CONVERSATION = "SummarizeConversation"


@dataclass(frozen=True)
class CapabilitySpec:
    name: str
    timeout: float
    complexity: int
    fallback: str | None = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)


DEFAULT_CAPABILITY_SPECS: dict[str, CapabilitySpec] = {
    spec.name: spec
    for spec in (
        CapabilitySpec(GET_GSI_INFO, 1.0, 1, retry_policy=RetryPolicy(3, "linear")),
        CapabilitySpec(ANALYZE_POSITIONING, 5.0, 5, fallback=SUMMARIZE_CONVERSATION),
        CapabilitySpec(CALL_LLM, 15.0, 8),
        CapabilitySpec(PIPER_TTS, 8.0, 4),
        CapabilitySpec(SUGGEST_ECONOMY_BUY, 3.0, 3, fallback=CALL_LLM),
        CapabilitySpec(
            GET_TRACKER_STATS, 10.0, 6,
            fallback=CALL_LLM,
            retry_policy=RetryPolicy(2, "exponential"),
        ),
        CapabilitySpec(UPDATE_PLAYER_PROFILE, 2.0, 2),
        CapabilitySpec(SUMMARIZE_CONVERSATION, 12.0, 7),
    )
}

DEFAULT_TIMEOUT_SECONDS = 5.0


@dataclass
class CapabilityResult:
    success: bool
    data: dict | None = None
    error: str | None = None


class CapabilityRegistry(Protocol):
    """Uniform invocation surface for external capabilities."""

    specs: Mapping[str, CapabilitySpec]

    def invoke(self, name: str, payload: dict, timeout: float) -> CapabilityResult:
        ...


def spec_for(
    specs: Mapping[str, CapabilitySpec], name: str, default_timeout: float = DEFAULT_TIMEOUT_SECONDS
) -> CapabilitySpec:
    spec = specs.get(name)
    if spec is not None:
        return spec
    return CapabilitySpec(name, default_timeout, 1)


Handler = Callable[[dict], dict]


class LocalCapabilityRegistry:
    """In-process registry mapping capability names to Python callables."""

    def __init__(
        self,
        handlers: dict[str, Handler] | None = None,
        specs: Mapping[str, CapabilitySpec] | None = None,
    ) -> None:
        self.specs: dict[str, CapabilitySpec] = dict(specs if specs is not None else DEFAULT_CAPABILITY_SPECS)
        self._handlers: dict[str, Handler] = dict(handlers or {})
        self._lock = threading.Lock()
        self.call_counts: dict[str, int] = {}

    def register(self, name: str, handler: Handler, spec: CapabilitySpec | None = None) -> None:
        self._handlers[name] = handler
        if spec is not None:
            self.specs[name] = spec

    def invoke(self, name: str, payload: dict, timeout: float) -> CapabilityResult:
        with self._lock:
            self.call_counts[name] = self.call_counts.get(name, 0) + 1
        handler = self._handlers.get(name)
        if handler is None:
            return CapabilityResult(False, error=f"Capability {name} is not registered")
        try:
            data = handler({**payload, "timeout_seconds": timeout})
        except CapabilityError as exc:
            return CapabilityResult(False, error=str(exc))
        except Exception as exc:
            logger.warning("Capability {} raised {}: {}", name, type(exc).__name__, exc)
            return CapabilityResult(False, error=f"{type(exc).__name__}: {exc}")
        return CapabilityResult(True, data=data if isinstance(data, dict) else {"value": data})
