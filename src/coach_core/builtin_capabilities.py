"""Runnable stand-ins for the eight coaching capabilities.

Everything except CallLLM works from the in-memory snapshot history, so a
session can be replayed offline; CallLLM talks to a local Ollama server and
simply fails (triggering the executor's fallback/retry handling) when none is
reachable.
"""

from __future__ import annotations

import threading
from collections import deque

from loguru import logger

from .capabilities import (
    ANALYZE_POSITIONING,
    CALL_LLM,
    GET_GSI_INFO,
    GET_TRACKER_STATS,
    PIPER_TTS,
    SUGGEST_ECONOMY_BUY,
    SUMMARIZE_CONVERSATION,
    UPDATE_PLAYER_PROFILE,
    LocalCapabilityRegistry,
)
from .db import SqliteStore, StoreRecord
from .errors import CapabilityError
from .history import SnapshotHistory
from .llm_client import OllamaClient
from .patterns import linear_slope


FULL_BUY_MONEY = 4000
HALF_BUY_MONEY = 2000
LOW_HEALTH = 50
SPEECH_QUEUE_LIMIT = 50

COACH_PROMPT = """You are a concise esports coach speaking to a player mid-match.
Objective: {objective}
Situation: {situation}
Notes from earlier analysis:
{notes}
Suggested actions: {hints}

Answer ONLY with JSON: {{"message": "<one or two short sentences>", "action_items": ["<short imperative>", ...]}}"""


def _previous_texts(payload: dict) -> list[str]:
    texts: list[str] = []
    for output in (payload.get("previous") or {}).values():
        for key in ("message", "analysis", "recommendation", "summary", "text"):
            value = output.get(key) if isinstance(output, dict) else None
            if isinstance(value, str) and value.strip():
                texts.append(value.strip())
                break
    return texts


class SpeechQueue:
    """Text handed to the speech stage, drained by the presentation layer."""

    def __init__(self, limit: int = SPEECH_QUEUE_LIMIT) -> None:
        self._pending: deque[str] = deque(maxlen=limit)
        self._spoken: deque[str] = deque(maxlen=limit)
        self._lock = threading.Lock()

    def put(self, text: str) -> None:
        with self._lock:
            self._pending.append(text)
            self._spoken.append(text)

    def drain(self) -> list[str]:
        with self._lock:
            items = list(self._pending)
            self._pending.clear()
        return items

    def recent(self, n: int = 5) -> list[str]:
        with self._lock:
            return list(self._spoken)[-n:]


class DefaultCapabilities:
    def __init__(
        self,
        history: SnapshotHistory,
        store: SqliteStore | None = None,
        llm: OllamaClient | None = None,
    ) -> None:
        self.history = history
        self.store = store
        self.llm = llm
        self.speech = SpeechQueue()

    def registry(self) -> LocalCapabilityRegistry:
        return LocalCapabilityRegistry(
            handlers={
                GET_GSI_INFO: self.get_gsi_info,
                ANALYZE_POSITIONING: self.analyze_positioning,
                CALL_LLM: self.call_llm,
                PIPER_TTS: self.piper_tts,
                SUGGEST_ECONOMY_BUY: self.suggest_economy_buy,
                GET_TRACKER_STATS: self.get_tracker_stats,
                UPDATE_PLAYER_PROFILE: self.update_player_profile,
                SUMMARIZE_CONVERSATION: self.summarize_conversation,
            }
        )

    def get_gsi_info(self, payload: dict) -> dict:
        if self.history.current is None:
            raise CapabilityError(GET_GSI_INFO, "no game state received yet")
        summary = self.history.state_summary()
        insights = "; ".join(summary["insights"]) or "no notable trends"
        return {
            "summary": f"Alert level {summary['alert_level']}: {insights}",
            "alert_level": summary["alert_level"],
            "insights": summary["insights"],
            "recommendations": summary["recommendations"],
            "state": self.history.compressed_state(),
        }

    def analyze_positioning(self, payload: dict) -> dict:
        player = (payload.get("state") or {}).get("player") or {}
        health = player.get("health")
        recent = [s.player.position for s in self.history.history(10) if s.player and s.player.position]
        moved = recent[-1].distance_2d(recent[0]) if len(recent) >= 2 else None

        if health is not None and health < LOW_HEALTH:
            analysis = f"Health is {health}; you cannot win an even duel from this position."
            action = "Fall back to a safer position"
        elif moved is not None and moved < 100:
            analysis = "You have held the same spot for several updates and are easy to pre-aim."
            action = "Reposition to a different angle"
        else:
            analysis = "Positioning looks reasonable; keep cover between you and the likely threat."
            action = "Hold cover and wait for a trade"
        return {"analysis": analysis, "action_item": action, "health": health, "recent_movement": moved}

    def suggest_economy_buy(self, payload: dict) -> dict:
        state = payload.get("state") or {}
        money = (state.get("player") or {}).get("money")
        round_type = (state.get("economy") or {}).get("round_type") or "unknown"
        if money is None:
            raise CapabilityError(SUGGEST_ECONOMY_BUY, "player money unavailable")

        if money >= FULL_BUY_MONEY:
            action = "Buy rifle, armor and utility"
        elif money >= HALF_BUY_MONEY:
            action = "Buy armor and a pistol upgrade"
        else:
            action = "Save money for a full buy next round"
        return {
            "recommendation": f"{round_type} round with ${money}: {action.lower()}.",
            "action_item": action,
            "money": money,
            "round_type": round_type,
        }

    def call_llm(self, payload: dict) -> dict:
        if self.llm is None:
            raise CapabilityError(CALL_LLM, "no language model configured")
        analysis = payload.get("analysis") or {}
        prompt = COACH_PROMPT.format(
            objective=payload.get("objective", "coaching"),
            situation=f"{analysis.get('context', 'unknown')} context, {analysis.get('urgency', 'low')} urgency",
            notes="\n".join(f"- {text}" for text in _previous_texts(payload)) or "- none",
            hints=", ".join(payload.get("action_hints") or []) or "none",
        )
        result = self.llm.generate(prompt, timeout=payload.get("timeout_seconds"))
        parsed = result.parsed()
        message = str(parsed.get("message", "") or "").strip()
        if not message:
            raise CapabilityError(CALL_LLM, f"{result.model_used} returned no message")
        items = parsed.get("action_items")
        return {
            "message": message,
            "action_items": [str(item) for item in items] if isinstance(items, list) else [],
            "model": result.model_used,
            "latency_seconds": round(result.latency_seconds, 3),
        }

    def piper_tts(self, payload: dict) -> dict:
        texts = _previous_texts(payload)
        if not texts:
            raise CapabilityError(PIPER_TTS, "nothing to speak")
        text = texts[-1]
        self.speech.put(text)
        logger.debug("Queued {} characters for speech", len(text))
        return {"queued": True, "characters": len(text)}

    def get_tracker_stats(self, payload: dict) -> dict:
        snapshots = [s for s in self.history.history(50) if s.player and s.player.statistics]
        if not snapshots:
            raise CapabilityError(GET_TRACKER_STATS, "no player statistics in history")
        stats = snapshots[-1].player.statistics
        ratings = [s.player.statistics.rating for s in snapshots if s.player.statistics.rating is not None]
        trend = linear_slope(ratings) if len(ratings) >= 2 else 0.0
        kd = stats.kills / stats.deaths if stats.deaths else float(stats.kills)
        direction = "improving" if trend > 0.01 else "declining" if trend < -0.01 else "steady"
        return {
            "summary": f"K/D {kd:.2f} ({stats.kills}/{stats.deaths}), rating {direction}",
            "stats": {
                "kills": stats.kills,
                "deaths": stats.deaths,
                "assists": stats.assists,
                "adr": stats.adr,
                "rating": stats.rating,
                "rating_trend": round(trend, 4),
            },
        }

    def update_player_profile(self, payload: dict) -> dict:
        if self.store is None:
            raise CapabilityError(UPDATE_PLAYER_PROFILE, "no profile store configured")
        player = (payload.get("state") or {}).get("player") or {}
        record_id = self.store.write(
            StoreRecord(
                kind="player_profile",
                payload={
                    "steam_id": player.get("steam_id", ""),
                    "name": player.get("name", ""),
                    "statistics": player.get("statistics"),
                    "rule_id": payload.get("rule_id"),
                    "notes": _previous_texts(payload),
                },
            )
        )
        return {"updated": True, "record_id": record_id}

    def summarize_conversation(self, payload: dict) -> dict:
        texts = _previous_texts(payload) + self.speech.recent(3)
        if not texts:
            notes = (payload.get("analysis") or {}).get("patterns") or []
            texts = [str(note) for note in notes]
        if not texts:
            raise CapabilityError(SUMMARIZE_CONVERSATION, "nothing to summarize")
        unique: list[str] = []
        for text in texts:
            if text not in unique:
                unique.append(text)
        return {"summary": " ".join(unique[:3]), "sources": len(unique)}
