"""
Conversation memory.

Per-session, in-process, rolling-window state:
  - the last N queries (question, intent type, resolved entities)
  - entities discovered so far, per kind
  - insights produced so far

Memory feeds three things: anaphoric follow-ups ("break this down by
region" reuses the last program / region / quarter), the conversation
context in LLM prompts, and follow-up suggestions.  It is never persisted
and is evicted only by the fixed-length window.

Sessions live in a thread-safe ``MemoryStore`` keyed by session id.
"""
from __future__ import annotations

import re
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Iterable

from src.copilot.classifier import mentions_current_quarter
from src.copilot.intent import QueryIntent, ResolvedEntity
from src.copilot.resolver import Resolution
from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)

_ANAPHORA = re.compile(r"\b(?:this|that|it|same|these|those|them)\b(?!\s+quarter)", re.IGNORECASE)
_CARRIED_KINDS = ("program", "region", "lesson", "quarter", "month")
_TIME_KINDS = ("quarter", "month")


@dataclass(frozen=True)
class QueryRecord:
    """One remembered turn."""
    question: str
    intent_type: str
    entities: tuple[ResolvedEntity, ...]
    created_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "question": self.question,
            "intent_type": self.intent_type,
            "entities": [{"kind": e.kind, "values": list(e.values)} for e in self.entities],
            "created_at": self.created_at,
        }


class ConversationMemory:
    """Rolling window of recent turns for one chat session.

    Parameters
    ----------
    window : int
        Number of turns (and insights, and values per entity kind) kept.
    """

    def __init__(self, window: int | None = None):
        if window is None:
            window = get_settings().memory_window
        self.window = window
        self._queries: deque[QueryRecord] = deque(maxlen=window)
        self._entities: dict[str, deque[str]] = {}
        self._insights: deque[str] = deque(maxlen=window)
        self._lock = threading.Lock()

    # ── Writes ──────────────────────────────────────────

    def remember(self, intent: QueryIntent, insights: Iterable[str] = ()) -> None:
        record = QueryRecord(
            question=intent.text,
            intent_type=intent.type.value,
            entities=intent.entities,
            created_at=time.time(),
        )
        with self._lock:
            self._queries.append(record)
            for entity in intent.entities:
                seen = self._entities.setdefault(entity.kind, deque(maxlen=self.window))
                for value in entity.values:
                    if value in seen:
                        seen.remove(value)
                    seen.append(value)
            self._insights.extend(insights)

    def clear(self) -> None:
        with self._lock:
            self._queries.clear()
            self._entities.clear()
            self._insights.clear()

    # ── Reads ───────────────────────────────────────────

    def recent_queries(self) -> list[QueryRecord]:
        with self._lock:
            return list(self._queries)

    def discovered(self, kind: str) -> list[str]:
        """Values seen for *kind*, most recent last."""
        with self._lock:
            return list(self._entities.get(kind, ()))

    def insights(self) -> list[str]:
        with self._lock:
            return list(self._insights)

    def last_entities(self) -> tuple[ResolvedEntity, ...]:
        """Entities of the most recent turn that had any."""
        with self._lock:
            for record in reversed(self._queries):
                if record.entities:
                    return record.entities
        return ()

    def context_summary(self, limit: int = 3) -> str:
        """Short text block of recent turns, for LLM prompts."""
        records = self.recent_queries()[-limit:]
        if not records:
            return ""
        lines = ["Recent questions:"]
        for r in records:
            ents = "; ".join(f"{e.kind}={','.join(e.values)}" for e in r.entities) or "no entities"
            lines.append(f"- {r.question} [{r.intent_type}; {ents}]")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "window": self.window,
            "queries": [r.to_dict() for r in self.recent_queries()],
            "entities": {k: self.discovered(k) for k in list(self._entities)},
            "insights": self.insights(),
        }


def is_anaphoric(text: str) -> bool:
    return bool(_ANAPHORA.search(text))


def carry_entities(text: str, resolution: Resolution, memory: ConversationMemory | None) -> Resolution:
    """Fill kinds missing from *resolution* with the previous turn's entities.

    Only applies to anaphoric questions ("this", "that", "same" ...).
    A question that names its own period ("this quarter") keeps it; the
    previous turn's quarter or month is not carried.  Carried entities
    are tagged ``method="memory"``.
    """
    if memory is None or not is_anaphoric(text):
        return resolution
    previous = memory.last_entities()
    if not previous:
        return resolution
    present = {e.kind for e in resolution.entities}
    if mentions_current_quarter(text):
        present.update(_TIME_KINDS)
    carried = [
        e.model_copy(update={"method": "memory"})
        for e in previous
        if e.kind in _CARRIED_KINDS and e.kind not in present
        and not (e.kind == "month" and "quarter" in present)
        and not (e.kind == "quarter" and "month" in present)
    ]
    if not carried:
        return resolution
    logger.info("Carried entities from memory: %s", [f"{e.kind}={','.join(e.values)}" for e in carried])
    return replace(resolution, entities=resolution.entities + tuple(carried))


# ── Session store ───────────────────────────────────────


class MemoryStore:
    """Thread-safe map of session id -> ConversationMemory."""

    def __init__(self, window: int | None = None):
        self._sessions: dict[str, ConversationMemory] = {}
        self._lock = threading.Lock()
        self._window = window

    def get(self, session_id: str) -> ConversationMemory:
        with self._lock:
            memory = self._sessions.get(session_id)
            if memory is None:
                memory = ConversationMemory(self._window)
                self._sessions[session_id] = memory
                logger.debug("Memory session created id=%s", session_id)
            return memory

    def drop(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._sessions)
            self._sessions.clear()
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


# ── Module-level singleton ──────────────────────────────

_store = MemoryStore()


def get_memory_store() -> MemoryStore:
    """Return the global session store."""
    return _store
