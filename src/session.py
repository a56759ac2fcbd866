"""Session state store: one frozen SessionState plus the dialogue log.

Every mutation builds a new value under the lock and swaps the reference, so
readers always see a complete state, never a half-applied change.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import replace
from typing import Any

from src.consensus import APPROVAL_THRESHOLD, MAX_ROUNDS, approval_rate
from src.models import (
    DialogueEntry,
    DialogueKind,
    HistoryEntry,
    HistoryType,
    ResumeContext,
    Round,
    RoundStatus,
    SessionState,
    TechStackItem,
)

logger = logging.getLogger(__name__)


class SessionStore:
    """Owns the SessionState of one run.

    Args:
        clock: Wall-clock source for history and dialogue timestamps.
        approval_threshold: Used when revalidating a restored pending resume.
        max_rounds: Used when revalidating a restored pending resume.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        approval_threshold: float = APPROVAL_THRESHOLD,
        max_rounds: int = MAX_ROUNDS,
    ) -> None:
        self._clock = clock
        self._approval_threshold = approval_threshold
        self._max_rounds = max_rounds
        self._lock = threading.RLock()
        self._state = SessionState()
        self._dialogue: tuple[DialogueEntry, ...] = ()
        self._last_timestamp = 0.0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def dialogue(self) -> tuple[DialogueEntry, ...]:
        return self._dialogue

    @property
    def current_round(self) -> Round | None:
        state = self._state
        return state.rounds[-1] if state.rounds else None

    def _now(self) -> float:
        # History order must match append order even if the wall clock steps back.
        self._last_timestamp = max(self._clock(), self._last_timestamp)
        return self._last_timestamp

    def _swap(self, **changes: Any) -> SessionState:
        self._state = replace(self._state, **changes)
        return self._state

    def start_session(self) -> None:
        with self._lock:
            self._state = SessionState()
            self._dialogue = ()

    def reset_session(self) -> None:
        with self._lock:
            self._state = SessionState()
            self._dialogue = ()
            self._last_timestamp = 0.0

    def add_round(self, new_round: Round) -> int:
        """Append a round and return its index.

        Raises:
            ValueError: The first round is not round 1, or a later round is
                not exactly one past the last round.
        """
        with self._lock:
            rounds = self._state.rounds
            if not rounds and new_round.number != 1:
                raise ValueError(f"First round must be round 1, got {new_round.number}")
            if rounds and new_round.number != rounds[-1].number + 1:
                raise ValueError(
                    f"Round {new_round.number} cannot follow round {rounds[-1].number}"
                )
            rounds = (*rounds, new_round)
            self._swap(rounds=rounds, current_round_index=len(rounds) - 1)
            return len(rounds) - 1

    def update_current_round(self, updated: Round) -> None:
        """Replace the last round as a whole value.

        Raises:
            ValueError: No rounds yet, or ``updated`` is a different round.
        """
        with self._lock:
            rounds = self._state.rounds
            if not rounds:
                raise ValueError("No round to update")
            if updated.number != rounds[-1].number:
                raise ValueError(f"Cannot replace round {rounds[-1].number} with round {updated.number}")
            self._swap(rounds=(*rounds[:-1], updated))

    def recorded_idea(self) -> str | None:
        """Idea from the most recent round-start entry, if any was recorded."""
        for entry in reversed(self._state.history):
            if entry.type == HistoryType.ROUND_START and entry.data.get("idea"):
                return str(entry.data["idea"])
        return None

    def add_history(self, entry_type: HistoryType, data: dict[str, Any] | None = None) -> HistoryEntry:
        with self._lock:
            entry = HistoryEntry(timestamp=self._now(), type=entry_type, data=dict(data or {}))
            self._swap(history=(*self._state.history, entry))
            return entry

    def set_paused(self, paused: bool) -> None:
        with self._lock:
            self._swap(is_paused=paused)

    def set_pending_resume(self, pending: ResumeContext | None) -> None:
        with self._lock:
            self._swap(pending_resume=pending)

    def set_generated_document(self, document: str, tech_stack: Iterable[TechStackItem] = ()) -> None:
        with self._lock:
            self._swap(generated_document=document, tech_stack=tuple(tech_stack))

    def add_dialogue(
        self,
        speaker: str,
        message: str,
        kind: DialogueKind = DialogueKind.DISCUSSION,
    ) -> DialogueEntry:
        with self._lock:
            entry = DialogueEntry(speaker=speaker, message=message, timestamp=self._now(), kind=kind)
            self._dialogue = (*self._dialogue, entry)
            return entry

    def set_dialogue(self, entries: Iterable[DialogueEntry]) -> None:
        with self._lock:
            self._dialogue = tuple(entries)

    def hydrate(self, state: SessionState, dialogue: Iterable[DialogueEntry] = ()) -> None:
        """Load a restored snapshot, dropping a pending resume that no longer holds."""
        pending = state.pending_resume
        if pending is not None and not self._resume_still_valid(state, pending):
            logger.warning(
                "Discarding stale pending resume (next round %d, %d rounds restored)",
                pending.next_round,
                len(state.rounds),
            )
            pending = None

        restored = replace(
            state,
            rounds=tuple(state.rounds),
            current_round_index=len(state.rounds) - 1,
            pending_resume=pending,
        )
        entries = tuple(dialogue)
        with self._lock:
            self._state = restored
            self._dialogue = entries
            stamps = [h.timestamp for h in restored.history] + [d.timestamp for d in entries]
            self._last_timestamp = max(stamps, default=0.0)

    def _resume_still_valid(self, state: SessionState, pending: ResumeContext) -> bool:
        if not state.is_paused or not state.rounds or not pending.idea.strip():
            return False
        last = state.rounds[-1]
        if last.status != RoundStatus.COMPLETE:
            return False
        if approval_rate(last.votes) >= self._approval_threshold:
            return False
        return pending.next_round == last.number + 1 and pending.next_round <= self._max_rounds
