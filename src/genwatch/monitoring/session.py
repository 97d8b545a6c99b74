"""Per-session monitor state and phase transition rules."""

from __future__ import annotations

from dataclasses import dataclass, field

from genwatch.schemas import CompletionReason, ResponsePhase

_PROGRESS_RANK = {
    ResponsePhase.WAITING: 0,
    ResponsePhase.THINKING: 1,
    ResponsePhase.GENERATING: 2,
}


def can_transition(current: ResponsePhase, target: ResponsePhase) -> bool:
    """Phases only move forward; terminal phases are final."""
    if current.is_terminal or current == target:
        return False
    if target.is_terminal:
        return True
    return _PROGRESS_RANK[target] > _PROGRESS_RANK[current]


@dataclass
class MonitorSession:
    """Mutable state of one monitored generation.

    Owned by a single :class:`ResponseMonitor`. Written only from its tick,
    its two network handlers, its deadline timer and ``stop()``, all of which
    run on one event loop, so no locking is needed. Timestamps are monotonic
    milliseconds.
    """

    start_time: float = 0.0
    phase: ResponsePhase = ResponsePhase.WAITING
    is_running: bool = False
    last_text: str | None = None
    baseline_text: str | None = None
    baseline_suppression_active: bool = False
    generation_started: bool = False
    stop_indicator_seen_once: bool = False
    stop_gone_count: int = 0
    stop_gone_since: float | None = None
    activity_seen: bool = False
    last_activity_signature: str = ""
    baseline_activity_signature: str = ""
    seen_activity_keys: set[str] = field(default_factory=set)
    last_text_change_at: float = 0.0
    last_signal_at: float = 0.0
    tracked_request_ids: set[str] = field(default_factory=set)
    network_finished_at: float | None = None
    quota_detected: bool = False
    poll_count: int = 0
    completion_reason: CompletionReason | None = None

    @classmethod
    def begin(cls, now: float, *, passive: bool = False) -> MonitorSession:
        return cls(
            start_time=now,
            phase=ResponsePhase.GENERATING if passive else ResponsePhase.WAITING,
            is_running=True,
            generation_started=passive,
            last_text_change_at=now,
            last_signal_at=now,
        )

    @property
    def has_text(self) -> bool:
        return bool(self.last_text)

    @property
    def has_started(self) -> bool:
        return self.generation_started or self.has_text

    def elapsed(self, now: float) -> float:
        return now - self.start_time

    def stalled_for(self, now: float) -> float:
        return now - self.last_text_change_at

    def signal_stalled_for(self, now: float) -> float:
        return now - self.last_signal_at

    def reset_stop_gone(self) -> None:
        self.stop_gone_count = 0
        self.stop_gone_since = None

    def advance(self, target: ResponsePhase) -> bool:
        """Move to *target* when allowed; return True on an actual change."""
        if not can_transition(self.phase, target):
            return False
        self.phase = target
        return True
