"""Output text and activity bookkeeping, including baseline suppression.

When a session starts the target may still display the previous answer.
That text is captured as the baseline; reads equal to it are ignored until
the first genuinely new text is accepted.
"""

from __future__ import annotations

import logging

from genwatch.monitoring.provider import activity_key, activity_signature
from genwatch.monitoring.session import MonitorSession

logger = logging.getLogger(__name__)


class TextActivityAccumulator:
    def __init__(self, *, baseline_suppression_max_ms: float) -> None:
        self.baseline_suppression_max_ms = baseline_suppression_max_ms

    # -- baselines -------------------------------------------------------

    def capture_baseline(self, session: MonitorSession, text: str | None) -> None:
        session.baseline_text = text
        session.baseline_suppression_active = text is not None

    def capture_activity_baseline(self, session: MonitorSession, entries: list[str]) -> None:
        signature = activity_signature(entries)
        session.baseline_activity_signature = signature
        session.last_activity_signature = signature
        session.seen_activity_keys = {activity_key(entry) for entry in entries}

    # -- activity ----------------------------------------------------------

    def observe_activity(
        self, session: MonitorSession, entries: list[str], now: float
    ) -> list[str] | None:
        """Record a changed activity list; return only entries not reported before.

        Any signature change counts as a signal even when every entry was
        already seen (for example when an old step scrolls out of view).
        """
        if not entries:
            return None
        signature = activity_signature(entries)
        if signature == session.last_activity_signature:
            return None
        session.last_activity_signature = signature
        if signature == session.baseline_activity_signature:
            return None
        session.last_signal_at = now
        session.activity_seen = True
        session.generation_started = True
        fresh: list[str] = []
        for entry in entries:
            key = activity_key(entry)
            if key in session.seen_activity_keys:
                continue
            session.seen_activity_keys.add(key)
            fresh.append(entry)
        return fresh or None

    # -- text --------------------------------------------------------------

    def is_suppressed(self, session: MonitorSession, text: str | None, now: float) -> bool:
        """True when *text* is the pre-existing answer and must not count as progress."""
        if not session.baseline_suppression_active or text is None:
            return False
        if text == session.baseline_text and session.last_text is None:
            return True
        if session.elapsed(now) >= self.baseline_suppression_max_ms:
            logger.debug(
                "Baseline suppression forced off after %.0fms", session.elapsed(now)
            )
            session.baseline_suppression_active = False
        return False

    def wants_alternate_read(self, session: MonitorSession) -> bool:
        """Alternate-order extraction is tried on every other tick while suppressed."""
        return session.baseline_suppression_active and session.poll_count % 2 == 0

    def accept_alternate(self, session: MonitorSession, text: str | None) -> bool:
        """Accept an alternate-order read that escapes the baseline."""
        if not text or text == session.baseline_text or text == session.last_text:
            return False
        session.baseline_suppression_active = False
        logger.debug("Alternate extraction escaped baseline (%d chars)", len(text))
        return True

    def accept_text(self, session: MonitorSession, text: str | None, now: float) -> bool:
        """Record *text* as progress when it changed; return True if it did."""
        if text is None or text == session.last_text:
            return False
        session.last_text = text
        session.last_text_change_at = now
        session.last_signal_at = now
        session.reset_stop_gone()
        session.generation_started = True
        if text != session.baseline_text:
            session.baseline_suppression_active = False
        return True
