"""Tracks in-flight generation requests reported by the signal provider."""

from __future__ import annotations

import logging

from genwatch.monitoring.provider import RequestFinished, RequestStarted
from genwatch.monitoring.session import MonitorSession
from genwatch.schemas import RequestFilter

logger = logging.getLogger(__name__)


class NetworkActivityTracker:
    """Applies the relevance filter and maintains ``tracked_request_ids``.

    The tracker only mutates the session it is handed; deciding what the
    bookkeeping means is left to the next monitor tick.
    """

    def __init__(self, request_filter: RequestFilter) -> None:
        self.request_filter = request_filter
        self.relevant_seen = 0
        self.ignored_seen = 0

    def reset(self) -> None:
        self.relevant_seen = 0
        self.ignored_seen = 0

    def request_started(self, session: MonitorSession, event: RequestStarted, now: float) -> bool:
        """Record a start event; return True when the request is tracked."""
        if not self.request_filter.is_relevant(event.url, event.resource_type):
            self.ignored_seen += 1
            return False
        self.relevant_seen += 1
        session.tracked_request_ids.add(event.id)
        session.generation_started = True
        session.last_signal_at = now
        # A new stream invalidates any earlier "all finished" mark.
        session.network_finished_at = None
        logger.debug(
            "Tracking request %s (%s) %s; in flight=%d",
            event.id,
            event.resource_type,
            event.url[:120],
            len(session.tracked_request_ids),
        )
        return True

    def request_finished(self, session: MonitorSession, event: RequestFinished, now: float) -> bool:
        """Record a finish event; return True when it drained the tracked set."""
        if event.id not in session.tracked_request_ids:
            return False
        session.tracked_request_ids.discard(event.id)
        if session.tracked_request_ids:
            return False
        session.network_finished_at = now
        session.last_signal_at = now
        logger.debug("All tracked requests finished")
        return True
