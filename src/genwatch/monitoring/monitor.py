"""Completion detection for a remotely observed generation.

The target never announces when it has finished answering. Each tick the
monitor reads the stop indicator, the quota indicator, the activity list and
the output text through the signal provider, folds in network bookkeeping,
and checks the completion paths in priority order:

1. network-finished   all tracked generation requests ended and text settled
2. stop-button-gone   the cancel control disappeared and stayed gone
3. text-stability     text unchanged for ``text_stability_complete_ms``
4. no-update-timeout  no signal of any kind for ``no_update_timeout_ms``

Usage::

    monitor = ResponseMonitor(
        provider,
        scripts,
        MonitorConfig(poll_interval_ms=1000),
        on_progress=lambda text: print(len(text)),
        on_complete=lambda text: print(text),
    )
    await monitor.start()
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError

from genwatch.monitoring.accumulator import TextActivityAccumulator
from genwatch.monitoring.network import NetworkActivityTracker
from genwatch.monitoring.provider import (
    RequestFinished,
    RequestStarted,
    SignalProvider,
    normalize_activity,
    normalize_quota,
    normalize_stop_indicator,
    normalize_text,
)
from genwatch.monitoring.session import MonitorSession
from genwatch.schemas import (
    CompletionReason,
    InspectionScripts,
    MonitorConfig,
    NetworkEventName,
    ResponsePhase,
    StopRequestResult,
)

logger = logging.getLogger(__name__)

TextCallback = Callable[[str], Any]
PhaseCallback = Callable[[ResponsePhase, "str | None"], Any]
ActivityCallback = Callable[[list[str]], Any]
SleepFn = Callable[[float], Awaitable[Any]]

# Returned by _evaluate when the provider raised; callers keep last-known values.
_UNAVAILABLE: Any = object()


def _current_task() -> asyncio.Task[Any] | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


def summarize_diagnostics(payload: Any) -> Counter[str]:
    """Tally candidate nodes by the category that excluded them."""
    counts: Counter[str] = Counter()
    if not isinstance(payload, list):
        return counts
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        counts[str(entry.get("skip") or "accepted")] += 1
    return counts


class ResponseMonitor:
    """Watches one generation at a time and reports when it has ended."""

    def __init__(
        self,
        provider: SignalProvider,
        scripts: InspectionScripts,
        config: MonitorConfig | None = None,
        *,
        on_progress: TextCallback | None = None,
        on_complete: TextCallback | None = None,
        on_timeout: TextCallback | None = None,
        on_phase_change: PhaseCallback | None = None,
        on_activity: ActivityCallback | None = None,
        clock: Callable[[], float] | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self.provider = provider
        self.scripts = scripts
        self.config = config or MonitorConfig()
        self._on_progress = on_progress
        self._on_complete = on_complete
        self._on_timeout = on_timeout
        self._on_phase_change = on_phase_change
        self._on_activity = on_activity
        self._clock = clock or time.monotonic
        self._sleep: SleepFn = sleep or asyncio.sleep

        self._network = NetworkActivityTracker(self.config.request_filter)
        self._accumulator = TextActivityAccumulator(
            baseline_suppression_max_ms=self.config.baseline_suppression_max_ms,
        )
        self._session = MonitorSession()
        self._poll_timer: asyncio.Task[Any] | None = None
        self._deadline_timer: asyncio.Task[Any] | None = None
        self._subscribed = False

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def phase(self) -> ResponsePhase:
        return self._session.phase

    @property
    def last_text(self) -> str | None:
        return self._session.last_text

    @property
    def quota_detected(self) -> bool:
        return self._session.quota_detected

    @property
    def completion_reason(self) -> CompletionReason | None:
        return self._session.completion_reason

    @property
    def session(self) -> MonitorSession:
        return self._session

    def is_active(self) -> bool:
        return self._session.is_running

    async def start(self, *, passive: bool = False) -> None:
        """Begin monitoring a new generation.

        With ``passive=True`` the session assumes generation is already under
        way (phase ``generating``), which suits attaching to a target that
        may be mid-answer.
        """
        if self._session.is_running:
            return
        session = MonitorSession.begin(self._now(), passive=passive)
        self._session = session
        self._network.reset()
        self._invoke("on_phase_change", self._on_phase_change, session.phase, None)

        baseline = await self._evaluate("response_text", self.scripts.response_text)
        if not session.is_running:
            return
        self._accumulator.capture_baseline(session, normalize_text(baseline))

        if self.config.capture_activity_baseline and self.scripts.activity:
            activity = await self._evaluate("activity", self.scripts.activity)
            if not session.is_running:
                return
            self._accumulator.capture_activity_baseline(session, normalize_activity(activity))

        self._subscribe()
        if self.config.max_duration_ms > 0:
            self._deadline_timer = asyncio.ensure_future(self._deadline_after(session))

        logger.debug(
            "%s started | poll=%dms timeout=%.0fs baseline=%dch",
            "Passive monitoring" if passive else "Monitoring",
            self.config.poll_interval_ms,
            self.config.max_duration_ms / 1000,
            len(session.baseline_text or ""),
        )
        self._schedule_poll(session)

    def stop(self) -> None:
        """Cancel pending timers and subscriptions. Idempotent.

        A tick that is already awaiting the provider is not interrupted; it
        notices ``is_running`` is False and discards what it read.
        """
        session = self._session
        was_running = session.is_running
        session.is_running = False
        current = _current_task()
        for timer in (self._poll_timer, self._deadline_timer):
            if timer is not None and timer is not current and not timer.done():
                timer.cancel()
        self._poll_timer = None
        self._deadline_timer = None
        self._unsubscribe()
        if was_running:
            logger.debug(
                "Monitoring stopped | phase=%s polls=%d", session.phase.value, session.poll_count
            )

    async def request_stop(self) -> StopRequestResult:
        """Click the target's cancel control, then stop monitoring."""
        if not self.scripts.click_stop:
            return StopRequestResult(ok=False, error="no stop-click expression configured")
        try:
            value = await self.provider.evaluate(self.scripts.click_stop, self._context())
        except Exception as exc:
            logger.warning("Stop-click evaluation failed: %s", exc)
            return StopRequestResult(ok=False, error=str(exc) or "failed to click stop control")

        if self._session.is_running:
            self.stop()

        if isinstance(value, dict):
            try:
                return StopRequestResult.model_validate(value)
            except ValidationError as exc:
                return StopRequestResult(ok=False, error=f"unexpected stop-click result: {exc}")
        if value is True:
            return StopRequestResult(ok=True)
        return StopRequestResult(ok=False, error="evaluation returned empty")

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _now(self) -> float:
        return self._clock() * 1000.0

    def _schedule_poll(self, session: MonitorSession) -> None:
        if not session.is_running or session is not self._session:
            return
        self._poll_timer = asyncio.ensure_future(self._poll_after_delay(session))

    async def _poll_after_delay(self, session: MonitorSession) -> None:
        await self._sleep(self.config.poll_interval_ms / 1000)
        # Past this point the tick is dispatched and stop() must not cancel it.
        if self._poll_timer is _current_task():
            self._poll_timer = None
        if not session.is_running:
            return
        try:
            await self._poll(session)
        except Exception:
            logger.error("Monitor tick failed", exc_info=True)
        self._schedule_poll(session)

    async def _deadline_after(self, session: MonitorSession) -> None:
        await self._sleep(self.config.max_duration_ms / 1000)
        if self._deadline_timer is _current_task():
            self._deadline_timer = None
        text = session.last_text or ""
        self._finish(
            session,
            ResponsePhase.TIMEOUT,
            CompletionReason.TIMEOUT,
            text,
            "on_timeout",
            self._on_timeout,
        )

    # ------------------------------------------------------------------
    # Provider plumbing
    # ------------------------------------------------------------------

    def _context(self) -> Any:
        getter = getattr(self.provider, "get_context", None)
        if not callable(getter):
            return None
        try:
            return getter()
        except Exception:
            logger.debug("get_context() failed; evaluating without context", exc_info=True)
            return None

    async def _evaluate(self, role: str, expression: str) -> Any:
        try:
            return await self.provider.evaluate(expression, self._context())
        except Exception as exc:
            logger.warning("Evaluation of %s failed: %s", role, exc)
            return _UNAVAILABLE

    def _subscribe(self) -> None:
        if self._subscribed:
            return
        for name, handler in self._handlers():
            try:
                self.provider.subscribe(name, handler)
            except Exception:
                logger.warning("Could not subscribe to %s", name.value, exc_info=True)
        self._subscribed = True

    def _unsubscribe(self) -> None:
        if not self._subscribed:
            return
        self._subscribed = False
        for name, handler in self._handlers():
            try:
                self.provider.unsubscribe(name, handler)
            except Exception:
                logger.warning("Could not unsubscribe from %s", name.value, exc_info=True)

    def _handlers(self) -> list[tuple[NetworkEventName, Callable[[Any], None]]]:
        return [
            (NetworkEventName.REQUEST_STARTED, self._handle_request_started),
            (NetworkEventName.REQUEST_FINISHED, self._handle_request_finished),
        ]

    def _handle_request_started(self, event: RequestStarted) -> None:
        session = self._session
        if not session.is_running:
            return
        if self._network.request_started(session, event, self._now()):
            self._set_phase(session, ResponsePhase.THINKING, None)

    def _handle_request_finished(self, event: RequestFinished) -> None:
        session = self._session
        if not session.is_running:
            return
        self._network.request_finished(session, event, self._now())

    # ------------------------------------------------------------------
    # Phases and callbacks
    # ------------------------------------------------------------------

    def _invoke(self, name: str, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("%s callback failed", name)

    def _set_phase(self, session: MonitorSession, phase: ResponsePhase, text: str | None) -> None:
        if not session.advance(phase):
            return
        length = len(text or "")
        if phase == ResponsePhase.GENERATING:
            logger.info("Phase: generating (%d chars)", length)
        elif phase == ResponsePhase.COMPLETE:
            logger.info(
                "Complete (%d chars, %s)",
                length,
                session.completion_reason.value if session.completion_reason else "unknown",
            )
        elif phase == ResponsePhase.TIMEOUT:
            logger.warning("Timeout (%d chars captured)", length)
        elif phase == ResponsePhase.QUOTA_REACHED:
            logger.warning("Quota reached")
        else:
            logger.info("Phase: %s", phase.value)
        self._invoke("on_phase_change", self._on_phase_change, phase, text)

    def _finish(
        self,
        session: MonitorSession,
        phase: ResponsePhase,
        reason: CompletionReason,
        text: str,
        name: str,
        callback: TextCallback | None,
    ) -> bool:
        """Enter a terminal phase once: tear down first, then notify."""
        if not session.is_running or session is not self._session:
            return False
        session.completion_reason = reason
        self.stop()
        self._set_phase(session, phase, text)
        self._invoke(name, callback, text)
        return True

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def _poll(self, session: MonitorSession) -> None:
        session.poll_count += 1

        raw_stop = await self._evaluate("stop_indicator", self.scripts.stop_indicator)
        if not session.is_running:
            return
        stop_known = raw_stop is not _UNAVAILABLE
        is_generating = stop_known and normalize_stop_indicator(raw_stop)
        if is_generating:
            session.stop_indicator_seen_once = True
            session.generation_started = True
            session.reset_stop_gone()
            self._set_phase(session, ResponsePhase.THINKING, None)

        raw_quota = await self._evaluate("quota_indicator", self.scripts.quota_indicator)
        if not session.is_running:
            return
        if raw_quota is not _UNAVAILABLE and normalize_quota(raw_quota):
            if not session.has_text:
                logger.warning("Quota indicator shown before any text was produced")
                self._finish(
                    session,
                    ResponsePhase.QUOTA_REACHED,
                    CompletionReason.QUOTA_REACHED,
                    "",
                    "on_complete",
                    self._on_complete,
                )
                return
            if not session.quota_detected:
                logger.warning("Quota indicator shown after %d chars of text", len(session.last_text or ""))
            session.quota_detected = True

        if self.scripts.activity:
            raw_activity = await self._evaluate("activity", self.scripts.activity)
            if not session.is_running:
                return
            if raw_activity is not _UNAVAILABLE:
                fresh = self._accumulator.observe_activity(
                    session, normalize_activity(raw_activity), self._now()
                )
                if fresh:
                    self._invoke("on_activity", self._on_activity, list(fresh))

        raw_text = await self._evaluate("response_text", self.scripts.response_text)
        if not session.is_running:
            return
        now = self._now()
        text = None if raw_text is _UNAVAILABLE else normalize_text(raw_text)
        if self._accumulator.is_suppressed(session, text, now):
            text = None
            if self.scripts.response_text_reversed and self._accumulator.wants_alternate_read(
                session
            ):
                raw_alt = await self._evaluate(
                    "response_text_reversed", self.scripts.response_text_reversed
                )
                if not session.is_running:
                    return
                alternate = None if raw_alt is _UNAVAILABLE else normalize_text(raw_alt)
                if self._accumulator.accept_alternate(session, alternate):
                    text = alternate
                now = self._now()

        if self._accumulator.accept_text(session, text, now):
            self._set_phase(session, ResponsePhase.GENERATING, text)
            self._invoke("on_progress", self._on_progress, text)
            if not session.is_running:
                return

        reason = self._decide(session, now, stop_known=stop_known, is_generating=is_generating)
        if reason is not None:
            self._finish(
                session,
                ResponsePhase.COMPLETE,
                reason,
                session.last_text or "",
                "on_complete",
                self._on_complete,
            )
            return

        await self._maybe_log_diagnostics(session)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def _decide(
        self,
        session: MonitorSession,
        now: float,
        *,
        stop_known: bool,
        is_generating: bool,
    ) -> CompletionReason | None:
        cfg = self.config
        started = session.has_started
        stalled_for = session.stalled_for(now)

        if (
            session.network_finished_at is not None
            and started
            and now - session.network_finished_at >= cfg.network_complete_delay_ms
            and stalled_for >= cfg.network_complete_delay_ms
        ):
            return CompletionReason.NETWORK_FINISHED

        if stop_known and not is_generating and started and self._stop_gone_confirmed(session, now):
            return CompletionReason.STOP_BUTTON_GONE

        if (
            cfg.text_stability_complete_ms > 0
            and session.generation_started
            and session.has_text
            and stalled_for >= cfg.text_stability_complete_ms
        ):
            return CompletionReason.TEXT_STABILITY

        if (
            cfg.no_update_timeout_ms > 0
            and started
            and session.signal_stalled_for(now) >= cfg.no_update_timeout_ms
        ):
            return CompletionReason.NO_UPDATE_TIMEOUT

        return None

    def _stop_gone_confirmed(self, session: MonitorSession, now: float) -> bool:
        """Count one stop-gone observation and report whether it is now final."""
        cfg = self.config
        if not session.has_text and session.elapsed(now) < cfg.no_text_completion_delay_ms:
            return False
        # Never having seen the indicator makes its absence weak evidence.
        reliable = session.stop_indicator_seen_once
        if not reliable and session.signal_stalled_for(now) < cfg.unreliable_quiet_ms:
            return False

        session.stop_gone_count += 1
        if session.stop_gone_since is None:
            session.stop_gone_since = now
        if session.stop_gone_count < cfg.stop_button_gone_confirm_count:
            return False

        window = cfg.completion_stability_ms
        if not reliable:
            window = min(window, cfg.unreliable_stability_cap_ms)
        stable_since = max(session.stop_gone_since, session.last_text_change_at)
        return now - stable_since >= window

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def _maybe_log_diagnostics(self, session: MonitorSession) -> None:
        cfg = self.config
        if session.phase.is_terminal or session.poll_count < cfg.diagnostic_after_polls:
            return
        if (session.poll_count - cfg.diagnostic_after_polls) % cfg.diagnostic_every_polls:
            return
        categories: Counter[str] = Counter()
        if self.scripts.diagnostics:
            try:
                payload = await self.provider.evaluate(self.scripts.diagnostics, self._context())
            except Exception as exc:
                logger.debug("Diagnostic evaluation failed: %s", exc)
                payload = None
            if not session.is_running:
                return
            categories = summarize_diagnostics(payload)
        logger.info(
            "Still %s after %d polls | tracked=%d relevant=%d ignored=%d stop_gone=%d "
            "text=%dch categories=%s",
            session.phase.value,
            session.poll_count,
            len(session.tracked_request_ids),
            self._network.relevant_seen,
            self._network.ignored_seen,
            session.stop_gone_count,
            len(session.last_text or ""),
            dict(categories),
        )
