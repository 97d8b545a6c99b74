"""Baseline suppression, activity, network relevance and diagnostics in the monitor."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from genwatch.monitoring.monitor import summarize_diagnostics
from genwatch.monitoring.provider import RequestFinished, RequestStarted
from genwatch.schemas import NetworkEventName, ResponsePhase


def _run(coro: Any) -> Any:
    return asyncio.run(coro)


def test_baseline_text_is_not_progress(make_monitor, provider, clock):
    provider.script("text", "old", "old", "old", "old response continuing")
    monitor, rec = make_monitor()

    async def scenario() -> None:
        await monitor.start()
        assert monitor.session.baseline_suppression_active
        await clock.advance(2.0)
        assert rec.progress == []
        assert monitor.phase == ResponsePhase.WAITING
        await clock.advance(1.0)
        monitor.stop()

    _run(scenario())

    assert rec.progress == ["old response continuing"]
    assert not monitor.session.baseline_suppression_active


def test_alternate_read_escapes_baseline_on_even_ticks(make_monitor, provider, clock):
    provider.set("text", "old")
    provider.set("text_reversed", "fresh answer")
    monitor, rec = make_monitor()

    async def scenario() -> None:
        await monitor.start()
        await clock.advance(1.0)
        assert rec.progress == []
        assert "text_reversed" not in provider.calls
        await clock.advance(1.0)
        monitor.stop()

    _run(scenario())

    assert provider.calls.count("text_reversed") == 1
    assert rec.progress == ["fresh answer"]
    assert monitor.last_text == "fresh answer"
    assert not monitor.session.baseline_suppression_active


def test_alternate_read_equal_to_baseline_is_ignored(make_monitor, provider, clock):
    provider.set("text", "old")
    provider.set("text_reversed", "old")
    monitor, rec = make_monitor()

    async def scenario() -> None:
        await monitor.start()
        await clock.advance(4.0)
        monitor.stop()

    _run(scenario())

    assert provider.calls.count("text_reversed") == 2
    assert rec.progress == []
    assert monitor.session.baseline_suppression_active


def test_activity_reports_only_new_entries(make_monitor, provider, clock):
    provider.script(
        "activity",
        [],
        ["Reading file"],
        ["Reading file", "Editing  \r"],
        ["Reading file", "Editing", "Running tests"],
        "",
    )
    monitor, rec = make_monitor()

    async def scenario() -> None:
        await monitor.start()
        await clock.advance(4.0)
        monitor.stop()

    _run(scenario())

    assert rec.activity == [["Reading file"], ["Editing"], ["Running tests"]]
    assert monitor.session.activity_seen
    assert monitor.session.generation_started


def test_activity_baseline_is_not_reported(make_monitor, provider, clock):
    provider.script("activity", ["old step"], ["old step"], ["old step", "new step"])
    monitor, rec = make_monitor(capture_activity_baseline=True)

    async def scenario() -> None:
        await monitor.start()
        await clock.advance(1.0)
        assert rec.activity == []
        assert not monitor.session.generation_started
        await clock.advance(1.0)
        monitor.stop()

    _run(scenario())

    assert rec.activity == [["new step"]]


def test_stale_activity_is_ignored_by_default(make_monitor, provider, clock):
    provider.set("activity", ["Edited main.py"])
    monitor, rec = make_monitor()

    async def scenario() -> None:
        await monitor.start()
        await clock.advance(3.0)
        monitor.stop()

    _run(scenario())

    assert provider.calls[:2] == ["text", "activity"]
    assert rec.activity == []
    assert not monitor.session.activity_seen
    assert not monitor.session.generation_started


def test_irrelevant_requests_are_ignored(make_monitor, provider, clock):
    monitor, rec = make_monitor()

    async def scenario() -> None:
        await monitor.start()
        provider.emit(
            NetworkEventName.REQUEST_STARTED,
            RequestStarted(id="a", url="https://cdn.example.com/chat/app.js", resource_type="fetch"),
        )
        provider.emit(
            NetworkEventName.REQUEST_STARTED,
            RequestStarted(id="b", url="https://api.example.com/chat", resource_type="image"),
        )
        provider.emit(
            NetworkEventName.REQUEST_STARTED,
            RequestStarted(id="c", url="https://o1.sentry.io/chat/envelope", resource_type="fetch"),
        )
        provider.emit(NetworkEventName.REQUEST_FINISHED, RequestFinished(id="a"))
        monitor.stop()

    _run(scenario())

    assert monitor.phase == ResponsePhase.WAITING
    assert monitor.session.tracked_request_ids == set()
    assert monitor.session.network_finished_at is None
    assert not monitor.session.generation_started
    assert rec.phases == [("waiting", None)]


def test_network_finished_mark_tracks_the_whole_set(make_monitor, provider, clock):
    monitor, rec = make_monitor()
    started = NetworkEventName.REQUEST_STARTED
    finished = NetworkEventName.REQUEST_FINISHED

    async def scenario() -> None:
        await monitor.start()
        provider.emit(started, RequestStarted(id="r1", url="https://x.test/api/generate", resource_type="fetch"))
        provider.emit(started, RequestStarted(id="r2", url="https://x.test/api/stream", resource_type="eventsource"))
        await clock.advance(0.5)
        provider.emit(finished, RequestFinished(id="r1"))
        assert monitor.session.network_finished_at is None
        provider.emit(finished, RequestFinished(id="r2"))
        assert monitor.session.network_finished_at == 500.0
        assert monitor.session.last_signal_at == 500.0
        provider.emit(started, RequestStarted(id="r3", url="https://x.test/api/stream", resource_type="xhr"))
        assert monitor.session.network_finished_at is None
        monitor.stop()
        provider.emit(finished, RequestFinished(id="r3"))

    _run(scenario())

    assert monitor.session.tracked_request_ids == {"r3"}
    assert rec.phases == [("waiting", None), ("thinking", None)]


def test_periodic_diagnostics_are_logged(make_monitor, provider, clock, caplog):
    provider.set("stop", True)
    provider.set("diagnostics", [{"skip": "hidden"}, {"skip": "hidden"}, {"text": "ok"}])
    monitor, _rec = make_monitor(diagnostic_after_polls=2, diagnostic_every_polls=2)

    async def scenario() -> None:
        await monitor.start()
        await clock.advance(4.0)
        monitor.stop()

    with caplog.at_level(logging.INFO, logger="genwatch.monitoring.monitor"):
        _run(scenario())

    assert provider.calls.count("diagnostics") == 2
    assert "Still thinking after 2 polls" in caplog.text
    assert "Still thinking after 4 polls" in caplog.text
    assert "categories={'hidden': 2, 'accepted': 1}" in caplog.text


def test_summarize_diagnostics_counts_categories():
    payload = [
        {"skip": "in-input"},
        {"skip": "in-input"},
        {"skip": "too-short"},
        {"text": "kept"},
        "not a dict",
    ]
    assert summarize_diagnostics(payload) == {"in-input": 2, "too-short": 1, "accepted": 1}
    assert summarize_diagnostics(None) == {}
