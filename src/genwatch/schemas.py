"""Pydantic models and enums shared across the monitor, CDP adapter and CLI."""

from __future__ import annotations

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ---------------------------------------------------------------------------
# Phases and reasons
# ---------------------------------------------------------------------------


class ResponsePhase(str, Enum):
    """Lifecycle of one monitored generation."""

    WAITING = "waiting"
    THINKING = "thinking"
    GENERATING = "generating"
    COMPLETE = "complete"
    TIMEOUT = "timeout"
    QUOTA_REACHED = "quota_reached"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


TERMINAL_PHASES = frozenset(
    {ResponsePhase.COMPLETE, ResponsePhase.TIMEOUT, ResponsePhase.QUOTA_REACHED}
)


class CompletionReason(str, Enum):
    """Which signal path finalized a session."""

    NETWORK_FINISHED = "network-finished"
    STOP_BUTTON_GONE = "stop-button-gone"
    TEXT_STABILITY = "text-stability"
    NO_UPDATE_TIMEOUT = "no-update-timeout"
    QUOTA_REACHED = "quota-reached"
    TIMEOUT = "timeout"


class NetworkEventName(str, Enum):
    """Provider event kinds the monitor subscribes to."""

    REQUEST_STARTED = "request-started"
    REQUEST_FINISHED = "request-finished"


# ---------------------------------------------------------------------------
# Network relevance filter
# ---------------------------------------------------------------------------

DEFAULT_ENDPOINT_PATTERN = (
    r"(generat|stream|complet|chat|conversation|cascade|agent|inference|predict|"
    r"message|exa\.language_server)"
)
DEFAULT_STATIC_ASSET_PATTERN = (
    r"\.(?:js|mjs|css|map|png|jpe?g|gif|svg|webp|ico|woff2?|ttf|otf|wasm)(?:[?#]|$)"
)
DEFAULT_IGNORED_HOST_PATTERN = (
    r"(sentry\.io|google-analytics|googletagmanager|doubleclick|segment\.io|"
    r"telemetry|analytics|statsig|amplitude|mixpanel)"
)
DEFAULT_RESOURCE_TYPES: tuple[str, ...] = ("fetch", "xhr", "eventsource", "other")


class RequestFilter(BaseModel):
    """Decides which network exchanges count as generation traffic."""

    model_config = ConfigDict(frozen=True)

    endpoint_pattern: str = DEFAULT_ENDPOINT_PATTERN
    static_asset_pattern: str = DEFAULT_STATIC_ASSET_PATTERN
    ignored_host_pattern: str = DEFAULT_IGNORED_HOST_PATTERN
    resource_types: tuple[str, ...] = DEFAULT_RESOURCE_TYPES

    @field_validator("endpoint_pattern", "static_asset_pattern", "ignored_host_pattern")
    @classmethod
    def _validate_pattern(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid regular expression {value!r}: {exc}") from exc
        return value

    @field_validator("resource_types", mode="before")
    @classmethod
    def _normalize_resource_types(cls, value: Any) -> tuple[str, ...]:
        if isinstance(value, str):
            value = value.split(",")
        return tuple(
            str(item).strip().lower() for item in (value or []) if str(item).strip()
        )

    def is_relevant(self, url: str, resource_type: str) -> bool:
        """Return True when *url* looks like a generation endpoint."""
        if str(resource_type or "").strip().lower() not in self.resource_types:
            return False
        text = str(url or "")
        if not text or not re.search(self.endpoint_pattern, text, re.IGNORECASE):
            return False
        if self.static_asset_pattern and re.search(
            self.static_asset_pattern, text, re.IGNORECASE
        ):
            return False
        if self.ignored_host_pattern and re.search(
            self.ignored_host_pattern, text, re.IGNORECASE
        ):
            return False
        return True


# ---------------------------------------------------------------------------
# Monitor configuration
# ---------------------------------------------------------------------------

DEFAULT_NO_TEXT_COMPLETION_DELAY_MS = 15_000


class MonitorConfig(BaseModel):
    """Per-monitor timing and heuristics. All durations are milliseconds."""

    model_config = ConfigDict(frozen=True)

    poll_interval_ms: int = Field(default=1000, gt=0)
    # 0 disables the absolute deadline.
    max_duration_ms: int = Field(default=300_000, ge=0)
    stop_button_gone_confirm_count: int = Field(default=1, ge=1)
    completion_stability_ms: int = Field(default=1500, ge=0)
    no_update_timeout_ms: int = Field(default=30_000, ge=0)
    no_text_completion_delay_ms: int = Field(default=DEFAULT_NO_TEXT_COMPLETION_DELAY_MS, ge=0)
    # 0 disables the independent text-stability path.
    text_stability_complete_ms: int = Field(default=15_000, ge=0)
    network_complete_delay_ms: int = Field(default=3000, ge=0)
    baseline_suppression_max_ms: int = Field(default=20_000, ge=0)
    unreliable_stability_cap_ms: int = Field(default=3000, ge=0)
    unreliable_signal_quiet_floor_ms: int = Field(default=500, ge=0)
    # Activity already on screen at start is treated as seen. Turning this off
    # saves one evaluation but lets stale steps start a session.
    capture_activity_baseline: bool = True
    diagnostic_after_polls: int = Field(default=5, ge=1)
    diagnostic_every_polls: int = Field(default=10, ge=1)
    request_filter: RequestFilter = Field(default_factory=RequestFilter)

    @model_validator(mode="before")
    @classmethod
    def _default_no_text_delay(cls, data: Any) -> Any:
        """Derive the no-text delay from the stall timeout when not given."""
        if not isinstance(data, dict):
            return data
        if data.get("no_text_completion_delay_ms") is not None:
            return data
        merged = dict(data)
        merged.pop("no_text_completion_delay_ms", None)
        try:
            stall = int(merged.get("no_update_timeout_ms", 30_000))
        except (TypeError, ValueError):
            # Let field validation report the bad stall value.
            return merged
        if stall > 0:
            merged["no_text_completion_delay_ms"] = min(DEFAULT_NO_TEXT_COMPLETION_DELAY_MS, stall)
        return merged

    @property
    def unreliable_quiet_ms(self) -> float:
        """Signal quiet period required before an unreliable stop-gone counts."""
        return max(float(self.unreliable_signal_quiet_floor_ms), 0.8 * self.poll_interval_ms)


# ---------------------------------------------------------------------------
# Inspection expressions
# ---------------------------------------------------------------------------


class InspectionScripts(BaseModel):
    """Expressions evaluated in the target. Supplied by the caller, never authored here."""

    model_config = ConfigDict(frozen=True)

    response_text: str = Field(min_length=1)
    stop_indicator: str = Field(min_length=1)
    quota_indicator: str = Field(min_length=1)
    activity: str = ""
    # Same extraction walking the document in the opposite order.
    response_text_reversed: str = ""
    click_stop: str = ""
    diagnostics: str = ""


# ---------------------------------------------------------------------------
# Interrupt result
# ---------------------------------------------------------------------------


class StopRequestResult(BaseModel):
    """Outcome of trying to activate the target's cancel control."""

    ok: bool = False
    method: str | None = None
    error: str | None = None
