"""Signal provider interface consumed by :class:`ResponseMonitor`.

A provider evaluates read-only inspection expressions against the monitored
target and reports network request lifecycle events. The monitor never
knows how either is implemented; see :mod:`genwatch.cdp.provider` for the
Playwright-backed implementation.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, Union

from genwatch.schemas import NetworkEventName

MAX_ACTIVITY_ENTRY_CHARS = 300
ACTIVITY_KEY_CHARS = 200


@dataclass(frozen=True)
class RequestStarted:
    """A network exchange was dispatched by the target."""

    id: str
    url: str = ""
    resource_type: str = ""


@dataclass(frozen=True)
class RequestFinished:
    """A previously started exchange completed, failed or was cancelled."""

    id: str


NetworkEvent = Union[RequestStarted, RequestFinished]
NetworkHandler = Callable[[Any], None]


class SignalProvider(Protocol):
    """What the monitor requires of its collaborator.

    ``get_context()`` is optional; providers that lack it are called without
    a context handle.
    """

    async def evaluate(self, expression: str, context: Any = None) -> Any:
        """Run *expression* in the target and return its JSON-like result."""
        ...

    def subscribe(self, event_name: NetworkEventName, handler: NetworkHandler) -> None:
        ...

    def unsubscribe(self, event_name: NetworkEventName, handler: NetworkHandler) -> None:
        ...


# ---------------------------------------------------------------------------
# Result normalisation
# ---------------------------------------------------------------------------


def normalize_text(value: Any) -> str | None:
    """Return stripped text, or None for empty and non-string results."""
    if not isinstance(value, str):
        return None
    text = value.replace("\r", "").strip()
    return text or None


def normalize_stop_indicator(value: Any) -> bool:
    """Interpret a stop-indicator result as "target is generating"."""
    if isinstance(value, bool):
        return value
    if isinstance(value, dict):
        flag = value.get("isGenerating", value.get("is_generating", False))
        return flag is True
    return False


def normalize_quota(value: Any) -> bool:
    return value is True


def normalize_activity(value: Any) -> list[str]:
    """Return non-blank activity entries, each truncated for logging/callbacks."""
    if isinstance(value, str):
        items: list[Any] = [value]
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        return []
    entries: list[str] = []
    for item in items:
        if not isinstance(item, str):
            continue
        text = item.replace("\r", "").strip()
        if text:
            entries.append(text[:MAX_ACTIVITY_ENTRY_CHARS])
    return entries


def activity_signature(entries: list[str]) -> str:
    return "\n".join(entries)


def activity_key(entry: str) -> str:
    """Identity of one activity entry; long entries that differ only in their tail collapse."""
    return entry[:ACTIVITY_KEY_CHARS]
