"""Signal provider backed by a Playwright page attached over CDP."""

from __future__ import annotations

import itertools
import logging
from typing import Any

from genwatch.monitoring.provider import NetworkHandler, RequestFinished, RequestStarted
from genwatch.schemas import NetworkEventName

logger = logging.getLogger(__name__)

# Playwright page events feeding each provider event.
_PAGE_EVENTS: dict[NetworkEventName, tuple[str, ...]] = {
    NetworkEventName.REQUEST_STARTED: ("request",),
    NetworkEventName.REQUEST_FINISHED: ("requestfinished", "requestfailed"),
}

_request_counter = itertools.count(1)


def request_id(request: Any) -> str:
    """Id for a Playwright request, unique for the life of the connection.

    Playwright's channel guid is used when present. Objects without one get a
    counter-based id stamped on them the first time they are seen, so ids are
    never recycled the way ``id()`` values are.
    """
    guid = getattr(request, "_guid", None)
    if guid:
        return str(guid)
    assigned = getattr(request, "_genwatch_request_id", None)
    if assigned is None:
        assigned = f"req-{next(_request_counter)}"
        setattr(request, "_genwatch_request_id", assigned)
    return assigned


class PlaywrightSignalProvider:
    """Evaluates inspection expressions in a page and relays request events.

    When ``frame_keyword`` is set, expressions run in the first frame whose
    URL contains it (the assistant panel is often an embedded frame), falling
    back to the page itself.
    """

    def __init__(self, page: Any, *, frame_keyword: str = "") -> None:
        self.page = page
        self.frame_keyword = frame_keyword.lower()
        self._listeners: dict[tuple[NetworkEventName, NetworkHandler], list[tuple[str, Any]]] = {}

    def get_context(self) -> Any:
        if not self.frame_keyword:
            return None
        for frame in getattr(self.page, "frames", []) or []:
            if self.frame_keyword in str(getattr(frame, "url", "") or "").lower():
                return frame
        return None

    async def evaluate(self, expression: str, context: Any = None) -> Any:
        target = context if context is not None else self.page
        return await target.evaluate(expression)

    def subscribe(self, event_name: NetworkEventName, handler: NetworkHandler) -> None:
        key = (NetworkEventName(event_name), handler)
        if key in self._listeners:
            return
        wiring: list[tuple[str, Any]] = []
        for page_event in _PAGE_EVENTS[key[0]]:
            listener = self._adapter(key[0], handler)
            self.page.on(page_event, listener)
            wiring.append((page_event, listener))
        self._listeners[key] = wiring

    def unsubscribe(self, event_name: NetworkEventName, handler: NetworkHandler) -> None:
        wiring = self._listeners.pop((NetworkEventName(event_name), handler), [])
        for page_event, listener in wiring:
            self.page.remove_listener(page_event, listener)

    @staticmethod
    def _adapter(event_name: NetworkEventName, handler: NetworkHandler) -> Any:
        if event_name == NetworkEventName.REQUEST_STARTED:

            def on_request(request: Any) -> None:
                handler(
                    RequestStarted(
                        id=request_id(request),
                        url=str(getattr(request, "url", "") or ""),
                        resource_type=str(getattr(request, "resource_type", "") or ""),
                    )
                )

            return on_request

        def on_finished(request: Any) -> None:
            handler(RequestFinished(id=request_id(request)))

        return on_finished
