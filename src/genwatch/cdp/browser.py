"""Playwright connection to an already running application over CDP.

The monitored application is started elsewhere with a remote debugging
port. This module attaches to it, picks the page that hosts the assistant
panel, and detaches again without closing the application.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_CDP_PORTS: tuple[int, ...] = (9222, 9223, 9333, 9444, 9555, 9666)
DEFAULT_TARGET_KEYWORDS: tuple[str, ...] = ("workbench",)
DEFAULT_EXCLUDED_KEYWORDS: tuple[str, ...] = ("launchpad",)


class CdpBrowser:
    """Attaches to a running Chromium-based target.

    Usage::

        async with CdpBrowser(ports=(9222,)) as browser:
            provider = PlaywrightSignalProvider(browser.page)
    """

    def __init__(
        self,
        ports: Sequence[int] = DEFAULT_CDP_PORTS,
        *,
        host: str = "127.0.0.1",
        target_keywords: Sequence[str] = DEFAULT_TARGET_KEYWORDS,
        excluded_keywords: Sequence[str] = DEFAULT_EXCLUDED_KEYWORDS,
        connect_timeout_ms: int = 5_000,
    ) -> None:
        self.ports = tuple(ports)
        self.host = host
        self.target_keywords = tuple(k.lower() for k in target_keywords)
        self.excluded_keywords = tuple(k.lower() for k in excluded_keywords)
        self.connect_timeout_ms = connect_timeout_ms
        self.endpoint = ""
        self._playwright: Any = None
        self._browser: Any = None
        self._page: Any = None

    async def __aenter__(self) -> CdpBrowser:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()

    async def start(self) -> None:
        """Connect to the first port that answers and select the target page."""
        try:
            from playwright.async_api import async_playwright
        except ImportError as exc:
            raise RuntimeError(
                "Playwright is required to attach over CDP. Install with:\n"
                "  pip install genwatch[cdp]"
            ) from exc

        self._playwright = await async_playwright().start()
        errors: list[str] = []
        for port in self.ports:
            endpoint = f"http://{self.host}:{port}"
            try:
                browser = await self._playwright.chromium.connect_over_cdp(
                    endpoint, timeout=self.connect_timeout_ms
                )
            except Exception as exc:
                errors.append(f"{port}: {exc}")
                logger.debug("No CDP endpoint at %s: %s", endpoint, exc)
                continue
            page = await self._select_page(browser)
            if page is None:
                errors.append(f"{port}: no matching page")
                await browser.close()
                continue
            self._browser = browser
            self._page = page
            self.endpoint = endpoint
            logger.info("Attached to %s (%s)", endpoint, getattr(page, "url", ""))
            return

        await self._playwright.stop()
        self._playwright = None
        raise RuntimeError(
            "CDP target not found on any port: " + "; ".join(errors or ["no ports configured"])
        )

    async def stop(self) -> None:
        """Detach from the target. The remote application keeps running."""
        if self._browser:
            await self._browser.close()
            self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None
        self._page = None
        logger.info("Detached from CDP target")

    @property
    def page(self) -> Any:
        """The selected Playwright page."""
        if not self._page:
            raise RuntimeError("Not attached. Call start() first.")
        return self._page

    async def _select_page(self, browser: Any) -> Any:
        candidates: list[tuple[Any, str, str]] = []
        for context in browser.contexts:
            for page in context.pages:
                try:
                    title = await page.title()
                except Exception:
                    title = ""
                candidates.append((page, str(page.url or "").lower(), str(title or "").lower()))
        return choose_target(candidates, self.target_keywords, self.excluded_keywords)


def choose_target(
    candidates: Sequence[tuple[Any, str, str]],
    target_keywords: Sequence[str],
    excluded_keywords: Sequence[str],
) -> Any:
    """Pick a page from ``(page, url, title)`` candidates.

    Preference: keyword match without exclusions, then any keyword match,
    then the first page.
    """

    def matches(url: str, title: str) -> bool:
        return any(k in url or k in title for k in target_keywords)

    def excluded(url: str, title: str) -> bool:
        return any(k in url or k in title for k in excluded_keywords)

    for page, url, title in candidates:
        if matches(url, title) and not excluded(url, title):
            return page
    for page, url, title in candidates:
        if matches(url, title):
            return page
    return candidates[0][0] if candidates else None
