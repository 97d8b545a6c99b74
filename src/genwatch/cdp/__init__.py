"""CDP integration.

Attaches to a running Chromium-based application with Playwright and exposes
it as a signal provider for :class:`genwatch.monitoring.ResponseMonitor`.
"""

from genwatch.cdp.browser import DEFAULT_CDP_PORTS, CdpBrowser, choose_target
from genwatch.cdp.provider import PlaywrightSignalProvider

__all__ = [
    "DEFAULT_CDP_PORTS",
    "CdpBrowser",
    "PlaywrightSignalProvider",
    "choose_target",
]
