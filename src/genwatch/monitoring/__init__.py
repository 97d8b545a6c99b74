"""Completion detection for remotely observed generations."""

from genwatch.monitoring.monitor import ResponseMonitor, summarize_diagnostics
from genwatch.monitoring.provider import RequestFinished, RequestStarted, SignalProvider
from genwatch.monitoring.session import MonitorSession

__all__ = [
    "MonitorSession",
    "RequestFinished",
    "RequestStarted",
    "ResponseMonitor",
    "SignalProvider",
    "summarize_diagnostics",
]
