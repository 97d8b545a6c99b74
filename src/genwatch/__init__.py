"""genwatch - infer when a remotely controlled assistant has finished answering."""

from importlib.metadata import PackageNotFoundError, version

from genwatch.schemas import (
    CompletionReason,
    InspectionScripts,
    MonitorConfig,
    ResponsePhase,
    StopRequestResult,
)

__all__ = [
    "CompletionReason",
    "InspectionScripts",
    "MonitorConfig",
    "ResponsePhase",
    "StopRequestResult",
]

try:
    __version__ = version("genwatch")
except PackageNotFoundError:
    __version__ = "0.0.0"
