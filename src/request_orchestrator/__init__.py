"""request-orchestrator: Resilient orchestration of outbound requests."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("request-orchestrator")
except PackageNotFoundError:
    __version__ = "0.1.0"

__all__ = ["__version__"]
