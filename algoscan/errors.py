from __future__ import annotations

from typing import Any


class AlgoscanError(Exception):
    """Base class for errors that abort a run or a single request."""


class ParseError(AlgoscanError, ValueError):
    """Malformed AlgoQL text or leg template."""


class ConfigError(AlgoscanError, ValueError):
    """Invalid run configuration."""


class StoreError(AlgoscanError, RuntimeError):
    """The metric store could not be read.

    ``context`` carries whatever identifies the failing read (symbol, exchange,
    candidate) so the message logged at the top of the run is actionable.
    """

    def __init__(self, message: str, **context: Any) -> None:
        self.context = {k: v for k, v in context.items() if v is not None}
        if self.context:
            detail = ", ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
            message = f"{message} ({detail})"
        super().__init__(message)


class ReportWriteError(AlgoscanError, RuntimeError):
    """The report file could not be written."""
