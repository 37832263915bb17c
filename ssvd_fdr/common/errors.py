"""Exception types raised across the SSVD/eFDR package.

Numerical degeneracy (a collapsed singular vector) is a valid algorithmic
outcome and has no exception type here.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SsvdFdrError(Exception):
    """Base class for all package errors."""

    kind = "SsvdFdrError"


class InvalidInput(SsvdFdrError, ValueError):
    """Malformed or empty matrix, or parameters outside their domain."""

    kind = "InvalidInput"


class DimensionMismatch(InvalidInput):
    """Operands of a matrix product have incompatible shapes."""

    kind = "DimensionMismatch"


class AnalysisCancelled(SsvdFdrError):
    """The caller's cancellation signal was observed.

    Attributes
    ----------
    partial:
        Whatever the interrupted operation had accumulated, in the same
        dictionary layout as its result, or ``None``.
    """

    kind = "Cancelled"

    def __init__(self, message: str = "Analysis cancelled by user", partial: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.partial = partial


class UnknownCommand(SsvdFdrError, KeyError):
    """The worker received a message type it does not handle."""

    kind = "UnknownCommand"

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return str(self.args[0]) if self.args else ""
