"""Error taxonomy for Tunnel-Canvas.

Each class maps to one way a topology can fail on its way to the control
plane.  Validation and resolution problems are local and fixed by
editing the graph; preflight problems abort a whole submission cycle;
submission problems are isolated to a single node.
"""

from __future__ import annotations

from typing import Optional


class TopologyError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(TopologyError):
    """A proposed connection violates the connection rules."""

    def __init__(self, reason: str, source: Optional[str] = None, target: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.source = source
        self.target = target


class ResolutionError(TopologyError):
    """A client tunnel address could not be inferred from its server."""


class ConfigurationError(TopologyError):
    """A node references a missing master or an incomplete master config."""


class PreflightError(TopologyError):
    """The control API event stream was unreachable before submission."""


class ControlApiError(TopologyError):
    """The control API answered with a non-success status or was unreachable."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


class SubmissionError(TopologyError):
    """An individual instance-creation request failed."""

    def __init__(self, node_id: str, message: str):
        super().__init__(f"{node_id}: {message}")
        self.node_id = node_id
        self.message = message


class ConfirmationTimeout(TopologyError):
    """No tunnel handshake was observed before the listener deadline.

    Informational only: the instances may well be running.
    """
