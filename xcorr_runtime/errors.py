"""Runtime error taxonomy.

Configuration errors live in xcorr_compiler.config (ConfigError) since
they are detected before any runtime object exists. Everything raised
after that derives from CorrelatorError and names the pipeline step and
device operation it came from.
"""

from __future__ import annotations


class CorrelatorError(RuntimeError):
    """Fatal correlator failure with step/operation context."""

    def __init__(self, message: str, step: str | None = None, operation: str | None = None):
        self.step = step
        self.operation = operation
        super().__init__(message)

    def __str__(self) -> str:
        where = "/".join(p for p in (self.step, self.operation) if p)
        msg = super().__str__()
        return f"[{where}] {msg}" if where else msg


class ResourceAllocationError(CorrelatorError):
    """Buffer or plan creation failed. Not retried."""


class SequencingError(CorrelatorError):
    """A step was invoked before its prerequisite (caller bug)."""


class DeviceRuntimeError(CorrelatorError):
    """The device reported a failure while enqueueing or executing work."""
