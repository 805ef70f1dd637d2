"""
Loopcast domain errors.

Command-level problems are raised synchronously to the caller. Encoder
process failures never surface here; they are absorbed into the
``error`` stream state by the engine.
"""
from __future__ import annotations


class LoopcastError(Exception):
    """Base class for all Loopcast errors."""


class PreconditionError(LoopcastError):
    """A command cannot run in the current state (nothing selected, no profile...)."""


class NotFoundError(LoopcastError):
    """A referenced record does not exist."""


class UploadRejected(LoopcastError):
    """An uploaded file failed type or size validation."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code
