"""
Envelope Hub - Workflow Errors

Every failure the sequential workflow can report to its caller. Nothing here is
retried by the workflow itself; the caller re-reads the envelope and decides.
"""

from typing import Dict, Optional


class WorkflowError(Exception):
    """Base exception for sequential workflow errors."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(WorkflowError):
    """Raised when an envelope or a stage number does not exist."""
    pass


class InvalidStateError(WorkflowError):
    """
    Raised when an event is fired against a stage or workflow that is not in
    the state the event requires (non-current stage, terminal workflow, unpaid
    fee, ...). Callers must re-read the envelope before trying again.
    """
    pass


class StageValidationError(InvalidStateError):
    """Raised when a stage array breaks the workflow invariants."""
    pass


class PersistenceError(WorkflowError):
    """Raised when the envelope store fails to read or write a record."""
    pass
