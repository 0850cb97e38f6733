"""
Errors
======
Exception taxonomy shared by the staging store, workflow engine and dispatch queue.

    EjendomError
      ValidationError          bad input, never retried
        InvalidTransition      illegal stage / outreach status change
      ConflictError            duplicate canonical key
        AlreadyRunning         a workflow run for the id is active
      NotFoundError            unknown id
      TransientCollaboratorError   network / API failure, retried with a budget
      StepFailure
        MandatoryStepFailure   aborts the run
        OptionalStepFailure    recorded, run continues
      RateLimitExceeded        deferral, the message stays queued
"""

from typing import Optional


class EjendomError(Exception):
    """Base class for all errors raised by ejendom_agent."""


class ValidationError(EjendomError):
    pass


class InvalidTransition(ValidationError):

    def __init__(self, current: str, requested: str, reason: str = ""):
        self.current = current
        self.requested = requested
        msg = f"Invalid transition: {current} -> {requested}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class ConflictError(EjendomError):

    def __init__(self, message: str, existing_id: Optional[str] = None):
        super().__init__(message)
        self.existing_id = existing_id


class AlreadyRunning(ConflictError):

    def __init__(self, property_id: str):
        super().__init__(f"A workflow run is already active for {property_id}", property_id)
        self.property_id = property_id


class NotFoundError(EjendomError):

    def __init__(self, kind: str, item_id: str):
        super().__init__(f"{kind} '{item_id}' not found")
        self.kind = kind
        self.item_id = item_id


class TransientCollaboratorError(EjendomError):
    """A research, LLM or mail collaborator failed in a way worth retrying."""

    def __init__(self, collaborator: str, message: str):
        super().__init__(f"{collaborator}: {message}")
        self.collaborator = collaborator


class StepFailure(EjendomError):

    def __init__(self, step_id: str, cause: BaseException):
        super().__init__(f"Step '{step_id}' failed: {cause}")
        self.step_id = step_id
        self.cause = cause


class MandatoryStepFailure(StepFailure):
    pass


class OptionalStepFailure(StepFailure):
    pass


class RateLimitExceeded(EjendomError):
    """Not a failure: the hourly window is full and sending is deferred."""

    def __init__(self, limit: int, retry_after: float = 0.0):
        super().__init__(f"Rate limit of {limit}/hour reached, retry in {retry_after:.0f}s")
        self.limit = limit
        self.retry_after = retry_after
