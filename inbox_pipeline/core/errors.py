"""
Exception hierarchy for the intake pipeline.
"""


class PipelineError(Exception):
    """Base class for pipeline errors."""


class PermanentTaskError(PipelineError):
    """A task can never succeed (missing message, missing account). Not retried."""


class IllegalTransitionError(PipelineError):
    """A status write asked for an edge the state machine does not allow."""

    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Illegal status transition {current} -> {target}")


class MailboxError(PipelineError):
    """Transient failure talking to the mailbox."""


class CursorRejectedError(MailboxError):
    """The mailbox no longer accepts the stored sync cursor."""


class CollaboratorError(PipelineError):
    """Transport failure talking to the classifier service."""
