"""
Message status state machine.

Every status write in the pipeline goes through MessageStateMachine, which
checks the edge against TRANSITIONS and applies it as a compare-and-set so
that concurrent executions cannot both move the same record.
"""

from inbox_pipeline.core.database import Database
from inbox_pipeline.core.errors import IllegalTransitionError
from inbox_pipeline.core.logging import get_logger
from inbox_pipeline.core.models import MessageStatus

log = get_logger(__name__)

S = MessageStatus

TRANSITIONS: dict[MessageStatus, frozenset[MessageStatus]] = {
    S.PENDING: frozenset({S.PROCESSING, S.FAILED}),
    S.PROCESSING: frozenset({S.CLASSIFIED, S.COMPLETED, S.MANUAL_REVIEW, S.FAILED}),
    S.CLASSIFIED: frozenset({S.COMPLETED, S.FAILED}),
    S.FAILED: frozenset(),
    S.COMPLETED: frozenset(),
    S.MANUAL_REVIEW: frozenset(),
}

# Only taken by a retried job reopening its own failed message
RETRY_TRANSITIONS: dict[MessageStatus, frozenset[MessageStatus]] = {
    S.FAILED: frozenset({S.PROCESSING, S.CLASSIFIED}),
}

FAILABLE = [S.PENDING, S.PROCESSING, S.CLASSIFIED]


def is_allowed(current: MessageStatus, target: MessageStatus, retry: bool = False) -> bool:
    """Check whether current -> target is a legal edge."""
    if target in TRANSITIONS[current]:
        return True
    return retry and target in RETRY_TRANSITIONS.get(current, frozenset())


class MessageStateMachine:
    """Validated compare-and-set status updates for messages."""

    def __init__(self, db: Database):
        self.db = db

    def advance(
        self,
        message_id: int,
        expected: list[MessageStatus],
        target: MessageStatus,
        retry: bool = False,
        **fields,
    ) -> bool:
        """
        Move a message to `target` if it is currently in one of `expected`.

        Args:
            message_id: Message to update
            expected: Statuses the caller believes the message is in
            target: New status
            retry: Permit the FAILED retry edges
            **fields: Columns written in the same update (classification, ...)

        Returns:
            True if this call made the transition, False if the message had
            already moved on (another execution won)

        Raises:
            IllegalTransitionError: an expected -> target edge is not legal
        """
        for current in expected:
            if not is_allowed(current, target, retry=retry):
                raise IllegalTransitionError(current.value, target.value)

        changed = self.db.transition_message(message_id, expected, target, fields or None)
        if changed:
            log.info(
                "message_status_changed",
                message_id=message_id,
                status=target.value,
            )
        else:
            log.info(
                "message_transition_skipped",
                message_id=message_id,
                expected=[status.value for status in expected],
                target=target.value,
            )
        return changed

    def fail(self, message_id: int, error: str) -> bool:
        """Mark a non-terminal message FAILED. Returns False if it was terminal or already failed."""
        changed = self.db.transition_message(
            message_id,
            FAILABLE,
            S.FAILED,
            {"error_message": error[:1000]},
        )
        if changed:
            log.warning("message_failed", message_id=message_id, error=error)
        return changed
