"""Exceptions raised by the dunning outreach agent."""


class DunningError(RuntimeError):
    """Base class for dunning agent failures."""


class NotFoundError(DunningError):
    """A campaign, invoice, customer or task does not exist."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class ExternalSendFailure(DunningError):
    """The email transport rejected or failed to deliver a message."""


class ClassificationFailure(DunningError):
    """The reply classifier failed or returned an unusable result."""


class TaskStateError(DunningError):
    """A scheduler transition was attempted from the wrong status."""

    def __init__(self, task_id: str, expected: str, action: str):
        super().__init__(f"Cannot {action} task {task_id}: not in status {expected}")
        self.task_id = task_id
        self.expected = expected
        self.action = action


class InvalidTaskError(DunningError):
    """A task row is missing required references or carries a bad payload."""


class UnrecordedSendError(DunningError):
    """The transport accepted a message but its EmailLog could not be written.

    Never retried: a retry would deliver the message a second time.
    """
