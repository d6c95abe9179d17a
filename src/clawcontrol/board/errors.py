"""Errors raised by the task board.

The HTTP bridge turns these into status codes:
ValidationError -> 400, NotFoundError -> 404, PersistenceError -> 500.
DeliveryError stays inside the notification dispatcher.
"""


class BoardError(Exception):
    """Base class for task board errors."""


class ValidationError(BoardError):
    """Input is missing a required field or has the wrong shape."""


class NotFoundError(BoardError):
    """No record exists for the given ID."""

    def __init__(self, kind: str, record_id: str):
        super().__init__(f"{kind} not found: {record_id}")
        self.kind = kind
        self.record_id = record_id


class PersistenceError(BoardError):
    """Writing a collection to disk failed. The previous file is kept."""


class DeliveryError(BoardError):
    """Pushing a notification to an agent endpoint failed."""
