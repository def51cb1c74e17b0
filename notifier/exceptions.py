"""
Error taxonomy for the notification engine.

Per-message failures (FormatError, SendFailure) are recorded on the message
and never abort a batch. MessageNotFound is a benign webhook correlation miss.
"""

from typing import Optional


class NotifierError(Exception):
    """Base exception for all notifier errors."""

    pass


class MalformedRecord(NotifierError):
    """Raised when an input line does not carry the required fields."""

    def __init__(self, line_number: int, line: str, reason: str = "missing fields") -> None:
        super().__init__(f"Malformed record at line {line_number}: {reason}")
        self.line_number = line_number
        self.line = line
        self.reason = reason


class FormatError(NotifierError):
    """Raised when a stored message cannot be turned into a template invocation."""

    def __init__(self, message_id: int, reason: str) -> None:
        super().__init__(f"Cannot format message {message_id}: {reason}")
        self.message_id = message_id
        self.reason = reason


class SendFailure(NotifierError):
    """Raised when the messaging provider rejects a send or the transport fails."""

    def __init__(self, detail: str, status_code: Optional[int] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


class InvalidTransition(NotifierError):
    """Raised when a delivery outcome is written to a message that is not PENDING."""

    def __init__(self, message_id: int, current_status: Optional[str] = None) -> None:
        super().__init__(
            f"Message {message_id} is not PENDING (current status: {current_status})"
        )
        self.message_id = message_id
        self.current_status = current_status


class MessageNotFound(NotifierError):
    """Raised when no sent message carries the given provider message id."""

    def __init__(self, provider_message_id: str) -> None:
        super().__init__(f"No sent message with provider id {provider_message_id}")
        self.provider_message_id = provider_message_id


class BatchNotFound(NotifierError):
    """Raised when a batch id does not exist."""

    def __init__(self, batch_id: int) -> None:
        super().__init__(f"Batch {batch_id} not found")
        self.batch_id = batch_id
