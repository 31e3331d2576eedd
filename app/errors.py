"""Exceptions raised by the data-access layer and domain services.

Store errors (``google.api_core.exceptions`` and ``OSError``) are not wrapped;
they propagate from mutations as-is.
"""


class PortalError(Exception):
    """Base class for all portal errors."""


class ValidationError(PortalError, ValueError):
    """A field failed validation on create or update."""

    def __init__(self, field, message):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class OfferNotValidError(PortalError):
    """An offer was used while inactive, outside its window, or exhausted."""

    def __init__(self, offer_id):
        super().__init__(f"Offer {offer_id} is not valid")
        self.offer_id = offer_id


class AttemptLimitError(PortalError):
    """A user has no quiz attempts left."""

    def __init__(self, quiz_id, max_attempts):
        super().__init__(f"Maximum attempts ({max_attempts}) reached for quiz {quiz_id}")
        self.quiz_id = quiz_id
        self.max_attempts = max_attempts


class UnboundDocumentError(PortalError):
    """An instance method needing storage was called on a detached document."""
