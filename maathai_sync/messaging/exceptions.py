"""
Custom exceptions for the messaging module.

This module defines the error taxonomy shared by the gateway, the store and
the presentation layer, so callers can tell transient failures apart from
session problems and caller mistakes.
"""


class MessagingError(Exception):
    """Base exception for all messaging-related errors."""
    pass


class NetworkError(MessagingError):
    """Raised on transport failures, timeouts and dropped realtime channels."""
    pass


class AuthenticationError(MessagingError):
    """Raised when the session is invalid or expired. Never retried."""
    pass


class MessageValidationError(MessagingError):
    """Raised when a command is malformed (empty message, bad arguments)."""
    pass


class MessageTooLargeError(MessageValidationError):
    """Raised when message content or an attachment exceeds size limits."""
    pass


class AttachmentError(MessageValidationError):
    """Raised when the media host rejects an attachment."""
    pass


class NotFoundError(MessagingError):
    """Raised when a referenced conversation or message no longer exists."""
    pass


class ServiceUnavailableError(MessagingError):
    """Raised when a backend service is not configured or not reachable at all."""
    pass


RETRYABLE_ERRORS = (NetworkError,)
