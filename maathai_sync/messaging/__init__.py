"""
Messaging module for the Maathai sync engine.

This module provides the shared vocabulary of the sync engine: the error
taxonomy, configuration, and the conversation/message/event data model.
"""

from .config import SyncConfig, load_config
from .exceptions import (
    MessagingError,
    NetworkError,
    AuthenticationError,
    MessageValidationError,
    MessageTooLargeError,
    AttachmentError,
    NotFoundError,
    ServiceUnavailableError,
)
from .models import (
    CommandResult,
    Conversation,
    ConversationUpserted,
    Message,
    MessageDraft,
    MessageRead,
    MessageReceived,
    MessageSummary,
    PresenceChanged,
)

__all__ = [
    # Configuration
    'SyncConfig',
    'load_config',

    # Data model
    'CommandResult',
    'Conversation',
    'ConversationUpserted',
    'Message',
    'MessageDraft',
    'MessageRead',
    'MessageReceived',
    'MessageSummary',
    'PresenceChanged',

    # Exceptions
    'MessagingError',
    'NetworkError',
    'AuthenticationError',
    'MessageValidationError',
    'MessageTooLargeError',
    'AttachmentError',
    'NotFoundError',
    'ServiceUnavailableError',
]
