"""
Sync module for the Maathai sync engine.

This module provides the event normalizer, the conversation store and the
controller that keeps the store in sync with the backend.
"""

from .backoff import ReconnectBackoff
from .controller import ConnectionState, SyncController
from .normalizer import normalize
from .store import ConversationStore

__all__ = [
    'ReconnectBackoff',
    'ConnectionState',
    'SyncController',
    'normalize',
    'ConversationStore',
]
