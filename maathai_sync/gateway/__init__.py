"""
Gateway module for the Maathai sync engine.

This module provides the Remote Data Gateway contract and its Supabase and
in-memory implementations, plus the media uploader used for attachments.
"""

from .base import RemoteDataGateway, SubscriptionRegistry, Topic
from .media import Attachment, MediaUploader
from .memory import InMemoryGateway
from .realtime import RealtimeSocket
from .supabase_gateway import SupabaseGateway

__all__ = [
    'RemoteDataGateway',
    'SubscriptionRegistry',
    'Topic',
    'Attachment',
    'MediaUploader',
    'InMemoryGateway',
    'RealtimeSocket',
    'SupabaseGateway',
]
