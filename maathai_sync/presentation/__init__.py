"""
Presentation module for the Maathai sync engine.

This module exposes read-only view projections of the conversation store
and the user commands the UI issues against it.
"""

from .adapter import PresentationAdapter
from .views import ConversationSummaryView, MessageView, ThreadView, ViewState

__all__ = [
    'PresentationAdapter',
    'ConversationSummaryView',
    'MessageView',
    'ThreadView',
    'ViewState',
]
