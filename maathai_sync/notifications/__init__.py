from .feed import Notification, NotificationFeed

__all__ = ['Notification', 'NotificationFeed']
