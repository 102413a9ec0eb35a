"""Outbound notifications for outage transitions."""

from healthwatch.notifications.manager import NotificationManager, NotifyLevel, format_duration

__all__ = ["NotificationManager", "NotifyLevel", "format_duration"]
