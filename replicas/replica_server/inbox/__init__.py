"""Inbox of recorded broker events."""

from .gateway import InboxEvent, InboxGateway, InboxStatus, event_identity

__all__ = ["InboxEvent", "InboxGateway", "InboxStatus", "event_identity"]
