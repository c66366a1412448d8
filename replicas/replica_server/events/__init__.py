"""
Event contracts and the processor that applies them.

contracts.py is imported by config.py; keep this package's imports limited
to contracts so configuration loads without the store.
"""

from .contracts import ALL_TOPICS, EVENT_TYPE_HEADER, EventType, parse_payload

__all__ = ["ALL_TOPICS", "EVENT_TYPE_HEADER", "EventType", "parse_payload"]
