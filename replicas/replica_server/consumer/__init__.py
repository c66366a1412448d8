"""
Consumer module for the replica - broker records to replica writes.

Invariants:
    - One task per topic family
    - Offsets are committed only after the apply transaction committed
"""

from .loop import ConsumerGroup, HandleResult, TopicConsumer

__all__ = ["ConsumerGroup", "HandleResult", "TopicConsumer"]
