"""
Replica Server - local replica of organization state fed by Kafka.

This package keeps a SQLite replica of organizations, members, invites,
profiles and roles, built from the upstream event streams:
- One consumer task per topic family (organizations, members, invites,
  roles, profiles, accounts)
- An inbox table that records every accepted message exactly once
- A rank engine that keeps every organization's role ranks dense

Architecture:
    ┌──────────────┐     ┌───────────────┐     ┌────────────────┐
    │ Kafka topics │────▶│ TopicConsumer │────▶│ InboxGateway   │
    │ (*.v1)       │     │ (per family)  │     │ (inbox_events) │
    └──────────────┘     └───────┬───────┘     └────────────────┘
                                 │ same transaction
                                 ▼
                         ┌────────────────┐     ┌────────────────┐
                         │ EventProcessor │────▶│ RoleRanks /    │
                         │                │     │ EntityStore    │
                         └────────────────┘     └───────┬────────┘
                                                        ▼
                                                ┌────────────────┐
                                                │ SQLite replica │
                                                └────────────────┘

Invariants:
    - The event streams are the source of truth; the replica can be rebuilt
      by replaying them
    - Inbox status and domain effect of a message commit atomically
    - Role ranks of an organization always form 0..n-1
    - Head roles hold every permission and outlive nothing but their
      organization

How to change safely:
    - New event types need a contract, a handler and a test
    - Schema changes must be additive
"""

from ._version import __version__

__all__ = ["__version__"]
