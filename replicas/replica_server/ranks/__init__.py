"""
Rank engine for organization roles.

Keeps every organization's role ranks a dense permutation of 0..n-1 under
insert, move, delete and bulk reorder.
"""

from .role_ranks import Role, RoleAttrs, RoleRanks, plan_reorder

__all__ = ["Role", "RoleAttrs", "RoleRanks", "plan_reorder"]
