"""
Unit tests for reorder planning.

plan_reorder is pure, so these tests need no store.
"""

import pytest

from replicas.replica_server.errors import (
    ForeignRoleError,
    RankConflictError,
    RankOutOfRangeError,
)
from replicas.replica_server.ranks.role_ranks import plan_reorder


class TestPlanReorder:
    """Tests for plan_reorder."""

    def test_move_last_to_front(self):
        """{D: 0} over [A, B, C, D] gives [D, A, B, C]."""
        changes = plan_reorder(["A", "B", "C", "D"], {"D": 0})

        assert changes == {"D": 0, "A": 1, "B": 2, "C": 3}

    def test_only_changed_roles_returned(self):
        """Roles that keep their rank are left out."""
        changes = plan_reorder(["A", "B", "C", "D"], {"B": 2})

        assert changes == {"C": 1, "B": 2}

    def test_unassigned_fill_free_ranks_in_order(self):
        changes = plan_reorder(["A", "B", "C", "D", "E"], {"E": 1, "A": 3})

        target = {"A": 0, "B": 1, "C": 2, "D": 3, "E": 4}
        target.update(changes)
        assert sorted(target, key=target.get) == ["B", "E", "C", "A", "D"]

    def test_identity_assignment(self):
        assert plan_reorder(["A", "B"], {"A": 0, "B": 1}) == {}

    def test_empty_assignment(self):
        assert plan_reorder(["A", "B"], {}) == {}

    def test_conflict(self):
        with pytest.raises(RankConflictError) as exc_info:
            plan_reorder(["A", "B", "C"], {"A": 1, "C": 1})

        assert exc_info.value.role_ids == ("A", "C")

    def test_out_of_range(self):
        with pytest.raises(RankOutOfRangeError) as exc_info:
            plan_reorder(["A", "B"], {"A": 2})

        assert (exc_info.value.low, exc_info.value.high) == (0, 1)

    def test_negative_rank(self):
        with pytest.raises(RankOutOfRangeError):
            plan_reorder(["A", "B"], {"A": -1})

    def test_foreign_role(self):
        with pytest.raises(ForeignRoleError) as exc_info:
            plan_reorder(["A", "B"], {"Z": 0}, organization_id="org-1")

        assert exc_info.value.organization_id == "org-1"

    def test_result_is_permutation(self):
        current = ["A", "B", "C", "D", "E", "F"]
        changes = plan_reorder(current, {"F": 0, "A": 5, "C": 2})

        ranks = {role_id: rank for rank, role_id in enumerate(current)}
        ranks.update(changes)
        assert sorted(ranks.values()) == list(range(len(current)))
