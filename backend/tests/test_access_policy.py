import pytest
from sqlalchemy import select

from auth import (
    PERMISSION_ROLES,
    AuthenticatedUser,
    apply_branch_scope,
    authorize,
    branch_scope,
    can_access_branch,
    ensure_branch_access,
    ensure_branch_membership,
    ensure_role_ceiling,
    level_of,
    max_level,
)
from exceptions import AccessDenied, NotFound
from models import JobOrder, Permission, UserRole


def make_user(roles, branch_ids=(), user_id=1):
    return AuthenticatedUser(
        id=user_id,
        email="staff@example.com",
        full_name="Staff",
        roles=frozenset(roles),
        branch_ids=frozenset(branch_ids),
        primary_branch_id=next(iter(branch_ids), None),
    )


class TestRoleLevels:
    def test_levels_are_totally_ordered(self):
        ordered = sorted(UserRole, key=level_of)
        assert ordered == [UserRole.T, UserRole.R, UserRole.JS, UserRole.POC, UserRole.HM]

    def test_max_level(self):
        assert max_level([UserRole.R, UserRole.POC]) == 4
        assert max_level([]) == 0

    def test_every_permission_is_mapped(self):
        assert set(PERMISSION_ROLES) == set(Permission)


class TestAuthorize:
    def test_role_membership(self):
        receptionist = make_user([UserRole.R], [1])
        assert authorize(receptionist, PERMISSION_ROLES[Permission.RECORD_APPROVAL])
        assert not authorize(receptionist, PERMISSION_ROLES[Permission.VIEW_AUDIT_LOGS])

    def test_approval_recorders_differ_from_order_managers(self):
        junior = make_user([UserRole.JS], [1])
        assert authorize(junior, PERMISSION_ROLES[Permission.CREATE_JOB_ORDER])
        assert not authorize(junior, PERMISSION_ROLES[Permission.RECORD_APPROVAL])


class TestBranchScope:
    def test_head_manager_sees_all_branches(self):
        hm = make_user([UserRole.HM])
        assert branch_scope(hm) is None
        assert can_access_branch(hm, 999)

    def test_staff_limited_to_assignments(self):
        staff = make_user([UserRole.POC], [1, 2])
        assert branch_scope(staff) == frozenset({1, 2})
        assert can_access_branch(staff, 2)
        assert not can_access_branch(staff, 3)
        assert not can_access_branch(staff, None)

    def test_out_of_scope_entity_reads_as_missing(self):
        staff = make_user([UserRole.R], [1])
        with pytest.raises(NotFound, match="Job order not found"):
            ensure_branch_access(staff, 2, "Job order")

    def test_out_of_scope_write_is_denied(self):
        staff = make_user([UserRole.R], [1])
        with pytest.raises(AccessDenied):
            ensure_branch_membership(staff, 2)

    def test_apply_branch_scope_filters_query(self):
        staff = make_user([UserRole.R], [3, 1])
        query = apply_branch_scope(select(JobOrder), JobOrder.branch_id, staff)
        assert "branch_id IN" in str(query)

    def test_apply_branch_scope_leaves_hm_query_untouched(self):
        query = select(JobOrder)
        assert apply_branch_scope(query, JobOrder.branch_id, make_user([UserRole.HM])) is query


class TestRoleCeiling:
    def test_can_manage_roles_up_to_own_level(self):
        poc = make_user([UserRole.POC], [1])
        ensure_role_ceiling(poc, [UserRole.T, UserRole.R, UserRole.JS, UserRole.POC])

    def test_cannot_grant_above_own_level(self):
        poc = make_user([UserRole.POC], [1])
        with pytest.raises(AccessDenied, match="HM"):
            ensure_role_ceiling(poc, [UserRole.HM])

    def test_highest_role_sets_the_ceiling(self):
        multi = make_user([UserRole.T, UserRole.JS], [1])
        ensure_role_ceiling(multi, [UserRole.R])
        with pytest.raises(AccessDenied):
            ensure_role_ceiling(multi, [UserRole.POC])
