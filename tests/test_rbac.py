"""
Test suite for roles, permissions and staff management
"""

import pytest

from microlend.audit import AuditEventType
from microlend.errors import NotFoundError, PermissionDenied, ValidationError
from microlend.rbac import (
    Actor, Permission, ROLE_PERMISSIONS, StaffRole, can_access, require_permission
)


class TestPermissions:

    def test_admin_has_everything(self):
        assert ROLE_PERMISSIONS[StaffRole.ADMIN] == frozenset(Permission)

    def test_officer_permissions(self):
        officer = Actor("u1", StaffRole.LOAN_OFFICER)
        assert officer.has_permission(Permission.REGISTER_CUSTOMER)
        assert officer.has_permission(Permission.CREATE_LOAN)
        assert officer.has_permission(Permission.RECORD_REPAYMENT)
        for permission in (
            Permission.APPROVE_CUSTOMER, Permission.APPROVE_LOAN, Permission.DISBURSE_LOAN,
            Permission.DELETE_LOAN, Permission.VIEW_REPORTS, Permission.MANAGE_STAFF,
        ):
            assert not officer.has_permission(permission)

    def test_require_permission(self):
        require_permission(Actor("a1", StaffRole.ADMIN), Permission.APPROVE_LOAN)
        with pytest.raises(PermissionDenied) as exc_info:
            require_permission(Actor("u1", StaffRole.LOAN_OFFICER), Permission.APPROVE_LOAN)
        assert exc_info.value.role == "Loan Officer"
        with pytest.raises(PermissionDenied):
            require_permission(None, Permission.VIEW_LOAN)

    def test_can_access(self):
        officer = Actor("u1", StaffRole.LOAN_OFFICER)
        assert can_access(officer, "u1")
        assert not can_access(officer, "u2")
        assert can_access(Actor("a1", StaffRole.ADMIN), "u2")

    def test_parse_role(self):
        assert StaffRole.parse("Admin") == StaffRole.ADMIN
        with pytest.raises(ValidationError):
            StaffRole.parse("Teller")


class TestStaffManager:

    def test_bootstrap_admin_needs_no_actor(self, admin_user):
        assert admin_user.staff_id == "STAFF0001"
        assert admin_user.role == StaffRole.ADMIN
        assert admin_user.email == "ada@microlend.test"

    def test_second_staff_needs_manage_staff(self, system, admin_user, officer):
        with pytest.raises(PermissionDenied):
            system.staff_manager.create_staff("Eve", "Tembo", "eve@microlend.test")
        with pytest.raises(PermissionDenied):
            system.staff_manager.create_staff("Eve", "Tembo", "eve@microlend.test", created_by=officer)

    def test_duplicate_email_rejected(self, system, admin):
        with pytest.raises(ValidationError) as exc_info:
            system.staff_manager.create_staff("Ada", "Copy", "ADA@microlend.test", created_by=admin)
        assert exc_info.value.field == "email"

    def test_invalid_email_rejected(self, system, admin):
        with pytest.raises(ValidationError):
            system.staff_manager.create_staff("No", "Mail", "not-an-email", created_by=admin)

    def test_lookup_and_list(self, system, admin_user, officer_user):
        manager = system.staff_manager
        assert manager.get_staff(officer_user.id).staff_id == "STAFF0002"
        assert manager.get_by_staff_id("STAFF0002").id == officer_user.id
        assert [s.staff_id for s in manager.list_staff()] == ["STAFF0001", "STAFF0002"]
        assert [s.staff_id for s in manager.list_staff(role=StaffRole.LOAN_OFFICER)] == ["STAFF0002"]

    def test_actor_for(self, system, officer_user):
        actor = system.staff_manager.actor_for("STAFF0002")
        assert actor == Actor(officer_user.id, StaffRole.LOAN_OFFICER)
        with pytest.raises(NotFoundError):
            system.staff_manager.actor_for("STAFF9999")

    def test_deactivated_staff_cannot_act(self, system, admin, officer_user):
        deactivated = system.staff_manager.deactivate_staff(officer_user.id, admin)
        assert not deactivated.is_active
        assert system.staff_manager.list_staff(is_active=True)[0].role == StaffRole.ADMIN
        with pytest.raises(PermissionDenied):
            system.staff_manager.actor_for(officer_user.id)

    def test_reactivate_staff(self, system, admin, officer_user):
        system.staff_manager.deactivate_staff(officer_user.id, admin)
        reactivated = system.staff_manager.reactivate_staff("STAFF0002", admin)
        assert reactivated.is_active
        assert system.staff_manager.actor_for(officer_user.id).user_id == officer_user.id

        events = system.audit_trail.get_events_by_type(AuditEventType.STAFF_REACTIVATED)
        assert events[0].user_id == admin.user_id

    def test_cannot_deactivate_self(self, system, admin_user, admin):
        with pytest.raises(ValidationError):
            system.staff_manager.deactivate_staff(admin_user.id, admin)
        assert system.staff_manager.get_staff(admin_user.id).is_active

    def test_officer_cannot_toggle_staff(self, system, admin_user, officer):
        with pytest.raises(PermissionDenied):
            system.staff_manager.deactivate_staff(admin_user.id, officer)
        with pytest.raises(PermissionDenied):
            system.staff_manager.reactivate_staff(admin_user.id, officer)
        with pytest.raises(NotFoundError):
            system.staff_manager.reactivate_staff("STAFF9999", admin_user.as_actor())
