"""
Role-Based Access Control & Staff Module

Staff users (admins and loan officers), their permissions, and the Actor
identity passed to every write operation. Credentials and sessions are handled
by the surrounding application, not here.
"""

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from .audit import AuditEventType, AuditTrail
from .errors import NotFoundError, PermissionDenied, ValidationError
from .identifiers import EntityType, IdentifierGenerator
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


EMAIL_PATTERN = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'


class StaffRole(Enum):
    """Staff roles"""
    ADMIN = "Admin"
    LOAN_OFFICER = "Loan Officer"

    @classmethod
    def parse(cls, value) -> 'StaffRole':
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"unknown role {value!r}", field="role")


class Permission(Enum):
    """System permissions"""
    # Customer permissions
    REGISTER_CUSTOMER = "register_customer"
    VIEW_CUSTOMER = "view_customer"
    MODIFY_CUSTOMER = "modify_customer"
    APPROVE_CUSTOMER = "approve_customer"

    # Loan permissions
    CREATE_LOAN = "create_loan"
    VIEW_LOAN = "view_loan"
    MODIFY_LOAN = "modify_loan"
    DELETE_LOAN = "delete_loan"
    APPROVE_LOAN = "approve_loan"
    DISBURSE_LOAN = "disburse_loan"
    DEFAULT_LOAN = "default_loan"

    # Repayment permissions
    RECORD_REPAYMENT = "record_repayment"

    # Report permissions
    VIEW_REPORTS = "view_reports"

    # Admin permissions
    MANAGE_STAFF = "manage_staff"
    VIEW_ALL_RECORDS = "view_all_records"


_OFFICER_PERMISSIONS = frozenset({
    Permission.REGISTER_CUSTOMER,
    Permission.VIEW_CUSTOMER,
    Permission.MODIFY_CUSTOMER,
    Permission.CREATE_LOAN,
    Permission.VIEW_LOAN,
    Permission.MODIFY_LOAN,
    Permission.RECORD_REPAYMENT,
})

ROLE_PERMISSIONS: Dict[StaffRole, FrozenSet[Permission]] = {
    StaffRole.LOAN_OFFICER: _OFFICER_PERMISSIONS,
    StaffRole.ADMIN: frozenset(Permission),
}


@dataclass(frozen=True)
class Actor:
    """The staff member on whose behalf an operation runs"""
    user_id: str
    role: StaffRole

    def has_permission(self, permission: Permission) -> bool:
        return permission in ROLE_PERMISSIONS[self.role]


def require_permission(actor: Optional[Actor], permission: Permission) -> None:
    """Raise PermissionDenied unless the actor's role grants the permission"""
    if actor is None or not actor.has_permission(permission):
        raise PermissionDenied(permission.value, actor.role.value if actor else None)


def can_access(actor: Actor, owner_id: Optional[str]) -> bool:
    """Loan officers only see records they created; admins see everything"""
    return actor.has_permission(Permission.VIEW_ALL_RECORDS) or owner_id == actor.user_id


@dataclass
class StaffUser(StorageRecord):
    """Loan officer or admin"""
    staff_id: str
    first_name: str
    last_name: str
    email: str
    role: StaffRole = StaffRole.LOAN_OFFICER
    phone_number: Optional[str] = None
    branch: str = "Main Office"
    is_active: bool = True

    def __post_init__(self):
        if not re.match(EMAIL_PATTERN, self.email):
            raise ValidationError("invalid email format", field="email")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def as_actor(self) -> Actor:
        return Actor(user_id=self.id, role=self.role)

    @classmethod
    def from_dict(cls, data: Dict) -> 'StaffUser':
        data = dict(data)
        data['role'] = StaffRole(data['role'])
        return super().from_dict(data)


class StaffManager:
    """
    Manages staff users and resolves them to actors
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        identifiers: IdentifierGenerator
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.identifiers = identifiers
        self.table_name = EntityType.STAFF.table
        self.logger = get_logger("microlend.staff")

    def create_staff(
        self,
        first_name: str,
        last_name: str,
        email: str,
        role: StaffRole = StaffRole.LOAN_OFFICER,
        phone_number: Optional[str] = None,
        branch: str = "Main Office",
        created_by: Optional[Actor] = None
    ) -> StaffUser:
        """
        Create a staff user

        The very first staff user may be created without an actor (bootstrap
        admin); afterwards MANAGE_STAFF is required.
        """
        if created_by is not None or self.storage.count(self.table_name) > 0:
            require_permission(created_by, Permission.MANAGE_STAFF)

        email = email.strip().lower()
        if self.storage.find(self.table_name, {"email": email}):
            raise ValidationError(f"{email} is already registered", field="email")

        now = datetime.now(timezone.utc)
        staff = StaffUser(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            staff_id="",  # Issued once the record has validated
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            email=email,
            role=role,
            phone_number=phone_number,
            branch=branch
        )
        staff.staff_id = self.identifiers.next(EntityType.STAFF)
        self.storage.save(self.table_name, staff.id, staff.to_dict())

        user_id = created_by.user_id if created_by else None
        self.audit_trail.log_event(
            event_type=AuditEventType.STAFF_CREATED,
            entity_type="staff",
            entity_id=staff.id,
            metadata={"staff_id": staff.staff_id, "role": role.value},
            user_id=user_id
        )
        log_action(
            self.logger, "info", f"Staff user created: {staff.staff_id}",
            user_id=user_id, action="create_staff", resource=f"staff:{staff.staff_id}",
            extra={"role": role.value}
        )
        return staff

    def get_staff(self, user_id: str) -> Optional[StaffUser]:
        """Get staff user by internal ID"""
        data = self.storage.load(self.table_name, user_id)
        return StaffUser.from_dict(data) if data else None

    def get_by_staff_id(self, staff_id: str) -> Optional[StaffUser]:
        """Get staff user by STAFF#### identifier"""
        found = self.storage.find(self.table_name, {"staff_id": staff_id})
        return StaffUser.from_dict(found[0]) if found else None

    def list_staff(
        self,
        role: Optional[StaffRole] = None,
        is_active: Optional[bool] = None
    ) -> List[StaffUser]:
        """List staff users, optionally filtered"""
        filters = {}
        if role is not None:
            filters["role"] = role.value
        if is_active is not None:
            filters["is_active"] = is_active
        staff = [StaffUser.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        staff.sort(key=lambda s: s.staff_id)
        return staff

    def deactivate_staff(self, user_id: str, actor: Actor) -> StaffUser:
        """Deactivate a staff user; admins cannot deactivate themselves"""
        return self._set_active(user_id, actor, False)

    def reactivate_staff(self, user_id: str, actor: Actor) -> StaffUser:
        """Let a deactivated staff user act again"""
        return self._set_active(user_id, actor, True)

    def _set_active(self, user_id: str, actor: Actor, active: bool) -> StaffUser:
        require_permission(actor, Permission.MANAGE_STAFF)
        staff = self.get_staff(user_id) or self.get_by_staff_id(user_id)
        if not staff:
            raise NotFoundError("staff", user_id)
        if not active and staff.id == actor.user_id:
            raise ValidationError("you cannot deactivate your own account", field="staff_id")

        staff.is_active = active
        staff.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, staff.id, staff.to_dict())

        event_type = AuditEventType.STAFF_REACTIVATED if active else AuditEventType.STAFF_DEACTIVATED
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="staff",
            entity_id=staff.id,
            metadata={"staff_id": staff.staff_id},
            user_id=actor.user_id
        )
        log_action(
            self.logger, "info", f"Staff user {staff.staff_id} {'activated' if active else 'deactivated'}",
            user_id=actor.user_id, action="reactivate_staff" if active else "deactivate_staff",
            resource=f"staff:{staff.staff_id}"
        )
        return staff

    def actor_for(self, user_id: str) -> Actor:
        """Resolve an active staff user (internal ID or staff ID) to an Actor"""
        staff = self.get_staff(user_id) or self.get_by_staff_id(user_id)
        if not staff:
            raise NotFoundError("staff", user_id)
        if not staff.is_active:
            raise PermissionDenied("act", staff.role.value)
        return staff.as_actor()
