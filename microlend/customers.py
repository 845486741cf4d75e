"""
Customer Management Module

Registers individual and group borrowers, runs the approval workflow, and
guards the rule that loans may only be issued to approved customers.
"""

from datetime import datetime, timezone, date
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Any, Union
from enum import Enum
import uuid
import re

from .storage import StorageInterface, StorageRecord, parse_datetime
from .audit import AuditTrail, AuditEventType
from .errors import (
    ConcurrencyConflict, InvalidStateTransition, NotFoundError, PermissionDenied, ValidationError
)
from .identifiers import EntityType, IdentifierGenerator
from .interest import LoanProduct
from .logging_config import get_logger, log_action
from .rbac import Actor, Permission, can_access, require_permission


class CustomerStatus(Enum):
    """Customer eligibility status"""
    PENDING = "Pending"      # Registered, awaiting review
    APPROVED = "Approved"    # Eligible for loans
    REJECTED = "Rejected"    # Turned down at review
    ACTIVE = "Active"        # Approved and currently borrowing
    INACTIVE = "Inactive"    # Deactivated by an admin


class CustomerType(Enum):
    INDIVIDUAL = "Individual"
    GROUP = "Group"


class IdType(Enum):
    """Accepted identification documents"""
    NATIONAL_ID = "National ID"
    PASSPORT = "Passport"
    DRIVER_LICENSE = "Driver License"
    VOTER_CARD = "Voter Card"


class Gender(Enum):
    MALE = "Male"
    FEMALE = "Female"
    OTHER = "Other"


def _parse_enum(enum_cls, value, field_name: str):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"unknown value {value!r}", field=field_name)


@dataclass
class Contact:
    """Group leader, union leader or union secretary"""
    name: str
    phone_number: Optional[str] = None
    address: Optional[str] = None


@dataclass
class GroupMember:
    """Member of a group borrower"""
    name: str
    phone_number: Optional[str] = None
    relationship: Optional[str] = None


@dataclass
class NextOfKin:
    """Next of kin; name, relationship and phone are required"""
    name: str
    relationship: str
    phone_number: str
    address: Optional[str] = None

    def __post_init__(self):
        for name in ("name", "relationship", "phone_number"):
            if not getattr(self, name) or not str(getattr(self, name)).strip():
                raise ValidationError("is required", field=f"next_of_kin.{name}")


@dataclass
class Customer(StorageRecord):
    """
    Borrower record (individual or group)
    """
    customer_id: str
    first_name: str
    last_name: str
    phone_number: str
    address: str
    preferred_loan_product: LoanProduct
    id_type: IdType
    id_number: str
    next_of_kin: NextOfKin
    email: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[Gender] = None
    customer_type: CustomerType = CustomerType.INDIVIDUAL
    group_name: Optional[str] = None
    group_leader: Optional[Contact] = None
    union_leader: Optional[Contact] = None
    union_secretary: Optional[Contact] = None
    group_members: List[GroupMember] = field(default_factory=list)
    business_name: Optional[str] = None
    business_type: Optional[str] = None
    business_address: Optional[str] = None
    status: CustomerStatus = CustomerStatus.PENDING
    created_by: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    rejected_at: Optional[datetime] = None
    notes: Optional[str] = None
    version: int = 0  # Bumped on every stored write

    def __post_init__(self):
        for name in ("first_name", "last_name", "phone_number", "address", "id_number"):
            if not getattr(self, name) or not str(getattr(self, name)).strip():
                raise ValidationError("is required", field=name)

        # Email is optional but must be well formed when given
        email_pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
        if self.email and not re.match(email_pattern, self.email):
            raise ValidationError("invalid email format", field="email")

        if self.customer_type == CustomerType.GROUP and not self.group_name:
            raise ValidationError("group customers need a group name", field="group_name")

    @property
    def full_name(self) -> str:
        """Get customer's full name"""
        return f"{self.first_name} {self.last_name}"

    @property
    def is_eligible_for_loans(self) -> bool:
        return self.status == CustomerStatus.APPROVED


# Set once by the system, never through update_customer
PROTECTED_FIELDS = frozenset({
    "id", "customer_id", "created_by", "created_at", "approved_by", "approved_at",
    "status", "rejection_reason", "rejected_at", "version",
})

CUSTOMER_TRANSITIONS = {
    CustomerStatus.PENDING: frozenset({CustomerStatus.APPROVED, CustomerStatus.REJECTED}),
    CustomerStatus.APPROVED: frozenset({CustomerStatus.INACTIVE}),
    CustomerStatus.ACTIVE: frozenset({CustomerStatus.INACTIVE}),
    CustomerStatus.INACTIVE: frozenset({CustomerStatus.APPROVED}),
    CustomerStatus.REJECTED: frozenset(),
}


class CustomerManager:
    """
    Manages customer registration, approval workflow and lookups
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
        self.table_name = EntityType.CUSTOMER.table
        self.logger = get_logger("microlend.customers")

    def register_customer(
        self,
        actor: Actor,
        first_name: str,
        last_name: str,
        phone_number: str,
        address: str,
        preferred_loan_product: Union[LoanProduct, str],
        id_type: Union[IdType, str],
        id_number: str,
        next_of_kin: Union[NextOfKin, Dict[str, Any]],
        customer_type: Union[CustomerType, str] = CustomerType.INDIVIDUAL,
        **details: Any
    ) -> Customer:
        """
        Register a new customer in Pending status

        Args:
            actor: Staff member registering the customer
            first_name, last_name, phone_number, address: Required contact details
            preferred_loan_product: Monthly, Weekly or Daily
            id_type, id_number: Identification document
            next_of_kin: NextOfKin or its dict form
            customer_type: Individual or Group
            **details: Optional fields (email, date_of_birth, gender, group_name,
                group_leader, union_leader, union_secretary, group_members,
                business_name, business_type, business_address, notes)

        Returns:
            Created Customer
        """
        require_permission(actor, Permission.REGISTER_CUSTOMER)
        unknown = set(details) - self._optional_fields()
        if unknown:
            raise ValidationError(f"unknown fields {sorted(unknown)}", field="customer")

        now = datetime.now(timezone.utc)
        fields = self._coerce_fields(dict(details))
        customer = Customer(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            customer_id="",  # Issued once the record has validated
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            phone_number=phone_number.strip(),
            address=address.strip(),
            preferred_loan_product=LoanProduct.parse(preferred_loan_product),
            id_type=_parse_enum(IdType, id_type, "id_type"),
            id_number=id_number.strip(),
            next_of_kin=self._to_next_of_kin(next_of_kin),
            customer_type=_parse_enum(CustomerType, customer_type, "customer_type"),
            created_by=actor.user_id,
            **fields
        )
        customer.customer_id = self.identifiers.next(EntityType.CUSTOMER)

        self._save_customer(customer)

        self.audit_trail.log_event(
            event_type=AuditEventType.CUSTOMER_REGISTERED,
            entity_type="customer",
            entity_id=customer.id,
            metadata={
                "customer_id": customer.customer_id,
                "full_name": customer.full_name,
                "customer_type": customer.customer_type.value
            },
            user_id=actor.user_id
        )
        log_action(
            self.logger, "info", f"Customer registered: {customer.customer_id}",
            user_id=actor.user_id, action="register_customer",
            resource=f"customer:{customer.customer_id}"
        )
        return customer

    def approve_customer(self, customer_id: str, actor: Actor) -> Customer:
        """Pending -> Approved (Admin)"""
        require_permission(actor, Permission.APPROVE_CUSTOMER)
        customer = self._require(customer_id)
        self._assert_transition(customer, CustomerStatus.APPROVED)

        now = datetime.now(timezone.utc)
        customer.status = CustomerStatus.APPROVED
        customer.approved_by = actor.user_id
        customer.approved_at = now
        customer.updated_at = now
        self._save_customer(customer)

        self._log_status(customer, AuditEventType.CUSTOMER_APPROVED, actor, "approve_customer")
        return customer

    def reject_customer(self, customer_id: str, actor: Actor, reason: str) -> Customer:
        """Pending -> Rejected (Admin); a reason is mandatory"""
        require_permission(actor, Permission.APPROVE_CUSTOMER)
        if not reason or not reason.strip():
            raise ValidationError("rejection reason is required", field="reason")
        customer = self._require(customer_id)
        self._assert_transition(customer, CustomerStatus.REJECTED)

        now = datetime.now(timezone.utc)
        customer.status = CustomerStatus.REJECTED
        customer.rejection_reason = reason.strip()
        customer.rejected_at = now
        customer.updated_at = now
        self._save_customer(customer)

        self._log_status(
            customer, AuditEventType.CUSTOMER_REJECTED, actor, "reject_customer",
            {"reason": customer.rejection_reason}
        )
        return customer

    def deactivate_customer(self, customer_id: str, actor: Actor, reason: Optional[str] = None) -> Customer:
        """Approved/Active -> Inactive (Admin)"""
        require_permission(actor, Permission.APPROVE_CUSTOMER)
        customer = self._require(customer_id)
        self._assert_transition(customer, CustomerStatus.INACTIVE)

        customer.status = CustomerStatus.INACTIVE
        customer.updated_at = datetime.now(timezone.utc)
        self._save_customer(customer)

        self._log_status(
            customer, AuditEventType.CUSTOMER_DEACTIVATED, actor, "deactivate_customer",
            {"reason": reason}
        )
        return customer

    def reactivate_customer(self, customer_id: str, actor: Actor) -> Customer:
        """Inactive -> Approved (Admin)"""
        require_permission(actor, Permission.APPROVE_CUSTOMER)
        customer = self._require(customer_id)
        self._assert_transition(customer, CustomerStatus.APPROVED)

        customer.status = CustomerStatus.APPROVED
        customer.updated_at = datetime.now(timezone.utc)
        self._save_customer(customer)

        self._log_status(customer, AuditEventType.CUSTOMER_REACTIVATED, actor, "reactivate_customer")
        return customer

    def update_customer(self, customer_id: str, actor: Actor, **changes: Any) -> Customer:
        """
        Update customer details

        Protected fields (identifiers, approval stamps, status) are rejected.
        Loan officers may only update customers they registered.
        """
        require_permission(actor, Permission.MODIFY_CUSTOMER)
        customer = self._require(customer_id)
        if not can_access(actor, customer.created_by):
            raise PermissionDenied("update another officer's customer", actor.role.value)

        protected = PROTECTED_FIELDS.intersection(changes)
        if protected:
            raise ValidationError(f"cannot be changed: {sorted(protected)}", field="customer")
        allowed = self._optional_fields() | {
            "first_name", "last_name", "phone_number", "address", "preferred_loan_product",
            "id_type", "id_number", "next_of_kin", "customer_type",
        }
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"unknown fields {sorted(unknown)}", field="customer")

        old_data = {name: getattr(customer, name) for name in changes}
        coerced = self._coerce_fields(dict(changes))
        # replace() re-runs __post_init__ validation over the merged record
        updated = replace(customer, updated_at=datetime.now(timezone.utc), **coerced)
        self._save_customer(updated)

        self.audit_trail.log_event(
            event_type=AuditEventType.CUSTOMER_UPDATED,
            entity_type="customer",
            entity_id=updated.id,
            metadata={
                "old_data": old_data,
                "new_data": {name: getattr(updated, name) for name in changes}
            },
            user_id=actor.user_id
        )
        return updated

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        """Get customer by internal ID"""
        customer_dict = self.storage.load(self.table_name, customer_id)
        if customer_dict:
            return self._customer_from_dict(customer_dict)
        return None

    def get_by_customer_id(self, customer_id: str) -> Optional[Customer]:
        """Get customer by CUST##### identifier"""
        customers = self.storage.find(self.table_name, {"customer_id": customer_id})
        if customers:
            return self._customer_from_dict(customers[0])
        return None

    def search_customers(
        self,
        actor: Actor,
        status: Optional[Union[CustomerStatus, str]] = None,
        customer_type: Optional[Union[CustomerType, str]] = None,
        preferred_loan_product: Optional[Union[LoanProduct, str]] = None,
        search: Optional[str] = None
    ) -> List[Customer]:
        """Search customers visible to the actor, newest first"""
        require_permission(actor, Permission.VIEW_CUSTOMER)
        filters: Dict[str, Any] = {}
        if status is not None:
            filters["status"] = _parse_enum(CustomerStatus, status, "status").value
        if customer_type is not None:
            filters["customer_type"] = _parse_enum(CustomerType, customer_type, "customer_type").value
        if preferred_loan_product is not None:
            filters["preferred_loan_product"] = LoanProduct.parse(preferred_loan_product).value
        if not actor.has_permission(Permission.VIEW_ALL_RECORDS):
            filters["created_by"] = actor.user_id

        customers = [self._customer_from_dict(d) for d in self.storage.find(self.table_name, filters)]

        if search:
            term = search.lower()
            customers = [
                c for c in customers
                if term in c.full_name.lower()
                or term in c.customer_id.lower()
                or term in c.phone_number.lower()
                or (c.email and term in c.email.lower())
            ]

        customers.sort(key=lambda c: c.created_at, reverse=True)
        return customers

    def customer_summary(self, actor: Actor) -> Dict[str, int]:
        """Customer counts by status and by type (Admin)"""
        require_permission(actor, Permission.VIEW_REPORTS)
        customers = self.storage.load_all(self.table_name)

        def count(field_name: str, value: str) -> int:
            return sum(1 for c in customers if c.get(field_name) == value)

        summary = {"total_customers": len(customers)}
        for status in CustomerStatus:
            summary[f"{status.value.lower()}_customers"] = count("status", status.value)
        for customer_type in CustomerType:
            summary[f"{customer_type.value.lower()}_customers"] = count("customer_type", customer_type.value)
        return summary

    def require_approved(self, customer_id: str) -> Customer:
        """
        Load a customer that may be lent to

        Raises:
            NotFoundError: no such customer
            ValidationError: customer is not Approved
        """
        customer = self._require(customer_id)
        if not customer.is_eligible_for_loans:
            raise ValidationError(
                f"customer {customer.customer_id} is {customer.status.value}, not Approved",
                field="customer_id"
            )
        return customer

    def _require(self, customer_id: str) -> Customer:
        customer = self.get_customer(customer_id) or self.get_by_customer_id(customer_id)
        if not customer:
            raise NotFoundError("customer", customer_id)
        return customer

    def _assert_transition(self, customer: Customer, target: CustomerStatus) -> None:
        if target not in CUSTOMER_TRANSITIONS[customer.status]:
            raise InvalidStateTransition("customer", customer.status.value, target.value)

    def _log_status(
        self,
        customer: Customer,
        event_type: AuditEventType,
        actor: Actor,
        action: str,
        extra: Optional[Dict[str, Any]] = None
    ) -> None:
        metadata = {"customer_id": customer.customer_id, "status": customer.status.value}
        metadata.update(extra or {})
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="customer",
            entity_id=customer.id,
            metadata=metadata,
            user_id=actor.user_id
        )
        log_action(
            self.logger, "info", f"Customer {customer.customer_id} is now {customer.status.value}",
            user_id=actor.user_id, action=action, resource=f"customer:{customer.customer_id}"
        )

    @staticmethod
    def _optional_fields() -> set:
        return {
            "email", "date_of_birth", "gender", "group_name", "group_leader",
            "union_leader", "union_secretary", "group_members", "business_name",
            "business_type", "business_address", "notes",
        }

    def _coerce_fields(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Turn API-style values (strings, dicts) into the dataclass field types"""
        if fields.get("email"):
            fields["email"] = fields["email"].strip().lower()
        if isinstance(fields.get("date_of_birth"), str):
            try:
                fields["date_of_birth"] = date.fromisoformat(fields["date_of_birth"])
            except ValueError:
                raise ValidationError("expected YYYY-MM-DD", field="date_of_birth")
        if "gender" in fields:
            fields["gender"] = _parse_enum(Gender, fields["gender"], "gender")
        if "preferred_loan_product" in fields:
            fields["preferred_loan_product"] = LoanProduct.parse(fields["preferred_loan_product"])
        if "id_type" in fields:
            fields["id_type"] = _parse_enum(IdType, fields["id_type"], "id_type")
        if "customer_type" in fields:
            fields["customer_type"] = _parse_enum(CustomerType, fields["customer_type"], "customer_type")
        if "next_of_kin" in fields:
            fields["next_of_kin"] = self._to_next_of_kin(fields["next_of_kin"])
        for name in ("group_leader", "union_leader", "union_secretary"):
            if isinstance(fields.get(name), dict):
                fields[name] = Contact(**fields[name])
        if "group_members" in fields:
            fields["group_members"] = [
                m if isinstance(m, GroupMember) else GroupMember(**m)
                for m in fields["group_members"] or []
            ]
        return fields

    @staticmethod
    def _to_next_of_kin(value: Union[NextOfKin, Dict[str, Any], None]) -> NextOfKin:
        if isinstance(value, NextOfKin):
            return value
        if not isinstance(value, dict):
            raise ValidationError("is required", field="next_of_kin")
        return NextOfKin(
            name=value.get("name", ""),
            relationship=value.get("relationship", ""),
            phone_number=value.get("phone_number", ""),
            address=value.get("address")
        )

    def _save_customer(self, customer: Customer) -> None:
        """
        Conditional write keyed on the version the customer was loaded at

        A status change decided on a stale read (say an approval racing a
        rejection) loses with ConcurrencyConflict instead of overwriting.
        """
        expected = customer.version
        customer.version = expected + 1
        if not self.storage.compare_and_save(self.table_name, customer.id, customer.to_dict(), expected):
            customer.version = expected
            raise ConcurrencyConflict("customer", customer.customer_id)

    def _customer_from_dict(self, data: Dict) -> Customer:
        """Convert dictionary to Customer"""

        def get_contact(name: str) -> Optional[Contact]:
            return Contact(**data[name]) if data.get(name) else None

        date_of_birth = None
        if data.get('date_of_birth'):
            date_of_birth = date.fromisoformat(data['date_of_birth'][:10])

        return Customer(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            customer_id=data['customer_id'],
            first_name=data['first_name'],
            last_name=data['last_name'],
            phone_number=data['phone_number'],
            address=data['address'],
            preferred_loan_product=LoanProduct(data['preferred_loan_product']),
            id_type=IdType(data['id_type']),
            id_number=data['id_number'],
            next_of_kin=NextOfKin(**data['next_of_kin']),
            email=data.get('email'),
            date_of_birth=date_of_birth,
            gender=Gender(data['gender']) if data.get('gender') else None,
            customer_type=CustomerType(data['customer_type']),
            group_name=data.get('group_name'),
            group_leader=get_contact('group_leader'),
            union_leader=get_contact('union_leader'),
            union_secretary=get_contact('union_secretary'),
            group_members=[GroupMember(**m) for m in data.get('group_members') or []],
            business_name=data.get('business_name'),
            business_type=data.get('business_type'),
            business_address=data.get('business_address'),
            status=CustomerStatus(data['status']),
            created_by=data.get('created_by'),
            approved_by=data.get('approved_by'),
            approved_at=parse_datetime(data.get('approved_at')),
            rejection_reason=data.get('rejection_reason'),
            rejected_at=parse_datetime(data.get('rejected_at')),
            notes=data.get('notes'),
            version=int(data.get('version', 0))
        )
