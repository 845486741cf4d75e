"""
Loan Module

Loan records and the loan service: application, review, disbursement,
repayment recording, overdue sweeps and reconciliation. Status changes go
through LoanLifecycle, repayments through PaymentAllocator; this module loads,
persists and audits.
"""

from decimal import Decimal
from datetime import datetime, timezone
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Union
import threading
import uuid

from .storage import StorageInterface, StorageRecord, parse_datetime, parse_decimal
from .audit import AuditTrail, AuditEventType
from .config import MicrolendConfig, get_config
from .customers import CustomerManager
from .errors import (
    ConcurrencyConflict, DuplicatePaymentError, InvalidStateTransition, NotFoundError,
    PermissionDenied, ValidationError
)
from .identifiers import EntityType, IdentifierGenerator
from .interest import (
    LoanProduct, TenureUnit, calculate_end_date, derive_financials, round2, to_decimal,
    validate_tenure
)
from .lifecycle import PAYABLE_STATUSES, LoanLifecycle, LoanStatus
from .logging_config import get_logger, log_action
from .overdue import check_overdue
from .payments import (
    PaymentAllocator, PaymentMethod, PaymentResult, ReconciliationResult, Repayment,
    RepaymentStatus, replay_repayments
)
from .rbac import Actor, Permission, can_access, require_permission


ZERO = Decimal('0')


@dataclass
class Loan(StorageRecord):
    """
    Loan contract with its running repayment totals.

    customer_id holds the customer's internal record ID; loan_id is the
    human-readable LOAN###### identifier.
    """
    loan_id: str
    customer_id: str
    loan_product: LoanProduct
    principal_amount: Decimal
    interest_rate: Decimal          # Flat percentage over the whole tenure
    interest_amount: Decimal
    total_payable: Decimal
    tenure: int
    tenure_unit: TenureUnit
    installment_amount: Decimal
    remaining_balance: Decimal
    total_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    principal_paid: Decimal = ZERO
    status: LoanStatus = LoanStatus.PENDING
    application_date: Optional[datetime] = None
    approval_date: Optional[datetime] = None
    disbursement_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_by: Optional[str] = None
    approved_by: Optional[str] = None
    disbursed_by: Optional[str] = None
    purpose: Optional[str] = None
    notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    rejected_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    defaulted_at: Optional[datetime] = None
    version: int = 0  # Bumped on every stored write

    @property
    def remaining_interest(self) -> Decimal:
        return max(ZERO, self.interest_amount - self.interest_paid)

    @property
    def remaining_principal(self) -> Decimal:
        return max(ZERO, self.principal_amount - self.principal_paid)

    @property
    def progress_percentage(self) -> Decimal:
        """Share of the total payable already paid, in percent"""
        if self.total_payable <= ZERO:
            return ZERO
        return round2(self.total_paid / self.total_payable * Decimal('100'))

    @property
    def is_payable(self) -> bool:
        return self.status in PAYABLE_STATUSES and self.remaining_balance > ZERO

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        """Create Loan from dictionary with Decimal, enum and date parsing"""
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            loan_id=data['loan_id'],
            customer_id=data['customer_id'],
            loan_product=LoanProduct(data['loan_product']),
            principal_amount=parse_decimal(data['principal_amount']),
            interest_rate=parse_decimal(data['interest_rate']),
            interest_amount=parse_decimal(data['interest_amount']),
            total_payable=parse_decimal(data['total_payable']),
            tenure=int(data['tenure']),
            tenure_unit=TenureUnit(data['tenure_unit']),
            installment_amount=parse_decimal(data['installment_amount']),
            remaining_balance=parse_decimal(data['remaining_balance']),
            total_paid=parse_decimal(data.get('total_paid')),
            interest_paid=parse_decimal(data.get('interest_paid')),
            principal_paid=parse_decimal(data.get('principal_paid')),
            status=LoanStatus(data['status']),
            application_date=parse_datetime(data.get('application_date')),
            approval_date=parse_datetime(data.get('approval_date')),
            disbursement_date=parse_datetime(data.get('disbursement_date')),
            start_date=parse_datetime(data.get('start_date')),
            end_date=parse_datetime(data.get('end_date')),
            created_by=data.get('created_by'),
            approved_by=data.get('approved_by'),
            disbursed_by=data.get('disbursed_by'),
            purpose=data.get('purpose'),
            notes=data.get('notes'),
            rejection_reason=data.get('rejection_reason'),
            rejected_at=parse_datetime(data.get('rejected_at')),
            completed_at=parse_datetime(data.get('completed_at')),
            defaulted_at=parse_datetime(data.get('defaulted_at')),
            version=int(data.get('version', 0))
        )


class LoanManager:
    """
    Loan service: the calling layer around the lifecycle and payment core.

    Writes to a loan are serialized per loan with an in-process lock and
    guarded across processes by the stored version (compare-and-save). A
    version conflict reloads the loan and retries, up to
    max_concurrency_retries times, before ConcurrencyConflict surfaces.
    """

    UPDATABLE_FIELDS = frozenset({
        "loan_product", "principal_amount", "tenure", "purpose", "notes", "start_date",
    })
    QUOTE_FIELDS = frozenset({
        "interest_rate", "tenure_unit", "interest_amount", "total_payable", "installment_amount",
    })

    def __init__(
        self,
        storage: StorageInterface,
        customer_manager: CustomerManager,
        audit_trail: AuditTrail,
        identifiers: IdentifierGenerator,
        config: Optional[MicrolendConfig] = None
    ):
        self.storage = storage
        self.customer_manager = customer_manager
        self.audit_trail = audit_trail
        self.identifiers = identifiers
        self.config = config or get_config()
        self.lifecycle = LoanLifecycle()
        self.allocator = PaymentAllocator(self.lifecycle)
        self.table_name = EntityType.LOAN.table
        self.repayments_table = EntityType.REPAYMENT.table
        self.logger = get_logger("microlend.loans")

        # loan id -> [lock, number of callers holding or waiting on it]
        self._loan_locks: Dict[str, List[Any]] = {}
        self._locks_guard = threading.Lock()

    # Application

    def create_loan(
        self,
        actor: Actor,
        customer_id: str,
        loan_product: Union[LoanProduct, str],
        principal_amount: Union[Decimal, int, str],
        tenure: int,
        purpose: Optional[str] = None,
        start_date: Optional[datetime] = None,
        notes: Optional[str] = None,
        quote: Optional[Dict[str, Any]] = None
    ) -> Loan:
        """
        Create a loan application in Pending status

        Args:
            actor: Staff member creating the application
            customer_id: Internal or CUST##### ID of an Approved customer
            loan_product: Monthly, Weekly or Daily
            principal_amount: Amount requested
            tenure: Number of tenure units
            purpose: Stated purpose of the loan
            start_date: Planned start; end date is derived from it when given
            notes: Free text
            quote: Pre-computed figures (interest_rate, tenure_unit,
                interest_amount, total_payable, installment_amount); only
                honoured when accept_quoted_financials is enabled

        Returns:
            Created Loan
        """
        require_permission(actor, Permission.CREATE_LOAN)
        customer = self.customer_manager.require_approved(customer_id)

        product = LoanProduct.parse(loan_product)
        financials = self._derive(product, principal_amount, tenure, quote)

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=self.identifiers.next(EntityType.LOAN),
            customer_id=customer.id,
            loan_product=product,
            principal_amount=to_decimal(principal_amount, "principal_amount"),
            interest_rate=financials.interest_rate,
            interest_amount=financials.interest_amount,
            total_payable=financials.total_payable,
            tenure=tenure,
            tenure_unit=financials.tenure_unit,
            installment_amount=financials.installment_amount,
            remaining_balance=financials.total_payable,
            application_date=now,
            start_date=start_date,
            end_date=calculate_end_date(start_date, tenure, financials.tenure_unit) if start_date else None,
            created_by=actor.user_id,
            purpose=purpose,
            notes=notes
        )
        loan = self._persist(loan, expected_version=0)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_CREATED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "loan_id": loan.loan_id,
                "customer_id": customer.customer_id,
                "loan_product": product.value,
                "principal_amount": loan.principal_amount,
                "total_payable": loan.total_payable
            },
            user_id=actor.user_id
        )
        log_action(
            self.logger, "info", f"Loan application created: {loan.loan_id}",
            user_id=actor.user_id, action="create_loan", resource=f"loan:{loan.loan_id}",
            extra={"principal_amount": str(loan.principal_amount), "loan_product": product.value}
        )
        return loan

    def update_loan(self, loan_id: str, actor: Actor, **changes: Any) -> Loan:
        """
        Update a Pending application

        Financial figures are re-derived when product, principal or tenure change.
        Loan officers may only update their own applications.
        """
        require_permission(actor, Permission.MODIFY_LOAN)
        unknown = set(changes) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"cannot be changed: {sorted(unknown)}", field="loan")

        def apply(loan: Loan) -> Loan:
            if loan.status != LoanStatus.PENDING:
                raise ValidationError(f"only Pending loans can be updated, loan is {loan.status.value}", field="status")
            if not can_access(actor, loan.created_by):
                raise PermissionDenied("update another officer's loan", actor.role.value)

            product = LoanProduct.parse(changes.get("loan_product", loan.loan_product))
            principal = to_decimal(changes.get("principal_amount", loan.principal_amount), "principal_amount")
            tenure = changes.get("tenure", loan.tenure)
            financials = self._derive(product, principal, tenure, None)
            start_date = changes.get("start_date", loan.start_date)

            return replace(
                loan,
                loan_product=product,
                principal_amount=principal,
                tenure=tenure,
                interest_rate=financials.interest_rate,
                tenure_unit=financials.tenure_unit,
                interest_amount=financials.interest_amount,
                total_payable=financials.total_payable,
                installment_amount=financials.installment_amount,
                remaining_balance=financials.total_payable,
                start_date=start_date,
                end_date=calculate_end_date(start_date, tenure, financials.tenure_unit) if start_date else None,
                purpose=changes.get("purpose", loan.purpose),
                notes=changes.get("notes", loan.notes),
                updated_at=datetime.now(timezone.utc)
            )

        return self._transition(
            loan_id, apply, AuditEventType.LOAN_UPDATED, "update_loan", actor,
            {"changed_fields": sorted(changes)}
        )

    def delete_loan(self, loan_id: str, actor: Actor) -> bool:
        """Delete a Pending application (Admin)"""
        require_permission(actor, Permission.DELETE_LOAN)
        loan = self._require(loan_id)
        with self._lock_for(loan.id):
            loan = self._require(loan.id)
            if loan.status != LoanStatus.PENDING:
                raise ValidationError(f"only Pending loans can be deleted, loan is {loan.status.value}", field="status")
            deleted = self.storage.delete(self.table_name, loan.id)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_DELETED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={"loan_id": loan.loan_id},
            user_id=actor.user_id
        )
        log_action(
            self.logger, "info", f"Loan application deleted: {loan.loan_id}",
            user_id=actor.user_id, action="delete_loan", resource=f"loan:{loan.loan_id}"
        )
        return deleted

    # Lifecycle

    def approve_loan(self, loan_id: str, actor: Actor) -> Loan:
        return self._transition(
            loan_id, lambda loan: self.lifecycle.approve(loan, actor),
            AuditEventType.LOAN_APPROVED, "approve_loan", actor
        )

    def reject_loan(self, loan_id: str, actor: Actor, reason: str) -> Loan:
        return self._transition(
            loan_id, lambda loan: self.lifecycle.reject(loan, actor, reason),
            AuditEventType.LOAN_REJECTED, "reject_loan", actor, {"reason": reason}
        )

    def disburse_loan(self, loan_id: str, actor: Actor) -> Loan:
        """Release funds; the loan becomes Active and its repayment clock starts"""
        return self._transition(
            loan_id, lambda loan: self.lifecycle.disburse(loan, actor),
            AuditEventType.LOAN_DISBURSED, "disburse_loan", actor
        )

    def mark_defaulted(self, loan_id: str, actor: Actor) -> Loan:
        return self._transition(
            loan_id, lambda loan: self.lifecycle.mark_defaulted(loan, actor),
            AuditEventType.LOAN_DEFAULTED, "mark_defaulted", actor
        )

    def resume_loan(self, loan_id: str, actor: Actor, end_date: Optional[datetime] = None) -> Loan:
        """
        Move an Overdue loan back to Active (Admin), optionally rescheduling
        its end date
        """
        def apply(loan: Loan) -> Loan:
            resumed = self.lifecycle.resume(loan, actor)
            if end_date is not None:
                resumed = replace(resumed, end_date=end_date)
            return resumed

        return self._transition(
            loan_id, apply, AuditEventType.LOAN_RESUMED, "resume_loan", actor,
            {"end_date": end_date}
        )

    def sweep_overdue(self, as_of: Optional[datetime] = None) -> List[Loan]:
        """
        Apply Active -> Overdue to every loan past its end date with a balance

        Returns:
            Loans moved to Overdue
        """
        as_of = as_of or datetime.now(timezone.utc)
        candidates = [
            Loan.from_dict(d)
            for d in self.storage.find(self.table_name, {"status": LoanStatus.ACTIVE.value})
        ]

        moved = []
        for loan in candidates:
            if not check_overdue(loan, as_of):
                continue
            try:
                moved.append(self._transition(
                    loan.id, lambda current: self.lifecycle.mark_overdue(current, as_of),
                    AuditEventType.LOAN_OVERDUE, "mark_overdue", None
                ))
            except (InvalidStateTransition, ValidationError) as e:
                # Paid off or moved on since the candidate list was read
                log_action(
                    self.logger, "info", f"Skipped loan {loan.loan_id} in overdue sweep: {e}",
                    action="sweep_overdue", resource=f"loan:{loan.loan_id}"
                )

        log_action(
            self.logger, "info", f"Overdue sweep moved {len(moved)} loan(s) to Overdue",
            action="sweep_overdue", extra={"as_of": as_of.isoformat(), "count": len(moved)}
        )
        return moved

    # Repayments

    def record_repayment(
        self,
        loan_id: str,
        actor: Actor,
        payment_amount: Union[Decimal, int, str],
        payment_method: Union[PaymentMethod, str] = PaymentMethod.CASH,
        transaction_reference: Optional[str] = None,
        notes: Optional[str] = None,
        payment_date: Optional[datetime] = None
    ) -> PaymentResult:
        """
        Record a repayment against a loan

        The loan write and the repayment append happen inside one storage
        transaction. Not idempotent: pass transaction_reference to have a
        repeated submission for the same loan rejected.

        Raises:
            ValidationError: bad amount or method, amount below the minimum
            DuplicatePaymentError: transaction_reference already used on this loan
            LoanNotPayable: loan is not Active or Overdue
            OverpaymentError: amount exceeds the outstanding balance
            ConcurrencyConflict: retries exhausted
        """
        require_permission(actor, Permission.RECORD_REPAYMENT)
        amount = to_decimal(payment_amount, "payment_amount")
        minimum = to_decimal(self.config.min_payment_amount, "min_payment_amount")
        status = RepaymentStatus.APPROVED if self.config.auto_approve_repayments else RepaymentStatus.PENDING

        loan_key = self._require(loan_id).id
        receipt_id: Optional[str] = None

        with self._lock_for(loan_key):
            for attempt in range(self.config.max_concurrency_retries + 1):
                loan = self._require(loan_key)

                if transaction_reference and self.storage.find(
                    self.repayments_table,
                    {"loan_id": loan.id, "transaction_reference": transaction_reference}
                ):
                    raise DuplicatePaymentError(loan.loan_id, transaction_reference)

                if ZERO < amount < minimum and amount != loan.remaining_balance:
                    raise ValidationError(
                        f"minimum payment is {minimum} unless it settles the loan",
                        field="payment_amount"
                    )

                result = self.allocator.apply_payment(
                    loan, amount,
                    receipt_id=receipt_id or "",
                    recorded_by=actor.user_id,
                    payment_method=payment_method,
                    payment_date=payment_date,
                    transaction_reference=transaction_reference,
                    notes=notes,
                    status=status
                )
                # Issued only once the payment is known to be valid
                if receipt_id is None:
                    receipt_id = self.identifiers.next(EntityType.REPAYMENT)
                repayment = replace(result.repayment, receipt_id=receipt_id)

                try:
                    with self.storage.atomic():
                        saved = self._persist(result.loan, expected_version=loan.version)
                        self.storage.save(self.repayments_table, repayment.id, repayment.to_dict())
                except ConcurrencyConflict:
                    log_action(
                        self.logger, "warning", f"Version conflict on loan {loan.loan_id}, retrying repayment",
                        action="record_repayment", resource=f"loan:{loan.loan_id}", extra={"attempt": attempt + 1}
                    )
                    continue
                break
            else:
                raise ConcurrencyConflict("loan", loan.loan_id)

        self.audit_trail.log_event(
            event_type=AuditEventType.REPAYMENT_RECORDED,
            entity_type="repayment",
            entity_id=repayment.id,
            metadata={
                "receipt_id": repayment.receipt_id,
                "loan_id": saved.loan_id,
                "payment_amount": repayment.payment_amount,
                "interest_paid": repayment.interest_paid,
                "principal_paid": repayment.principal_paid,
                "remaining_balance": repayment.remaining_balance,
                "transaction_reference": transaction_reference
            },
            user_id=actor.user_id
        )
        log_action(
            self.logger, "info", f"Repayment {repayment.receipt_id} recorded on {saved.loan_id}",
            user_id=actor.user_id, action="record_repayment", resource=f"loan:{saved.loan_id}",
            extra={
                "payment_amount": str(repayment.payment_amount),
                "remaining_balance": str(repayment.remaining_balance)
            }
        )

        if saved.status == LoanStatus.COMPLETED:
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_COMPLETED,
                entity_type="loan",
                entity_id=saved.id,
                metadata={"loan_id": saved.loan_id, "receipt_id": repayment.receipt_id},
                user_id=actor.user_id
            )
            log_action(
                self.logger, "info", f"Loan {saved.loan_id} fully repaid",
                user_id=actor.user_id, action="complete_loan", resource=f"loan:{saved.loan_id}"
            )

        return PaymentResult(loan=saved, repayment=repayment, allocation=result.allocation)

    def reconcile_loan(self, loan_id: str) -> ReconciliationResult:
        """Replay a loan's repayments and compare against its stored totals"""
        loan = self._require(loan_id)
        result = replay_repayments(loan, self.get_repayments(loan.id))
        if not result.is_consistent:
            log_action(
                self.logger, "warning", f"Loan {loan.loan_id} does not reconcile",
                action="reconcile_loan", resource=f"loan:{loan.loan_id}",
                extra={"mismatches": result.to_dict()["mismatches"]}
            )
        return result

    # Queries

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by internal ID"""
        data = self.storage.load(self.table_name, loan_id)
        return Loan.from_dict(data) if data else None

    def get_by_loan_id(self, loan_id: str) -> Optional[Loan]:
        """Get loan by LOAN###### identifier"""
        found = self.storage.find(self.table_name, {"loan_id": loan_id})
        return Loan.from_dict(found[0]) if found else None

    def get_loan_for(self, loan_id: str, actor: Actor) -> Loan:
        """Load a loan the actor is allowed to see"""
        require_permission(actor, Permission.VIEW_LOAN)
        loan = self._require(loan_id)
        if not can_access(actor, loan.created_by):
            raise PermissionDenied("view another officer's loan", actor.role.value)
        return loan

    def list_loans(
        self,
        actor: Actor,
        status: Optional[Union[LoanStatus, str]] = None,
        loan_product: Optional[Union[LoanProduct, str]] = None,
        customer_id: Optional[str] = None,
        search: Optional[str] = None
    ) -> List[Loan]:
        """List loans visible to the actor, newest first"""
        require_permission(actor, Permission.VIEW_LOAN)
        filters: Dict[str, Any] = {}
        if status is not None:
            try:
                filters["status"] = LoanStatus(status).value
            except ValueError:
                raise ValidationError(f"unknown status {status!r}", field="status")
        if loan_product is not None:
            filters["loan_product"] = LoanProduct.parse(loan_product).value
        if customer_id is not None:
            customer = self.customer_manager.get_customer(customer_id) or \
                self.customer_manager.get_by_customer_id(customer_id)
            if not customer:
                return []
            filters["customer_id"] = customer.id
        if not actor.has_permission(Permission.VIEW_ALL_RECORDS):
            filters["created_by"] = actor.user_id

        loans = [Loan.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        if search:
            term = search.lower()
            loans = [loan for loan in loans if term in loan.loan_id.lower()]
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def get_repayments(self, loan_id: str) -> List[Repayment]:
        """Repayments of one loan (internal ID), oldest first"""
        repayments = [
            Repayment.from_dict(d)
            for d in self.storage.find(self.repayments_table, {"loan_id": loan_id})
        ]
        repayments.sort(key=lambda r: (r.payment_date, r.created_at))
        return repayments

    def list_repayments(self, loan_id: Optional[str] = None) -> List[Repayment]:
        """All repayments, newest first, optionally for one loan (internal or LOAN ID)"""
        filters = {}
        if loan_id is not None:
            filters["loan_id"] = self._require(loan_id).id
        repayments = [Repayment.from_dict(d) for d in self.storage.find(self.repayments_table, filters)]
        repayments.sort(key=lambda r: r.created_at, reverse=True)
        return repayments

    def loan_summary(self) -> Dict[str, Any]:
        """Portfolio counts and totals"""
        loans = [Loan.from_dict(d) for d in self.storage.load_all(self.table_name)]
        counts = {status: 0 for status in LoanStatus}
        for loan in loans:
            counts[loan.status] += 1

        disbursed = [
            loan for loan in loans
            if loan.status in (LoanStatus.ACTIVE, LoanStatus.COMPLETED, LoanStatus.OVERDUE)
        ]
        return {
            "total_loans": len(loans),
            "pending_loans": counts[LoanStatus.PENDING],
            "approved_loans": counts[LoanStatus.APPROVED],
            "active_loans": counts[LoanStatus.ACTIVE],
            "completed_loans": counts[LoanStatus.COMPLETED],
            "overdue_loans": counts[LoanStatus.OVERDUE],
            "defaulted_loans": counts[LoanStatus.DEFAULTED],
            "total_disbursed": sum((loan.principal_amount for loan in disbursed), ZERO),
            "total_repaid": sum((loan.total_paid for loan in disbursed), ZERO),
            "total_outstanding": sum((loan.remaining_balance for loan in disbursed), ZERO),
            "total_profit": sum((loan.interest_paid for loan in disbursed), ZERO),
        }

    # Internals

    def _derive(self, product: LoanProduct, principal_amount, tenure: int, quote: Optional[Dict[str, Any]]):
        ceilings = {
            LoanProduct.MONTHLY: self.config.monthly_max_tenure,
            LoanProduct.WEEKLY: self.config.weekly_max_tenure,
            LoanProduct.DAILY: self.config.daily_max_tenure,
        }
        quoted = quote if (quote and self.config.accept_quoted_financials) else {}
        if quote and not quoted:
            self.logger.info("Ignoring quoted financial figures; recomputing server-side")

        financials = derive_financials(
            product, principal_amount, tenure,
            min_principal=to_decimal(self.config.min_principal_amount, "min_principal_amount"),
            **{k: v for k, v in quoted.items() if k in self.QUOTE_FIELDS and v is not None}
        )
        # Payments only ever settle interest plus principal
        principal = to_decimal(principal_amount, "principal_amount")
        if financials.total_payable != principal + financials.interest_amount:
            raise ValidationError(
                f"total payable {financials.total_payable} does not equal principal plus interest "
                f"{principal + financials.interest_amount}",
                field="total_payable"
            )
        validate_tenure(product, tenure, ceilings[product])
        return financials

    @contextmanager
    def _lock_for(self, loan_key: str):
        """Hold the loan's lock; the entry is dropped when its last user leaves"""
        with self._locks_guard:
            entry = self._loan_locks.setdefault(loan_key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._loan_locks[loan_key]

    def _require(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id) or self.get_by_loan_id(loan_id)
        if not loan:
            raise NotFoundError("loan", loan_id)
        return loan

    def _persist(self, loan: Loan, expected_version: int) -> Loan:
        """Conditional write; raises ConcurrencyConflict if the stored version moved"""
        stored = replace(loan, version=expected_version + 1)
        if not self.storage.compare_and_save(self.table_name, stored.id, stored.to_dict(), expected_version):
            raise ConcurrencyConflict("loan", loan.loan_id)
        return stored

    def _transition(
        self,
        loan_id: str,
        apply: Callable[[Loan], Loan],
        event_type: AuditEventType,
        action: str,
        actor: Optional[Actor],
        metadata: Optional[Dict[str, Any]] = None
    ) -> Loan:
        """Reload, apply, conditionally save; retried on version conflicts"""
        loan_key = self._require(loan_id).id
        user_id = actor.user_id if actor else None

        with self._lock_for(loan_key):
            for attempt in range(self.config.max_concurrency_retries + 1):
                loan = self._require(loan_key)
                updated = apply(loan)
                try:
                    saved = self._persist(updated, expected_version=loan.version)
                except ConcurrencyConflict:
                    log_action(
                        self.logger, "warning", f"Version conflict on loan {loan.loan_id}, retrying",
                        action=action, resource=f"loan:{loan.loan_id}", extra={"attempt": attempt + 1}
                    )
                    continue
                break
            else:
                raise ConcurrencyConflict("loan", loan.loan_id)

        event_metadata = {"loan_id": saved.loan_id, "from_status": loan.status.value, "status": saved.status.value}
        event_metadata.update(metadata or {})
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="loan",
            entity_id=saved.id,
            metadata=event_metadata,
            user_id=user_id
        )
        log_action(
            self.logger, "info", f"Loan {saved.loan_id}: {loan.status.value} -> {saved.status.value}",
            user_id=user_id, action=action, resource=f"loan:{saved.loan_id}"
        )
        return saved
