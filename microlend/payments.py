"""
Payment Allocation Module

Interest-first waterfall: each repayment pays off outstanding interest before
any of it reaches principal. Applying a payment returns an updated loan value
and one immutable Repayment snapshot; neither the input loan nor any earlier
repayment is modified.

apply_payment is deliberately not idempotent. Calling it twice with the same
amount records two payments; duplicate protection lives in the caller
(transaction references in LoanManager).
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Tuple, Union
import uuid

from .errors import LoanNotPayable, OverpaymentError, ValidationError
from .interest import to_decimal
from .lifecycle import LoanLifecycle, LoanStatus
from .storage import parse_datetime, parse_decimal, to_storable

if TYPE_CHECKING:
    from .loans import Loan


ZERO = Decimal('0')


class PaymentMethod(Enum):
    """Accepted payment channels"""
    CASH = "Cash"
    BANK_TRANSFER = "Bank Transfer"
    MOBILE_MONEY = "Mobile Money"
    CHEQUE = "Cheque"

    @classmethod
    def parse(cls, value: Union['PaymentMethod', str]) -> 'PaymentMethod':
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"unknown payment method {value!r}", field="payment_method")


class RepaymentStatus(Enum):
    """Repayment approval status (tracked, not enforced by the allocator)"""
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


@dataclass(frozen=True)
class PaymentAllocation:
    """How one payment splits across interest and principal"""
    payment_amount: Decimal
    interest_portion: Decimal
    principal_portion: Decimal
    remaining_interest_before: Decimal
    remaining_principal_before: Decimal

    @property
    def remaining_interest_after(self) -> Decimal:
        return self.remaining_interest_before - self.interest_portion

    @property
    def remaining_principal_after(self) -> Decimal:
        return self.remaining_principal_before - self.principal_portion


def allocate_payment(loan: 'Loan', payment_amount: Decimal) -> PaymentAllocation:
    """
    Split a payment interest-first

    Args:
        loan: Loan whose current aggregates the payment is applied against
        payment_amount: Positive amount paid

    Returns:
        PaymentAllocation

    Raises:
        ValidationError: amount is not positive
        OverpaymentError: amount exceeds remaining interest plus principal
    """
    payment_amount = to_decimal(payment_amount, "payment_amount")
    if payment_amount <= ZERO:
        raise ValidationError("must be greater than zero", field="payment_amount")

    remaining_interest = max(ZERO, loan.interest_amount - loan.interest_paid)
    remaining_principal = max(ZERO, loan.principal_amount - loan.principal_paid)

    # Residue is rejected before anything is allocated
    if payment_amount > remaining_interest + remaining_principal:
        raise OverpaymentError(payment_amount, remaining_interest + remaining_principal)

    interest_portion = min(payment_amount, remaining_interest)
    principal_portion = min(payment_amount - interest_portion, remaining_principal)

    return PaymentAllocation(
        payment_amount=payment_amount,
        interest_portion=interest_portion,
        principal_portion=principal_portion,
        remaining_interest_before=remaining_interest,
        remaining_principal_before=remaining_principal
    )


@dataclass(frozen=True)
class Repayment:
    """
    Immutable ledger entry for one payment event.

    Balance fields are loan-level figures after this payment was applied.
    loan_id and customer_id hold internal record IDs.
    """
    id: str
    created_at: datetime
    updated_at: datetime
    receipt_id: str
    loan_id: str
    customer_id: str
    payment_amount: Decimal
    interest_paid: Decimal
    principal_paid: Decimal
    remaining_interest: Decimal
    remaining_principal: Decimal
    remaining_balance: Decimal
    payment_date: datetime
    payment_method: PaymentMethod
    status: RepaymentStatus
    recorded_by: str
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    transaction_reference: Optional[str] = None
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'receipt_id': self.receipt_id,
            'loan_id': self.loan_id,
            'customer_id': self.customer_id,
            'payment_amount': str(self.payment_amount),
            'interest_paid': str(self.interest_paid),
            'principal_paid': str(self.principal_paid),
            'remaining_interest': str(self.remaining_interest),
            'remaining_principal': str(self.remaining_principal),
            'remaining_balance': str(self.remaining_balance),
            'payment_date': self.payment_date.isoformat(),
            'payment_method': self.payment_method.value,
            'status': self.status.value,
            'recorded_by': self.recorded_by,
            'approved_by': self.approved_by,
            'approved_at': to_storable(self.approved_at),
            'transaction_reference': self.transaction_reference,
            'notes': self.notes
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Repayment':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            receipt_id=data['receipt_id'],
            loan_id=data['loan_id'],
            customer_id=data['customer_id'],
            payment_amount=parse_decimal(data['payment_amount']),
            interest_paid=parse_decimal(data['interest_paid']),
            principal_paid=parse_decimal(data['principal_paid']),
            remaining_interest=parse_decimal(data['remaining_interest']),
            remaining_principal=parse_decimal(data['remaining_principal']),
            remaining_balance=parse_decimal(data['remaining_balance']),
            payment_date=parse_datetime(data['payment_date']),
            payment_method=PaymentMethod(data['payment_method']),
            status=RepaymentStatus(data['status']),
            recorded_by=data['recorded_by'],
            approved_by=data.get('approved_by'),
            approved_at=parse_datetime(data.get('approved_at')),
            transaction_reference=data.get('transaction_reference'),
            notes=data.get('notes')
        )


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of applying one payment"""
    loan: 'Loan'
    repayment: Repayment
    allocation: PaymentAllocation

    @property
    def completed(self) -> bool:
        return self.loan.status == LoanStatus.COMPLETED


class PaymentAllocator:
    """
    Applies repayments to loans
    """

    def __init__(self, lifecycle: Optional[LoanLifecycle] = None):
        self.lifecycle = lifecycle or LoanLifecycle()

    def apply_payment(
        self,
        loan: 'Loan',
        payment_amount: Union[Decimal, int, str],
        receipt_id: str,
        recorded_by: str,
        payment_method: Union[PaymentMethod, str] = PaymentMethod.CASH,
        payment_date: Optional[datetime] = None,
        transaction_reference: Optional[str] = None,
        notes: Optional[str] = None,
        status: RepaymentStatus = RepaymentStatus.APPROVED
    ) -> PaymentResult:
        """
        Apply a payment to a loan

        Args:
            loan: Loan as currently stored
            payment_amount: Amount paid
            receipt_id: Pre-issued RCP identifier for the repayment
            recorded_by: Staff user recording the payment
            payment_method: Cash, Bank Transfer, Mobile Money or Cheque
            payment_date: Defaults to now
            transaction_reference: Caller's reference, stored on the receipt
            notes: Free text
            status: Repayment approval status

        Returns:
            PaymentResult with the updated loan and the new Repayment

        Raises:
            ValidationError: amount not positive, unknown payment method
            LoanNotPayable: loan is not Active or Overdue, or nothing is owed
            OverpaymentError: amount exceeds the outstanding balance
        """
        amount = to_decimal(payment_amount, "payment_amount")
        if amount <= ZERO:
            raise ValidationError("must be greater than zero", field="payment_amount")
        method = PaymentMethod.parse(payment_method)

        if not loan.is_payable:
            raise LoanNotPayable(loan.loan_id, loan.status.value)

        if amount > loan.remaining_balance:
            raise OverpaymentError(amount, loan.remaining_balance)

        allocation = allocate_payment(loan, amount)

        now = datetime.now(timezone.utc)
        total_paid = loan.total_paid + amount
        interest_paid = loan.interest_paid + allocation.interest_portion
        principal_paid = loan.principal_paid + allocation.principal_portion

        updated = replace(
            loan,
            total_paid=total_paid,
            interest_paid=interest_paid,
            principal_paid=principal_paid,
            remaining_balance=max(ZERO, loan.total_payable - total_paid),
            updated_at=now
        )
        if updated.remaining_balance == ZERO:
            updated = self.lifecycle.complete(updated, at=now)

        approved = status == RepaymentStatus.APPROVED
        repayment = Repayment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            receipt_id=receipt_id,
            loan_id=loan.id,
            customer_id=loan.customer_id,
            payment_amount=amount,
            interest_paid=allocation.interest_portion,
            principal_paid=allocation.principal_portion,
            remaining_interest=max(ZERO, updated.interest_amount - interest_paid),
            remaining_principal=max(ZERO, updated.principal_amount - principal_paid),
            remaining_balance=updated.remaining_balance,
            payment_date=payment_date or now,
            payment_method=method,
            status=status,
            recorded_by=recorded_by,
            approved_by=recorded_by if approved else None,
            approved_at=now if approved else None,
            transaction_reference=transaction_reference,
            notes=notes
        )

        return PaymentResult(loan=updated, repayment=repayment, allocation=allocation)


@dataclass
class ReconciliationResult:
    """Loan aggregates compared against a replay of its repayment ledger"""
    loan_id: str
    repayment_count: int
    expected_total_paid: Decimal
    expected_interest_paid: Decimal
    expected_principal_paid: Decimal
    mismatches: Dict[str, Tuple[str, str]] = field(default_factory=dict)

    @property
    def is_consistent(self) -> bool:
        return not self.mismatches

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'repayment_count': self.repayment_count,
            'expected_total_paid': str(self.expected_total_paid),
            'expected_interest_paid': str(self.expected_interest_paid),
            'expected_principal_paid': str(self.expected_principal_paid),
            'is_consistent': self.is_consistent,
            'mismatches': {k: {'stored': v[0], 'replayed': v[1]} for k, v in self.mismatches.items()}
        }


def replay_repayments(loan: 'Loan', repayments: Iterable[Repayment]) -> ReconciliationResult:
    """
    Replay a loan's repayments in chronological order and compare the sums
    against the loan's stored aggregates
    """
    ledger: List[Repayment] = sorted(repayments, key=lambda r: (r.payment_date, r.created_at))

    total_paid = sum((r.payment_amount for r in ledger), ZERO)
    interest_paid = sum((r.interest_paid for r in ledger), ZERO)
    principal_paid = sum((r.principal_paid for r in ledger), ZERO)

    result = ReconciliationResult(
        loan_id=loan.loan_id,
        repayment_count=len(ledger),
        expected_total_paid=total_paid,
        expected_interest_paid=interest_paid,
        expected_principal_paid=principal_paid
    )

    checks = [
        ('total_paid', loan.total_paid, total_paid),
        ('interest_paid', loan.interest_paid, interest_paid),
        ('principal_paid', loan.principal_paid, principal_paid),
        ('remaining_balance', loan.remaining_balance, max(ZERO, loan.total_payable - total_paid)),
    ]
    if ledger:
        checks.append(('latest_snapshot_balance', loan.remaining_balance, ledger[-1].remaining_balance))

    for name, stored, replayed in checks:
        if stored != replayed:
            result.mismatches[name] = (str(stored), str(replayed))

    return result
