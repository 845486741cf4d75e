"""
Loan Lifecycle Module

Explicit state machine for loan status. Every transition takes a loan and
returns a new loan value with the status, date stamp and actor reference
changed together; the input loan is never mutated.
"""

from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Dict, FrozenSet, Optional

from .errors import InvalidStateTransition, ValidationError
from .interest import calculate_end_date
from .rbac import Actor, Permission, require_permission

if TYPE_CHECKING:
    from .loans import Loan


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "Pending"        # Application awaiting review
    APPROVED = "Approved"      # Approved, funds not yet released
    REJECTED = "Rejected"      # Application turned down
    DISBURSED = "Disbursed"    # Funds released (transient, becomes Active)
    ACTIVE = "Active"          # Repayment in progress
    COMPLETED = "Completed"    # Fully repaid
    OVERDUE = "Overdue"        # Past end date with a balance outstanding
    DEFAULTED = "Defaulted"    # Written off as unrecoverable


TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
    LoanStatus.PENDING: frozenset({LoanStatus.APPROVED, LoanStatus.REJECTED}),
    LoanStatus.APPROVED: frozenset({LoanStatus.DISBURSED}),
    LoanStatus.DISBURSED: frozenset({LoanStatus.ACTIVE}),
    LoanStatus.ACTIVE: frozenset({LoanStatus.COMPLETED, LoanStatus.OVERDUE, LoanStatus.DEFAULTED}),
    LoanStatus.OVERDUE: frozenset({LoanStatus.COMPLETED, LoanStatus.DEFAULTED, LoanStatus.ACTIVE}),
    LoanStatus.REJECTED: frozenset(),
    LoanStatus.COMPLETED: frozenset(),
    LoanStatus.DEFAULTED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)
PAYABLE_STATUSES = frozenset({LoanStatus.ACTIVE, LoanStatus.OVERDUE})


def can_transition(current: LoanStatus, target: LoanStatus) -> bool:
    """Check whether the transition table allows current -> target"""
    return target in TRANSITIONS[current]


def assert_transition(current: LoanStatus, target: LoanStatus) -> None:
    """Raise InvalidStateTransition unless current -> target is allowed"""
    if not can_transition(current, target):
        raise InvalidStateTransition("loan", current.value, target.value)


def _now(at: Optional[datetime]) -> datetime:
    return at or datetime.now(timezone.utc)


class LoanLifecycle:
    """
    Applies status transitions to loans.

    Role checks are preconditions: the actor's identity and role come from the
    caller, this class only verifies that the role permits the transition.
    """

    def approve(self, loan: 'Loan', actor: Actor, at: Optional[datetime] = None) -> 'Loan':
        """Pending -> Approved (Admin)"""
        require_permission(actor, Permission.APPROVE_LOAN)
        assert_transition(loan.status, LoanStatus.APPROVED)
        now = _now(at)
        return replace(
            loan,
            status=LoanStatus.APPROVED,
            approval_date=now,
            approved_by=actor.user_id,
            updated_at=now
        )

    def reject(
        self,
        loan: 'Loan',
        actor: Actor,
        reason: str,
        at: Optional[datetime] = None
    ) -> 'Loan':
        """Pending -> Rejected (Admin); a reason is mandatory"""
        require_permission(actor, Permission.APPROVE_LOAN)
        if not reason or not reason.strip():
            raise ValidationError("rejection reason is required", field="reason")
        assert_transition(loan.status, LoanStatus.REJECTED)
        now = _now(at)
        return replace(
            loan,
            status=LoanStatus.REJECTED,
            rejection_reason=reason.strip(),
            rejected_at=now,
            approved_by=actor.user_id,
            updated_at=now
        )

    def disburse(self, loan: 'Loan', actor: Actor, at: Optional[datetime] = None) -> 'Loan':
        """
        Approved -> Disbursed -> Active (Admin)

        Disbursed is passed through within the same call, so callers only ever
        observe Active. The repayment clock starts at the disbursement instant.
        """
        require_permission(actor, Permission.DISBURSE_LOAN)
        assert_transition(loan.status, LoanStatus.DISBURSED)
        assert_transition(LoanStatus.DISBURSED, LoanStatus.ACTIVE)

        now = _now(at)
        end_date = loan.end_date or calculate_end_date(now, loan.tenure, loan.tenure_unit)
        return replace(
            loan,
            status=LoanStatus.ACTIVE,
            disbursement_date=now,
            disbursed_by=actor.user_id,
            start_date=now,
            end_date=end_date,
            updated_at=now
        )

    def mark_overdue(self, loan: 'Loan', as_of: Optional[datetime] = None) -> 'Loan':
        """Active -> Overdue, only when the loan is actually overdue"""
        from .overdue import check_overdue

        assert_transition(loan.status, LoanStatus.OVERDUE)
        now = _now(as_of)
        if not check_overdue(loan, now):
            raise ValidationError(
                f"loan {loan.loan_id} is not past its end date with a balance outstanding",
                field="end_date"
            )
        return replace(loan, status=LoanStatus.OVERDUE, updated_at=now)

    def resume(self, loan: 'Loan', actor: Actor, at: Optional[datetime] = None) -> 'Loan':
        """Overdue -> Active (Admin), e.g. after the end date was rescheduled"""
        require_permission(actor, Permission.DEFAULT_LOAN)
        if loan.status != LoanStatus.OVERDUE:
            raise InvalidStateTransition("loan", loan.status.value, LoanStatus.ACTIVE.value)
        return replace(loan, status=LoanStatus.ACTIVE, updated_at=_now(at))

    def complete(self, loan: 'Loan', at: Optional[datetime] = None) -> 'Loan':
        """Active/Overdue -> Completed once nothing remains to be paid"""
        assert_transition(loan.status, LoanStatus.COMPLETED)
        if loan.remaining_balance > Decimal('0'):
            raise ValidationError(
                f"loan {loan.loan_id} still has {loan.remaining_balance} outstanding",
                field="remaining_balance"
            )
        now = _now(at)
        return replace(loan, status=LoanStatus.COMPLETED, completed_at=now, updated_at=now)

    def mark_defaulted(self, loan: 'Loan', actor: Actor, at: Optional[datetime] = None) -> 'Loan':
        """Active/Overdue -> Defaulted (Admin)"""
        require_permission(actor, Permission.DEFAULT_LOAN)
        assert_transition(loan.status, LoanStatus.DEFAULTED)
        now = _now(at)
        return replace(loan, status=LoanStatus.DEFAULTED, defaulted_at=now, updated_at=now)
