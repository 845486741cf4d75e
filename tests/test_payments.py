"""
Tests for interest-first payment allocation and ledger replay
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from microlend.errors import LoanNotPayable, OverpaymentError, ValidationError
from microlend.lifecycle import LoanStatus
from microlend.payments import (
    PaymentAllocator, PaymentMethod, RepaymentStatus, Repayment, allocate_payment,
    replay_repayments
)

from helpers import make_loan


@pytest.fixture
def allocator():
    return PaymentAllocator()


@pytest.fixture
def loan():
    return make_loan(status=LoanStatus.ACTIVE)


class TestAllocatePayment:

    def test_interest_first(self, loan):
        allocation = allocate_payment(loan, Decimal("1000"))
        assert allocation.interest_portion == Decimal("1000")
        assert allocation.principal_portion == Decimal("0")
        assert allocation.remaining_interest_after == Decimal("1500.00")

    def test_spills_into_principal(self, loan):
        allocation = allocate_payment(loan, Decimal("5000"))
        assert allocation.interest_portion == Decimal("2500.00")
        assert allocation.principal_portion == Decimal("2500.00")
        assert allocation.remaining_principal_after == Decimal("7500.00")

    def test_after_interest_cleared(self, loan):
        paid_interest = replace(loan, interest_paid=Decimal("2500.00"), total_paid=Decimal("2500.00"))
        allocation = allocate_payment(paid_interest, Decimal("300"))
        assert allocation.interest_portion == Decimal("0")
        assert allocation.principal_portion == Decimal("300")

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5")])
    def test_non_positive(self, loan, amount):
        with pytest.raises(ValidationError):
            allocate_payment(loan, amount)

    def test_residue_rejected(self, loan):
        with pytest.raises(OverpaymentError):
            allocate_payment(loan, Decimal("12500.01"))

    @pytest.mark.parametrize("amount", [Decimal("NaN"), Decimal("sNaN"), Decimal("Infinity")])
    def test_non_finite(self, loan, amount):
        with pytest.raises(ValidationError) as exc_info:
            allocate_payment(loan, amount)
        assert exc_info.value.field == "payment_amount"


class TestApplyPayment:

    def test_partial_payment(self, allocator, loan):
        result = allocator.apply_payment(loan, Decimal("5000"), receipt_id="RCP0000001", recorded_by="officer-1")

        assert result.loan.total_paid == Decimal("5000")
        assert result.loan.interest_paid == Decimal("2500.00")
        assert result.loan.principal_paid == Decimal("2500.00")
        assert result.loan.remaining_balance == Decimal("7500.00")
        assert result.loan.status == LoanStatus.ACTIVE
        assert not result.completed

        repayment = result.repayment
        assert repayment.receipt_id == "RCP0000001"
        assert repayment.loan_id == loan.id
        assert repayment.customer_id == loan.customer_id
        assert repayment.interest_paid == Decimal("2500.00")
        assert repayment.principal_paid == Decimal("2500.00")
        assert repayment.remaining_interest == Decimal("0")
        assert repayment.remaining_principal == Decimal("7500.00")
        assert repayment.remaining_balance == Decimal("7500.00")
        assert repayment.status == RepaymentStatus.APPROVED
        assert repayment.approved_by == "officer-1"

        # Input loan untouched
        assert loan.total_paid == Decimal("0")

    def test_final_payment_completes(self, allocator, loan):
        first = allocator.apply_payment(loan, Decimal("5000"), "RCP0000001", "officer-1")
        second = allocator.apply_payment(first.loan, Decimal("7500"), "RCP0000002", "officer-1")
        assert second.completed
        assert second.loan.remaining_balance == Decimal("0")
        assert second.loan.completed_at is not None

        with pytest.raises(LoanNotPayable):
            allocator.apply_payment(second.loan, Decimal("1"), "RCP0000003", "officer-1")

    def test_overpayment_leaves_loan_unchanged(self, allocator, loan):
        with pytest.raises(OverpaymentError) as exc_info:
            allocator.apply_payment(loan, Decimal("12500.01"), "RCP0000001", "officer-1")
        assert exc_info.value.outstanding == Decimal("12500.00")
        assert loan.remaining_balance == Decimal("12500.00")

    @pytest.mark.parametrize("amount", ["NaN", "sNaN", "Infinity", float("nan")])
    def test_non_finite_amount(self, allocator, loan, amount):
        with pytest.raises(ValidationError) as exc_info:
            allocator.apply_payment(loan, amount, "RCP0000001", "officer-1")
        assert exc_info.value.field == "payment_amount"
        assert loan.remaining_balance == Decimal("12500.00")

    @pytest.mark.parametrize("status", [
        LoanStatus.PENDING, LoanStatus.APPROVED, LoanStatus.REJECTED,
        LoanStatus.COMPLETED, LoanStatus.DEFAULTED,
    ])
    def test_not_payable_statuses(self, allocator, status):
        with pytest.raises(LoanNotPayable):
            allocator.apply_payment(make_loan(status=status), Decimal("100"), "RCP0000001", "officer-1")

    def test_overdue_loan_accepts_payment(self, allocator):
        result = allocator.apply_payment(
            make_loan(status=LoanStatus.OVERDUE), Decimal("12500.00"), "RCP0000001", "officer-1"
        )
        assert result.loan.status == LoanStatus.COMPLETED

    def test_unknown_payment_method(self, allocator, loan):
        with pytest.raises(ValidationError) as exc_info:
            allocator.apply_payment(loan, Decimal("10"), "RCP0000001", "officer-1", payment_method="Gold")
        assert exc_info.value.field == "payment_method"

    def test_pending_status_has_no_approval(self, allocator, loan):
        result = allocator.apply_payment(
            loan, Decimal("10"), "RCP0000001", "officer-1",
            payment_method=PaymentMethod.MOBILE_MONEY, status=RepaymentStatus.PENDING
        )
        assert result.repayment.approved_by is None
        assert result.repayment.approved_at is None
        assert result.repayment.payment_method == PaymentMethod.MOBILE_MONEY

    def test_not_idempotent(self, allocator, loan):
        """Applying the same payment twice counts it twice"""
        first = allocator.apply_payment(loan, Decimal("1000"), "RCP0000001", "officer-1")
        second = allocator.apply_payment(first.loan, Decimal("1000"), "RCP0000002", "officer-1")
        assert second.loan.total_paid == Decimal("2000")
        assert first.repayment.id != second.repayment.id


class TestReplay:

    def _pay(self, allocator, loan, amounts, start):
        repayments = []
        for i, amount in enumerate(amounts):
            result = allocator.apply_payment(
                loan, amount, f"RCP{i + 1:07d}", "officer-1",
                payment_date=start + timedelta(days=i)
            )
            loan = result.loan
            repayments.append(result.repayment)
        return loan, repayments

    def test_consistent_ledger(self, allocator, loan):
        start = datetime(2024, 5, 1, tzinfo=timezone.utc)
        paid, repayments = self._pay(allocator, loan, [Decimal("1000"), Decimal("3000"), Decimal("500")], start)

        result = replay_repayments(paid, reversed(repayments))
        assert result.is_consistent
        assert result.repayment_count == 3
        assert result.expected_total_paid == Decimal("4500")
        assert result.expected_interest_paid == Decimal("2500.00")
        assert result.expected_principal_paid == Decimal("2000.00")

    def test_detects_drift(self, allocator, loan):
        start = datetime(2024, 5, 1, tzinfo=timezone.utc)
        paid, repayments = self._pay(allocator, loan, [Decimal("1000")], start)
        drifted = replace(paid, total_paid=Decimal("2000"))

        result = replay_repayments(drifted, repayments)
        assert not result.is_consistent
        assert result.mismatches["total_paid"] == ("2000", "1000")
        assert result.to_dict()["is_consistent"] is False

    def test_repayment_round_trip(self, allocator, loan):
        repayment = allocator.apply_payment(
            loan, Decimal("250.50"), "RCP0000001", "officer-1", transaction_reference="MM-77"
        ).repayment
        assert Repayment.from_dict(repayment.to_dict()) == repayment
