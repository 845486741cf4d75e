"""
Tests for overdue detection
"""

from datetime import date, timedelta
from decimal import Decimal

from microlend.lifecycle import LoanStatus
from microlend.overdue import check_overdue, days_overdue, find_overdue

from helpers import NOW, make_loan


class TestCheckOverdue:

    def test_past_end_date_with_balance(self):
        loan = make_loan(status=LoanStatus.ACTIVE, end_date=NOW - timedelta(days=1))
        assert check_overdue(loan, NOW)

    def test_end_date_is_exclusive(self):
        loan = make_loan(status=LoanStatus.ACTIVE, end_date=NOW)
        assert not check_overdue(loan, NOW)

    def test_paid_off_is_not_overdue(self):
        loan = make_loan(
            status=LoanStatus.ACTIVE, end_date=NOW - timedelta(days=10),
            remaining_balance=Decimal("0")
        )
        assert not check_overdue(loan, NOW)

    def test_only_active_loans(self):
        for status in (LoanStatus.PENDING, LoanStatus.OVERDUE, LoanStatus.COMPLETED, LoanStatus.DEFAULTED):
            loan = make_loan(status=status, end_date=NOW - timedelta(days=10))
            assert not check_overdue(loan, NOW)

    def test_no_end_date(self):
        assert not check_overdue(make_loan(status=LoanStatus.ACTIVE), NOW)

    def test_accepts_plain_date(self):
        loan = make_loan(status=LoanStatus.ACTIVE, end_date=NOW - timedelta(days=3))
        assert check_overdue(loan, date(2024, 5, 1))


class TestFindAndCount:

    def test_find_overdue(self):
        late = make_loan(id="a", status=LoanStatus.ACTIVE, end_date=NOW - timedelta(days=2))
        current = make_loan(id="b", status=LoanStatus.ACTIVE, end_date=NOW + timedelta(days=2))
        assert find_overdue([late, current], NOW) == [late]

    def test_days_overdue(self):
        loan = make_loan(status=LoanStatus.OVERDUE, end_date=NOW - timedelta(days=12, hours=3))
        assert days_overdue(loan, NOW) == 12
        assert days_overdue(make_loan(status=LoanStatus.ACTIVE, end_date=NOW + timedelta(days=1)), NOW) == 0
        assert days_overdue(make_loan(status=LoanStatus.DEFAULTED, end_date=NOW - timedelta(days=5)), NOW) == 0
