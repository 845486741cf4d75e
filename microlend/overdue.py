"""
Overdue Detection Module

Pure predicates over loans already loaded by the caller. Nothing here changes
a loan's status; the overdue sweep in LoanManager applies Active -> Overdue
using check_overdue.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Iterable, List, Optional, Union

from .lifecycle import LoanStatus

if TYPE_CHECKING:
    from .loans import Loan


def _as_datetime(value: Union[date, datetime]) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def check_overdue(loan: 'Loan', as_of: Optional[Union[date, datetime]] = None) -> bool:
    """
    True iff the loan is Active, has an end date strictly in the past and
    still has a positive remaining balance
    """
    if loan.status != LoanStatus.ACTIVE or loan.end_date is None:
        return False
    now = _as_datetime(as_of) if as_of else datetime.now(timezone.utc)
    return _as_datetime(loan.end_date) < now and loan.remaining_balance > Decimal('0')


def find_overdue(
    loans: Iterable['Loan'],
    as_of: Optional[Union[date, datetime]] = None
) -> List['Loan']:
    """Loans for which check_overdue holds"""
    return [loan for loan in loans if check_overdue(loan, as_of)]


def days_overdue(loan: 'Loan', as_of: Optional[Union[date, datetime]] = None) -> int:
    """Whole days past the end date for loans with a balance outstanding (0 otherwise)"""
    if loan.status not in (LoanStatus.ACTIVE, LoanStatus.OVERDUE) or loan.end_date is None:
        return 0
    if loan.remaining_balance <= Decimal('0'):
        return 0
    now = _as_datetime(as_of) if as_of else datetime.now(timezone.utc)
    delta = now - _as_datetime(loan.end_date)
    return max(0, delta.days)
