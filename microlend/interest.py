"""
Interest Policy Module

Maps a loan product to its flat interest rate and tenure unit, and derives the
interest amount, total payable and per-installment amount of a loan.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from datetime import date, datetime, timedelta
from dataclasses import dataclass
from typing import Optional, Union
from enum import Enum
import calendar

from .errors import ValidationError


CENT = Decimal('0.01')
MIN_PRINCIPAL_AMOUNT = Decimal('1000')


def round2(value: Decimal) -> Decimal:
    """Round a monetary amount to 2 decimal places, half up"""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value: Union[Decimal, int, float, str], field: str) -> Decimal:
    """Coerce a numeric input to Decimal, naming the field on failure"""
    if isinstance(value, bool):
        raise ValidationError("must be a number", field=field)
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            # str() first so floats keep their printed value
            result = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError(f"{value!r} is not a number", field=field)
    if not result.is_finite():
        raise ValidationError("must be a finite number", field=field)
    return result


class LoanProduct(Enum):
    """Loan products offered"""
    MONTHLY = "Monthly"
    WEEKLY = "Weekly"
    DAILY = "Daily"

    @classmethod
    def parse(cls, value: Union['LoanProduct', str]) -> 'LoanProduct':
        """Accept an enum member or its display value"""
        if isinstance(value, cls):
            return value
        for product in cls:
            if product.value == value:
                return product
        raise ValidationError(f"unknown loan product {value!r}", field="loan_product")


class TenureUnit(Enum):
    """Unit a loan's tenure is counted in"""
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"

    @classmethod
    def parse(cls, value: Union['TenureUnit', str]) -> 'TenureUnit':
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"unknown tenure unit {value!r}", field="tenure_unit")


@dataclass(frozen=True)
class ProductTerms:
    """Fixed pricing and tenure rules of a loan product"""
    interest_rate: Decimal   # Flat percentage over the whole tenure, e.g. 25 for 25%
    tenure_unit: TenureUnit
    max_tenure: int


PRODUCT_TERMS = {
    LoanProduct.MONTHLY: ProductTerms(Decimal('25'), TenureUnit.MONTHS, 6),
    LoanProduct.WEEKLY: ProductTerms(Decimal('27'), TenureUnit.WEEKS, 24),
    LoanProduct.DAILY: ProductTerms(Decimal('18'), TenureUnit.DAYS, 20),
}


@dataclass(frozen=True)
class LoanFinancials:
    """Derived financial figures of a loan"""
    interest_rate: Decimal
    tenure_unit: TenureUnit
    interest_amount: Decimal
    total_payable: Decimal
    installment_amount: Decimal


def derive_financials(
    loan_product: Union[LoanProduct, str],
    principal_amount: Union[Decimal, int, str],
    tenure: int,
    interest_rate: Optional[Decimal] = None,
    tenure_unit: Optional[Union[TenureUnit, str]] = None,
    interest_amount: Optional[Decimal] = None,
    total_payable: Optional[Decimal] = None,
    installment_amount: Optional[Decimal] = None,
    min_principal: Decimal = MIN_PRINCIPAL_AMOUNT
) -> LoanFinancials:
    """
    Derive interest, total payable and installment for a loan.

    Any figure passed in explicitly is returned unmodified; only the missing
    ones are computed, from the explicit figures where present.

    Args:
        loan_product: Monthly, Weekly or Daily
        principal_amount: Amount lent, at least min_principal
        tenure: Number of tenure units, positive
        interest_rate, tenure_unit, interest_amount, total_payable,
        installment_amount: Optional pre-computed figures

    Returns:
        LoanFinancials

    Raises:
        ValidationError: principal below the minimum, non-positive tenure,
            or unknown product
    """
    product = LoanProduct.parse(loan_product)
    principal = to_decimal(principal_amount, "principal_amount")

    if principal < min_principal:
        raise ValidationError(f"minimum loan amount is {min_principal}", field="principal_amount")
    if isinstance(tenure, bool) or not isinstance(tenure, int) or tenure <= 0:
        raise ValidationError("must be a positive whole number", field="tenure")

    terms = PRODUCT_TERMS[product]

    rate = terms.interest_rate if interest_rate is None else to_decimal(interest_rate, "interest_rate")
    unit = terms.tenure_unit if tenure_unit is None else TenureUnit.parse(tenure_unit)

    if interest_amount is None:
        interest_amount = round2(principal * rate / Decimal('100'))
    else:
        interest_amount = to_decimal(interest_amount, "interest_amount")

    if total_payable is None:
        total_payable = principal + interest_amount
    else:
        total_payable = to_decimal(total_payable, "total_payable")

    if installment_amount is None:
        installment_amount = round2(total_payable / Decimal(tenure))
    else:
        installment_amount = to_decimal(installment_amount, "installment_amount")

    return LoanFinancials(
        interest_rate=rate,
        tenure_unit=unit,
        interest_amount=interest_amount,
        total_payable=total_payable,
        installment_amount=installment_amount
    )


def validate_tenure(
    loan_product: Union[LoanProduct, str],
    tenure: int,
    max_tenure: Optional[int] = None
) -> None:
    """
    Enforce the product's tenure ceiling

    Args:
        loan_product: Product being applied for
        tenure: Requested tenure
        max_tenure: Override of the product's default ceiling
    """
    product = LoanProduct.parse(loan_product)
    terms = PRODUCT_TERMS[product]
    ceiling = max_tenure if max_tenure is not None else terms.max_tenure
    if tenure > ceiling:
        raise ValidationError(
            f"{product.value} loan tenure cannot exceed {ceiling} {terms.tenure_unit.value}",
            field="tenure"
        )


def add_months(start: Union[date, datetime], months: int) -> Union[date, datetime]:
    """Add calendar months, clamping the day to the target month's last day"""
    month = start.month - 1 + months
    year = start.year + month // 12
    month = month % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def calculate_end_date(
    start: Union[date, datetime],
    tenure: int,
    tenure_unit: Union[TenureUnit, str]
) -> Union[date, datetime]:
    """Date the loan falls due: start plus tenure in the given unit"""
    unit = TenureUnit.parse(tenure_unit)
    if unit == TenureUnit.DAYS:
        return start + timedelta(days=tenure)
    if unit == TenureUnit.WEEKS:
        return start + timedelta(days=tenure * 7)
    return add_months(start, tenure)
