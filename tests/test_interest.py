"""
Tests for the interest policy: product terms, derived figures, tenure
ceilings and end-date arithmetic
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from microlend.errors import ValidationError
from microlend.interest import (
    LoanProduct, TenureUnit, PRODUCT_TERMS, add_months, calculate_end_date,
    derive_financials, round2, to_decimal, validate_tenure
)


class TestProductTerms:

    def test_rates_and_units(self):
        assert PRODUCT_TERMS[LoanProduct.MONTHLY].interest_rate == Decimal("25")
        assert PRODUCT_TERMS[LoanProduct.MONTHLY].tenure_unit == TenureUnit.MONTHS
        assert PRODUCT_TERMS[LoanProduct.WEEKLY].interest_rate == Decimal("27")
        assert PRODUCT_TERMS[LoanProduct.WEEKLY].tenure_unit == TenureUnit.WEEKS
        assert PRODUCT_TERMS[LoanProduct.DAILY].interest_rate == Decimal("18")
        assert PRODUCT_TERMS[LoanProduct.DAILY].tenure_unit == TenureUnit.DAYS

    def test_parse_unknown_product(self):
        with pytest.raises(ValidationError) as exc_info:
            LoanProduct.parse("Yearly")
        assert exc_info.value.field == "loan_product"


class TestDeriveFinancials:

    def test_monthly_loan(self):
        """10000 over 3 months at 25% flat"""
        figures = derive_financials("Monthly", Decimal("10000"), 3)
        assert figures.interest_rate == Decimal("25")
        assert figures.tenure_unit == TenureUnit.MONTHS
        assert figures.interest_amount == Decimal("2500.00")
        assert figures.total_payable == Decimal("12500.00")
        assert figures.installment_amount == Decimal("4166.67")

    def test_weekly_loan(self):
        figures = derive_financials(LoanProduct.WEEKLY, "5000", 10)
        assert figures.interest_amount == Decimal("1350.00")
        assert figures.total_payable == Decimal("6350.00")
        assert figures.installment_amount == Decimal("635.00")

    def test_daily_loan_rounds_half_up(self):
        figures = derive_financials("Daily", Decimal("1000.25"), 20)
        # 1000.25 * 18% = 180.045 -> 180.05
        assert figures.interest_amount == Decimal("180.05")
        assert figures.total_payable == Decimal("1180.30")

    def test_explicit_figures_pass_through(self):
        figures = derive_financials(
            "Monthly", Decimal("10000"), 3,
            interest_rate=Decimal("20"), interest_amount=Decimal("1999.99")
        )
        assert figures.interest_rate == Decimal("20")
        assert figures.interest_amount == Decimal("1999.99")
        assert figures.total_payable == Decimal("11999.99")

    def test_principal_below_minimum(self):
        with pytest.raises(ValidationError) as exc_info:
            derive_financials("Monthly", Decimal("999.99"), 3)
        assert exc_info.value.field == "principal_amount"

    @pytest.mark.parametrize("tenure", [0, -1, True, 2.5])
    def test_invalid_tenure(self, tenure):
        with pytest.raises(ValidationError):
            derive_financials("Weekly", Decimal("5000"), tenure)

    def test_non_numeric_principal(self):
        with pytest.raises(ValidationError):
            derive_financials("Monthly", "lots", 3)

    @pytest.mark.parametrize("principal", ["NaN", "sNaN", "Infinity", "-Infinity", float("nan"), Decimal("Infinity")])
    def test_non_finite_principal(self, principal):
        with pytest.raises(ValidationError) as exc_info:
            derive_financials("Monthly", principal, 3)
        assert exc_info.value.field == "principal_amount"

    def test_non_finite_quoted_figure(self):
        with pytest.raises(ValidationError) as exc_info:
            derive_financials("Monthly", Decimal("10000"), 3, total_payable=Decimal("NaN"))
        assert exc_info.value.field == "total_payable"


INSTALLMENT_CASES = [
    (product, tenure, principal)
    for product, terms in PRODUCT_TERMS.items()
    for tenure in range(1, terms.max_tenure + 1)
    for principal in (Decimal("1000"), Decimal("1234.57"), Decimal("9999.99"), Decimal("250000.01"))
]


class TestInstallmentReconstruction:

    @pytest.mark.parametrize("product, tenure, principal", INSTALLMENT_CASES)
    def test_installments_rebuild_total(self, product, tenure, principal):
        figures = derive_financials(product, principal, tenure)
        drift = abs(figures.installment_amount * tenure - figures.total_payable)
        assert drift <= Decimal("0.005") * tenure
        assert figures.total_payable == principal + figures.interest_amount


class TestTenureCeilings:

    def test_default_ceilings(self):
        validate_tenure("Monthly", 6)
        validate_tenure("Weekly", 24)
        validate_tenure("Daily", 20)
        with pytest.raises(ValidationError):
            validate_tenure("Monthly", 7)
        with pytest.raises(ValidationError):
            validate_tenure("Daily", 21)

    def test_configured_ceiling(self):
        with pytest.raises(ValidationError):
            validate_tenure("Weekly", 13, max_tenure=12)


class TestDateArithmetic:

    def test_add_months_clamps_to_month_end(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)

    def test_end_date_per_unit(self):
        start = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)
        assert calculate_end_date(start, 10, TenureUnit.DAYS) == datetime(2024, 3, 11, 9, 30, tzinfo=timezone.utc)
        assert calculate_end_date(start, 2, "weeks") == datetime(2024, 3, 15, 9, 30, tzinfo=timezone.utc)
        assert calculate_end_date(start, 6, "months") == datetime(2024, 9, 1, 9, 30, tzinfo=timezone.utc)


class TestHelpers:

    def test_round2(self):
        assert round2(Decimal("2.345")) == Decimal("2.35")
        assert round2(Decimal("2.344")) == Decimal("2.34")

    def test_to_decimal_keeps_float_text(self):
        assert to_decimal(0.1, "amount") == Decimal("0.1")

    def test_to_decimal_rejects_bool(self):
        with pytest.raises(ValidationError):
            to_decimal(True, "amount")

    @pytest.mark.parametrize("value", ["NaN", "sNaN", "Infinity", float("inf"), Decimal("-Infinity")])
    def test_to_decimal_rejects_non_finite(self, value):
        with pytest.raises(ValidationError) as exc_info:
            to_decimal(value, "amount")
        assert exc_info.value.field == "amount"
