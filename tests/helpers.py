"""
Builders shared by the test modules
"""

from datetime import datetime, timezone
from decimal import Decimal

from microlend.interest import LoanProduct, TenureUnit
from microlend.loans import Loan


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
NEXT_OF_KIN = {"name": "Grace Banda", "relationship": "Sister", "phone_number": "0991000000"}


def make_loan(**overrides) -> Loan:
    """A 10000 Monthly loan over 3 months, Pending unless overridden"""
    fields = dict(
        id="loan-1",
        created_at=NOW,
        updated_at=NOW,
        loan_id="LOAN000001",
        customer_id="customer-1",
        loan_product=LoanProduct.MONTHLY,
        principal_amount=Decimal("10000"),
        interest_rate=Decimal("25"),
        interest_amount=Decimal("2500.00"),
        total_payable=Decimal("12500.00"),
        tenure=3,
        tenure_unit=TenureUnit.MONTHS,
        installment_amount=Decimal("4166.67"),
        remaining_balance=Decimal("12500.00"),
        created_by="officer-1",
    )
    fields.update(overrides)
    return Loan(**fields)


def register(system, actor, **overrides):
    """Register a customer with sensible defaults"""
    fields = dict(
        first_name="Alice",
        last_name="Phiri",
        phone_number="0888123456",
        address="Area 25, Lilongwe",
        preferred_loan_product="Monthly",
        id_type="National ID",
        id_number="NID-0001",
        next_of_kin=dict(NEXT_OF_KIN),
    )
    fields.update(overrides)
    return system.customer_manager.register_customer(actor, **fields)


def active_loan(system, admin, officer, customer, principal=Decimal("10000"), product="Monthly", tenure=3):
    """Create, approve and disburse a loan"""
    loan = system.loan_manager.create_loan(
        officer, customer_id=customer.customer_id, loan_product=product,
        principal_amount=principal, tenure=tenure
    )
    system.loan_manager.approve_loan(loan.loan_id, admin)
    return system.loan_manager.disburse_loan(loan.loan_id, admin)
