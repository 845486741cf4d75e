"""
Error Taxonomy

Every failure raised by the loan management core is a MicrolendError.
None of them is fatal; the API layer maps each type to a response status.
"""

from decimal import Decimal
from typing import Optional


class MicrolendError(Exception):
    """Base exception for all loan management errors"""


class ValidationError(MicrolendError):
    """Malformed or out-of-range input"""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        if field:
            message = f"{field}: {message}"
        super().__init__(message)


class DuplicatePaymentError(ValidationError):
    """A payment with the same transaction reference was already applied to the loan"""

    def __init__(self, loan_id: str, reference: str):
        self.loan_id = loan_id
        self.reference = reference
        super().__init__(
            f"Payment reference {reference} was already recorded for loan {loan_id}",
            field="transaction_reference"
        )


class InvalidStateTransition(MicrolendError):
    """Attempted status change that the current status does not permit"""

    def __init__(self, entity: str, current: str, attempted: str):
        self.entity = entity
        self.current = current
        self.attempted = attempted
        super().__init__(f"Cannot move {entity} from {current} to {attempted}")


class OverpaymentError(MicrolendError):
    """Payment exceeds the outstanding balance"""

    def __init__(self, payment_amount: Decimal, outstanding: Decimal):
        self.payment_amount = payment_amount
        self.outstanding = outstanding
        super().__init__(
            f"Payment amount ({payment_amount}) exceeds remaining balance ({outstanding})"
        )


class LoanNotPayable(MicrolendError):
    """Loan is not in a status that accepts repayments"""

    def __init__(self, loan_id: str, status: str):
        self.loan_id = loan_id
        self.status = status
        super().__init__(f"Loan {loan_id} is {status} and cannot accept payments")


class ConcurrencyConflict(MicrolendError):
    """Optimistic write collision; reload and retry"""

    def __init__(self, entity: str, record_id: str):
        self.entity = entity
        self.record_id = record_id
        super().__init__(f"Concurrent modification of {entity} {record_id}")


class PermissionDenied(MicrolendError):
    """Acting staff member's role does not allow the action"""

    def __init__(self, action: str, role: Optional[str]):
        self.action = action
        self.role = role
        super().__init__(f"Role {role} is not allowed to {action}")


class NotFoundError(MicrolendError):
    """Referenced record does not exist"""

    def __init__(self, entity: str, record_id: str):
        self.entity = entity
        self.record_id = record_id
        super().__init__(f"{entity.capitalize()} {record_id} not found")
