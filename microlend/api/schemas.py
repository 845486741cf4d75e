"""
Pydantic schemas for API requests and response serialization
"""

from decimal import Decimal
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..customers import Customer
from ..loans import Loan
from ..payments import Repayment
from ..rbac import StaffUser
from ..storage import to_storable


# Staff schemas
class CreateStaffRequest(BaseModel):
    first_name: str
    last_name: str
    email: str
    role: str = Field("Loan Officer", description="Admin or Loan Officer")
    phone_number: Optional[str] = None
    branch: str = "Main Office"


# Customer schemas
class ContactModel(BaseModel):
    name: str
    phone_number: Optional[str] = None
    address: Optional[str] = None


class GroupMemberModel(BaseModel):
    name: str
    phone_number: Optional[str] = None
    relationship: Optional[str] = None


class NextOfKinModel(BaseModel):
    name: str
    relationship: str
    phone_number: str
    address: Optional[str] = None


class CreateCustomerRequest(BaseModel):
    first_name: str
    last_name: str
    phone_number: str
    address: str
    preferred_loan_product: str = Field(..., description="Monthly, Weekly or Daily")
    id_type: str = Field(..., description="National ID, Passport, Driver License or Voter Card")
    id_number: str
    next_of_kin: NextOfKinModel
    customer_type: str = "Individual"
    email: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[str] = None
    group_name: Optional[str] = None
    group_leader: Optional[ContactModel] = None
    union_leader: Optional[ContactModel] = None
    union_secretary: Optional[ContactModel] = None
    group_members: List[GroupMemberModel] = Field(default_factory=list)
    business_name: Optional[str] = None
    business_type: Optional[str] = None
    business_address: Optional[str] = None
    notes: Optional[str] = None


class UpdateCustomerRequest(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None
    address: Optional[str] = None
    preferred_loan_product: Optional[str] = None
    id_type: Optional[str] = None
    id_number: Optional[str] = None
    next_of_kin: Optional[NextOfKinModel] = None
    email: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[str] = None
    group_name: Optional[str] = None
    group_leader: Optional[ContactModel] = None
    union_leader: Optional[ContactModel] = None
    union_secretary: Optional[ContactModel] = None
    group_members: Optional[List[GroupMemberModel]] = None
    business_name: Optional[str] = None
    business_type: Optional[str] = None
    business_address: Optional[str] = None
    notes: Optional[str] = None


class RejectRequest(BaseModel):
    reason: str


# Loan schemas
class CreateLoanRequest(BaseModel):
    customer_id: str
    loan_product: str = Field(..., description="Monthly, Weekly or Daily")
    principal_amount: Decimal
    tenure: int
    purpose: Optional[str] = None
    start_date: Optional[datetime] = None
    notes: Optional[str] = None
    # Quoted figures, ignored unless the server accepts quotes
    interest_rate: Optional[Decimal] = None
    tenure_unit: Optional[str] = None
    interest_amount: Optional[Decimal] = None
    total_payable: Optional[Decimal] = None
    installment_amount: Optional[Decimal] = None

    def quote(self) -> Optional[Dict[str, Any]]:
        figures = {
            "interest_rate": self.interest_rate,
            "tenure_unit": self.tenure_unit,
            "interest_amount": self.interest_amount,
            "total_payable": self.total_payable,
            "installment_amount": self.installment_amount,
        }
        figures = {k: v for k, v in figures.items() if v is not None}
        return figures or None


class UpdateLoanRequest(BaseModel):
    loan_product: Optional[str] = None
    principal_amount: Optional[Decimal] = None
    tenure: Optional[int] = None
    purpose: Optional[str] = None
    start_date: Optional[datetime] = None
    notes: Optional[str] = None


class ResumeLoanRequest(BaseModel):
    end_date: Optional[datetime] = Field(None, description="New end date when the loan was rescheduled")


# Repayment schemas
class RecordRepaymentRequest(BaseModel):
    loan_id: str
    payment_amount: Decimal
    payment_method: str = "Cash"
    transaction_reference: Optional[str] = None
    notes: Optional[str] = None
    payment_date: Optional[datetime] = None


# Serializers
def staff_to_response(staff: StaffUser) -> Dict[str, Any]:
    data = staff.to_dict()
    data["full_name"] = staff.full_name
    return data


def customer_to_response(customer: Customer) -> Dict[str, Any]:
    data = customer.to_dict()
    data["full_name"] = customer.full_name
    return data


def loan_to_response(loan: Loan) -> Dict[str, Any]:
    data = loan.to_dict()
    data.update(to_storable({
        "remaining_interest": loan.remaining_interest,
        "remaining_principal": loan.remaining_principal,
        "progress_percentage": loan.progress_percentage,
    }))
    return data


def repayment_to_response(repayment: Repayment) -> Dict[str, Any]:
    return repayment.to_dict()
