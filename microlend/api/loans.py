"""
Loan endpoints
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, status

from .deps import LendingSystem, current_actor, get_system
from .schemas import (
    CreateLoanRequest,
    UpdateLoanRequest,
    RejectRequest,
    ResumeLoanRequest,
    loan_to_response,
    repayment_to_response
)
from ..rbac import Actor, Permission, require_permission
from ..storage import to_storable


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Create a loan application"""
    loan = system.loan_manager.create_loan(
        actor,
        customer_id=request.customer_id,
        loan_product=request.loan_product,
        principal_amount=request.principal_amount,
        tenure=request.tenure,
        purpose=request.purpose,
        start_date=request.start_date,
        notes=request.notes,
        quote=request.quote()
    )
    return {"loan": loan_to_response(loan), "message": "Loan application created successfully"}


@router.get("")
async def list_loans(
    status: Optional[str] = None,
    loan_product: Optional[str] = None,
    customer_id: Optional[str] = None,
    search: Optional[str] = None,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """List loans visible to the caller"""
    loans = system.loan_manager.list_loans(
        actor,
        status=status,
        loan_product=loan_product,
        customer_id=customer_id,
        search=search
    )
    return {"count": len(loans), "data": [loan_to_response(loan) for loan in loans]}


@router.get("/stats/summary")
async def loan_summary(
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Portfolio counts and totals (Admin)"""
    require_permission(actor, Permission.VIEW_REPORTS)
    return to_storable(system.loan_manager.loan_summary())


@router.post("/sweep-overdue")
async def sweep_overdue(
    as_of: Optional[datetime] = None,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Move every past-due Active loan to Overdue (Admin)"""
    require_permission(actor, Permission.DEFAULT_LOAN)
    moved = system.loan_manager.sweep_overdue(as_of)
    return {"count": len(moved), "loan_ids": [loan.loan_id for loan in moved]}


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Get loan by internal or LOAN ID"""
    return loan_to_response(system.loan_manager.get_loan_for(loan_id, actor))


@router.put("/{loan_id}")
async def update_loan(
    loan_id: str,
    request: UpdateLoanRequest,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Update a pending application"""
    loan = system.loan_manager.update_loan(loan_id, actor, **request.model_dump(exclude_unset=True))
    return {"loan": loan_to_response(loan), "message": "Loan updated successfully"}


@router.delete("/{loan_id}")
async def delete_loan(
    loan_id: str,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Delete a pending application (Admin)"""
    system.loan_manager.delete_loan(loan_id, actor)
    return {"message": "Loan deleted successfully"}


@router.put("/{loan_id}/approve")
async def approve_loan(
    loan_id: str,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Approve a pending application (Admin)"""
    loan = system.loan_manager.approve_loan(loan_id, actor)
    return {"loan": loan_to_response(loan), "message": "Loan approved successfully"}


@router.put("/{loan_id}/reject")
async def reject_loan(
    loan_id: str,
    request: RejectRequest,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Reject a pending application (Admin)"""
    loan = system.loan_manager.reject_loan(loan_id, actor, request.reason)
    return {"loan": loan_to_response(loan), "message": "Loan rejected"}


@router.put("/{loan_id}/disburse")
async def disburse_loan(
    loan_id: str,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Disburse an approved loan (Admin)"""
    loan = system.loan_manager.disburse_loan(loan_id, actor)
    return {"loan": loan_to_response(loan), "message": "Loan disbursed successfully"}


@router.put("/{loan_id}/default")
async def default_loan(
    loan_id: str,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Write off an active or overdue loan (Admin)"""
    loan = system.loan_manager.mark_defaulted(loan_id, actor)
    return {"loan": loan_to_response(loan), "message": "Loan marked as defaulted"}


@router.put("/{loan_id}/resume")
async def resume_loan(
    loan_id: str,
    request: ResumeLoanRequest,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Return an overdue loan to Active (Admin)"""
    loan = system.loan_manager.resume_loan(loan_id, actor, end_date=request.end_date)
    return {"loan": loan_to_response(loan), "message": "Loan resumed"}


@router.get("/{loan_id}/repayments")
async def get_loan_repayments(
    loan_id: str,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Repayment ledger of a loan, oldest first"""
    loan = system.loan_manager.get_loan_for(loan_id, actor)
    repayments = system.loan_manager.get_repayments(loan.id)
    return {"count": len(repayments), "data": [repayment_to_response(r) for r in repayments]}


@router.get("/{loan_id}/reconciliation")
async def reconcile_loan(
    loan_id: str,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Compare a loan's totals against a replay of its repayments"""
    loan = system.loan_manager.get_loan_for(loan_id, actor)
    return system.loan_manager.reconcile_loan(loan.id).to_dict()
