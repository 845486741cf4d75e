"""
Repayment endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .deps import LendingSystem, current_actor, get_system
from .schemas import RecordRepaymentRequest, loan_to_response, repayment_to_response
from ..rbac import Actor, Permission, require_permission


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def record_repayment(
    request: RecordRepaymentRequest,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Record a repayment against an active or overdue loan"""
    result = system.loan_manager.record_repayment(
        request.loan_id,
        actor,
        payment_amount=request.payment_amount,
        payment_method=request.payment_method,
        transaction_reference=request.transaction_reference,
        notes=request.notes,
        payment_date=request.payment_date
    )
    message = "Loan fully repaid" if result.completed else "Repayment recorded successfully"
    return {
        "repayment": repayment_to_response(result.repayment),
        "loan": loan_to_response(result.loan),
        "message": message
    }


@router.get("")
async def list_repayments(
    loan_id: Optional[str] = None,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """All repayments, newest first"""
    require_permission(actor, Permission.VIEW_LOAN)
    if loan_id:
        system.loan_manager.get_loan_for(loan_id, actor)
    elif not actor.has_permission(Permission.VIEW_ALL_RECORDS):
        require_permission(actor, Permission.VIEW_ALL_RECORDS)
    repayments = system.loan_manager.list_repayments(loan_id)
    return {"count": len(repayments), "data": [repayment_to_response(r) for r in repayments]}
