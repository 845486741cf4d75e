"""
Customer management endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .deps import LendingSystem, current_actor, get_system
from .schemas import (
    CreateCustomerRequest,
    UpdateCustomerRequest,
    RejectRequest,
    customer_to_response
)
from ..errors import NotFoundError, PermissionDenied
from ..rbac import Actor, Permission, can_access, require_permission


router = APIRouter()


def _find(system: LendingSystem, customer_id: str):
    manager = system.customer_manager
    customer = manager.get_customer(customer_id) or manager.get_by_customer_id(customer_id)
    if not customer:
        raise NotFoundError("customer", customer_id)
    return customer


@router.post("", status_code=status.HTTP_201_CREATED)
async def register_customer(
    request: CreateCustomerRequest,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Register a new customer (Pending until an admin approves)"""
    details = request.model_dump(exclude={
        "first_name", "last_name", "phone_number", "address", "preferred_loan_product",
        "id_type", "id_number", "next_of_kin", "customer_type",
    })
    customer = system.customer_manager.register_customer(
        actor,
        first_name=request.first_name,
        last_name=request.last_name,
        phone_number=request.phone_number,
        address=request.address,
        preferred_loan_product=request.preferred_loan_product,
        id_type=request.id_type,
        id_number=request.id_number,
        next_of_kin=request.next_of_kin.model_dump(),
        customer_type=request.customer_type,
        **details
    )
    return {
        "customer_id": customer.customer_id,
        "id": customer.id,
        "message": "Customer registered successfully"
    }


@router.get("")
async def list_customers(
    status: Optional[str] = None,
    customer_type: Optional[str] = None,
    preferred_loan_product: Optional[str] = None,
    search: Optional[str] = None,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Search customers visible to the caller"""
    customers = system.customer_manager.search_customers(
        actor,
        status=status,
        customer_type=customer_type,
        preferred_loan_product=preferred_loan_product,
        search=search
    )
    return {"count": len(customers), "data": [customer_to_response(c) for c in customers]}


@router.get("/stats/summary")
async def customer_summary(
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Customer counts by status and type (Admin)"""
    return system.customer_manager.customer_summary(actor)


@router.get("/{customer_id}")
async def get_customer(
    customer_id: str,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Get customer by internal or CUST ID"""
    require_permission(actor, Permission.VIEW_CUSTOMER)
    customer = _find(system, customer_id)
    if not can_access(actor, customer.created_by):
        raise PermissionDenied("view another officer's customer", actor.role.value)
    return customer_to_response(customer)


@router.put("/{customer_id}")
async def update_customer(
    customer_id: str,
    request: UpdateCustomerRequest,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Update customer details"""
    changes = request.model_dump(exclude_unset=True)
    customer = system.customer_manager.update_customer(customer_id, actor, **changes)
    return {"customer": customer_to_response(customer), "message": "Customer updated successfully"}


@router.put("/{customer_id}/approve")
async def approve_customer(
    customer_id: str,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Approve a pending customer (Admin)"""
    customer = system.customer_manager.approve_customer(customer_id, actor)
    return {"customer": customer_to_response(customer), "message": "Customer approved successfully"}


@router.put("/{customer_id}/reject")
async def reject_customer(
    customer_id: str,
    request: RejectRequest,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Reject a pending customer (Admin)"""
    customer = system.customer_manager.reject_customer(customer_id, actor, request.reason)
    return {"customer": customer_to_response(customer), "message": "Customer rejected"}


@router.put("/{customer_id}/deactivate")
async def deactivate_customer(
    customer_id: str,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Deactivate a customer (Admin)"""
    customer = system.customer_manager.deactivate_customer(customer_id, actor)
    return {"customer": customer_to_response(customer), "message": "Customer deactivated"}


@router.put("/{customer_id}/reactivate")
async def reactivate_customer(
    customer_id: str,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Reactivate an inactive customer (Admin)"""
    customer = system.customer_manager.reactivate_customer(customer_id, actor)
    return {"customer": customer_to_response(customer), "message": "Customer reactivated"}
