"""
Staff endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .deps import LendingSystem, current_actor, get_system, optional_actor
from .schemas import CreateStaffRequest, staff_to_response
from ..rbac import Actor, Permission, StaffRole, require_permission


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_staff(
    request: CreateStaffRequest,
    actor: Optional[Actor] = Depends(optional_actor),
    system: LendingSystem = Depends(get_system)
):
    """Create a staff user; the first one may be created without a header"""
    staff = system.staff_manager.create_staff(
        first_name=request.first_name,
        last_name=request.last_name,
        email=request.email,
        role=StaffRole.parse(request.role),
        phone_number=request.phone_number,
        branch=request.branch,
        created_by=actor
    )
    return {"staff": staff_to_response(staff), "message": "Staff user created successfully"}


@router.get("")
async def list_staff(
    role: Optional[str] = None,
    is_active: Optional[bool] = None,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """List staff users (Admin)"""
    require_permission(actor, Permission.MANAGE_STAFF)
    staff = system.staff_manager.list_staff(
        role=StaffRole.parse(role) if role else None,
        is_active=is_active
    )
    return {"count": len(staff), "data": [staff_to_response(s) for s in staff]}


@router.get("/me")
async def get_me(
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """The staff user behind the X-Staff-Id header"""
    return staff_to_response(system.staff_manager.get_staff(actor.user_id))


@router.put("/{staff_id}/deactivate")
async def deactivate_staff(
    staff_id: str,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Deactivate a staff user (Admin)"""
    staff = system.staff_manager.deactivate_staff(staff_id, actor)
    return {"staff": staff_to_response(staff), "message": "Staff user deactivated"}


@router.put("/{staff_id}/reactivate")
async def reactivate_staff(
    staff_id: str,
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    """Reactivate a staff user (Admin)"""
    staff = system.staff_manager.reactivate_staff(staff_id, actor)
    return {"staff": staff_to_response(staff), "message": "Staff user activated"}
