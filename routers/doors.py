"""
Door Management APIs, including door access grants.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from auth.dependencies import get_current_user, get_db_session, require_administrator
from auth.permissions import can_view_door
from database.models import User
from services.door_service import DoorService, GrantOutcome
from services.user_service import UserService


router = APIRouter(prefix="/api/doors", tags=["doors"])


# Request Models
class DoorCreate(BaseModel):
    """Create door request."""
    name: str = Field(..., min_length=1, max_length=255)
    location: Optional[str] = Field(None, max_length=255)
    actuatorAddress: str = Field(..., min_length=1, max_length=255)
    actuatorKey: Optional[str] = None
    doubleVerificationWindowDays: int = Field(0, ge=0)


class DoorUpdate(BaseModel):
    """Update door request. Omitted fields are unchanged."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    location: Optional[str] = Field(None, max_length=255)
    actuatorAddress: Optional[str] = Field(None, min_length=1, max_length=255)
    actuatorKey: Optional[str] = None
    doubleVerificationWindowDays: Optional[int] = Field(None, ge=0)
    isActive: Optional[bool] = None


_UPDATE_FIELDS = {
    "name": "name",
    "location": "location",
    "actuatorAddress": "actuator_address",
    "actuatorKey": "actuator_key",
    "doubleVerificationWindowDays": "double_verification_window_days",
    "isActive": "is_active",
}


def _get_door_or_404(db: Session, door_id: int):
    door = DoorService.get_door(db, door_id)
    if not door:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Door not found")
    return door


@router.get("")
async def list_doors(
    includeInactive: bool = Query(False),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db_session)
):
    """
    List doors.
    Administrators see all doors; others the active doors they hold a grant on.
    """
    doors = DoorService.list_doors(db, current_user, include_inactive=includeInactive)
    return {"success": True, "data": [DoorService.to_dict(door) for door in doors]}


@router.get("/{door_id}")
async def get_door(
    door_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db_session)
):
    """Get door by ID."""
    door = _get_door_or_404(db, door_id)
    if not can_view_door(current_user, door):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return {"success": True, "data": DoorService.to_dict(door)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_door(
    door_data: DoorCreate,
    current_user: User = Depends(require_administrator),
    db: Session = Depends(get_db_session)
):
    """
    Create door.
    Administrator only.
    """
    door = DoorService.create_door(
        db=db,
        name=door_data.name,
        location=door_data.location,
        actuator_address=door_data.actuatorAddress,
        actuator_key=door_data.actuatorKey,
        double_verification_window_days=door_data.doubleVerificationWindowDays,
        created_by=current_user.id,
    )
    return {"success": True, "data": DoorService.to_dict(door)}


@router.put("/{door_id}")
async def update_door(
    door_id: int,
    door_data: DoorUpdate,
    current_user: User = Depends(require_administrator),
    db: Session = Depends(get_db_session)
):
    """
    Update door.
    Administrator only.
    """
    door = _get_door_or_404(db, door_id)
    provided = door_data.model_dump(exclude_unset=True)
    changes = {_UPDATE_FIELDS[key]: value for key, value in provided.items()}
    try:
        door = DoorService.update_door(db, door, changes)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return {"success": True, "data": DoorService.to_dict(door)}


@router.delete("/{door_id}")
async def deactivate_door(
    door_id: int,
    current_user: User = Depends(require_administrator),
    db: Session = Depends(get_db_session)
):
    """
    Deactivate door (soft delete).
    Administrator only.
    """
    door = _get_door_or_404(db, door_id)
    DoorService.deactivate_door(db, door)
    return {"success": True, "message": "Door deactivated"}


def _target_user_or_404(db: Session, user_id: int) -> User:
    user = UserService.get_user(db, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


@router.post("/{door_id}/access/{user_id}")
async def grant_door_access(
    door_id: int,
    user_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db_session)
):
    """
    Grant a principal access to a door.
    Administrators always; others only on doors they hold, to roles below their own.
    """
    door = _get_door_or_404(db, door_id)
    grantee = _target_user_or_404(db, user_id)

    outcome = DoorService.grant_access(db, current_user, door, grantee)
    if outcome == GrantOutcome.FORBIDDEN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to grant access to this door")
    if outcome == GrantOutcome.CONFLICT:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="User already has access to this door")
    return {"success": True, "message": "Access granted", "doorIds": sorted(grantee.door_ids())}


@router.delete("/{door_id}/access/{user_id}")
async def revoke_door_access(
    door_id: int,
    user_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db_session)
):
    """
    Revoke a principal's access to a door.
    Administrators, or whoever created the principal.
    """
    door = _get_door_or_404(db, door_id)
    target = _target_user_or_404(db, user_id)

    outcome = DoorService.revoke_access(db, current_user, door, target)
    if outcome == GrantOutcome.FORBIDDEN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to revoke access for this user")
    if outcome == GrantOutcome.CONFLICT:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="User does not have access to this door")
    return {"success": True, "message": "Access revoked", "doorIds": sorted(target.door_ids())}
