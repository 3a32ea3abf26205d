"""
User Management APIs.
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, EmailStr, Field, model_validator
from sqlalchemy.orm import Session

from auth.dependencies import get_current_user, get_db_session, require_administrator, require_host
from auth.permissions import can_change_role, can_create, can_modify
from core.errors import ConflictError
from core.logger import logger
from database.models import User, UserRole
from services.user_service import UserService


router = APIRouter(prefix="/api/users", tags=["users"])


# Request/Response Models
class AccessPeriod(BaseModel):
    """Advisory time window; stored, not enforced at the door."""
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def end_after_start(self):
        if self.end <= self.start:
            raise ValueError("Access period end must be after start")
        return self


class UserCreate(BaseModel):
    """Create user request."""
    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    role: UserRole = UserRole.GUEST
    accessCode: str = Field(..., min_length=4, max_length=72)
    phone: Optional[str] = Field(None, max_length=50)
    faceDescriptor: Optional[List[float]] = Field(None, min_length=1)
    accessPeriods: List[AccessPeriod] = Field(default_factory=list)
    expirationDate: Optional[datetime] = None


class UserUpdate(BaseModel):
    """Update user request. Omitted fields are unchanged."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    email: Optional[EmailStr] = None
    role: Optional[UserRole] = None
    accessCode: Optional[str] = Field(None, min_length=4, max_length=72)
    phone: Optional[str] = Field(None, max_length=50)
    faceDescriptor: Optional[List[float]] = Field(None, min_length=1)
    accessPeriods: Optional[List[AccessPeriod]] = None
    expirationDate: Optional[datetime] = None
    isActive: Optional[bool] = None


class UserListResponse(BaseModel):
    """User list response."""
    data: List[dict]
    total: int
    page: int
    limit: int


_UPDATE_FIELDS = {
    "name": "name",
    "email": "email",
    "role": "role",
    "accessCode": "access_code",
    "phone": "phone",
    "faceDescriptor": "face_descriptor",
    "accessPeriods": "access_periods",
    "expirationDate": "expiration_date",
    "isActive": "is_active",
}


def _get_user_or_404(db: Session, user_id: int) -> User:
    user = UserService.get_user(db, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


@router.get("", response_model=UserListResponse)
async def list_users(
    role: Optional[UserRole] = Query(None, description="Filter by role"),
    search: Optional[str] = Query(None, description="Search by name or email"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_host),
    db: Session = Depends(get_db_session)
):
    """
    List users (paginated).
    Administrators see everyone; hosts see the users they created.
    """
    users, total = UserService.list_users(
        db, current_user, role=role, search=search, page=page, limit=limit
    )
    return UserListResponse(
        data=[UserService.to_dict(user) for user in users],
        total=total,
        page=page,
        limit=limit
    )


@router.get("/{user_id}")
async def get_user(
    user_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db_session)
):
    """
    Get user by ID.
    Administrators, the user themselves, or whoever created the user.
    """
    user = _get_user_or_404(db, user_id)
    if not can_modify(current_user, user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return {"success": True, "data": UserService.to_dict(user)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_user(
    user_data: UserCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db_session)
):
    """
    Create user with a role at or below what the caller may create.
    """
    if not can_create(current_user.role, user_data.role):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Role {current_user.role.value} cannot create {user_data.role.value} users"
        )

    try:
        user = UserService.create_user(
            db=db,
            name=user_data.name,
            email=user_data.email,
            role=user_data.role,
            access_code=user_data.accessCode,
            created_by=current_user.id,
            phone=user_data.phone,
            face_descriptor=user_data.faceDescriptor,
            access_periods=[p.model_dump() for p in user_data.accessPeriods],
            expiration_date=user_data.expirationDate,
        )
    except ConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return {"success": True, "data": UserService.to_dict(user)}


@router.put("/{user_id}")
async def update_user(
    user_id: int,
    user_data: UserUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db_session)
):
    """
    Update user.
    Role changes and activation are administrator-only; non-administrators
    cannot change their own expiration date.
    """
    user = _get_user_or_404(db, user_id)
    if not can_modify(current_user, user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")

    provided = user_data.model_dump(exclude_unset=True)

    new_role = provided.get("role")
    if new_role is not None and new_role != user.role:
        if not can_change_role(current_user.role, user.role, new_role):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only administrators can change roles")
    if provided.get("isActive") is not None and current_user.role != UserRole.ADMINISTRATOR:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only administrators can change account status")
    if "expirationDate" in provided and current_user.id == user.id and current_user.role != UserRole.ADMINISTRATOR:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot change your own expiration date")

    changes = {_UPDATE_FIELDS[key]: value for key, value in provided.items()}
    try:
        user = UserService.update_user(db, user, changes)
    except ConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    logger.info(f"User {current_user.id} updated user {user.id}")
    return {"success": True, "data": UserService.to_dict(user)}


@router.delete("/{user_id}")
async def deactivate_user(
    user_id: int,
    current_user: User = Depends(require_administrator),
    db: Session = Depends(get_db_session)
):
    """
    Deactivate user (soft delete).
    Administrator only.
    """
    user = _get_user_or_404(db, user_id)
    if user.id == current_user.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot deactivate your own account")
    UserService.deactivate_user(db, user)
    return {"success": True, "message": "User deactivated"}
