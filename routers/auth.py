"""
Authentication endpoints: login with email + access code, current principal.
"""
from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy.orm import Session
from pydantic import BaseModel, EmailStr, Field

from database.models import User
from auth.dependencies import get_current_user, get_db_session
from services.auth_service import AuthService
from services.user_service import UserService
import config


router = APIRouter(prefix="/api/auth", tags=["authentication"])


# Request Models
class LoginRequest(BaseModel):
    """Login request."""
    email: EmailStr
    accessCode: str = Field(..., min_length=1, max_length=72)


class TokenResponse(BaseModel):
    """Token response model."""
    success: bool = True
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: dict


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: LoginRequest,
    request: Request,
    db: Session = Depends(get_db_session)
):
    """
    Login with email + access code.
    Returns a JWT and user info.
    """
    user = AuthService.authenticate_user(
        db=db,
        email=credentials.email,
        access_code=credentials.accessCode,
        ip_address=request.client.host if request.client else None
    )
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or access code"
        )

    return TokenResponse(
        access_token=AuthService.create_token(user),
        expires_in=config.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=UserService.to_dict(user)
    )


@router.get("/me")
async def get_current_user_info(
    current_user: User = Depends(get_current_user)
):
    """Get current principal."""
    user_info = UserService.to_dict(current_user)
    user_info["lastLogin"] = current_user.last_login.isoformat() if current_user.last_login else None
    return {"success": True, "data": user_info}
