"""
Authentication service: login with email + access code, with account lockout.
"""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from database.models import User
from auth.security import verify_access_code, create_access_token
from services.verification_service import is_access_expired
from core.logger import logger
import config


class AuthService:
    """Service for authentication operations."""

    @staticmethod
    def authenticate_user(
        db: Session,
        email: str,
        access_code: str,
        ip_address: Optional[str] = None
    ) -> Optional[User]:
        """
        Authenticate a principal with account lockout protection.

        Inactive and expired principals never authenticate.

        Args:
            db: Database session
            email: Email address (case-insensitive)
            access_code: Plain access code
            ip_address: IP address for logging

        Returns:
            User if authenticated, None otherwise
        """
        user = db.query(User).filter(func.lower(User.email) == email.strip().lower()).first()
        if not user:
            return None

        now = datetime.utcnow()

        # Check if account is locked
        if user.locked_until:
            if user.locked_until > now:
                logger.warning(f"Login attempt for locked account: {user.email} from {ip_address}")
                return None
            # Lockout expired
            user.locked_until = None
            user.failed_login_attempts = 0
            db.commit()

        if not verify_access_code(access_code, user.access_code_hash):
            user.failed_login_attempts += 1
            if user.failed_login_attempts >= config.MAX_LOGIN_ATTEMPTS:
                user.locked_until = now + timedelta(minutes=config.LOCKOUT_DURATION_MINUTES)
                logger.warning(f"Account locked due to too many failed attempts: {user.email}")
            db.commit()
            return None

        if not user.is_active or is_access_expired(user.expiration_date, now):
            return None

        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_login = now
        db.commit()
        logger.info(f"User {user.id} logged in from {ip_address}")
        return user

    @staticmethod
    def create_token(user: User) -> str:
        """Create a session token bound to the principal id."""
        data = {
            "sub": str(user.id),
            "email": user.email,
            "role": user.role.value,
        }
        return create_access_token(data, config.SECRET_KEY)
