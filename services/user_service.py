"""
Principal management: create, update, list and deactivate users.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from auth.security import hash_access_code
from core.errors import ConflictError
from core.face_recognizer import to_descriptor_matrix
from core.logger import logger
from core.validators import to_naive_utc
from database.models import User, UserRole
import config


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _serialize_periods(periods: Optional[List[Dict[str, Any]]]) -> List[Dict[str, str]]:
    """Access periods are stored as ISO strings, in the order given."""
    serialized = []
    for period in periods or []:
        start, end = period["start"], period["end"]
        if isinstance(start, datetime):
            start = start.isoformat()
        if isinstance(end, datetime):
            end = end.isoformat()
        serialized.append({"start": start, "end": end})
    return serialized


def _validate_descriptor(face_descriptor):
    if face_descriptor is None:
        return None
    matrix = to_descriptor_matrix(face_descriptor)
    if matrix is None:
        raise ValueError("Invalid face descriptor")
    # A single vector is stored flat, a gallery as a list of vectors
    return matrix[0].tolist() if matrix.shape[0] == 1 else matrix.tolist()


class UserService:
    """Service for principal records."""

    @staticmethod
    def get_user(db: Session, user_id: int) -> Optional[User]:
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def get_user_by_email(db: Session, email: str) -> Optional[User]:
        return db.query(User).filter(User.email == normalize_email(email)).first()

    @staticmethod
    def _ensure_email_free(db: Session, email: str, exclude_id: Optional[int] = None):
        query = db.query(User).filter(User.email == email)
        if exclude_id is not None:
            query = query.filter(User.id != exclude_id)
        if query.first():
            raise ConflictError("User with this email already exists")

    @staticmethod
    def create_user(
        db: Session,
        name: str,
        email: str,
        role: UserRole,
        access_code: str,
        created_by: Optional[int],
        phone: Optional[str] = None,
        face_descriptor: Optional[List[float]] = None,
        access_periods: Optional[List[Dict[str, Any]]] = None,
        expiration_date: Optional[datetime] = None,
    ) -> User:
        """
        Create a principal. The access code is hashed before it is stored.

        Raises:
            ConflictError: Email already in use
            ValueError: Invalid access code or face descriptor
        """
        email = normalize_email(email)
        UserService._ensure_email_free(db, email)

        user = User(
            name=name,
            email=email,
            phone=phone,
            role=UserRole(role),
            access_code_hash=hash_access_code(access_code, config.ACCESS_CODE_HASH_ROUNDS),
            face_descriptor=_validate_descriptor(face_descriptor),
            access_periods=_serialize_periods(access_periods),
            expiration_date=to_naive_utc(expiration_date),
            is_active=True,
            created_by=created_by,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        logger.info(f"Created user {user.id} ({email}, role: {user.role.value}) by {created_by}")
        return user

    @staticmethod
    def update_user(db: Session, user: User, changes: Dict[str, Any]) -> User:
        """
        Apply field changes to a principal. Authorization is the caller's job.

        Recognized keys: name, email, phone, role, access_code, face_descriptor,
        access_periods, expiration_date, is_active. Keys absent from changes
        are left alone; an explicit None clears nullable fields.

        Raises:
            ConflictError: Email already in use by another principal
            ValueError: Invalid access code or face descriptor
        """
        if "email" in changes and changes["email"] is not None:
            email = normalize_email(changes["email"])
            UserService._ensure_email_free(db, email, exclude_id=user.id)
            user.email = email
        if changes.get("name") is not None:
            user.name = changes["name"]
        if "phone" in changes:
            user.phone = changes["phone"]
        if changes.get("role") is not None:
            user.role = UserRole(changes["role"])
        if changes.get("access_code"):
            user.access_code_hash = hash_access_code(changes["access_code"], config.ACCESS_CODE_HASH_ROUNDS)
        if "face_descriptor" in changes:
            user.face_descriptor = _validate_descriptor(changes["face_descriptor"])
        if "access_periods" in changes:
            user.access_periods = _serialize_periods(changes["access_periods"])
        if "expiration_date" in changes:
            user.expiration_date = to_naive_utc(changes["expiration_date"])
        if changes.get("is_active") is not None:
            user.is_active = changes["is_active"]

        db.commit()
        db.refresh(user)
        logger.info(f"Updated user {user.id}: {sorted(changes)}")
        return user

    @staticmethod
    def deactivate_user(db: Session, user: User) -> User:
        """Soft delete."""
        user.is_active = False
        db.commit()
        db.refresh(user)
        logger.info(f"Deactivated user {user.id}")
        return user

    @staticmethod
    def list_users(
        db: Session,
        actor: User,
        role: Optional[UserRole] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[User], int]:
        """
        Administrators list everyone; other actors list the principals they created.

        Returns:
            (users on this page, total matching)
        """
        query = db.query(User)
        if actor.role != UserRole.ADMINISTRATOR:
            query = query.filter(User.created_by == actor.id)
        if role is not None:
            query = query.filter(User.role == role)
        if search:
            query = query.filter(
                or_(
                    User.name.ilike(f"%{search}%"),
                    func.lower(User.email).like(f"%{search.lower()}%"),
                )
            )

        total = query.count()
        offset = (page - 1) * limit
        users = query.order_by(User.id).offset(offset).limit(limit).all()
        return users, total

    @staticmethod
    def to_dict(user: User) -> Dict[str, Any]:
        return {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "phone": user.phone,
            "role": user.role.value,
            "hasFaceDescriptor": bool(user.face_descriptor),
            "doorIds": sorted(user.door_ids()),
            "accessPeriods": user.access_periods or [],
            "expirationDate": user.expiration_date.isoformat() if user.expiration_date else None,
            "lastVerificationAt": user.last_verification_at.isoformat() if user.last_verification_at else None,
            "isActive": user.is_active,
            "createdBy": user.created_by,
            "createdAt": user.created_at.isoformat(),
            "updatedAt": user.updated_at.isoformat(),
        }
