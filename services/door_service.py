"""
Door management and door access grants.
"""
import enum
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auth.permissions import can_grant_door_access, can_revoke_door_access
from auth.security import encrypt_data
from core.logger import logger
from database.models import Door, DoorGrant, User, UserRole


class GrantOutcome(str, enum.Enum):
    GRANTED = "granted"
    REVOKED = "revoked"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"


class DoorService:
    """Service for doors and the grants attached to them."""

    @staticmethod
    def get_door(db: Session, door_id: int) -> Optional[Door]:
        return db.query(Door).filter(Door.id == door_id).first()

    @staticmethod
    def list_doors(db: Session, actor: User, include_inactive: bool = False) -> List[Door]:
        """
        Administrators list every door; others list the active doors they
        hold a grant on.
        """
        query = db.query(Door)
        if actor.role != UserRole.ADMINISTRATOR:
            door_ids = actor.door_ids()
            if not door_ids:
                return []
            query = query.filter(Door.id.in_(door_ids), Door.is_active.is_(True))
        elif not include_inactive:
            query = query.filter(Door.is_active.is_(True))
        return query.order_by(Door.id).all()

    @staticmethod
    def create_door(
        db: Session,
        name: str,
        actuator_address: str,
        created_by: int,
        location: Optional[str] = None,
        actuator_key: Optional[str] = None,
        double_verification_window_days: int = 0,
    ) -> Door:
        """
        Create a door. The relay key is encrypted at rest.
        """
        if double_verification_window_days < 0:
            raise ValueError("double_verification_window_days must be >= 0")
        door = Door(
            name=name,
            location=location,
            actuator_address=actuator_address,
            actuator_key_encrypted=encrypt_data(actuator_key) if actuator_key else None,
            double_verification_window_days=double_verification_window_days,
            is_active=True,
            created_by=created_by,
        )
        db.add(door)
        db.commit()
        db.refresh(door)
        logger.info(f"Created door {door.id} ({name}) at {actuator_address}")
        return door

    @staticmethod
    def update_door(db: Session, door: Door, changes: Dict[str, Any]) -> Door:
        """
        Apply field changes. An empty actuator_key clears the stored key.
        """
        if changes.get("name") is not None:
            door.name = changes["name"]
        if "location" in changes:
            door.location = changes["location"]
        if changes.get("actuator_address") is not None:
            door.actuator_address = changes["actuator_address"]
        if "actuator_key" in changes:
            key = changes["actuator_key"]
            door.actuator_key_encrypted = encrypt_data(key) if key else None
        if changes.get("double_verification_window_days") is not None:
            window = changes["double_verification_window_days"]
            if window < 0:
                raise ValueError("double_verification_window_days must be >= 0")
            door.double_verification_window_days = window
        if changes.get("is_active") is not None:
            door.is_active = changes["is_active"]

        db.commit()
        db.refresh(door)
        logger.info(f"Updated door {door.id}: {sorted(k for k in changes if k != 'actuator_key')}")
        return door

    @staticmethod
    def deactivate_door(db: Session, door: Door) -> Door:
        """Soft delete. Grants stay so reactivation restores access."""
        door.is_active = False
        db.commit()
        db.refresh(door)
        logger.info(f"Deactivated door {door.id}")
        return door

    @staticmethod
    def grant_access(db: Session, actor: User, door: Door, grantee: User) -> GrantOutcome:
        """
        Give grantee a grant on door, if actor is allowed to.

        Returns:
            GRANTED, FORBIDDEN, or CONFLICT when the grant already exists
        """
        if not can_grant_door_access(actor, door, grantee.role):
            logger.warning(f"User {actor.id} may not grant door {door.id} to user {grantee.id}")
            return GrantOutcome.FORBIDDEN
        if door.id in grantee.door_ids():
            return GrantOutcome.CONFLICT

        db.add(DoorGrant(user_id=grantee.id, door_id=door.id, granted_by=actor.id))
        try:
            db.commit()
        except IntegrityError:
            # Concurrent grant won the unique constraint
            db.rollback()
            return GrantOutcome.CONFLICT
        db.refresh(grantee)
        logger.info(f"User {actor.id} granted door {door.id} to user {grantee.id}")
        return GrantOutcome.GRANTED

    @staticmethod
    def revoke_access(db: Session, actor: User, door: Door, target: User) -> GrantOutcome:
        """
        Remove target's grant on door, if actor is allowed to.

        Returns:
            REVOKED, FORBIDDEN, or CONFLICT when there is no grant to remove
        """
        if not can_revoke_door_access(actor, target):
            logger.warning(f"User {actor.id} may not revoke door {door.id} from user {target.id}")
            return GrantOutcome.FORBIDDEN

        grant = db.query(DoorGrant).filter(
            DoorGrant.user_id == target.id,
            DoorGrant.door_id == door.id,
        ).first()
        if grant is None:
            return GrantOutcome.CONFLICT

        db.delete(grant)
        db.commit()
        db.refresh(target)
        logger.info(f"User {actor.id} revoked door {door.id} from user {target.id}")
        return GrantOutcome.REVOKED

    @staticmethod
    def to_dict(door: Door) -> Dict[str, Any]:
        return {
            "id": door.id,
            "name": door.name,
            "location": door.location,
            "actuatorAddress": door.actuator_address,
            "hasActuatorKey": bool(door.actuator_key_encrypted),
            "doubleVerificationWindowDays": door.double_verification_window_days,
            "isActive": door.is_active,
            "createdBy": door.created_by,
            "createdAt": door.created_at.isoformat(),
            "updatedAt": door.updated_at.isoformat(),
        }
