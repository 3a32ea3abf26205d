"""
Database models for the door access control system.
"""
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text,
    ForeignKey, JSON, Index, TypeDecorator, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship
import enum

Base = declarative_base()


# ============================================================================
# Custom Type Decorator for Enum Values
# ============================================================================

class EnumValue(TypeDecorator):
    """Type decorator to ensure enum values (not names) are stored."""
    impl = String
    cache_ok = True

    def __init__(self, enum_class, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.enum_class = enum_class

    def process_bind_param(self, value, dialect):
        """Convert enum to its value when writing to database."""
        if value is None:
            return None
        if isinstance(value, enum.Enum):
            return value.value
        # Reject free-form strings that are not members
        return self.enum_class(value).value

    def process_result_value(self, value, dialect):
        """Convert database value back to enum when reading."""
        if value is None:
            return None
        return self.enum_class(value)


# ============================================================================
# Enums - Must be defined before models that use them
# ============================================================================

class UserRole(str, enum.Enum):
    """Principal roles, highest first."""
    ADMINISTRATOR = "administrator"
    HOST = "host"
    RESIDENT = "resident"
    GUEST = "guest"


class EventType(str, enum.Enum):
    """Access event types."""
    APPROACH = "approach"
    ACCESS_ATTEMPT = "access_attempt"
    ACCESS_GRANTED = "access_granted"
    ACCESS_DENIED = "access_denied"
    DOUBLE_VERIFICATION = "double_verification"


class VerificationMethod(str, enum.Enum):
    """Credential used for an access event."""
    CODE = "code"
    FACE = "face"
    DOUBLE = "double"
    NONE = "none"


# ============================================================================
# Models
# ============================================================================

class User(Base):
    """Principal: a person holding an access code and optionally a face descriptor."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)  # Stored lowercase
    phone = Column(String(50), nullable=True)
    role = Column(EnumValue(UserRole, 20), default=UserRole.GUEST, nullable=False)

    access_code_hash = Column(String(255), nullable=False)  # bcrypt
    face_descriptor = Column(JSON, nullable=True)  # List of floats from the external face model

    access_periods = Column(JSON, nullable=False, default=list)  # [{start, end}], advisory only
    expiration_date = Column(DateTime, nullable=True)  # None = never expires
    last_verification_at = Column(DateTime, nullable=True)  # Written only by the verification engine

    is_active = Column(Boolean, default=True, nullable=False)

    # Login lockout
    failed_login_attempts = Column(Integer, default=0, nullable=False)
    locked_until = Column(DateTime, nullable=True)
    last_login = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Null only for the bootstrap administrator
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    # Relationships
    creator = relationship("User", remote_side=[id], foreign_keys=[created_by])
    door_grants = relationship(
        "DoorGrant",
        back_populates="user",
        foreign_keys="DoorGrant.user_id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index('idx_user_role', 'role'),
        Index('idx_user_created_by', 'created_by'),
        Index('idx_user_active', 'is_active'),
    )

    def door_ids(self) -> set:
        """Ids of doors this principal holds a grant on."""
        return {grant.door_id for grant in self.door_grants}


class Door(Base):
    """Door controlled by a network relay."""
    __tablename__ = "doors"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    location = Column(String(255), nullable=True)
    actuator_address = Column(String(255), nullable=False)  # Relay host[:port]
    actuator_key_encrypted = Column(Text, nullable=True)  # Fernet-encrypted relay credential
    double_verification_window_days = Column(Integer, default=0, nullable=False)  # 0 = disabled
    is_active = Column(Boolean, default=True, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    grants = relationship("DoorGrant", back_populates="door", cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_door_active', 'is_active'),
    )


class DoorGrant(Base):
    """Permission for one principal to use one door."""
    __tablename__ = "door_grants"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    door_id = Column(Integer, ForeignKey("doors.id", ondelete="CASCADE"), nullable=False)
    granted_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    granted_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    user = relationship("User", back_populates="door_grants", foreign_keys=[user_id])
    door = relationship("Door", back_populates="grants")

    __table_args__ = (
        UniqueConstraint('user_id', 'door_id', name='uq_door_grant_user_door'),
        Index('idx_grant_door', 'door_id'),
    )


class AccessEvent(Base):
    """Immutable audit record of an access-relevant occurrence."""
    __tablename__ = "access_events"

    id = Column(Integer, primary_key=True, index=True)
    # Plain ids, no foreign keys: events outlive the rows they point at
    door_id = Column(Integer, nullable=False)
    user_id = Column(Integer, nullable=True)  # None when no principal was resolved
    event_type = Column(EnumValue(EventType, 30), nullable=False)
    verification_method = Column(EnumValue(VerificationMethod, 20), default=VerificationMethod.NONE, nullable=False)
    success = Column(Boolean, default=False, nullable=False)
    image_ref = Column(String(512), nullable=True)  # Key in the capture image store
    extra_metadata = Column(JSON, nullable=True)  # Renamed from 'metadata' - reserved keyword
    ip_address = Column(String(45), nullable=True)  # IPv6 compatible
    occurred_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    __table_args__ = (
        Index('idx_event_door_occurred', 'door_id', 'occurred_at'),
        Index('idx_event_user_occurred', 'user_id', 'occurred_at'),
        Index('idx_event_type', 'event_type'),
    )
