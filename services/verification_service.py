"""
Verification engine: decides grant / step-up / deny for one door-access attempt
and writes the matching access events.

Flow for a primary attempt:

    Idle -> MatchingPrimary -> PrimaryDenied                       (Denied)
                            -> PrimaryMatched -> AwaitingSecondFactor (Pending)
                                              -> Granted

A pending attempt is completed by a separate double_verify call. The only state
that survives between calls is the principal's last_verification_at.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from cryptography.fernet import InvalidToken
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth.security import decrypt_data
from core.door_locks import KeyedLockRegistry
from core.errors import ActuatorError, ErrorKind
from core.face_recognizer import Descriptor
from core.logger import logger
from database.models import (
    Door, DoorGrant, EventType, User, VerificationMethod
)
from services.access_log_service import AccessLogService
from services.credential_matcher import CredentialMatcher


class Decision(str, enum.Enum):
    GRANTED = "granted"
    PENDING_SECOND_FACTOR = "pending_second_factor"
    DENIED = "denied"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    RECORDED = "recorded"


@dataclass
class VerificationResult:
    """Outcome of one verification call. Policy failures are values, not exceptions."""
    decision: Decision
    message: str
    principal: Optional[User] = None
    reason: Optional[ErrorKind] = None
    door_status: Optional[Dict[str, Any]] = None
    actuator_error: Optional[str] = None
    events: List[int] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.decision in (
            Decision.GRANTED, Decision.PENDING_SECOND_FACTOR, Decision.RECORDED
        )

    @property
    def double_verification_required(self) -> bool:
        return self.decision == Decision.PENDING_SECOND_FACTOR


# ============================================================================
# Policy (pure functions)
# ============================================================================

def is_access_expired(expiration_date: Optional[datetime], now: datetime) -> bool:
    """Expired strictly after expiration_date; None never expires."""
    return expiration_date is not None and now > expiration_date


def requires_step_up(
    window_days: int,
    last_verification_at: Optional[datetime],
    now: datetime,
) -> bool:
    """
    Step-up is due when the door has a window and the principal's last full
    verification is missing or at least window_days old.
    """
    if not window_days or window_days <= 0:
        return False
    if last_verification_at is None:
        return True
    return now - last_verification_at >= timedelta(days=window_days)


# ============================================================================
# Engine
# ============================================================================

class VerificationEngine:
    """Orchestrates matching, policy, actuation and audit for door access."""

    def __init__(
        self,
        matcher: CredentialMatcher,
        actuator,
        locks: Optional[KeyedLockRegistry] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Args:
            matcher: Credential matcher
            actuator: Relay client exposing toggle(address, key)
            locks: Keyed lock registry shared by every request in the process
            clock: Source of "now" (naive UTC)
        """
        self.matcher = matcher
        self.actuator = actuator
        self.locks = locks or KeyedLockRegistry()
        self.clock = clock

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @staticmethod
    def _load_door(db: Session, door_id: int) -> Optional[Door]:
        door = db.query(Door).filter(Door.id == door_id).first()
        if door is None or not door.is_active:
            return None
        return door

    @staticmethod
    def _load_candidates(db: Session, door_id: int) -> List[User]:
        """Active principals holding a grant on the door, oldest grant first."""
        return (
            db.query(User)
            .join(DoorGrant, DoorGrant.user_id == User.id)
            .filter(DoorGrant.door_id == door_id, User.is_active.is_(True))
            .order_by(DoorGrant.granted_at, User.id)
            .all()
        )

    @staticmethod
    def _lock_principal_row(db: Session, principal: User) -> User:
        """Re-read the principal, row-locked where the database supports it."""
        return (
            db.query(User)
            .filter(User.id == principal.id)
            .with_for_update()
            .populate_existing()
            .one()
        )

    # ------------------------------------------------------------------
    # Actuation
    # ------------------------------------------------------------------

    def _actuate(self, door: Door) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        """
        Toggle the door relay inside the door's exclusive region.

        Returns:
            (relay outcome, None) on success, (None, error message) on failure
        """
        try:
            key = decrypt_data(door.actuator_key_encrypted) if door.actuator_key_encrypted else None
        except InvalidToken:
            logger.error(f"Door {door.id}: stored relay key cannot be decrypted")
            return None, "relay credential unreadable"

        with self.locks.door(door.id):
            try:
                outcome = self.actuator.toggle(door.actuator_address, key)
            except ActuatorError as e:
                logger.warning(f"Door {door.id}: actuation failed after grant: {e}")
                return None, str(e)
        return outcome, None

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def _deny(
        self,
        db: Session,
        door: Door,
        method: VerificationMethod,
        reason: ErrorKind,
        message: str,
        principal: Optional[User] = None,
        image_ref: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> VerificationResult:
        metadata = {"reason": "expired"} if reason == ErrorKind.EXPIRED else {}
        event = AccessLogService.record(
            db,
            door_id=door.id,
            event_type=EventType.ACCESS_ATTEMPT,
            verification_method=method,
            success=False,
            user_id=principal.id if principal else None,
            image_ref=image_ref,
            metadata=metadata,
            ip_address=ip_address,
            occurred_at=self.clock(),
        )
        logger.info(
            f"Door {door.id}: denied ({reason.value}, method={method.value}, "
            f"user={principal.id if principal else None})"
        )
        return VerificationResult(
            decision=Decision.DENIED,
            message=message,
            principal=principal,
            reason=reason,
            events=[event.id],
        )

    def _grant(
        self,
        db: Session,
        door: Door,
        principal: User,
        method: VerificationMethod,
        image_ref: Optional[str],
        ip_address: Optional[str],
    ) -> VerificationResult:
        """
        Actuate, stamp last_verification_at and write the terminal event as one
        unit of work. Caller holds the principal lock.
        """
        door_status, actuator_error = self._actuate(door)
        now = self.clock()
        principal.last_verification_at = now
        metadata = {"actuatorError": actuator_error} if actuator_error else {}
        event = AccessLogService.record(
            db,
            door_id=door.id,
            event_type=EventType.ACCESS_GRANTED,
            verification_method=method,
            success=True,
            user_id=principal.id,
            image_ref=image_ref,
            metadata=metadata,
            ip_address=ip_address,
            occurred_at=now,
            commit=False,
        )
        db.commit()
        logger.info(f"Door {door.id}: access granted to user {principal.id} (method={method.value})")
        return VerificationResult(
            decision=Decision.GRANTED,
            message="Access granted",
            principal=principal,
            door_status=door_status,
            actuator_error=actuator_error,
            events=[event.id],
        )

    def _complete_primary(
        self,
        db: Session,
        door: Door,
        principal: User,
        method: VerificationMethod,
        image_ref: Optional[str],
        ip_address: Optional[str],
    ) -> VerificationResult:
        """Steps after a live, unexpired match: step-up check, then grant."""
        with self.locks.principal(principal.id):
            principal = self._lock_principal_row(db, principal)
            now = self.clock()
            if requires_step_up(door.double_verification_window_days, principal.last_verification_at, now):
                event = AccessLogService.record(
                    db,
                    door_id=door.id,
                    event_type=EventType.DOUBLE_VERIFICATION,
                    verification_method=method,
                    success=True,
                    user_id=principal.id,
                    image_ref=image_ref,
                    ip_address=ip_address,
                    occurred_at=now,
                )
                other = "face recognition" if method == VerificationMethod.CODE else "access code"
                logger.info(f"Door {door.id}: step-up required for user {principal.id}")
                return VerificationResult(
                    decision=Decision.PENDING_SECOND_FACTOR,
                    message=f"Double verification required. Please also provide {other}.",
                    principal=principal,
                    events=[event.id],
                )
            return self._grant(db, door, principal, method, image_ref, ip_address)

    def _verify_primary(
        self,
        db: Session,
        door_id: int,
        method: VerificationMethod,
        resolve: Callable[[List[User]], Optional[User]],
        no_match_message: str,
        image_ref: Optional[str],
        ip_address: Optional[str],
    ) -> VerificationResult:
        door = self._load_door(db, door_id)
        if door is None:
            return VerificationResult(
                decision=Decision.NOT_FOUND,
                message="Door not found or inactive",
                reason=ErrorKind.NOT_FOUND,
            )

        principal = resolve(self._load_candidates(db, door.id))
        if principal is None:
            return self._deny(
                db, door, method, ErrorKind.INVALID_CREDENTIAL, no_match_message,
                image_ref=image_ref, ip_address=ip_address,
            )

        if is_access_expired(principal.expiration_date, self.clock()):
            return self._deny(
                db, door, method, ErrorKind.EXPIRED, "Your access has expired",
                principal=principal, image_ref=image_ref, ip_address=ip_address,
            )

        return self._complete_primary(db, door, principal, method, image_ref, ip_address)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def verify_code(
        self,
        db: Session,
        door_id: int,
        access_code: str,
        ip_address: Optional[str] = None,
    ) -> VerificationResult:
        """Primary verification with a shared access code."""
        return self._verify_primary(
            db,
            door_id,
            VerificationMethod.CODE,
            lambda candidates: self.matcher.match_code(access_code, candidates),
            "Invalid access code",
            image_ref=None,
            ip_address=ip_address,
        )

    def verify_face(
        self,
        db: Session,
        door_id: int,
        face_descriptor: Descriptor,
        image_ref: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> VerificationResult:
        """Primary verification with a face descriptor."""
        return self._verify_primary(
            db,
            door_id,
            VerificationMethod.FACE,
            lambda candidates: self.matcher.match_face(face_descriptor, candidates),
            "Face not recognized",
            image_ref=image_ref,
            ip_address=ip_address,
        )

    def double_verify(
        self,
        db: Session,
        door_id: int,
        user_id: int,
        access_code: Optional[str] = None,
        face_descriptor: Optional[Descriptor] = None,
        image_ref: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> VerificationResult:
        """
        Second factor for a principal already identified by a primary attempt.
        The credential is checked against that principal only.
        """
        if (access_code is None) == (face_descriptor is None):
            raise ValueError("Exactly one of access_code or face_descriptor is required")

        door = self._load_door(db, door_id)
        if door is None:
            return VerificationResult(
                decision=Decision.NOT_FOUND,
                message="Door not found or inactive",
                reason=ErrorKind.NOT_FOUND,
            )

        principal = db.query(User).filter(User.id == user_id).first()
        if principal is None or not principal.is_active:
            return VerificationResult(
                decision=Decision.NOT_FOUND,
                message="User not found or inactive",
                reason=ErrorKind.NOT_FOUND,
            )

        # Grants may have changed since the first factor
        if door.id not in principal.door_ids():
            return VerificationResult(
                decision=Decision.FORBIDDEN,
                message="User does not have access to this door",
                principal=principal,
                reason=ErrorKind.FORBIDDEN,
            )

        if is_access_expired(principal.expiration_date, self.clock()):
            return self._deny(
                db, door, VerificationMethod.DOUBLE, ErrorKind.EXPIRED, "Your access has expired",
                principal=principal, image_ref=image_ref, ip_address=ip_address,
            )

        if access_code is not None:
            verified = self.matcher.verify_code_for(access_code, principal)
        else:
            verified = self.matcher.verify_face_for(face_descriptor, principal)

        if not verified:
            return self._deny(
                db, door, VerificationMethod.DOUBLE, ErrorKind.INVALID_CREDENTIAL, "Verification failed",
                principal=principal, image_ref=image_ref, ip_address=ip_address,
            )

        with self.locks.principal(principal.id):
            principal = self._lock_principal_row(db, principal)
            return self._grant(db, door, principal, VerificationMethod.DOUBLE, image_ref, ip_address)

    def report_motion(
        self,
        db: Session,
        door_id: int,
        image_ref: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> VerificationResult:
        """
        Record an approach event. Best-effort: a failed write is logged and the
        report still counts as received.
        """
        door = self._load_door(db, door_id)
        if door is None:
            return VerificationResult(
                decision=Decision.NOT_FOUND,
                message="Door not found or inactive",
                reason=ErrorKind.NOT_FOUND,
            )

        events = []
        try:
            event = AccessLogService.record(
                db,
                door_id=door.id,
                event_type=EventType.APPROACH,
                verification_method=VerificationMethod.NONE,
                success=True,
                image_ref=image_ref,
                ip_address=ip_address,
                occurred_at=self.clock(),
            )
            events.append(event.id)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Door {door.id}: failed to record motion event: {e}", exc_info=True)

        return VerificationResult(
            decision=Decision.RECORDED,
            message="Motion detected and logged",
            events=events,
        )
