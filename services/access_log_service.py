"""
Access log recorder: append-only writer and filtered reader of access events.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from database.models import AccessEvent, EventType, VerificationMethod


@dataclass
class AccessLogFilter:
    """Query constraints. door_ids restricts to a set (role scoping); door_id to one door."""
    door_id: Optional[int] = None
    door_ids: Optional[Iterable[int]] = None
    user_id: Optional[int] = None
    event_type: Optional[EventType] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


@dataclass
class AccessLogPage:
    events: List[AccessEvent] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 50

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


class AccessLogService:
    """Service for access event logging."""

    @staticmethod
    def record(
        db: Session,
        door_id: int,
        event_type: EventType,
        verification_method: VerificationMethod = VerificationMethod.NONE,
        success: bool = False,
        user_id: Optional[int] = None,
        image_ref: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        commit: bool = True,
    ) -> AccessEvent:
        """
        Append an access event.

        Args:
            db: Database session
            door_id: Door the event happened at
            event_type: What happened
            verification_method: Credential involved
            success: Outcome flag
            user_id: Resolved principal, None if nobody was identified
            image_ref: Capture image key
            metadata: Extra context (e.g. {"reason": "expired"})
            ip_address: Client address
            occurred_at: Event time (defaults to now)
            commit: Commit immediately; pass False to join the caller's unit of work

        Returns:
            Created AccessEvent
        """
        event = AccessEvent(
            door_id=door_id,
            user_id=user_id,
            event_type=EventType(event_type),
            verification_method=VerificationMethod(verification_method),
            success=success,
            image_ref=image_ref,
            extra_metadata=metadata or {},
            ip_address=ip_address,
            occurred_at=occurred_at or datetime.utcnow(),
        )
        db.add(event)
        if commit:
            db.commit()
            db.refresh(event)
        else:
            db.flush()
        return event

    @staticmethod
    def get(db: Session, event_id: int) -> Optional[AccessEvent]:
        """Get access event by ID."""
        return db.query(AccessEvent).filter(AccessEvent.id == event_id).first()

    @staticmethod
    def query(
        db: Session,
        filters: AccessLogFilter,
        page: int = 1,
        limit: int = 50,
    ) -> AccessLogPage:
        """
        Filtered, newest-first, offset-paginated read.
        """
        query = db.query(AccessEvent)

        if filters.door_ids is not None:
            door_ids = list(filters.door_ids)
            if not door_ids:
                return AccessLogPage(events=[], total=0, page=page, limit=limit)
            query = query.filter(AccessEvent.door_id.in_(door_ids))
        if filters.door_id is not None:
            query = query.filter(AccessEvent.door_id == filters.door_id)
        if filters.user_id is not None:
            query = query.filter(AccessEvent.user_id == filters.user_id)
        if filters.event_type is not None:
            query = query.filter(AccessEvent.event_type == filters.event_type)
        if filters.start_date is not None:
            query = query.filter(AccessEvent.occurred_at >= filters.start_date)
        if filters.end_date is not None:
            query = query.filter(AccessEvent.occurred_at <= filters.end_date)

        total = query.count()

        offset = (page - 1) * limit
        events = (
            query.order_by(AccessEvent.occurred_at.desc(), AccessEvent.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return AccessLogPage(events=events, total=total, page=page, limit=limit)

    @staticmethod
    def to_dict(event: AccessEvent) -> Dict[str, Any]:
        return {
            "id": event.id,
            "doorId": event.door_id,
            "userId": event.user_id,
            "eventType": event.event_type.value,
            "verificationMethod": event.verification_method.value,
            "success": event.success,
            "imageRef": event.image_ref,
            "metadata": event.extra_metadata or {},
            "ipAddress": event.ip_address,
            "occurredAt": event.occurred_at.isoformat(),
        }
