from datetime import datetime, timedelta

from database.models import EventType, VerificationMethod
from services.access_log_service import AccessLogFilter, AccessLogService

BASE = datetime(2024, 1, 1, 8, 0, 0)


def seed(session, door_id, count, user_id=None, event_type=EventType.APPROACH):
    for i in range(count):
        AccessLogService.record(
            session,
            door_id=door_id,
            event_type=event_type,
            verification_method=VerificationMethod.NONE,
            success=True,
            user_id=user_id,
            occurred_at=BASE + timedelta(minutes=i),
        )


def test_query_is_newest_first_and_paginated(session):
    seed(session, door_id=1, count=7)

    page1 = AccessLogService.query(session, AccessLogFilter(), page=1, limit=3)
    page3 = AccessLogService.query(session, AccessLogFilter(), page=3, limit=3)

    assert page1.total == 7
    assert page1.total_pages == 3
    assert [e.occurred_at for e in page1.events] == [BASE + timedelta(minutes=m) for m in (6, 5, 4)]
    assert len(page3.events) == 1


def test_query_filters(session):
    seed(session, door_id=1, count=2, user_id=10, event_type=EventType.ACCESS_GRANTED)
    seed(session, door_id=2, count=3, user_id=11)

    assert AccessLogService.query(session, AccessLogFilter(door_id=2)).total == 3
    assert AccessLogService.query(session, AccessLogFilter(user_id=10)).total == 2
    assert AccessLogService.query(session, AccessLogFilter(event_type=EventType.APPROACH)).total == 3
    window = AccessLogFilter(start_date=BASE + timedelta(minutes=1), end_date=BASE + timedelta(minutes=2))
    assert AccessLogService.query(session, window).total == 3


def test_scoped_query_is_intersected_with_door_set(session):
    seed(session, door_id=1, count=2)
    seed(session, door_id=2, count=2)

    scoped = AccessLogService.query(session, AccessLogFilter(door_ids={2}))
    assert scoped.total == 2
    assert {e.door_id for e in scoped.events} == {2}

    # A door outside the caller's set yields nothing
    assert AccessLogService.query(session, AccessLogFilter(door_ids={2}, door_id=1)).total == 0
    # No grants at all means no events
    assert AccessLogService.query(session, AccessLogFilter(door_ids=set())).total == 0


def test_to_dict_uses_camel_case(session):
    event = AccessLogService.record(
        session, door_id=3, event_type=EventType.ACCESS_ATTEMPT,
        verification_method=VerificationMethod.CODE, metadata={"reason": "expired"},
        ip_address="127.0.0.1", occurred_at=BASE,
    )
    data = AccessLogService.to_dict(event)
    assert data["doorId"] == 3
    assert data["eventType"] == "access_attempt"
    assert data["verificationMethod"] == "code"
    assert data["success"] is False
    assert data["metadata"] == {"reason": "expired"}
    assert data["occurredAt"] == BASE.isoformat()
