import threading
from datetime import datetime, timedelta

import numpy as np
import pytest

from conftest import Clock, FakeRelay
from core.errors import ErrorKind
from database.models import AccessEvent, EventType, VerificationMethod
from services.verification_service import Decision, is_access_expired, requires_step_up

NOW = datetime(2024, 6, 1, 12, 0, 0)


def events(session, door_id=None):
    query = session.query(AccessEvent)
    if door_id is not None:
        query = query.filter(AccessEvent.door_id == door_id)
    return query.order_by(AccessEvent.id).all()


def unit_vector(seed, dim=128):
    rng = np.random.default_rng(seed)
    v = rng.standard_normal(dim)
    return (v / np.linalg.norm(v)).tolist()


# ---------------------------------------------------------------------------
# Policy functions
# ---------------------------------------------------------------------------

def test_expiration_boundary_is_strict():
    assert not is_access_expired(NOW, NOW)
    assert is_access_expired(NOW, NOW + timedelta(microseconds=1))
    assert not is_access_expired(None, NOW)


def test_step_up_boundary_is_inclusive():
    assert requires_step_up(3, NOW - timedelta(days=3), NOW)
    assert not requires_step_up(3, NOW - timedelta(days=3) + timedelta(microseconds=1), NOW)
    assert requires_step_up(3, None, NOW)


def test_step_up_disabled_when_window_is_zero():
    assert not requires_step_up(0, None, NOW)
    assert not requires_step_up(0, NOW - timedelta(days=365), NOW)


# ---------------------------------------------------------------------------
# Engine scenarios
# ---------------------------------------------------------------------------

def test_code_grant_without_step_up(session, factory, relay, make_engine):
    engine = make_engine(relay, clock=Clock(NOW))
    door = factory.door(window_days=0)
    principal = factory.user(code="1234")
    factory.grant(principal, door)

    result = engine.verify_code(session, door.id, "1234", ip_address="10.1.1.1")

    assert result.decision == Decision.GRANTED
    assert result.principal.id == principal.id
    assert result.actuator_error is None
    assert result.door_status == {"POWER": "ON"}
    assert len(relay.calls) == 1

    logged = events(session, door.id)
    assert [e.event_type for e in logged] == [EventType.ACCESS_GRANTED]
    assert logged[0].success is True
    assert logged[0].verification_method == VerificationMethod.CODE
    assert logged[0].user_id == principal.id
    assert logged[0].ip_address == "10.1.1.1"

    session.refresh(principal)
    assert principal.last_verification_at == NOW


def test_step_up_then_second_factor(session, factory, relay, make_engine):
    engine = make_engine(relay, clock=Clock(NOW))
    door = factory.door(window_days=1)
    principal = factory.user(code="1234")
    factory.grant(principal, door)

    pending = engine.verify_code(session, door.id, "1234")

    assert pending.decision == Decision.PENDING_SECOND_FACTOR
    assert pending.double_verification_required
    assert pending.principal.id == principal.id
    assert relay.calls == []
    logged = events(session, door.id)
    assert [e.event_type for e in logged] == [EventType.DOUBLE_VERIFICATION]
    assert logged[0].success is True
    session.refresh(principal)
    assert principal.last_verification_at is None

    granted = engine.double_verify(session, door.id, principal.id, access_code="1234")

    assert granted.decision == Decision.GRANTED
    assert len(relay.calls) == 1
    logged = events(session, door.id)
    assert [e.event_type for e in logged] == [EventType.DOUBLE_VERIFICATION, EventType.ACCESS_GRANTED]
    assert logged[1].verification_method == VerificationMethod.DOUBLE
    session.refresh(principal)
    assert principal.last_verification_at == NOW


def test_step_up_not_required_inside_window(session, factory, relay, make_engine):
    engine = make_engine(relay, clock=Clock(NOW))
    door = factory.door(window_days=3)
    principal = factory.user(code="1234", last_verification_at=NOW - timedelta(days=2))
    factory.grant(principal, door)

    result = engine.verify_code(session, door.id, "1234")

    assert result.decision == Decision.GRANTED


def test_unknown_code_is_denied_anonymously(session, factory, relay, make_engine):
    engine = make_engine(relay, clock=Clock(NOW))
    door = factory.door()
    principal = factory.user(code="1234")
    factory.grant(principal, door)

    result = engine.verify_code(session, door.id, "9999")

    assert result.decision == Decision.DENIED
    assert result.reason == ErrorKind.INVALID_CREDENTIAL
    assert not result.success
    assert relay.calls == []
    logged = events(session, door.id)
    assert len(logged) == 1
    assert logged[0].event_type == EventType.ACCESS_ATTEMPT
    assert logged[0].success is False
    assert logged[0].user_id is None


def test_inactive_door_is_not_found_without_events(session, factory, relay, make_engine):
    engine = make_engine(relay, clock=Clock(NOW))
    door = factory.door(is_active=False)
    principal = factory.user(code="1234")
    factory.grant(principal, door)

    assert engine.verify_code(session, door.id, "1234").decision == Decision.NOT_FOUND
    assert engine.verify_face(session, door.id, unit_vector(1)).decision == Decision.NOT_FOUND
    assert engine.report_motion(session, door.id).decision == Decision.NOT_FOUND
    assert engine.double_verify(session, door.id, principal.id, access_code="1234").decision == Decision.NOT_FOUND
    assert events(session) == []


def test_missing_door_is_not_found(session, relay, make_engine):
    engine = make_engine(relay, clock=Clock(NOW))
    assert engine.verify_code(session, 12345, "1234").decision == Decision.NOT_FOUND
    assert events(session) == []


def test_principal_without_grant_is_not_a_candidate(session, factory, relay, make_engine):
    engine = make_engine(relay, clock=Clock(NOW))
    door = factory.door()
    factory.user(code="1234")

    result = engine.verify_code(session, door.id, "1234")

    assert result.decision == Decision.DENIED
    assert result.reason == ErrorKind.INVALID_CREDENTIAL


def test_inactive_principal_is_not_a_candidate(session, factory, relay, make_engine):
    engine = make_engine(relay, clock=Clock(NOW))
    door = factory.door()
    principal = factory.user(code="1234", is_active=False)
    factory.grant(principal, door)

    assert engine.verify_code(session, door.id, "1234").decision == Decision.DENIED


def test_expired_principal_is_denied_with_reason(session, factory, relay, make_engine):
    engine = make_engine(relay, clock=Clock(NOW))
    door = factory.door()
    principal = factory.user(code="1234", expiration_date=NOW - timedelta(seconds=1))
    factory.grant(principal, door)

    result = engine.verify_code(session, door.id, "1234")

    assert result.decision == Decision.DENIED
    assert result.reason == ErrorKind.EXPIRED
    logged = events(session, door.id)
    assert len(logged) == 1
    assert logged[0].event_type == EventType.ACCESS_ATTEMPT
    assert logged[0].user_id == principal.id
    assert logged[0].extra_metadata == {"reason": "expired"}
    assert relay.calls == []


def test_expiration_equal_to_now_still_grants(session, factory, relay, make_engine):
    engine = make_engine(relay, clock=Clock(NOW))
    door = factory.door()
    principal = factory.user(code="1234", expiration_date=NOW)
    factory.grant(principal, door)

    assert engine.verify_code(session, door.id, "1234").decision == Decision.GRANTED


def test_shared_code_resolves_to_a_single_principal(session, factory, relay, make_engine):
    engine = make_engine(relay, clock=Clock(NOW))
    door = factory.door()
    first = factory.user(code="1234")
    second = factory.user(code="1234")
    factory.grant(first, door)
    factory.grant(second, door)

    result = engine.verify_code(session, door.id, "1234")

    assert result.decision == Decision.GRANTED
    assert result.principal.id in (first.id, second.id)
    assert len(events(session, door.id)) == 1


def test_actuator_failure_is_reported_on_grant(session, factory, make_engine):
    relay = FakeRelay(fail=True)
    engine = make_engine(relay, clock=Clock(NOW))
    door = factory.door()
    principal = factory.user(code="1234")
    factory.grant(principal, door)

    result = engine.verify_code(session, door.id, "1234")

    assert result.decision == Decision.GRANTED
    assert result.door_status is None
    assert "connection refused" in result.actuator_error
    logged = events(session, door.id)
    assert logged[0].event_type == EventType.ACCESS_GRANTED
    assert "actuatorError" in logged[0].extra_metadata
    session.refresh(principal)
    assert principal.last_verification_at == NOW


def test_relay_key_is_decrypted_for_actuation(session, factory, relay, make_engine):
    engine = make_engine(relay, clock=Clock(NOW))
    door = factory.door(address="relay.local", key="s3cret")
    principal = factory.user(code="1234")
    factory.grant(principal, door)

    engine.verify_code(session, door.id, "1234")

    assert relay.calls == [("relay.local", "s3cret")]


# ---------------------------------------------------------------------------
# Face verification
# ---------------------------------------------------------------------------

def test_face_match_above_threshold(session, factory, relay, make_engine):
    engine = make_engine(relay, clock=Clock(NOW))
    door = factory.door()
    alice = factory.user(face_descriptor=unit_vector(1))
    bob = factory.user(face_descriptor=unit_vector(2))
    factory.grant(alice, door)
    factory.grant(bob, door)

    query = np.array(unit_vector(2)) + np.random.default_rng(7).standard_normal(128) * 0.01
    result = engine.verify_face(
        session, door.id, query.tolist(), image_ref="captures/" + "a" * 32 + ".jpg"
    )

    assert result.decision == Decision.GRANTED
    assert result.principal.id == bob.id
    logged = events(session, door.id)
    assert logged[0].verification_method == VerificationMethod.FACE
    assert logged[0].image_ref == "captures/" + "a" * 32 + ".jpg"


def test_face_below_threshold_is_denied(session, factory, relay, make_engine):
    engine = make_engine(relay, clock=Clock(NOW))
    door = factory.door()
    principal = factory.user(face_descriptor=unit_vector(1))
    factory.grant(principal, door)

    result = engine.verify_face(session, door.id, unit_vector(99))

    assert result.decision == Decision.DENIED
    assert result.reason == ErrorKind.INVALID_CREDENTIAL
    assert events(session, door.id)[0].user_id is None


def test_face_step_up_completed_with_code(session, factory, relay, make_engine):
    engine = make_engine(relay, clock=Clock(NOW))
    door = factory.door(window_days=7)
    principal = factory.user(code="4321", face_descriptor=unit_vector(3))
    factory.grant(principal, door)

    pending = engine.verify_face(session, door.id, unit_vector(3))
    assert pending.decision == Decision.PENDING_SECOND_FACTOR
    assert "access code" in pending.message

    assert engine.double_verify(session, door.id, principal.id, access_code="4321").decision == Decision.GRANTED


# ---------------------------------------------------------------------------
# Second factor
# ---------------------------------------------------------------------------

def test_double_verify_wrong_code_is_denied(session, factory, relay, make_engine):
    engine = make_engine(relay, clock=Clock(NOW))
    door = factory.door(window_days=1)
    principal = factory.user(code="1234")
    factory.grant(principal, door)

    result = engine.double_verify(session, door.id, principal.id, access_code="0000")

    assert result.decision == Decision.DENIED
    assert result.reason == ErrorKind.INVALID_CREDENTIAL
    logged = events(session, door.id)
    assert len(logged) == 1
    assert logged[0].event_type == EventType.ACCESS_ATTEMPT
    assert logged[0].verification_method == VerificationMethod.DOUBLE
    assert logged[0].user_id == principal.id
    assert relay.calls == []


def test_double_verify_checks_only_the_named_principal(session, factory, relay, make_engine):
    engine = make_engine(relay, clock=Clock(NOW))
    door = factory.door(window_days=1)
    principal = factory.user(code="1234")
    other = factory.user(code="5678")
    factory.grant(principal, door)
    factory.grant(other, door)

    result = engine.double_verify(session, door.id, principal.id, access_code="5678")

    assert result.decision == Decision.DENIED


def test_double_verify_without_grant_is_forbidden(session, factory, relay, make_engine):
    engine = make_engine(relay, clock=Clock(NOW))
    door = factory.door(window_days=1)
    principal = factory.user(code="1234")

    result = engine.double_verify(session, door.id, principal.id, access_code="1234")

    assert result.decision == Decision.FORBIDDEN
    assert events(session) == []


def test_double_verify_unknown_principal_is_not_found(session, factory, relay, make_engine):
    engine = make_engine(relay, clock=Clock(NOW))
    door = factory.door(window_days=1)

    assert engine.double_verify(session, door.id, 4242, access_code="1234").decision == Decision.NOT_FOUND
    assert events(session) == []


def test_double_verify_expired(session, factory, relay, make_engine):
    engine = make_engine(relay, clock=Clock(NOW))
    door = factory.door(window_days=1)
    principal = factory.user(code="1234", expiration_date=NOW - timedelta(days=1))
    factory.grant(principal, door)

    result = engine.double_verify(session, door.id, principal.id, access_code="1234")

    assert result.reason == ErrorKind.EXPIRED
    logged = events(session, door.id)
    assert logged[0].verification_method == VerificationMethod.DOUBLE
    assert logged[0].extra_metadata == {"reason": "expired"}


def test_double_verify_requires_exactly_one_credential(session, factory, relay, make_engine):
    engine = make_engine(relay, clock=Clock(NOW))
    door = factory.door()
    with pytest.raises(ValueError):
        engine.double_verify(session, door.id, 1)
    with pytest.raises(ValueError):
        engine.double_verify(session, door.id, 1, access_code="1", face_descriptor=[0.1])


# ---------------------------------------------------------------------------
# Motion
# ---------------------------------------------------------------------------

def test_motion_report_records_approach(session, factory, relay, make_engine):
    engine = make_engine(relay, clock=Clock(NOW))
    door = factory.door()

    result = engine.report_motion(session, door.id, image_ref="captures/" + "b" * 32 + ".png")

    assert result.success
    logged = events(session, door.id)
    assert logged[0].event_type == EventType.APPROACH
    assert logged[0].verification_method == VerificationMethod.NONE
    assert logged[0].success is True
    assert logged[0].occurred_at == NOW


def test_motion_report_survives_log_store_failure(session, factory, relay, make_engine, monkeypatch):
    from sqlalchemy.exc import OperationalError

    from services.access_log_service import AccessLogService

    def broken_record(*args, **kwargs):
        raise OperationalError("INSERT INTO access_events", {}, Exception("database is locked"))

    engine = make_engine(relay, clock=Clock(NOW))
    door = factory.door()
    monkeypatch.setattr(AccessLogService, "record", broken_record)

    result = engine.report_motion(session, door.id)

    assert result.decision == Decision.RECORDED
    assert result.success
    assert result.events == []
    monkeypatch.undo()
    assert events(session, door.id) == []


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

def test_concurrent_grants_on_one_door_are_serialized(database, factory, make_engine):
    relay = FakeRelay(delay=0.02)
    engine = make_engine(relay)
    door = factory.door(address="relay.door")
    count = 5
    for i in range(count):
        principal = factory.user(code=f"10{i:02d}")
        factory.grant(principal, door)

    results = [None] * count
    barrier = threading.Barrier(count)

    def attempt(index):
        s = database.SessionLocal()
        try:
            barrier.wait()
            results[index] = engine.verify_code(s, door.id, f"10{index:02d}").decision
        finally:
            s.close()

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results == [Decision.GRANTED] * count
    assert len(relay.calls) == count
    assert relay.overlaps == 0
    assert relay.state["relay.door"] is (count % 2 == 1)


def test_concurrent_attempts_by_one_principal_both_grant(database, factory, make_engine):
    relay = FakeRelay(delay=0.02)
    engine = make_engine(relay)
    door = factory.door(window_days=1)
    principal = factory.user(code="1234", last_verification_at=datetime.utcnow() - timedelta(hours=1))
    factory.grant(principal, door)

    results = []
    barrier = threading.Barrier(2)

    def attempt():
        s = database.SessionLocal()
        try:
            barrier.wait()
            results.append(engine.verify_code(s, door.id, "1234").decision)
        finally:
            s.close()

    threads = [threading.Thread(target=attempt) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results == [Decision.GRANTED, Decision.GRANTED]
    assert relay.overlaps == 0
