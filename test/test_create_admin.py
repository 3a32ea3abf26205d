from auth.security import verify_access_code
from database.models import User, UserRole
from scripts.create_admin import ensure_admin


def test_ensure_admin_is_idempotent(session):
    user, created = ensure_admin(session, "Root@Acme.io", "424242")
    assert created
    assert user.role == UserRole.ADMINISTRATOR
    assert user.email == "root@acme.io"
    assert verify_access_code("424242", user.access_code_hash)

    again, created = ensure_admin(session, "root@acme.io", "000000")
    assert not created
    assert again.id == user.id
    assert session.query(User).count() == 1
