import pytest

from app.breakage.constants import USER_INACTIVE
from app.breakage.db import session_scope
from app.breakage.errors import AuthorizationError, ConflictError, ValidationError
from app.breakage.models import LogEntry, User
from app.breakage.modules.users.service import (
    Profile,
    authenticate,
    change_password,
    delete_user,
    list_users,
    register_user,
    update_own_name,
    update_user,
)

from conftest import PASSWORD


def test_register_and_authenticate(app):
    with session_scope(app) as s:
        user = register_user(
            s,
            email="  Carol@Example.com ",
            password="hunter22",
            confirmation="hunter22",
            profile=Profile(name="Carol", employee_id="E-300"),
        )
        assert user.email == "carol@example.com"
        assert user.role == "user"
        assert user.is_active

    with session_scope(app) as s:
        assert authenticate(s, "carol@example.com", "hunter22") is not None
        assert authenticate(s, "carol@example.com", "wrong") is None
        assert s.query(LogEntry).filter(LogEntry.action == "user.register").count() == 1


def test_register_validation(app):
    with pytest.raises(ValidationError) as exc:
        with session_scope(app) as s:
            register_user(s, email="bad", password="123", confirmation="321", profile=Profile(name="", employee_id=""))
    errors = exc.value.errors
    assert any("6 characters" in e for e in errors)
    assert any("do not match" in e for e in errors)
    assert any("Employee ID" in e for e in errors)


def test_register_duplicates_are_conflicts(app):
    with pytest.raises(ConflictError):
        with session_scope(app) as s:
            register_user(
                s,
                email="alice@example.com",
                password=PASSWORD,
                confirmation=PASSWORD,
                profile=Profile(name="Another Alice", employee_id="E-999"),
            )
    with pytest.raises(ConflictError):
        with session_scope(app) as s:
            register_user(
                s,
                email="new@example.com",
                password=PASSWORD,
                confirmation=PASSWORD,
                profile=Profile(name="Clone", employee_id="E-100"),
            )


def test_inactive_user_cannot_authenticate(app, seed):
    with session_scope(app) as s:
        s.get(User, seed.bob).status = USER_INACTIVE
    with session_scope(app) as s:
        assert authenticate(s, "bob@example.com", PASSWORD) is None


def test_change_password(app, seed):
    with pytest.raises(ValidationError):
        with session_scope(app) as s:
            change_password(s, s.get(User, seed.alice), current="nope", new="newpass1", confirmation="newpass1")
    with pytest.raises(ValidationError):
        with session_scope(app) as s:
            change_password(s, s.get(User, seed.alice), current=PASSWORD, new="short", confirmation="short")

    with session_scope(app) as s:
        change_password(s, s.get(User, seed.alice), current=PASSWORD, new="newpass1", confirmation="newpass1")
    with session_scope(app) as s:
        assert authenticate(s, "alice@example.com", "newpass1") is not None
        assert authenticate(s, "alice@example.com", PASSWORD) is None


def test_update_own_name(app, seed):
    with pytest.raises(ValidationError):
        with session_scope(app) as s:
            update_own_name(s, s.get(User, seed.alice), "  ")
    with session_scope(app) as s:
        update_own_name(s, s.get(User, seed.alice), "Alice F.")
    with session_scope(app) as s:
        assert s.get(User, seed.alice).name == "Alice F."


def test_admin_edits_user(app, seed):
    with session_scope(app) as s:
        update_user(s, s.get(User, seed.admin), s.get(User, seed.bob), {"name": "Bob D.", "role": "admin", "status": "active"})
    with session_scope(app) as s:
        bob = s.get(User, seed.bob)
        assert bob.is_admin
        assert bob.name == "Bob D."


def test_admin_cannot_deactivate_or_demote_self(app, seed):
    for payload in (
        {"name": "Ada Admin", "role": "admin", "status": "inactive"},
        {"name": "Ada Admin", "role": "user", "status": "active"},
    ):
        with pytest.raises(ValidationError):
            with session_scope(app) as s:
                admin = s.get(User, seed.admin)
                update_user(s, admin, admin, payload)


def test_delete_is_soft_when_user_owns_submissions(app, seed, make_submission):
    make_submission(owner="alice")
    with session_scope(app) as s:
        outcome = delete_user(s, s.get(User, seed.admin), s.get(User, seed.alice))
        assert outcome == "deactivated"
    with session_scope(app) as s:
        alice = s.get(User, seed.alice)
        assert alice is not None
        assert alice.status == USER_INACTIVE


def test_delete_is_hard_otherwise(app, seed):
    with session_scope(app) as s:
        assert delete_user(s, s.get(User, seed.admin), s.get(User, seed.bob)) == "deleted"
    with session_scope(app) as s:
        assert s.get(User, seed.bob) is None
        entry = s.query(LogEntry).filter(LogEntry.action == "user.delete").one()
        assert entry.target_id == str(seed.bob)


def test_self_delete_refused(app, seed):
    with pytest.raises(ValidationError):
        with session_scope(app) as s:
            admin = s.get(User, seed.admin)
            delete_user(s, admin, admin)


def test_user_management_is_admin_only(app, seed):
    with session_scope(app) as s:
        alice = s.get(User, seed.alice)
        with pytest.raises(AuthorizationError):
            list_users(s, alice)
        with pytest.raises(AuthorizationError):
            delete_user(s, alice, s.get(User, seed.bob))


def test_list_users_filters(app, seed):
    with session_scope(app) as s:
        admin = s.get(User, seed.admin)
        assert {u.email for u in list_users(s, admin, role="admin")} == {"admin@example.com", "reviewer@example.com"}
        assert [u.email for u in list_users(s, admin, search="E-200")] == ["bob@example.com"]
