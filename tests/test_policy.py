"""Access policy evaluator: pure predicates, no database."""
from types import SimpleNamespace

import pytest

from app.breakage import policy
from app.breakage.errors import AuthorizationError


def _user(uid: int, *, admin: bool = False, active: bool = True):
    return SimpleNamespace(id=uid, is_admin=admin, is_active=active)


def _submission(owner_id: int, status: str = "pending"):
    return SimpleNamespace(user_id=owner_id, status=status)


ALICE = _user(1)
BOB = _user(2)
ADMIN = _user(9, admin=True)


def test_owner_and_admin_can_read_submission():
    sub = _submission(ALICE.id)
    assert policy.evaluate(ALICE, policy.READ, policy.SUBMISSION, sub)
    assert policy.evaluate(ADMIN, policy.READ, policy.SUBMISSION, sub)
    assert not policy.evaluate(BOB, policy.READ, policy.SUBMISSION, sub)


def test_owner_may_only_insert_for_self():
    assert policy.evaluate(ALICE, policy.INSERT, policy.SUBMISSION, ALICE.id)
    assert not policy.evaluate(ALICE, policy.INSERT, policy.SUBMISSION, BOB.id)


def test_owner_edits_only_while_pending():
    pending = _submission(ALICE.id)
    approved = _submission(ALICE.id, status="approved")
    assert policy.evaluate(ALICE, policy.UPDATE, policy.ITEM, pending)
    assert not policy.evaluate(ALICE, policy.UPDATE, policy.ITEM, approved)
    assert not policy.evaluate(ALICE, policy.DELETE, policy.SUBMISSION, approved)
    assert policy.evaluate(ALICE, policy.DELETE, policy.SUBMISSION, pending)


def test_owner_cannot_touch_admin_fields():
    pending = _submission(ALICE.id)
    assert policy.evaluate(ALICE, policy.UPDATE, policy.SUBMISSION, pending, fields={"title"})
    assert not policy.evaluate(ALICE, policy.UPDATE, policy.SUBMISSION, pending, fields={"status"})
    assert not policy.evaluate(ALICE, policy.UPDATE, policy.SUBMISSION, pending, fields={"title", "comments"})
    assert policy.evaluate(ADMIN, policy.UPDATE, policy.SUBMISSION, pending, fields={"status", "comments"})


def test_non_owner_is_denied_every_item_operation():
    sub = _submission(ALICE.id)
    for op in (policy.READ, policy.INSERT, policy.UPDATE, policy.DELETE):
        assert not policy.evaluate(BOB, op, policy.ITEM, sub)


def test_only_admin_decides_and_exports():
    sub = _submission(ALICE.id)
    assert policy.evaluate(ADMIN, policy.DECIDE, policy.SUBMISSION, sub)
    assert not policy.evaluate(ALICE, policy.DECIDE, policy.SUBMISSION, sub)
    assert policy.evaluate(ADMIN, policy.EXPORT, policy.REPORT)
    assert not policy.evaluate(ALICE, policy.EXPORT, policy.REPORT)
    assert not policy.evaluate(ALICE, policy.READ, policy.DASHBOARD)


def test_products_readable_by_all_writable_by_admin():
    assert policy.evaluate(ALICE, policy.READ, policy.PRODUCT)
    for op in (policy.INSERT, policy.UPDATE, policy.DELETE):
        assert not policy.evaluate(ALICE, op, policy.PRODUCT)
        assert policy.evaluate(ADMIN, op, policy.PRODUCT)


def test_log_rows_visible_to_author_and_admin():
    entry = SimpleNamespace(actor_user_id=ALICE.id)
    assert policy.evaluate(ALICE, policy.READ, policy.LOG, entry)
    assert policy.evaluate(ADMIN, policy.READ, policy.LOG, entry)
    assert not policy.evaluate(BOB, policy.READ, policy.LOG, entry)
    assert policy.evaluate(ALICE, policy.INSERT, policy.LOG, ALICE.id)
    assert not policy.evaluate(ALICE, policy.INSERT, policy.LOG, BOB.id)


def test_inactive_or_missing_actor_is_denied_everything():
    inactive_admin = _user(5, admin=True, active=False)
    sub = _submission(5)
    assert not policy.evaluate(inactive_admin, policy.READ, policy.SUBMISSION, sub)
    assert not policy.evaluate(inactive_admin, policy.READ, policy.PRODUCT)
    assert not policy.evaluate(None, policy.READ, policy.PRODUCT)


def test_role_change_takes_effect_on_next_evaluation():
    user = _user(3)
    sub = _submission(ALICE.id)
    assert not policy.evaluate(user, policy.READ, policy.SUBMISSION, sub)
    user.is_admin = True
    assert policy.evaluate(user, policy.READ, policy.SUBMISSION, sub)


def test_unknown_pair_is_denied():
    assert not policy.evaluate(ADMIN, "archive", policy.SUBMISSION, _submission(1))


def test_authorize_raises():
    with pytest.raises(AuthorizationError):
        policy.authorize(BOB, policy.READ, policy.SUBMISSION, _submission(ALICE.id))
