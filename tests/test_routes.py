"""End-to-end flows through the Flask routes."""
import csv
import io
import zipfile

from app.breakage.constants import USER_INACTIVE
from app.breakage.db import session_scope
from app.breakage.models import User
from app.breakage.modules.submissions.models import Submission
from app.breakage.storage import StorageError

from conftest import PASSWORD

JPEG = b"\xff\xd8\xff\xe0route-test"


def _photo(name: str = "crate.jpg"):
    return (io.BytesIO(JPEG), name)


def _submit(post, seed, **overrides):
    data = {
        "title": "Batch A",
        "items-0-product_id": str(seed.p001),
        "items-0-quantity": "3",
        "items-0-operation_type": "breakage",
        "items-0-reason": "Crushed crate",
        "items-0-photos": _photo(),
        "items-1-product_id": str(seed.p002),
        "items-1-quantity": "1",
        "items-1-operation_type": "exchange",
        "items-1-reason": "Wrong flavour",
        "items-1-photos": _photo("cap.png"),
    }
    data.update(overrides)
    data = {k: v for k, v in data.items() if v is not None}
    return post("/submissions/new", data=data, content_type="multipart/form-data", follow_redirects=True)


def _switch(client, login, email):
    client.get("/auth/logout")
    return login(email)


def _only_submission(app):
    with session_scope(app) as s:
        sub = s.query(Submission).one()
        return sub.id, [i.id for i in sub.items]


def test_submit_review_and_lock(app, client, login, post, seed):
    login("alice@example.com")
    r = _submit(post, seed)
    assert r.status_code == 200
    assert b"Submission sent for approval" in r.data
    assert b"pending" in r.data

    sub_id, item_ids = _only_submission(app)
    assert len(item_ids) == 2

    r = client.get(f"/submissions/{sub_id}/items/{item_ids[0]}/photos/0")
    assert r.status_code == 200
    assert r.data == JPEG
    assert r.mimetype == "image/jpeg"
    assert client.get(f"/submissions/{sub_id}/items/{item_ids[0]}/photos/5").status_code == 404

    _switch(client, login, "admin@example.com")
    r = client.get("/admin/approvals")
    assert r.status_code == 200
    assert b"Batch A" in r.data
    assert f"/submissions/{sub_id}/items/{item_ids[0]}/photos/0".encode() in r.data

    r = post(
        f"/admin/approvals/{sub_id}/decide",
        data={"decision": "reject", "comments": "damaged in transit"},
        follow_redirects=True,
    )
    assert r.status_code == 200
    assert f"Submission {sub_id} rejected".encode() in r.data

    r = post(f"/admin/approvals/{sub_id}/decide", data={"decision": "approve"}, follow_redirects=True)
    assert b"already rejected" in r.data

    _switch(client, login, "alice@example.com")
    r = client.get(f"/submissions/{sub_id}")
    assert b"rejected" in r.data
    assert b"damaged in transit" in r.data

    r = post(
        f"/submissions/{sub_id}/items/{item_ids[0]}/edit",
        data={"product_id": str(seed.p001), "quantity": "9", "operation_type": "breakage", "reason": "x"},
        follow_redirects=True,
    )
    assert b"can no longer be edited" in r.data

    with session_scope(app) as s:
        sub = s.get(Submission, sub_id)
        assert sub.status == "rejected"
        assert sub.items[0].quantity == 3


def test_submission_requires_photo(app, client, login, post, seed):
    login("alice@example.com")
    r = _submit(post, seed, **{"items-1-photos": None})
    assert b"upload at least one photo" in r.data
    with session_scope(app) as s:
        assert s.query(Submission).count() == 0


def test_other_users_submission_is_forbidden(app, client, login, post, seed):
    login("alice@example.com")
    _submit(post, seed)
    sub_id, item_ids = _only_submission(app)

    _switch(client, login, "bob@example.com")
    assert client.get(f"/submissions/{sub_id}").status_code == 403
    assert client.get(f"/submissions/{sub_id}/items/{item_ids[0]}/photos/0").status_code == 403
    assert client.get(f"/submissions/{sub_id}/photos.zip").status_code == 403
    assert post(f"/submissions/{sub_id}/delete").status_code == 403
    assert client.get("/admin/approvals").status_code == 403
    assert client.get("/admin/reports").status_code == 403

    with session_scope(app) as s:
        assert s.get(Submission, sub_id) is not None


def test_owner_edits_and_deletes_pending(app, client, login, post, seed):
    login("alice@example.com")
    _submit(post, seed)
    sub_id, item_ids = _only_submission(app)

    r = post(f"/submissions/{sub_id}/edit", data={"title": "Batch B"}, follow_redirects=True)
    assert b"Batch B" in r.data

    r = post(f"/submissions/{sub_id}/items/{item_ids[1]}/delete", follow_redirects=True)
    assert b"Item removed" in r.data
    r = post(f"/submissions/{sub_id}/items/{item_ids[0]}/delete", follow_redirects=True)
    assert b"at least one item" in r.data

    r = post(f"/submissions/{sub_id}/delete", follow_redirects=True)
    assert b"Submission deleted" in r.data
    with session_scope(app) as s:
        assert s.query(Submission).count() == 0


def test_submission_photo_zip(app, client, login, post, seed):
    login("alice@example.com")
    _submit(post, seed)
    sub_id, _ = _only_submission(app)

    r = client.get(f"/submissions/{sub_id}/photos.zip")
    assert r.status_code == 200
    assert r.headers["X-Photos-Requested"] == "2"
    assert r.headers["X-Photos-Included"] == "2"
    assert "Alice_Field_" in r.headers["Content-Disposition"]
    names = sorted(zipfile.ZipFile(io.BytesIO(r.data)).namelist())
    assert names == ["Item1_P001_1.jpg", "Item2_P002_1.png"]


def test_report_exports(app, client, login, post, seed):
    login("alice@example.com")
    _submit(post, seed)
    sub_id, _ = _only_submission(app)

    _switch(client, login, "admin@example.com")
    post(f"/admin/approvals/{sub_id}/decide", data={"decision": "approve"})

    r = client.get("/admin/reports")
    assert r.status_code == 200
    assert b"Crushed crate" in r.data

    r = client.get("/admin/reports/export.csv")
    assert r.status_code == 200
    assert r.mimetype == "text/csv"
    assert "Breakage_Report_" in r.headers["Content-Disposition"]
    rows = list(csv.reader(io.StringIO(r.data.decode("utf-8"))))
    assert len(rows) == 3

    r = client.get("/admin/reports/export.xlsx")
    assert r.status_code == 200
    assert r.data[:2] == b"PK"

    r = client.get("/admin/reports/photos.zip")
    assert r.status_code == 200
    assert r.headers["X-Photos-Requested"] == "2"

    r = client.get("/admin/reports/export.csv?date_from=nope", follow_redirects=True)
    assert b"Dates must be YYYY-MM-DD" in r.data

    r = client.get("/admin/activity")
    assert b"report.export_csv" in r.data
    assert b"submission.approve" in r.data


def test_products_admin(app, client, login, post, seed):
    login("alice@example.com")
    assert client.get("/products").status_code == 200
    assert client.get("/products/new").status_code == 403
    _submit(post, seed)

    _switch(client, login, "admin@example.com")
    r = post("/products/new", data={"name": "Lemonade", "code": "p010", "capacity": "330"}, follow_redirects=True)
    assert b"P010" in r.data

    r = post("/products/new", data={"name": "Dup", "code": "P010", "capacity": "330"})
    assert r.status_code == 409

    r = post(f"/products/{seed.p001}/delete", follow_redirects=True)
    assert b"cannot be deleted" in r.data
    assert client.get("/products?q=still").data.count(b"P001") >= 1


def test_user_admin_soft_delete_and_session_cutoff(app, login, post, seed):
    alice_client = app.test_client()
    alice_client.post("/auth/login", data={"email": "alice@example.com", "password": PASSWORD})
    assert alice_client.get("/submissions").status_code == 200
    with session_scope(app) as s:
        s.add(Submission(user_id=seed.alice, title="old"))

    login("admin@example.com")
    r = post(f"/admin/users/{seed.alice}/delete", follow_redirects=True)
    assert b"deactivated instead of deleted" in r.data

    with session_scope(app) as s:
        assert s.get(User, seed.alice).status == USER_INACTIVE

    r = alice_client.get("/submissions")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]

    r = post(f"/admin/users/{seed.admin}/delete", follow_redirects=True)
    assert b"cannot delete your own account" in r.data


def test_register_and_account_settings(app, client, login, post):
    r = client.post(
        "/auth/register",
        data={
            "name": "Carol",
            "employee_id": "E-300",
            "email": "carol@example.com",
            "password": "hunter22",
            "confirm_password": "hunter22",
        },
        follow_redirects=True,
    )
    assert b"Account created" in r.data

    r = client.post(
        "/auth/register",
        data={
            "name": "Carol Again",
            "employee_id": "E-301",
            "email": "carol@example.com",
            "password": "hunter22",
            "confirm_password": "hunter22",
        },
    )
    assert r.status_code == 409

    login("carol@example.com", "hunter22")
    r = post("/account/profile", data={"name": "Carol C."}, follow_redirects=True)
    assert b"Name updated" in r.data

    r = post(
        "/account/password",
        data={"current_password": "wrong", "new_password": "newpass1", "confirm_password": "newpass1"},
        follow_redirects=True,
    )
    assert b"Current password is incorrect" in r.data

    r = post(
        "/account/password",
        data={"current_password": "hunter22", "new_password": "newpass1", "confirm_password": "newpass1"},
        follow_redirects=True,
    )
    assert b"Password changed" in r.data

    r = client.get("/account/activity")
    assert b"account.change_password" in r.data
    assert b"account.update_profile" in r.data


def test_admin_history_lists_every_owner(app, client, login, post, seed):
    login("alice@example.com")
    _submit(post, seed, title="Alice batch")
    _switch(client, login, "bob@example.com")
    _submit(post, seed, title="Bob batch")
    r = client.get("/submissions")
    assert b"Bob batch" in r.data
    assert b"Alice batch" not in r.data

    _switch(client, login, "admin@example.com")
    r = client.get("/submissions")
    assert b"All submissions" in r.data
    assert b"Submitted by" in r.data
    assert b"Alice batch" in r.data and b"Bob batch" in r.data

    r = client.get(f"/submissions?user_id={seed.bob}")
    assert b"Bob batch" in r.data
    assert b"Alice batch" not in r.data


def test_storage_failure_flashes_and_redirects(app, client, login):
    @app.get("/_storage_down")
    def _storage_down():
        raise StorageError("bucket unreachable")

    login("alice@example.com")
    r = client.get("/_storage_down", headers={"Referer": "http://localhost/submissions"})
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/submissions")
    r = client.get("/submissions")
    assert b"Photo storage is unavailable" in r.data
