from types import SimpleNamespace

import pytest

from app.breakage import create_app
from app.breakage.auth import _login_attempts
from app.breakage.constants import ROLE_ADMIN, ROLE_USER
from app.breakage.db import session_scope
from app.breakage.models import Base, User
from app.breakage.modules.products.models import Product
from app.breakage.modules.submissions.service import ItemInput, PhotoUpload, create_submission
from app.breakage.security import hash_password
from app.breakage.storage import storage_from_config

PASSWORD = "secret1"

USERS = [
    # key, email, name, employee id, role
    ("admin", "admin@example.com", "Ada Admin", "A-001", ROLE_ADMIN),
    ("reviewer", "reviewer@example.com", "Rae Reviewer", "A-002", ROLE_ADMIN),
    ("alice", "alice@example.com", "Alice Field", "E-100", ROLE_USER),
    ("bob", "bob@example.com", "Bob Depot", "E-200", ROLE_USER),
]

PRODUCTS = [
    # key, code, name, capacity
    ("p001", "P001", "Still Water", 500),
    ("p002", "P002", "Cola", 350),
]


def jpeg(name: str = "photo.jpg", data: bytes = b"\xff\xd8\xff\xe0fake-jpeg") -> PhotoUpload:
    return PhotoUpload(filename=name, data=data, content_type="image/jpeg")


@pytest.fixture(autouse=True)
def _reset_login_rate_limit():
    _login_attempts.clear()
    yield
    _login_attempts.clear()


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "PHOTO_MAX_BYTES"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    app.config["TESTING"] = True

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        for _key, email, name, employee_id, role in USERS:
            s.add(
                User(
                    email=email,
                    password_hash=hash_password(PASSWORD),
                    name=name,
                    employee_id=employee_id,
                    role=role,
                )
            )
        for _key, code, name, capacity in PRODUCTS:
            s.add(Product(code=code, name=name, capacity=capacity))

    return app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def seed(app):
    """Ids of the seeded users and products, by short key."""
    ids = {}
    with session_scope(app) as s:
        for key, email, *_rest in USERS:
            ids[key] = s.query(User.id).filter(User.email == email).scalar()
        for key, code, *_rest in PRODUCTS:
            ids[key] = s.query(Product.id).filter(Product.code == code).scalar()
    return SimpleNamespace(**ids)


@pytest.fixture()
def storage(app):
    return storage_from_config(app.config)


@pytest.fixture()
def make_submission(app, seed, storage):
    """Create a pending submission through the service layer and return its id."""

    def _make(owner: str = "alice", items=None, title: str | None = None) -> int:
        items = items or [(seed.p001, 1, "Dropped from pallet", "breakage")]
        with session_scope(app) as s:
            actor = s.get(User, getattr(seed, owner))
            sub = create_submission(
                s,
                actor,
                title=title,
                items=[
                    ItemInput(product_id=pid, quantity=qty, reason=reason, operation_type=kind, photos=[jpeg()])
                    for pid, qty, reason, kind in items
                ],
                storage=storage,
            )
            return sub.id

    return _make


def _csrf_token(client) -> str:
    with client.session_transaction() as sess:
        token = sess.get("csrf_token")
    if not token:
        client.get("/")
        with client.session_transaction() as sess:
            token = sess["csrf_token"]
    return token


@pytest.fixture()
def login(client):
    def _login(email: str, password: str = PASSWORD):
        return client.post("/auth/login", data={"email": email, "password": password}, follow_redirects=True)

    return _login


@pytest.fixture()
def post(client):
    """POST with the session CSRF token filled in."""

    def _post(url: str, data=None, **kwargs):
        payload = dict(data or {})
        payload["csrf_token"] = _csrf_token(client)
        return client.post(url, data=payload, **kwargs)

    return _post
