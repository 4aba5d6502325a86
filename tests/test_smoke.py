def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True


def test_healthz_ok(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_index_public(client):
    r = client.get("/")
    assert r.status_code == 200
    assert b"Breakage" in r.data


def test_login_page(client):
    r = client.get("/auth/login")
    assert r.status_code == 200
    assert b"Sign in" in r.data


def test_pages_require_login(client):
    for path in ("/submissions", "/submissions/new", "/products", "/account/settings", "/admin/"):
        r = client.get(path)
        assert r.status_code == 302
        assert "/auth/login" in r.headers["Location"]


def test_admin_login_lands_on_dashboard(client, login):
    r = login("admin@example.com")
    assert r.status_code == 200
    assert b"Dashboard" in r.data
    assert b"Pending approvals" in r.data


def test_user_login_lands_on_history(client, login):
    r = login("alice@example.com")
    assert r.status_code == 200
    assert b"My submissions" in r.data


def test_bad_login(client, login):
    r = login("alice@example.com", "wrong-password")
    assert b"Invalid credentials" in r.data


def test_login_rate_limit(client, login):
    for _ in range(5):
        login("alice@example.com", "wrong-password")
    r = login("alice@example.com")
    assert b"Too many login attempts" in r.data


def test_post_without_csrf_rejected(client, login):
    login("admin@example.com")
    r = client.post("/products/new", data={"name": "X", "code": "X1", "capacity": "1"})
    assert r.status_code == 400
