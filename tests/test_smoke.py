def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True


def test_healthz_ok(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_anonymous_is_sent_to_login(client):
    r = client.get("/store")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]
    assert "next=/store" in r.headers["Location"]


def test_login_page_renders(client):
    r = client.get("/auth/login")
    assert r.status_code == 200


def test_bad_password_is_rejected(client):
    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "nope"}, follow_redirects=True)
    assert r.status_code == 200
    assert b"Invalid credentials." in r.data
    with client.session_transaction() as sess:
        assert "user_id" not in sess


def test_each_role_lands_on_its_home(client, login):
    for email, home in (
        ("admin@example.com", "/store"),
        ("manager@example.com", "/store"),
        ("cashier@example.com", "/cashier"),
        ("rider@example.com", "/rider"),
    ):
        login(email)
        r = client.get("/")
        assert r.status_code == 302
        assert r.headers["Location"].endswith(home)
        client.get("/auth/logout")


def test_store_dashboard_for_manager(client, login):
    login("manager@example.com")
    r = client.get("/store")
    assert r.status_code == 200
    assert b"Store dashboard" in r.data


def test_cashier_is_bounced_from_manager_pages(client, login):
    login("cashier@example.com")
    r = client.get("/store/cashier-shifts")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/cashier")


def test_cashier_queue_warns_without_shift(client, login):
    login("cashier@example.com")
    r = client.get("/cashier")
    assert r.status_code == 200
    assert b"No open shift" in r.data


def test_rider_home_renders(client, login):
    login("rider@example.com")
    r = client.get("/rider")
    assert r.status_code == 200
    assert b"My runs" in r.data


def test_post_without_csrf_token_is_rejected(client, login):
    login("manager@example.com")
    r = client.post("/store/cashier-shifts", data={"intent": "open", "cashier_id": "3", "opening_float": "500"})
    assert r.status_code == 400
    assert b"CSRF token missing or invalid." in r.data


def test_csrf_header_is_accepted(client, login, users):
    token = login("manager@example.com")
    r = client.post(
        "/store/cashier-shifts",
        data={"intent": "open", "cashier_id": str(users["cashier"].id), "opening_float": "500"},
        headers={"X-CSRF-Token": token},
    )
    assert r.status_code == 302


def test_admin_pages(client, login):
    login("admin@example.com")
    assert client.get("/admin/users").status_code == 200
    assert client.get("/admin/audit").status_code == 200


def test_manager_cannot_manage_users(client, login):
    login("manager@example.com")
    r = client.get("/admin/users")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/store")


def test_unknown_page_is_404(client):
    r = client.get("/does-not-exist")
    assert r.status_code == 404
