import pytest
from fastapi.testclient import TestClient

from clinic_auth.main import app
from clinic_auth.models.audit import AuditEvent
from clinic_auth.models.security import RefreshToken
from clinic_auth.services import email_service as email_module
from clinic_auth.services.rate_limiter import rate_limiter


@pytest.fixture
def client(db):
    return TestClient(app)


def _login(client, username="alice", password="correct-horse-1", **headers):
    return client.post(
        "/api/auth/login", json={"username": username, "password": password}, headers=headers
    )


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def test_login_returns_token_pair(client, db, make_user):
    make_user(db)
    response = _login(client)

    assert response.status_code == 200
    body = response.json()
    assert body["accessToken"]
    assert body["refreshToken"]
    assert body["tokenType"] == "bearer"
    assert body["expiresIn"] > 0

    actions = [e.action for e in db.query(AuditEvent).all()]
    assert "LOGIN_SUCCESS" in actions


def test_login_accepts_email_identifier(client, db, make_user):
    make_user(db, email="alice@clinic.test")
    assert _login(client, username="Alice@Clinic.test").status_code == 200


def test_bad_credentials_do_not_reveal_which_part_was_wrong(client, db, make_user):
    make_user(db)
    wrong_password = _login(client, password="nope-nope-1")
    unknown_user = _login(client, username="mallory")

    assert wrong_password.status_code == 401
    assert unknown_user.status_code == 401
    assert wrong_password.json()["error"] == unknown_user.json()["error"]


def test_guard_blocks_after_five_failures(client, db, make_user):
    make_user(db)
    for _ in range(5):
        assert _login(client, password="wrong-password").status_code == 401

    blocked = _login(client)
    assert blocked.status_code == 429
    assert int(blocked.headers["Retry-After"]) > 0
    body = blocked.json()
    assert body["statusCode"] == 429
    assert body["error"] == "RATE_LIMIT_EXCEEDED"
    assert body["message"]
    assert body["timestamp"]

    # Same account from another address is unaffected.
    assert _login(client, **{"X-Forwarded-For": "203.0.113.7"}).status_code == 200


def test_four_failures_then_correct_password_succeeds(client, db, make_user):
    make_user(db)
    for _ in range(4):
        _login(client, password="wrong-password")
    assert _login(client).status_code == 200
    for _ in range(4):
        _login(client, password="wrong-password")
    assert _login(client).status_code == 200


def test_refresh_returns_same_refresh_token(client, db, make_user):
    make_user(db)
    tokens = _login(client).json()

    response = client.post("/api/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
    assert response.status_code == 200
    body = response.json()
    assert body["refreshToken"] == tokens["refreshToken"]
    assert client.get("/api/auth/me", headers=_bearer(body["accessToken"])).status_code == 200


def test_refresh_with_rotation_issues_new_token(client, db, make_user, monkeypatch):
    from clinic_auth.config import settings

    monkeypatch.setattr(settings, "REFRESH_TOKEN_ROTATION", True)
    make_user(db)
    tokens = _login(client).json()

    rotated = client.post("/api/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
    assert rotated.status_code == 200
    assert rotated.json()["refreshToken"] != tokens["refreshToken"]

    replay = client.post("/api/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
    assert replay.status_code == 401


def test_refresh_with_unknown_token_is_401(client, db):
    response = client.post("/api/auth/refresh", json={"refreshToken": "not-a-token"})
    assert response.status_code == 401
    assert "log in again" in response.json()["error"]

    failures = db.query(AuditEvent).filter(AuditEvent.action == "TOKEN_REFRESH_FAILED").all()
    assert len(failures) == 1
    assert "TOKEN_NOT_FOUND" in failures[0].details


def test_new_login_invalidates_previous_refresh_token(client, db, make_user):
    make_user(db)
    first = _login(client).json()
    _login(client)

    response = client.post("/api/auth/refresh", json={"refreshToken": first["refreshToken"]})
    assert response.status_code == 401


def test_logout_revokes_access_and_refresh_tokens(client, db, make_user):
    make_user(db)
    tokens = _login(client).json()
    headers = _bearer(tokens["accessToken"])

    assert client.get("/api/auth/me", headers=headers).json()["username"] == "alice"
    response = client.post("/api/auth/logout", headers=headers)
    assert response.status_code == 200
    assert response.json()["message"]

    assert client.get("/api/auth/me", headers=headers).status_code == 401
    refresh = client.post("/api/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
    assert refresh.status_code == 401
    assert db.query(RefreshToken).filter(RefreshToken.revoked == False).count() == 0  # noqa: E712


def test_logout_requires_bearer_token(client, db):
    assert client.post("/api/auth/logout").status_code == 401
    assert client.post("/api/auth/logout", headers=_bearer("garbage")).status_code == 401


def test_forgot_and_reset_password_flow(client, db, make_user, monkeypatch):
    make_user(db, email="alice@clinic.test")
    old_session = _login(client).json()
    sent = {}

    def capture(to_email, full_name, token):
        sent.update(to=to_email, token=token)
        return True

    monkeypatch.setattr(email_module.email_service, "send_password_reset_email", capture)

    response = client.post("/api/auth/forgot-password", json={"email": "alice@clinic.test"})
    assert response.status_code == 200
    assert sent["to"] == "alice@clinic.test"

    reset = client.post(
        "/api/auth/reset-password", json={"token": sent["token"], "newPassword": "brand-new-pass-1"}
    )
    assert reset.status_code == 200

    assert _login(client).status_code == 401
    assert _login(client, password="brand-new-pass-1").status_code == 200
    stale = client.post("/api/auth/refresh", json={"refreshToken": old_session["refreshToken"]})
    assert stale.status_code == 401

    again = client.post(
        "/api/auth/reset-password", json={"token": sent["token"], "newPassword": "another-pass-2"}
    )
    assert again.status_code == 400


def test_forgot_password_unknown_email_is_400(client, db):
    response = client.post("/api/auth/forgot-password", json={"email": "ghost@clinic.test"})
    assert response.status_code == 400
    assert response.json()["error"]


def test_reset_password_with_bad_token_is_400(client, db):
    response = client.post(
        "/api/auth/reset-password", json={"token": "bogus", "newPassword": "brand-new-pass-1"}
    )
    assert response.status_code == 400


def test_email_failure_does_not_fail_request(client, db, make_user, monkeypatch):
    make_user(db, email="alice@clinic.test")
    service = email_module.email_service
    monkeypatch.setattr(service, "smtp_host", "smtp.invalid")
    monkeypatch.setattr(service, "from_email", "noreply@clinic.test")

    def refuse(*args, **kwargs):
        raise OSError("connection refused")

    monkeypatch.setattr(email_module.smtplib, "SMTP", refuse)
    response = client.post("/api/auth/forgot-password", json={"email": "alice@clinic.test"})
    assert response.status_code == 200


def test_general_rate_limit_rejects_with_envelope(client, db, monkeypatch):
    monkeypatch.setattr(rate_limiter, "per_minute", 2)

    first = client.get("/api/rate-limiting/stats")
    assert first.status_code == 200
    assert first.headers["X-RateLimit-Limit"] == "2"
    assert first.headers["X-RateLimit-Remaining"] == "1"
    assert first.json()["identifier"] == "ip:testclient"

    client.get("/api/rate-limiting/stats")
    limited = client.get("/api/rate-limiting/stats")
    assert limited.status_code == 429
    assert "Retry-After" in limited.headers
    assert limited.json()["error"] == "RATE_LIMIT_EXCEEDED"

    # Health and login stay reachable.
    assert client.get("/api/health").status_code == 200
    assert "X-RateLimit-Limit" not in client.get("/api/health").headers


def test_rate_limit_uses_subject_for_authenticated_requests(client, db, make_user):
    user = make_user(db)
    token = _login(client).json()["accessToken"]

    stats = client.get("/api/rate-limiting/stats", headers=_bearer(token)).json()
    assert stats["identifier"] == f"user:{user.id}"


def test_admin_can_inspect_and_unblock(client, db, make_user, monkeypatch):
    make_user(db, "root", role="admin")
    admin_token = _login(client, username="root").json()["accessToken"]

    monkeypatch.setattr(rate_limiter, "per_minute", 1)
    monkeypatch.setattr(rate_limiter, "max_before_block", 2)
    victim = {"X-Forwarded-For": "198.51.100.4"}
    for _ in range(3):
        client.get("/api/rate-limiting/stats", headers=victim)
    monkeypatch.setattr(rate_limiter, "per_minute", 100)
    monkeypatch.setattr(rate_limiter, "max_before_block", 200)

    headers = _bearer(admin_token)
    blocked = client.get("/api/rate-limiting/blocked", headers=headers)
    assert [row["identifier"] for row in blocked.json()] == ["ip:198.51.100.4"]

    status = client.get("/api/rate-limiting/status/ip:198.51.100.4", headers=headers).json()
    assert status["state"] == "BLOCKED"

    unblock = client.post("/api/rate-limiting/unblock/ip:198.51.100.4", headers=headers)
    assert unblock.status_code == 200
    assert unblock.json()["removed"] is True
    assert client.get("/api/rate-limiting/stats", headers=victim).status_code == 200

    audit = db.query(AuditEvent).filter(AuditEvent.action == "SECURITY_IP_UNBLOCKED").count()
    assert audit == 1


def test_admin_can_clear_login_guard(client, db, make_user):
    make_user(db, "root", role="admin")
    make_user(db)
    admin_token = _login(client, username="root").json()["accessToken"]
    for _ in range(5):
        _login(client, password="wrong-password")
    assert _login(client).status_code == 429

    response = client.post(
        "/api/rate-limiting/login-guard/clear",
        json={"credential": "alice", "ip": "testclient"},
        headers=_bearer(admin_token),
    )
    assert response.status_code == 200
    assert response.json()["removed"] is True
    assert _login(client).status_code == 200


def test_admin_routes_reject_non_admins(client, db, make_user):
    make_user(db)
    token = _login(client).json()["accessToken"]
    assert client.get("/api/rate-limiting/blocked", headers=_bearer(token)).status_code == 403


def test_health_reports_database(client, db):
    body = client.get("/health").json()
    assert body["status"] == "healthy"
    assert body["readiness"]["database"]["ok"] is True
    assert "cleanup_worker" in body["readiness"]


def test_reset_password_rejects_passwords_over_bcrypt_byte_limit(client, db, make_user, monkeypatch):
    make_user(db, email="alice@clinic.test")
    sent = {}
    monkeypatch.setattr(
        email_module.email_service,
        "send_password_reset_email",
        lambda to_email, full_name, token: sent.update(token=token) or True,
    )
    client.post("/api/auth/forgot-password", json={"email": "alice@clinic.test"})

    # 70 characters, 100+ bytes of UTF-8
    too_long = "mậtkhẩu" * 10
    response = client.post(
        "/api/auth/reset-password", json={"token": sent["token"], "newPassword": too_long}
    )
    assert response.status_code == 422
    assert response.json()["error"] == "Validation failed"

    ok = client.post(
        "/api/auth/reset-password", json={"token": sent["token"], "newPassword": "mậtkhẩu-mới-1"}
    )
    assert ok.status_code == 200
    assert _login(client, password="mậtkhẩu-mới-1").status_code == 200
