from datetime import datetime, timedelta

from app.ombro import auth
from app.ombro.db import session_scope
from app.ombro.models import AuditLog, User


def test_index_redirects_anonymous_to_login(client):
    r = client.get("/")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]


def test_index_redirects_per_role(app, make_user, login):
    make_user("sol@example.com", role="solicitante")
    make_user("ges@example.com", role="gestora", polo="3M Manaus")
    make_user("adm@example.com", role="admin")

    expected = {
        "sol@example.com": "/solicitante/",
        "ges@example.com": "/gestora/",
        "adm@example.com": "/admin/",
    }
    for email, path in expected.items():
        c = app.test_client()
        login(c, email)
        r = c.get("/")
        assert r.status_code == 302
        assert r.headers["Location"].endswith(path), email


def test_wrong_role_dashboard_bounces_to_own(client, make_user, login):
    make_user("sol@example.com", role="solicitante")
    login(client, "sol@example.com")
    r = client.get("/gestora/")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/solicitante/")


def test_login_without_consent_goes_to_consent(client, make_user, login):
    make_user("new@example.com", consent=False)
    r = login(client, "new@example.com")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/consent")

    # Dashboards stay gated until consent is given
    r = client.get("/solicitante/")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/consent")


def test_consent_requires_checkbox(app, client, make_user, login, csrf):
    uid = make_user("new@example.com", consent=False)
    login(client, "new@example.com")

    r = client.post("/consent", data={"csrf_token": csrf(client)}, follow_redirects=True)
    assert "aceitar os termos".encode() in r.data
    with session_scope(app) as s:
        assert s.get(User, uid).privacy_consent is False

    r = client.post("/consent", data={"csrf_token": csrf(client), "accept": "1"})
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/solicitante/")
    with session_scope(app) as s:
        u = s.get(User, uid)
        assert u.privacy_consent is True
        assert u.privacy_consent_date is not None


def test_invalid_credentials_are_audited(app, client, make_user, login):
    make_user("sol@example.com")
    r = login(client, "sol@example.com", password="wrong")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]
    with session_scope(app) as s:
        ev = s.query(AuditLog).filter(AuditLog.action == "auth.login_failed").one()
        assert ev.entity_id == "sol@example.com"


def test_signup_creates_user_and_asks_consent(app, client):
    r = client.post(
        "/auth/signup",
        data={
            "name": "Maria Silva",
            "email": "Maria@Example.com",
            "password": "secret1",
            "password_confirm": "secret1",
            "role": "gestora",
            "polo": "3M Manaus",
        },
    )
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/consent")
    with session_scope(app) as s:
        u = s.query(User).filter(User.email == "maria@example.com").one()
        assert u.role == "gestora"
        assert u.polo == "3M Manaus"
        assert u.privacy_consent is False


def test_signup_refuses_admin_role(app, client):
    r = client.post(
        "/auth/signup",
        data={
            "name": "Eve",
            "email": "eve@example.com",
            "password": "secret1",
            "password_confirm": "secret1",
            "role": "admin",
        },
        follow_redirects=True,
    )
    assert "Perfil inválido".encode() in r.data
    with session_scope(app) as s:
        assert s.query(User).filter(User.email == "eve@example.com").count() == 0


def test_post_without_csrf_is_rejected(client, make_user, login):
    make_user("sol@example.com")
    login(client, "sol@example.com")
    r = client.post("/requests/1/comments", data={"content": "oi"})
    assert r.status_code == 400


def test_logout_clears_session(client, make_user, login):
    make_user("sol@example.com")
    login(client, "sol@example.com")
    r = client.get("/auth/logout")
    assert r.status_code == 302
    r = client.get("/solicitante/")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]


def test_login_rate_limit_blocks_after_five_failures(client, make_user, login):
    make_user("sol@example.com")
    for _ in range(5):
        login(client, "sol@example.com", password="wrong")
    r = login(client, "sol@example.com")
    r = client.get(r.headers["Location"])
    assert "Muitas tentativas de login".encode() in r.data


def test_stale_login_attempts_are_pruned(client, make_user, login):
    make_user("sol@example.com")
    auth._login_attempts["203.0.113.9"].append(datetime.utcnow() - timedelta(hours=1))

    login(client, "sol@example.com", password="wrong")

    assert "203.0.113.9" not in auth._login_attempts
    assert len(auth._login_attempts["127.0.0.1"]) == 1
