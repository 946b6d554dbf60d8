"""JSON handlers under /functions/v1 and the bearer token endpoint."""
from datetime import datetime, timedelta, timezone

import jwt

from app.ombro.db import session_scope
from app.ombro.models import AuditLog, User
from app.ombro.modules.requests.models import AssistanceRequest, Comment


def _token(client, email, password="pw"):
    r = client.post("/auth/token", json={"email": email, "password": password})
    assert r.status_code == 200, r.json
    return r.json["access_token"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def test_token_endpoint(client, make_user):
    make_user("g@example.com", role="gestora")
    r = client.post("/auth/token", json={"email": "g@example.com", "password": "pw"})
    assert r.status_code == 200
    assert r.json["token_type"] == "bearer"
    assert r.json["expires_in"] > 0

    r = client.post("/auth/token", json={"email": "g@example.com", "password": "nope"})
    assert r.status_code == 401
    assert r.json["error"] == "Invalid credentials"


def test_request_management_requires_auth(client):
    r = client.post("/functions/v1/request-management", json={"requestId": 1, "status": "approved"})
    assert r.status_code == 401
    assert r.json["error"] == "Missing authorization header"
    assert "details" in r.json

    r = client.post(
        "/functions/v1/request-management",
        json={"requestId": 1, "status": "approved"},
        headers=_auth("not-a-token"),
    )
    assert r.status_code == 401


def test_request_management_rejects_expired_token(app, client, make_user):
    uid = make_user("g@example.com", role="gestora", polo="3M Sumaré")
    past = datetime.now(timezone.utc) - timedelta(hours=1)
    token = jwt.encode({"sub": str(uid), "iat": past, "exp": past}, app.config["SECRET_KEY"], algorithm="HS256")
    r = client.post("/functions/v1/request-management", json={"requestId": 1, "status": "approved"}, headers=_auth(token))
    assert r.status_code == 401
    assert r.json["error"] == "Token expired"


def test_request_management_approves(app, client, make_user, make_request):
    sol = make_user("s@example.com")
    ges = make_user("g@example.com", role="gestora", polo="3M Sumaré")
    rid = make_request(sol)

    token = _token(client, "g@example.com")
    r = client.post(
        "/functions/v1/request-management",
        json={"requestId": rid, "status": "approved"},
        headers=_auth(token),
    )
    assert r.status_code == 200
    assert r.json["success"] is True
    assert r.json["message"] == "Request approved successfully"
    assert r.json["data"]["status"] == "approved"
    assert r.json["data"]["approved_by"] == ges

    with session_scope(app) as s:
        assert s.get(AssistanceRequest, rid).status == "approved"


def test_request_management_reject_without_reason_is_allowed(app, client, make_user, make_request):
    sol = make_user("s@example.com")
    make_user("adm@example.com", role="admin")
    rid = make_request(sol, polo="3M Manaus")

    token = _token(client, "adm@example.com")
    r = client.post("/functions/v1/request-management", json={"requestId": rid, "status": "rejected"}, headers=_auth(token))
    assert r.status_code == 200
    with session_scope(app) as s:
        req = s.get(AssistanceRequest, rid)
        assert req.status == "rejected"
        assert req.rejection_reason is None


def test_request_management_scope_and_role(client, make_user, make_request):
    sol = make_user("s@example.com")
    make_user("g@example.com", role="gestora", polo="3M Sumaré")
    rid_other = make_request(sol, polo="3M Manaus")

    r = client.post(
        "/functions/v1/request-management",
        json={"requestId": rid_other, "status": "approved"},
        headers=_auth(_token(client, "g@example.com")),
    )
    assert r.status_code == 404

    r = client.post(
        "/functions/v1/request-management",
        json={"requestId": rid_other, "status": "approved"},
        headers=_auth(_token(client, "s@example.com")),
    )
    assert r.status_code == 403


def test_request_management_bad_input(client, make_user, make_request):
    make_user("g@example.com", role="gestora", polo="3M Sumaré")
    token = _token(client, "g@example.com")

    r = client.post("/functions/v1/request-management", json={"requestId": 1, "status": "done"}, headers=_auth(token))
    assert r.status_code == 400
    r = client.post("/functions/v1/request-management", json={"status": "approved"}, headers=_auth(token))
    assert r.status_code == 400
    r = client.post("/functions/v1/request-management", json={"requestId": 1, "status": 1}, headers=_auth(token))
    assert r.status_code == 400
    assert r.json["error"] == "status must be a string"
    r = client.post(
        "/functions/v1/request-management",
        json={"requestId": 1, "status": "rejected", "rejectionReason": ["x"]},
        headers=_auth(token),
    )
    assert r.status_code == 400
    r = client.post("/functions/v1/send-notification-email", json={"requestId": 1, "action": 2})
    assert r.status_code == 400
    assert r.json["error"] == "action must be a string"


def test_request_management_method_and_cors(client):
    r = client.get("/functions/v1/request-management")
    assert r.status_code == 405
    assert r.json == {"error": "Method not allowed"}

    r = client.options(
        "/functions/v1/request-management",
        headers={"Origin": "https://app.example.com", "Access-Control-Request-Method": "POST"},
    )
    assert r.status_code == 200
    assert r.headers.get("Access-Control-Allow-Origin") == "*"

    r = client.post("/functions/v1/request-management", json={}, headers={"Origin": "https://app.example.com"})
    assert r.status_code == 401
    assert r.headers.get("Access-Control-Allow-Origin") == "*"


def test_send_notification_email(client, make_user, make_request):
    sol = make_user("s@example.com", name="Sara")
    rid = make_request(sol, amount="80.00")

    r = client.post("/functions/v1/send-notification-email", json={"requestId": rid, "action": "rejected"})
    assert r.status_code == 200
    assert r.json["success"] is True
    assert r.json["message"] == "Email notification logged"
    assert r.json["details"] == {
        "recipient": "s@example.com",
        "subject": "❌ Solicitação Um Ombro Amigo Recusada",
        "action": "rejected",
    }

    r = client.post("/functions/v1/send-notification-email", json={"requestId": 9999, "action": "approved"})
    assert r.status_code == 404


def test_user_data_deletion_only_own(app, client, make_user, make_request):
    a = make_user("a@example.com")
    b = make_user("b@example.com")
    make_request(b)

    r = client.delete(f"/functions/v1/user-data-deletion/{b}", headers=_auth(_token(client, "a@example.com")))
    assert r.status_code == 403
    assert r.json["error"] == "You can only delete your own data"
    with session_scope(app) as s:
        assert s.get(User, b) is not None
        assert s.get(User, a) is not None


def test_user_data_deletion_removes_everything(app, client, make_user, make_request):
    uid = make_user("a@example.com")
    other = make_user("g@example.com", role="gestora", polo="3M Sumaré")
    rid = make_request(uid)
    with session_scope(app) as s:
        s.add(Comment(request_id=rid, user_id=other, content="Falta a nota"))

    token = _token(client, "a@example.com")
    r = client.delete(f"/functions/v1/user-data-deletion/{uid}", headers=_auth(token))
    assert r.status_code == 200
    assert r.json["success"] is True
    assert r.json["deletedUser"] == "a@example.com"

    with session_scope(app) as s:
        assert s.get(User, uid) is None
        assert s.query(AssistanceRequest).count() == 0
        assert s.query(Comment).count() == 0
        assert s.query(AuditLog).filter(AuditLog.user_id == uid).count() == 0
        ev = s.query(AuditLog).filter(AuditLog.action == "user.data_deleted").one()
        assert ev.user_id is None
        assert ev.entity_id == str(uid)

    r = client.post("/functions/v1/request-management", json={"requestId": rid, "status": "approved"}, headers=_auth(token))
    assert r.status_code == 401
