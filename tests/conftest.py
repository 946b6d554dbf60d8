from datetime import datetime
from decimal import Decimal

import pytest
from werkzeug.security import generate_password_hash

from app.ombro import auth, create_app
from app.ombro.db import session_scope
from app.ombro.models import Base, User, UserPoloPermission
from app.ombro.modules.requests.models import AssistanceRequest


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_LOCAL_ROOT", str(tmp_path / "storage"))
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET_PREFIX", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)
    auth._login_attempts.clear()

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def make_user(app):
    def _make(email, *, role="solicitante", name=None, polo=None, consent=True, grants=(), password="pw"):
        with session_scope(app) as s:
            u = User(
                email=email,
                password_hash=generate_password_hash(password),
                name=name or email.split("@")[0].title(),
                role=role,
                polo=polo,
                privacy_consent=consent,
                privacy_consent_date=datetime.utcnow() if consent else None,
                is_active=True,
            )
            s.add(u)
            s.flush()
            for p in grants:
                s.add(UserPoloPermission(user_id=u.id, polo=p))
            return u.id

    return _make


@pytest.fixture()
def make_request(app):
    def _make(user_id, *, polo="3M Sumaré", status="pending", amount="100.00", requester_name=None, cpf="12345678901", **extra):
        with session_scope(app) as s:
            req = AssistanceRequest(
                user_id=user_id,
                type=extra.pop("type", "psicológico"),
                amount=Decimal(amount),
                status=status,
                polo=polo,
                cpf=cpf,
                requester_name=requester_name,
                dependents=extra.pop("dependents", []),
                invoices=extra.pop("invoices", [{"id": "a1", "value": float(amount), "beneficiary": "Clínica", "sessions": 4, "description": "Terapia", "fileName": None}]),
                attachments=extra.pop("attachments", []),
                **extra,
            )
            s.add(req)
            s.flush()
            return req.id

    return _make


@pytest.fixture()
def login():
    def _login(client, email, password="pw"):
        return client.post("/auth/login", data={"email": email, "password": password}, follow_redirects=False)

    return _login


@pytest.fixture()
def csrf():
    def _token(client):
        with client.session_transaction() as sess:
            return sess.get("csrf_token")

    return _token
