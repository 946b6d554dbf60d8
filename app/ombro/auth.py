from __future__ import annotations

import re
import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, flash, g, jsonify, redirect, render_template, request, session, url_for
from werkzeug.security import check_password_hash, generate_password_hash

from app.ombro.audit import record_event
from app.ombro.constants import MIN_PASSWORD_LENGTH, POLOS, ROLE_SOLICITANTE, SELF_SERVICE_ROLES
from app.ombro.db import db_session
from app.ombro.models import User
from app.ombro.rbac import dashboard_endpoint_for
from app.ombro.security import issue_access_token

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds

_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    for key in list(_login_attempts):
        recent = [t for t in _login_attempts[key] if t > cutoff]
        if recent:
            _login_attempts[key] = recent
        else:
            del _login_attempts[key]
    return len(_login_attempts.get(ip, ())) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def _authenticate(email: str, password: str) -> User | None:
    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
            metadata={"email": email},
        )
        s.commit()
        return None
    return user


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
        if not user or not user.is_active:
            session.pop("user_id", None)
            g.current_user = None
            return
        g.current_user = user
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        g.current_user = None


@bp.get("/login")
def login_get():
    user = getattr(g, "current_user", None)
    if user:
        return redirect(url_for(dashboard_endpoint_for(user)))
    nxt = (request.args.get("next") or "").strip()
    return render_template("auth/login.html", next=nxt)


@bp.post("/login")
def login_post():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    nxt = (request.form.get("next") or "").strip()
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        flash("Muitas tentativas de login. Aguarde 5 minutos.", "danger")
        return redirect(url_for("auth.login_get"))

    _record_attempt(ip)

    try:
        user = _authenticate(email, password)
        if not user:
            flash("Credenciais inválidas.", "danger")
            return redirect(url_for("auth.login_get"))

        s = db_session()
        session["user_id"] = user.id
        _login_attempts[ip].clear()
        record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
        s.commit()
        if not user.privacy_consent:
            return redirect(url_for("profile.consent_get"))
        # Optional "next" redirect (only allow local paths to avoid open redirects).
        if nxt.startswith("/") and not nxt.startswith("//"):
            return redirect(nxt)
        return redirect(url_for(dashboard_endpoint_for(user)))
    except Exception:
        current_app.logger.exception("Login POST crashed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise


@bp.get("/signup")
def signup_get():
    return render_template("auth/signup.html", polos=POLOS, roles=SELF_SERVICE_ROLES)


@bp.post("/signup")
def signup_post():
    s = db_session()
    name = (request.form.get("name") or "").strip()
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    password_confirm = request.form.get("password_confirm") or ""
    role = (request.form.get("role") or ROLE_SOLICITANTE).strip()
    polo = (request.form.get("polo") or "").strip() or None

    errors = []
    if not name:
        errors.append("Nome é obrigatório.")
    if not email:
        errors.append("Email é obrigatório.")
    elif not _EMAIL_RE.match(email):
        errors.append("Formato de email inválido.")
    elif s.query(User).filter(User.email == email).one_or_none():
        errors.append("Já existe uma conta com este email.")
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"A senha deve ter pelo menos {MIN_PASSWORD_LENGTH} caracteres.")
    elif password != password_confirm:
        errors.append("As senhas não coincidem.")
    if role not in SELF_SERVICE_ROLES:
        errors.append("Perfil inválido.")
    if polo is not None and polo not in POLOS:
        errors.append(f"Polo inválido: {polo}")

    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("auth.signup_get"))

    now = datetime.utcnow()
    user = User(
        email=email,
        password_hash=generate_password_hash(password),
        name=name,
        role=role,
        polo=polo,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    s.add(user)
    s.flush()
    record_event(
        s,
        actor=user,
        action="auth.signup",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"email": email, "role": role, "polo": polo},
    )
    s.commit()

    session["user_id"] = user.id
    flash("Conta criada com sucesso!", "success")
    return redirect(url_for("profile.consent_get"))


@bp.post("/token")
def token_post():
    """Exchange email/password for a bearer token used by /functions/v1 callers."""
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        return jsonify({"error": "Too many attempts", "details": "Wait 5 minutes and try again"}), 429
    _record_attempt(ip)

    user = _authenticate(email, password)
    if not user:
        return jsonify({"error": "Invalid credentials", "details": "Check email and password"}), 401

    _login_attempts[ip].clear()
    token, ttl = issue_access_token(user.id)
    s = db_session()
    record_event(s, actor=user, action="auth.token", entity_type="User", entity_id=str(user.id))
    s.commit()
    return jsonify({"access_token": token, "token_type": "bearer", "expires_in": ttl})


@bp.get("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.pop("user_id", None)
    return redirect(url_for("auth.login_get"))
