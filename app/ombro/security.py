import secrets
from datetime import datetime, timedelta, timezone

import jwt
from flask import Request, current_app, session

TOKEN_ALGORITHM = "HS256"


class TokenError(Exception):
    pass


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Validate CSRF token from form, header, or JSON body."""
    token = req.headers.get("X-CSRF-Token") or req.form.get("csrf_token")
    if not token and req.is_json:
        json_data = req.get_json(silent=True) or {}
        token = json_data.get("csrf_token")
    return bool(token and secrets.compare_digest(str(token), str(session.get("csrf_token") or "")))


def issue_access_token(user_id: int, *, ttl_seconds: int | None = None) -> tuple[str, int]:
    """Sign a bearer token for the serverless handlers. Returns (token, expires_in)."""
    ttl = int(ttl_seconds or current_app.config.get("TOKEN_TTL_SECONDS") or 3600)
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + timedelta(seconds=ttl),
    }
    token = jwt.encode(payload, current_app.config["SECRET_KEY"], algorithm=TOKEN_ALGORITHM)
    return token, ttl


def decode_access_token(token: str) -> int:
    """Return the user id carried by a bearer token."""
    try:
        data = jwt.decode(token, current_app.config["SECRET_KEY"], algorithms=[TOKEN_ALGORITHM])
    except jwt.ExpiredSignatureError as e:
        raise TokenError("Token expired") from e
    except jwt.InvalidTokenError as e:
        raise TokenError("Invalid token") from e
    try:
        return int(data["sub"])
    except (KeyError, TypeError, ValueError) as e:
        raise TokenError("Invalid token subject") from e


def bearer_token_from_header(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]
