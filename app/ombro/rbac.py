from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g, redirect, request, url_for

from app.ombro.constants import ROLE_ADMIN, ROLE_GESTORA, ROLE_SOLICITANTE
from app.ombro.models import User

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    ROLE_SOLICITANTE: frozenset(
        {
            "requests.create",
            "requests.view",
            "requests.comment",
            "profile.edit",
        }
    ),
    ROLE_GESTORA: frozenset(
        {
            "requests.view",
            "requests.review",
            "requests.comment",
            "profile.edit",
        }
    ),
    ROLE_ADMIN: frozenset(
        {
            "requests.view",
            "requests.review",
            "requests.comment",
            "permissions.manage",
            "reports.view",
            "audit.view",
            "profile.edit",
        }
    ),
}

DASHBOARD_ENDPOINTS = {
    ROLE_ADMIN: "permissions.dashboard",
    ROLE_GESTORA: "requests.gestora_dashboard",
    ROLE_SOLICITANTE: "requests.solicitante_dashboard",
}


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    return permission_key in ROLE_PERMISSIONS.get(user.role, frozenset())


def dashboard_endpoint_for(user: User | None) -> str:
    if not user or not user.is_active:
        return "auth.login_get"
    if not user.privacy_consent:
        return "profile.consent_get"
    return DASHBOARD_ENDPOINTS.get(user.role, "auth.login_get")


def _login_redirect():
    nxt = request.full_path or request.path
    # Avoid trailing '?' from full_path when there is no query string.
    if nxt.endswith("?"):
        nxt = nxt[:-1]
    return redirect(url_for("auth.login_get", next=nxt))


def require_login(*, consent: bool = True) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                return _login_redirect()
            if consent and not user.privacy_consent:
                return redirect(url_for("profile.consent_get"))
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated → redirect to login.
            if not user or not user.is_active:
                return _login_redirect()
            if not user.privacy_consent:
                return redirect(url_for("profile.consent_get"))
            # Authenticated but unauthorized → 403
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def require_role(role: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Dashboard guard: users of another role are sent to their own dashboard
    instead of getting a 403.
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                return _login_redirect()
            if user.role != role or not user.privacy_consent:
                return redirect(url_for(dashboard_endpoint_for(user)))
            return fn(*args, **kwargs)

        return wrapped

    return decorator
