from flask import Blueprint, g, redirect, url_for

from app.ombro.rbac import dashboard_endpoint_for

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    """Send everyone to the page their role and consent state call for."""
    return redirect(url_for(dashboard_endpoint_for(getattr(g, "current_user", None))))


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for container probes. No DB access, minimal overhead.
    """
    return "ok", 200
