import io
from datetime import date, datetime, time, timedelta

from flask import Blueprint, abort, flash, g, redirect, render_template, request, send_file, url_for

from app.ombro.audit import record_event
from app.ombro.constants import POLOS, ROLE_ADMIN
from app.ombro.db import db_session
from app.ombro.models import AuditLog, User
from app.ombro.modules.permissions.service import (
    list_users_with_permissions,
    polo_report,
    polo_report_csv,
    toggle_polo_permission,
)
from app.ombro.modules.requests.service import visible_requests_query
from app.ombro.rbac import require_permission

bp = Blueprint("permissions", __name__)

TABS = ("permissions", "requests", "reports")


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("/")
@require_permission("permissions.manage")
def dashboard():
    s = db_session()
    tab = (request.args.get("tab") or "permissions").strip()
    if tab not in TABS:
        tab = "permissions"
    search = (request.args.get("q") or "").strip()

    users = list_users_with_permissions(s, search)
    all_requests = visible_requests_query(s, _current_user()).all()
    return render_template(
        "admin/dashboard.html",
        tab=tab,
        search=search,
        users=users,
        polos=POLOS,
        all_requests=all_requests,
        reports=polo_report(s),
    )


@bp.post("/permissions/toggle")
@require_permission("permissions.manage")
def permissions_toggle():
    s = db_session()
    u = _current_user()
    polo = (request.form.get("polo") or "").strip()
    try:
        target_id = int(request.form.get("user_id") or "")
    except ValueError:
        abort(400)

    target = s.get(User, target_id)
    if not target or target.role == ROLE_ADMIN:
        abort(404)
    if polo not in POLOS:
        flash(f"Polo inválido: {polo}", "danger")
        return redirect(url_for("permissions.dashboard"))

    granted = toggle_polo_permission(s, target, polo, u)
    s.commit()
    if granted:
        flash(f"Acesso ao polo {polo} concedido para {target.name}.", "success")
    else:
        flash(f"Acesso ao polo {polo} removido de {target.name}.", "success")
    return redirect(url_for("permissions.dashboard", q=request.form.get("q") or None))


@bp.get("/reports.csv")
@require_permission("reports.view")
def reports_csv():
    s = db_session()
    u = _current_user()
    reports = polo_report(s)
    data = polo_report_csv(reports)

    record_event(
        s,
        actor=u,
        action="reports.export",
        entity_type="Report",
        entity_id="polos",
        metadata={"row_count": len(reports)},
    )
    s.commit()

    filename = f"relatorio_polos_{date.today().strftime('%Y%m%d')}.csv"
    return send_file(
        io.BytesIO(data),
        mimetype="text/csv",
        as_attachment=True,
        download_name=filename,
        max_age=0,
    )


@bp.get("/audit")
@require_permission("audit.view")
def audit_list():
    """
    Last 200 audit events with simple filters:
    - action (contains)
    - actor_email (contains)
    - date range (YYYY-MM-DD, end inclusive)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    actor_email = (request.args.get("actor_email") or "").strip()
    date_from = _parse_date(request.args.get("date_from") or "")
    date_to = _parse_date(request.args.get("date_to") or "")

    if (request.args.get("date_from") or "").strip() and not date_from:
        flash("Data inicial deve estar no formato AAAA-MM-DD", "danger")
    if (request.args.get("date_to") or "").strip() and not date_to:
        flash("Data final deve estar no formato AAAA-MM-DD", "danger")

    q = s.query(AuditLog)
    if action:
        q = q.filter(AuditLog.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditLog.actor_email.like(f"%{actor_email.lower()}%"))
    if date_from:
        q = q.filter(AuditLog.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        q = q.filter(AuditLog.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(200).all()
    return render_template(
        "admin/audit.html",
        events=events,
        action=action,
        actor_email=actor_email,
        date_from=(request.args.get("date_from") or "").strip(),
        date_to=(request.args.get("date_to") or "").strip(),
    )
