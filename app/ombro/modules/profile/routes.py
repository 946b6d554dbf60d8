from flask import Blueprint, current_app, flash, g, redirect, render_template, request, session, url_for

from app.ombro.constants import ATTACHMENTS_BUCKET, INVOICES_BUCKET, POLOS
from app.ombro.db import db_session
from app.ombro.models import User
from app.ombro.modules.profile.service import accept_consent, delete_user_data, update_polo, update_profile
from app.ombro.rbac import dashboard_endpoint_for, require_login, require_permission
from app.ombro.storage import storage_from_config

bp = Blueprint("profile", __name__)

DELETE_CONFIRMATION = "EXCLUIR"


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("/consent")
@require_login(consent=False)
def consent_get():
    u = _current_user()
    if u.privacy_consent:
        return redirect(url_for(dashboard_endpoint_for(u)))
    return render_template("profile/consent.html")


@bp.post("/consent")
@require_login(consent=False)
def consent_post():
    s = db_session()
    u = _current_user()
    if request.form.get("accept") != "1":
        flash("Você precisa aceitar os termos de privacidade para continuar.", "danger")
        return redirect(url_for("profile.consent_get"))
    accept_consent(s, u)
    s.commit()
    flash("Consentimento registrado.", "success")
    return redirect(url_for(dashboard_endpoint_for(u)))


@bp.get("/profile")
@require_permission("profile.edit")
def settings():
    return render_template("profile/settings.html", user=_current_user(), polos=POLOS, confirmation=DELETE_CONFIRMATION)


@bp.post("/profile")
@require_permission("profile.edit")
def settings_post():
    s = db_session()
    u = _current_user()
    errors = update_profile(
        s,
        u,
        name=request.form.get("name") or "",
        department=request.form.get("department"),
        phone=request.form.get("phone"),
    )
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("profile.settings"))
    s.commit()
    flash("Perfil atualizado.", "success")
    return redirect(url_for("profile.settings"))


@bp.post("/profile/polo")
@require_permission("profile.edit")
def polo_post():
    s = db_session()
    u = _current_user()
    try:
        update_polo(s, u, request.form.get("polo"))
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("profile.settings"))
    s.commit()
    flash("Polo atualizado.", "success")
    return redirect(url_for("profile.settings"))


@bp.post("/profile/delete-data")
@require_login(consent=False)
def delete_data_post():
    s = db_session()
    u = _current_user()
    if (request.form.get("confirm") or "").strip().upper() != DELETE_CONFIRMATION:
        flash(f"Digite {DELETE_CONFIRMATION} para confirmar a exclusão dos seus dados.", "danger")
        return redirect(url_for("profile.settings"))

    try:
        delete_user_data(
            s,
            u,
            invoice_storage=storage_from_config(current_app.config, INVOICES_BUCKET),
            attachment_storage=storage_from_config(current_app.config, ATTACHMENTS_BUCKET),
        )
        s.commit()
    except Exception:
        s.rollback()
        current_app.logger.exception("LGPD deletion failed (user=%s)", u.id)
        flash("Erro ao excluir dados. Tente novamente.", "danger")
        return redirect(url_for("profile.settings"))

    session.pop("user_id", None)
    g.current_user = None
    flash("Seus dados foram excluídos.", "success")
    return redirect(url_for("auth.login_get"))
