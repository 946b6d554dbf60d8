from __future__ import annotations

import re

from flask import Blueprint, abort, current_app, flash, g, jsonify, redirect, render_template, request, send_file, url_for
from werkzeug.datastructures import FileStorage

from app.ombro.audit import record_event
from app.ombro.constants import (
    ATTACHMENTS_BUCKET,
    DEPENDENT_RELATIONSHIPS,
    INVOICES_BUCKET,
    POLOS,
    REQUEST_TYPES,
    ROLE_GESTORA,
    ROLE_SOLICITANTE,
    STATUS_APPROVED,
    STATUS_PENDING,
    STATUS_REJECTED,
)
from app.ombro.db import db_session
from app.ombro.models import User
from app.ombro.modules.requests.models import AssistanceRequest, Invoice
from app.ombro.modules.requests.notifications import notify_status_change
from app.ombro.modules.requests.service import (
    UploadedFile,
    add_comment,
    allowed_polos_for_user,
    attachment_file_name,
    can_access_request,
    can_review_request,
    changes_fingerprint,
    create_request,
    delete_invoice,
    find_invoice_for_line,
    matches_search,
    sanitize_download_name,
    update_request_status,
    validate_request_payload,
    visible_requests_query,
)
from app.ombro.rbac import require_login, require_permission, require_role
from app.ombro.storage import StorageError, storage_from_config

bp = Blueprint("requests", __name__)

_ROW_FIELD = re.compile(r"^(?P<prefix>[a-z_]+)-(?P<idx>\d+)-(?P<field>[a-z_]+)$")

# Blank rows rendered on the new-request form.
INVOICE_ROWS = 5
DEPENDENT_ROWS = 3


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _to_upload(f: FileStorage | None) -> UploadedFile | None:
    if not f or not f.filename:
        return None
    return UploadedFile(
        filename=f.filename,
        content_type=(f.mimetype or "application/octet-stream").strip(),
        data=f.read(),
    )


def _collect_rows(prefix: str) -> list[dict]:
    """Group `<prefix>-<n>-<field>` form/file inputs into one dict per row, ordered by n."""
    rows: dict[int, dict] = {}
    for is_file, source in ((False, request.form), (True, request.files)):
        for key in source.keys():
            m = _ROW_FIELD.match(key)
            if not m or m.group("prefix") != prefix:
                continue
            row = rows.setdefault(int(m.group("idx")), {})
            value = source.get(key)
            row[m.group("field")] = _to_upload(value) if is_file else value
    return [rows[i] for i in sorted(rows)]


def _is_blank_row(row: dict) -> bool:
    return not any(v.strip() if isinstance(v, str) else v for v in row.values())


def _safe_next(nxt: str | None) -> str | None:
    # Only local paths, to avoid open redirects.
    nxt = (nxt or "").strip()
    if nxt.startswith("/") and not nxt.startswith("//"):
        return nxt
    return None


def _get_visible_request(request_id: int) -> AssistanceRequest:
    s = db_session()
    req = s.get(AssistanceRequest, request_id)
    if not req or not can_access_request(_current_user(), req):
        abort(404)
    return req


def _request_form_payload() -> dict:
    invoices = [row for row in _collect_rows("invoices") if not _is_blank_row(row)]
    dependents = _collect_rows("dependents")
    attachments = [u for u in (_to_upload(f) for f in request.files.getlist("attachments")) if u is not None]
    return {
        "requester_name": request.form.get("requester_name"),
        "type": request.form.get("type"),
        "description": request.form.get("description"),
        "polo": request.form.get("polo"),
        "cpf": request.form.get("cpf"),
        "dependents": dependents,
        "invoices": invoices,
        "attachments": attachments,
    }


# ---------- Solicitante ----------
@bp.get("/solicitante/")
@require_role(ROLE_SOLICITANTE)
def solicitante_dashboard():
    s = db_session()
    u = _current_user()
    requests_ = visible_requests_query(s, u).all()
    return render_template(
        "requests/solicitante.html",
        requests=requests_,
        polos=POLOS,
        request_types=REQUEST_TYPES,
        relationships=DEPENDENT_RELATIONSHIPS,
        invoice_rows=INVOICE_ROWS,
        dependent_rows=DEPENDENT_ROWS,
    )


@bp.post("/solicitante/requests/new")
@require_permission("requests.create")
def request_new_post():
    s = db_session()
    u = _current_user()

    payload = _request_form_payload()
    errors = validate_request_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("requests.solicitante_dashboard"))

    try:
        req = create_request(
            s,
            payload,
            u,
            invoice_storage=storage_from_config(current_app.config, INVOICES_BUCKET),
            attachment_storage=storage_from_config(current_app.config, ATTACHMENTS_BUCKET),
        )
        s.commit()
    except StorageError as e:
        s.rollback()
        current_app.logger.error("Request create failed on storage (user=%s): %s", u.id, e)
        flash("Erro ao criar solicitação. Tente novamente.", "danger")
        return redirect(url_for("requests.solicitante_dashboard"))

    flash("Solicitação criada com sucesso!", "success")
    return redirect(url_for("requests.request_detail", request_id=req.id))


# ---------- Gestora ----------
@bp.get("/gestora/")
@require_role(ROLE_GESTORA)
def gestora_dashboard():
    s = db_session()
    u = _current_user()
    search = (request.args.get("q") or "").strip()

    requests_ = visible_requests_query(s, u).all() if u.polo else []
    pending = [r for r in requests_ if r.status == STATUS_PENDING and matches_search(r, search)]
    processed = [r for r in requests_ if r.status != STATUS_PENDING and matches_search(r, search)]

    return render_template(
        "requests/gestora.html",
        pending=pending,
        processed=processed,
        allowed_polos=allowed_polos_for_user(u),
        search=search,
        stats={
            "pending": sum(1 for r in requests_ if r.status == STATUS_PENDING),
            "approved": sum(1 for r in requests_ if r.status == STATUS_APPROVED),
            "rejected": sum(1 for r in requests_ if r.status == STATUS_REJECTED),
        },
    )


# ---------- Detail ----------
@bp.get("/requests/<int:request_id>")
@require_permission("requests.view")
def request_detail(request_id: int):
    u = _current_user()
    req = _get_visible_request(request_id)
    lines = [
        {**line, "file": find_invoice_for_line(req, line)}
        for line in (req.invoices or [])
    ]
    attachments = [
        {"index": i, "name": attachment_file_name(key, i)} for i, key in enumerate(req.attachments or [])
    ]
    return render_template(
        "requests/detail.html",
        req=req,
        lines=lines,
        attachments=attachments,
        can_review=can_review_request(u, req),
    )


@bp.post("/requests/<int:request_id>/approve")
@require_permission("requests.review")
def request_approve(request_id: int):
    s = db_session()
    u = _current_user()
    req = _get_visible_request(request_id)
    if not can_review_request(u, req):
        abort(403)

    update_request_status(s, req, STATUS_APPROVED, u)
    s.commit()
    notify_status_change(req, STATUS_APPROVED)

    flash("Solicitação aprovada!", "success")
    return redirect(_safe_next(request.form.get("next")) or url_for("requests.request_detail", request_id=req.id))


@bp.post("/requests/<int:request_id>/reject")
@require_permission("requests.review")
def request_reject(request_id: int):
    s = db_session()
    u = _current_user()
    req = _get_visible_request(request_id)
    if not can_review_request(u, req):
        abort(403)

    reason = (request.form.get("rejection_reason") or "").strip()
    if not reason:
        flash("Motivo obrigatório: informe o motivo da recusa.", "danger")
        return redirect(url_for("requests.request_detail", request_id=req.id))

    update_request_status(s, req, STATUS_REJECTED, u, rejection_reason=reason)
    s.commit()
    notify_status_change(req, STATUS_REJECTED, reason)

    flash("Solicitação recusada.", "success")
    return redirect(url_for("requests.request_detail", request_id=req.id))


@bp.post("/requests/<int:request_id>/comments")
@require_permission("requests.comment")
def request_comment(request_id: int):
    s = db_session()
    u = _current_user()
    req = _get_visible_request(request_id)

    content = (request.form.get("content") or "").strip()
    if not content:
        flash("O comentário não pode ficar vazio.", "danger")
        return redirect(url_for("requests.request_detail", request_id=req.id))

    add_comment(s, req, u, content)
    s.commit()
    flash("Comentário adicionado.", "success")
    return redirect(url_for("requests.request_detail", request_id=req.id))


# ---------- Files ----------
def _serve_object(bucket: str, key: str, *, filename: str, mimetype: str | None, as_attachment: bool):
    if key.startswith("http"):
        return redirect(key)
    storage = storage_from_config(current_app.config, bucket)
    direct = storage.public_url(key)
    if direct and not as_attachment:
        return redirect(direct)
    try:
        fobj = storage.open(key)
    except StorageError as e:
        current_app.logger.error("File open failed bucket=%s key=%s: %s", bucket, key, e)
        abort(404)
    return send_file(
        fobj,
        mimetype=mimetype or "application/octet-stream",
        as_attachment=as_attachment,
        download_name=filename,
        max_age=0,
    )


def _get_invoice(req: AssistanceRequest, invoice_id: int) -> Invoice:
    inv = db_session().get(Invoice, invoice_id)
    if not inv or inv.request_id != req.id:
        abort(404)
    return inv


@bp.get("/requests/<int:request_id>/invoices/<int:invoice_id>/view")
@require_permission("requests.view")
def invoice_view(request_id: int, invoice_id: int):
    req = _get_visible_request(request_id)
    inv = _get_invoice(req, invoice_id)
    return _serve_object(
        INVOICES_BUCKET,
        inv.file_url,
        filename=sanitize_download_name(inv.file_name, "nota-fiscal.pdf"),
        mimetype=inv.mime_type,
        as_attachment=False,
    )


@bp.get("/requests/<int:request_id>/invoices/<int:invoice_id>/download")
@require_permission("requests.view")
def invoice_download(request_id: int, invoice_id: int):
    s = db_session()
    req = _get_visible_request(request_id)
    inv = _get_invoice(req, invoice_id)
    record_event(
        s,
        actor=_current_user(),
        action="invoice.download",
        entity_type="Invoice",
        entity_id=str(inv.id),
        metadata={"request_id": req.id, "file_name": inv.file_name},
    )
    s.commit()
    return _serve_object(
        INVOICES_BUCKET,
        inv.file_url,
        filename=sanitize_download_name(inv.file_name, "nota-fiscal.pdf"),
        mimetype=inv.mime_type,
        as_attachment=True,
    )


@bp.post("/requests/<int:request_id>/invoices/<int:invoice_id>/delete")
@require_permission("requests.create")
def invoice_delete(request_id: int, invoice_id: int):
    s = db_session()
    u = _current_user()
    req = _get_visible_request(request_id)
    inv = _get_invoice(req, invoice_id)
    if req.user_id != u.id or req.status != STATUS_PENDING:
        flash("Só é possível remover arquivos de solicitações pendentes.", "danger")
        return redirect(url_for("requests.request_detail", request_id=req.id))

    delete_invoice(s, storage_from_config(current_app.config, INVOICES_BUCKET), inv, u)
    s.commit()
    flash("Arquivo removido.", "success")
    return redirect(url_for("requests.request_detail", request_id=req.id))


def _get_attachment_key(req: AssistanceRequest, index: int) -> str:
    keys = req.attachments or []
    if index < 0 or index >= len(keys):
        abort(404)
    return keys[index]


@bp.get("/requests/<int:request_id>/attachments/<int:index>/view")
@require_permission("requests.view")
def attachment_view(request_id: int, index: int):
    req = _get_visible_request(request_id)
    key = _get_attachment_key(req, index)
    return _serve_object(
        ATTACHMENTS_BUCKET,
        key,
        filename=attachment_file_name(key, index),
        mimetype=None,
        as_attachment=False,
    )


@bp.get("/requests/<int:request_id>/attachments/<int:index>/download")
@require_permission("requests.view")
def attachment_download(request_id: int, index: int):
    s = db_session()
    req = _get_visible_request(request_id)
    key = _get_attachment_key(req, index)
    record_event(
        s,
        actor=_current_user(),
        action="attachment.download",
        entity_type="Request",
        entity_id=str(req.id),
        metadata={"key": key},
    )
    s.commit()
    return _serve_object(
        ATTACHMENTS_BUCKET,
        key,
        filename=attachment_file_name(key, index),
        mimetype=None,
        as_attachment=True,
    )


# ---------- Live updates ----------
@bp.get("/requests/changes")
@require_login()
def requests_changes():
    """Polled by the dashboards; a different version means "refetch"."""
    s = db_session()
    return jsonify({"version": changes_fingerprint(s, _current_user())})
