from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from sqlalchemy import false, func
from werkzeug.utils import secure_filename

from app.ombro.audit import record_event
from app.ombro.constants import (
    ALLOWED_UPLOAD_EXTENSIONS,
    DECISION_STATUSES,
    MIN_CPF_LENGTH,
    POLOS,
    REQUEST_TYPES,
    ROLE_ADMIN,
    ROLE_GESTORA,
    ROLE_SOLICITANTE,
    STATUS_PENDING,
)
from app.ombro.modules.requests.models import AssistanceRequest, Comment, Invoice
from app.ombro.storage import Storage

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session
    from app.ombro.models import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadedFile:
    filename: str
    content_type: str
    data: bytes

    @property
    def extension(self) -> str:
        name = self.filename or ""
        return name.rsplit(".", 1)[-1].lower() if "." in name else ""


# ---------- Scoping ----------
def allowed_polos_for_user(user: "User") -> list[str]:
    """Home polo plus every granted polo, de-duplicated, home polo first."""
    polos: list[str] = []
    if user.polo:
        polos.append(user.polo)
    for perm in user.polo_permissions or []:
        if perm.polo not in polos:
            polos.append(perm.polo)
    return polos


def visible_requests_query(s: "Session", user: "User") -> "Query":
    q = s.query(AssistanceRequest)
    if user.role == ROLE_SOLICITANTE:
        q = q.filter(AssistanceRequest.user_id == user.id)
    elif user.role == ROLE_GESTORA:
        polos = allowed_polos_for_user(user)
        if not polos:
            # No home polo and no grants: nothing is visible.
            q = q.filter(false())
        else:
            q = q.filter(AssistanceRequest.polo.in_(polos))
    elif user.role != ROLE_ADMIN:
        q = q.filter(false())
    return q.order_by(AssistanceRequest.created_at.desc(), AssistanceRequest.id.desc())


def can_access_request(user: "User", req: AssistanceRequest) -> bool:
    if user.role == ROLE_ADMIN:
        return True
    if user.role == ROLE_GESTORA:
        return req.polo in allowed_polos_for_user(user)
    if user.role == ROLE_SOLICITANTE:
        return req.user_id == user.id
    return False


def can_review_request(user: "User", req: AssistanceRequest) -> bool:
    return user.role in (ROLE_GESTORA, ROLE_ADMIN) and can_access_request(user, req)


def matches_search(req: AssistanceRequest, term: str | None) -> bool:
    """Case-insensitive match on requester name or CPF."""
    term = (term or "").strip().lower()
    if not term:
        return True
    name = (req.display_name or "").lower()
    cpf = (req.cpf or "").lower()
    return term in name or term in cpf


def changes_fingerprint(s: "Session", user: "User") -> str:
    """Opaque version of the caller's visible requests; changes whenever any of them does."""
    q = visible_requests_query(s, user).order_by(None)
    count, last_updated, last_id = q.with_entities(
        func.count(AssistanceRequest.id),
        func.max(AssistanceRequest.updated_at),
        func.max(AssistanceRequest.id),
    ).one()
    raw = f"{count}|{last_updated}|{last_id}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


# ---------- Parsing / validation ----------
# Upper bound of the Numeric(12, 2) amount columns.
MAX_MONEY = Decimal("9999999999.99")


def parse_money(raw: Any) -> Decimal | None:
    """Parse '150', '150.5', '1.234,56' or 'R$ 80,00'. Returns None when unparseable or not finite."""
    if raw is None:
        return None
    if isinstance(raw, (int, float, Decimal)):
        s = str(raw)
    else:
        s = str(raw).replace("R$", "").strip().replace(" ", "")
        if not s:
            return None
        if "," in s and "." in s:
            s = s.replace(".", "").replace(",", ".")
        elif "," in s:
            s = s.replace(",", ".")
    try:
        value = Decimal(s)
        if not value.is_finite():
            return None
        return value.quantize(Decimal("0.01"))
    except InvalidOperation:
        return None


def parse_sessions(raw: Any) -> int | None:
    if raw is None or str(raw).strip() == "":
        return None
    try:
        return int(str(raw).strip())
    except ValueError:
        return -1


def normalize_dependents(raw: list[dict] | None) -> list[dict]:
    """Drop rows missing a name or relationship."""
    out = []
    for d in raw or []:
        name = (d.get("name") or "").strip()
        relationship = (d.get("relationship") or "").strip()
        if name and relationship:
            out.append({"name": name, "relationship": relationship})
    return out


def validate_invoice_line(line: dict) -> list[str]:
    errors = []
    value = parse_money(line.get("value"))
    if value is None or value <= 0 or value > MAX_MONEY:
        errors.append("Informe um valor válido para a nota fiscal.")
    if not (line.get("beneficiary") or "").strip():
        errors.append("Informe o beneficiário da nota fiscal.")
    if not (line.get("description") or "").strip():
        errors.append("Informe a descrição da nota fiscal.")
    sessions = parse_sessions(line.get("sessions"))
    if sessions is not None and sessions < 0:
        errors.append("Quantidade de sessões inválida.")
    upload = line.get("file")
    if upload is not None and upload.extension not in ALLOWED_UPLOAD_EXTENSIONS:
        errors.append(f"Tipo de arquivo não permitido: {upload.filename}")
    return errors


def validate_request_payload(payload: dict) -> list[str]:
    """Validate a new request. Returns list of errors."""
    errors = []
    if not (payload.get("requester_name") or "").strip():
        errors.append("Nome do solicitante é obrigatório")
    req_type = (payload.get("type") or "").strip()
    if req_type not in REQUEST_TYPES:
        errors.append(f"Tipo inválido. Use um de: {', '.join(REQUEST_TYPES)}")
    polo = (payload.get("polo") or "").strip()
    if not polo:
        errors.append("Polo é obrigatório")
    elif polo not in POLOS:
        errors.append(f"Polo inválido: {polo}")
    cpf = (payload.get("cpf") or "").strip()
    if len(cpf) < MIN_CPF_LENGTH:
        errors.append("CPF é obrigatório")

    lines = payload.get("invoices") or []
    if not lines:
        errors.append("Adicione pelo menos uma nota fiscal")
    for idx, line in enumerate(lines, start=1):
        for e in validate_invoice_line(line):
            errors.append(f"Nota fiscal {idx}: {e}")

    for upload in payload.get("attachments") or []:
        if upload.extension not in ALLOWED_UPLOAD_EXTENSIONS:
            errors.append(f"Tipo de arquivo não permitido: {upload.filename}")
    return errors


def total_amount(lines: list[dict]) -> Decimal:
    total = Decimal("0.00")
    for line in lines:
        total += parse_money(line.get("value")) or Decimal("0.00")
    return total


# ---------- Storage ----------
def build_storage_key(user_id: int, filename: str) -> str:
    """`<user_id>/<random>.<ext>`, the layout both buckets use."""
    ext = filename.rsplit(".", 1)[-1].lower() if "." in (filename or "") else "bin"
    return f"{user_id}/{secrets.token_hex(12)}.{ext}"


def upload_invoice_file(
    s: "Session",
    storage: Storage,
    req: AssistanceRequest,
    upload: UploadedFile,
    user: "User",
) -> Invoice:
    key = build_storage_key(user.id, upload.filename)
    storage.put_bytes(key, upload.data, content_type=upload.content_type)
    invoice = Invoice(
        request_id=req.id,
        file_name=upload.filename,
        file_url=key,
        file_size=len(upload.data),
        mime_type=upload.content_type,
        uploaded_at=datetime.utcnow(),
    )
    s.add(invoice)
    s.flush()
    record_event(
        s,
        actor=user,
        action="invoice.upload",
        entity_type="Invoice",
        entity_id=str(invoice.id),
        metadata={"request_id": req.id, "file_name": invoice.file_name, "size": invoice.file_size},
    )
    return invoice


def upload_attachment(storage: Storage, upload: UploadedFile, user: "User") -> str:
    key = build_storage_key(user.id, upload.filename)
    storage.put_bytes(key, upload.data, content_type=upload.content_type)
    return key


# ---------- Mutations ----------
def create_request(
    s: "Session",
    payload: dict,
    user: "User",
    *,
    invoice_storage: Storage,
    attachment_storage: Storage,
) -> AssistanceRequest:
    """Create a pending request plus its invoice files and attachments."""
    lines = payload.get("invoices") or []
    cleaned_lines = []
    for line in lines:
        upload: UploadedFile | None = line.get("file")
        sessions = parse_sessions(line.get("sessions"))
        cleaned_lines.append(
            {
                "id": secrets.token_hex(6),
                "value": float(parse_money(line.get("value")) or 0),
                "beneficiary": (line.get("beneficiary") or "").strip(),
                "sessions": sessions,
                "description": (line.get("description") or "").strip(),
                "fileName": upload.filename if upload else None,
            }
        )

    attachment_keys = [upload_attachment(attachment_storage, a, user) for a in payload.get("attachments") or []]

    now = datetime.utcnow()
    req = AssistanceRequest(
        user_id=user.id,
        type=(payload.get("type") or "").strip(),
        description=(payload.get("description") or "").strip() or None,
        amount=total_amount(lines),
        status=STATUS_PENDING,
        polo=(payload.get("polo") or "").strip(),
        cpf=(payload.get("cpf") or "").strip(),
        requester_name=(payload.get("requester_name") or "").strip(),
        dependents=normalize_dependents(payload.get("dependents")),
        invoices=cleaned_lines,
        attachments=attachment_keys,
        created_at=now,
        updated_at=now,
    )
    s.add(req)
    s.flush()

    # Each line keeps the id of its own uploaded file; names may repeat.
    linked_lines = []
    for line, cleaned in zip(lines, cleaned_lines):
        upload = line.get("file")
        file_id = None
        if upload is not None:
            file_id = upload_invoice_file(s, invoice_storage, req, upload, user).id
        linked_lines.append({**cleaned, "fileId": file_id})
    req.invoices = linked_lines

    record_event(
        s,
        actor=user,
        action="request.create",
        entity_type="Request",
        entity_id=str(req.id),
        metadata={"type": req.type, "polo": req.polo, "amount": str(req.amount), "invoices": len(cleaned_lines)},
    )
    logger.info("Request %s created by user=%s polo=%s amount=%s", req.id, user.id, req.polo, req.amount)
    return req


def update_request_status(
    s: "Session",
    req: AssistanceRequest,
    status: str,
    approver: "User | None",
    rejection_reason: str | None = None,
) -> AssistanceRequest:
    """
    Single unconditional decision update. The rule that a rejection needs a
    reason belongs to the interactive review form, not to this function.
    """
    if status not in DECISION_STATUSES:
        raise ValueError(f"Invalid status {status!r}; expected one of {', '.join(DECISION_STATUSES)}")

    old_status = req.status
    now = datetime.utcnow()
    req.status = status
    req.approved_at = now
    req.updated_at = now
    if approver is not None:
        req.approved_by = approver.id
    reason = (rejection_reason or "").strip()
    if status == "rejected" and reason:
        req.rejection_reason = reason

    record_event(
        s,
        actor=approver,
        action="request.approve" if status == "approved" else "request.reject",
        entity_type="Request",
        entity_id=str(req.id),
        reason=reason or None,
        metadata={"old_status": old_status, "new_status": status, "polo": req.polo},
    )
    logger.info("Request %s %s by user=%s", req.id, status, approver.id if approver else None)
    return req


def add_comment(s: "Session", req: AssistanceRequest, user: "User", content: str) -> Comment:
    comment = Comment(request_id=req.id, user_id=user.id, content=content.strip(), created_at=datetime.utcnow())
    s.add(comment)
    s.flush()
    record_event(
        s,
        actor=user,
        action="request.comment",
        entity_type="Comment",
        entity_id=str(comment.id),
        metadata={"request_id": req.id},
    )
    return comment


def delete_invoice(s: "Session", storage: Storage, invoice: Invoice, user: "User") -> None:
    """Remove an uploaded invoice file; a storage failure is logged and the row is still removed."""
    if not invoice.file_url.startswith("http"):
        try:
            storage.delete(invoice.file_url)
        except Exception as e:
            logger.warning("Invoice %s storage delete failed (continuing): %s", invoice.id, e)
    record_event(
        s,
        actor=user,
        action="invoice.delete",
        entity_type="Invoice",
        entity_id=str(invoice.id),
        metadata={"request_id": invoice.request_id, "file_name": invoice.file_name},
    )
    s.delete(invoice)


def find_invoice_for_line(req: AssistanceRequest, line: dict) -> Invoice | None:
    """
    Resolve an invoice line to its uploaded file by `fileId`. Lines stored
    without one (older rows) fall back to matching `fileName`.
    """
    file_id = line.get("fileId")
    if file_id is not None:
        return next((inv for inv in req.invoice_files if inv.id == file_id), None)
    file_name = line.get("fileName")
    if not file_name:
        return None
    return next((inv for inv in req.invoice_files if inv.file_name == file_name), None)


def attachment_file_name(key: str, index: int) -> str:
    return key.rsplit("/", 1)[-1] or f"anexo-{index + 1}"


def sanitize_download_name(name: str | None, fallback: str) -> str:
    return secure_filename(name or "") or fallback
