"""
Profile, consent and LGPD data deletion.

delete_user_data() removes everything the user owns, in dependency order:
storage objects, audit logs, comments, invoice rows, requests, polo grants and
finally the user row. Storage failures are logged and skipped; there is no
compensation for a partially removed set of files.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.ombro.audit import record_event
from app.ombro.constants import POLOS
from app.ombro.models import AuditLog, User, UserPoloPermission
from app.ombro.modules.requests.models import AssistanceRequest, Comment, Invoice
from app.ombro.storage import Storage

logger = logging.getLogger(__name__)


def accept_consent(s: Session, user: User) -> None:
    now = datetime.utcnow()
    user.privacy_consent = True
    user.privacy_consent_date = now
    user.updated_at = now
    record_event(s, actor=user, action="user.consent", entity_type="User", entity_id=str(user.id))


def update_polo(s: Session, user: User, polo: str | None) -> None:
    polo = (polo or "").strip() or None
    if polo is not None and polo not in POLOS:
        raise ValueError(f"Polo inválido: {polo}")
    before = user.polo
    user.polo = polo
    user.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="user.update_polo",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"before": before, "after": polo},
    )


def update_profile(s: Session, user: User, *, name: str, department: str | None, phone: str | None) -> list[str]:
    name = (name or "").strip()
    if not name:
        return ["Nome é obrigatório"]
    user.name = name
    user.department = (department or "").strip() or None
    user.phone = (phone or "").strip() or None
    user.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="user.update_profile",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"department": user.department, "phone": user.phone},
    )
    return []


@dataclass
class DeletionSummary:
    user_id: int
    files_removed: int = 0
    storage_errors: list[str] = field(default_factory=list)
    audit_logs: int = 0
    comments: int = 0
    invoices: int = 0
    requests: int = 0
    polo_permissions: int = 0

    def as_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "files_removed": self.files_removed,
            "storage_errors": len(self.storage_errors),
            "audit_logs": self.audit_logs,
            "comments": self.comments,
            "invoices": self.invoices,
            "requests": self.requests,
            "polo_permissions": self.polo_permissions,
        }


def _remove_object(storage: Storage, key: str, summary: DeletionSummary) -> None:
    if not key or key.startswith("http"):
        return
    try:
        storage.delete(key)
        summary.files_removed += 1
    except Exception as e:
        logger.warning("LGPD deletion: could not remove %s/%s (continuing): %s", storage.bucket, key, e)
        summary.storage_errors.append(f"{storage.bucket}/{key}")


def delete_user_data(
    s: Session,
    user: User,
    *,
    invoice_storage: Storage,
    attachment_storage: Storage,
) -> DeletionSummary:
    """Irreversibly erase the user and everything they own. The caller commits."""
    user_id = user.id
    summary = DeletionSummary(user_id=user_id)
    logger.info("LGPD deletion started for user=%s", user_id)

    request_ids = [rid for (rid,) in s.query(AssistanceRequest.id).filter(AssistanceRequest.user_id == user_id)]

    # 1. Storage objects
    if request_ids:
        for inv in s.query(Invoice).filter(Invoice.request_id.in_(request_ids)):
            _remove_object(invoice_storage, inv.file_url, summary)
        for (keys,) in s.query(AssistanceRequest.attachments).filter(AssistanceRequest.id.in_(request_ids)):
            for key in keys or []:
                _remove_object(attachment_storage, key, summary)

    # 2. Audit logs
    summary.audit_logs = (
        s.query(AuditLog).filter(AuditLog.user_id == user_id).delete(synchronize_session=False)
    )

    # 3. Comments written by the user or left on the user's requests
    comment_filter = Comment.user_id == user_id
    if request_ids:
        comment_filter = or_(comment_filter, Comment.request_id.in_(request_ids))
    summary.comments = s.query(Comment).filter(comment_filter).delete(synchronize_session=False)

    if request_ids:
        # 4. Invoice rows
        summary.invoices = (
            s.query(Invoice).filter(Invoice.request_id.in_(request_ids)).delete(synchronize_session=False)
        )
        # 5. Requests
        summary.requests = (
            s.query(AssistanceRequest)
            .filter(AssistanceRequest.id.in_(request_ids))
            .delete(synchronize_session=False)
        )

    # 6. Polo grants
    summary.polo_permissions = len(user.polo_permissions)
    user.polo_permissions.clear()
    s.flush()

    # References held by other users' rows
    s.query(AssistanceRequest).filter(AssistanceRequest.approved_by == user_id).update(
        {AssistanceRequest.approved_by: None}, synchronize_session=False
    )
    s.query(UserPoloPermission).filter(UserPoloPermission.granted_by == user_id).update(
        {UserPoloPermission.granted_by: None}, synchronize_session=False
    )

    # 7. The user row
    s.delete(user)
    s.flush()

    record_event(
        s,
        actor=None,
        action="user.data_deleted",
        entity_type="User",
        entity_id=str(user_id),
        metadata=summary.as_dict(),
    )
    logger.info(
        "LGPD deletion finished for user=%s (requests=%s files=%s storage_errors=%s)",
        user_id,
        summary.requests,
        summary.files_removed,
        len(summary.storage_errors),
    )
    return summary
