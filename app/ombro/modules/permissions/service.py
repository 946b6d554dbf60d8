from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.ombro.audit import record_event
from app.ombro.constants import POLOS, ROLE_ADMIN, STATUS_APPROVED, STATUS_PENDING, STATUS_REJECTED
from app.ombro.models import User, UserPoloPermission
from app.ombro.modules.requests.models import AssistanceRequest

logger = logging.getLogger(__name__)


def list_users_with_permissions(s: Session, search: str | None = None) -> list[User]:
    """Non-admin users (grants are loaded eagerly), optionally filtered by name/email."""
    q = s.query(User).filter(User.role != ROLE_ADMIN)
    term = (search or "").strip().lower()
    if term:
        like = f"%{term}%"
        q = q.filter(or_(func.lower(User.name).like(like), func.lower(User.email).like(like)))
    return q.order_by(User.name.asc(), User.id.asc()).all()


def _find_grant(s: Session, user_id: int, polo: str) -> UserPoloPermission | None:
    return (
        s.query(UserPoloPermission)
        .filter(UserPoloPermission.user_id == user_id, UserPoloPermission.polo == polo)
        .one_or_none()
    )


def grant_polo_permission(s: Session, user: User, polo: str, granted_by: User | None) -> UserPoloPermission:
    if polo not in POLOS:
        raise ValueError(f"Polo inválido: {polo}")
    existing = _find_grant(s, user.id, polo)
    if existing:
        return existing
    now = datetime.utcnow()
    perm = UserPoloPermission(
        user_id=user.id,
        polo=polo,
        granted_by=granted_by.id if granted_by else None,
        granted_at=now,
        created_at=now,
    )
    user.polo_permissions.append(perm)
    s.flush()
    record_event(
        s,
        actor=granted_by,
        action="permission.grant",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"polo": polo, "email": user.email},
    )
    logger.info("Polo %s granted to user=%s", polo, user.id)
    return perm


def revoke_polo_permission(s: Session, user: User, polo: str, revoked_by: User | None) -> bool:
    existing = _find_grant(s, user.id, polo)
    if not existing:
        return False
    user.polo_permissions.remove(existing)
    s.flush()
    record_event(
        s,
        actor=revoked_by,
        action="permission.revoke",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"polo": polo, "email": user.email},
    )
    logger.info("Polo %s revoked from user=%s", polo, user.id)
    return True


def toggle_polo_permission(s: Session, user: User, polo: str, actor: User | None) -> bool:
    """Grant when absent, revoke when present. Returns True when the polo is now granted."""
    if _find_grant(s, user.id, polo):
        revoke_polo_permission(s, user, polo, actor)
        return False
    grant_polo_permission(s, user, polo, actor)
    return True


# ---------- Reports ----------
@dataclass
class PoloReport:
    polo: str
    pending: int = 0
    approved: int = 0
    rejected: int = 0
    total_amount: Decimal = field(default_factory=lambda: Decimal("0.00"))

    @property
    def total(self) -> int:
        return self.pending + self.approved + self.rejected


def polo_report(s: Session) -> list[PoloReport]:
    """
    Counts per status and summed amount for every polo, in POLOS order.
    Requests are attributed to the requester's home polo; requesters
    without one are left out.
    """
    reports = {polo: PoloReport(polo=polo) for polo in POLOS}
    rows = (
        s.query(
            User.polo,
            AssistanceRequest.status,
            func.count(AssistanceRequest.id),
            func.coalesce(func.sum(AssistanceRequest.amount), 0),
        )
        .select_from(AssistanceRequest)
        .join(User, User.id == AssistanceRequest.user_id)
        .group_by(User.polo, AssistanceRequest.status)
        .all()
    )
    for polo, status, count, amount in rows:
        rep = reports.get(polo)
        if rep is None:
            # No home polo, or one outside the known polos.
            continue
        if status == STATUS_PENDING:
            rep.pending += count
        elif status == STATUS_APPROVED:
            rep.approved += count
        elif status == STATUS_REJECTED:
            rep.rejected += count
        rep.total_amount += Decimal(str(amount or 0))
    return [reports[p] for p in POLOS]


def polo_report_csv(reports: list[PoloReport]) -> bytes:
    out = io.StringIO()
    w = csv.writer(out)
    w.writerow(["Polo", "Pendentes", "Aprovadas", "Recusadas", "Total", "Valor Total"])
    for r in reports:
        w.writerow([r.polo, r.pending, r.approved, r.rejected, r.total, f"{r.total_amount:.2f}"])
    return out.getvalue().encode("utf-8")
