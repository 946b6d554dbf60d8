"""
Status-change notifications for requesters.

Delivery is best-effort: messages are rendered and written to the log; no
mail transport is wired in.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import render_template

from app.ombro.constants import DECISION_STATUSES, STATUS_APPROVED
from app.ombro.modules.requests.models import AssistanceRequest

logger = logging.getLogger(__name__)

SUBJECTS = {
    "approved": "✅ Solicitação Um Ombro Amigo Aprovada",
    "rejected": "❌ Solicitação Um Ombro Amigo Recusada",
}


@dataclass(frozen=True)
class StatusNotification:
    recipient: str
    subject: str
    action: str
    html: str


def format_brl(amount) -> str:
    return f"R$ {float(amount or 0):.2f}"


def build_status_notification(
    req: AssistanceRequest,
    action: str,
    rejection_reason: str | None = None,
) -> StatusNotification:
    if action not in DECISION_STATUSES:
        raise ValueError(f"Unknown notification action {action!r}")
    owner = req.user
    template = "emails/request_approved.html" if action == STATUS_APPROVED else "emails/request_rejected.html"
    html = render_template(
        template,
        name=owner.name if owner else "",
        request=req,
        amount=format_brl(req.amount),
        reason=(rejection_reason or "").strip() or "Não informado",
    )
    return StatusNotification(
        recipient=owner.email if owner else "",
        subject=SUBJECTS[action],
        action=action,
        html=html,
    )


def send_status_notification(notification: StatusNotification) -> None:
    logger.info("Email notification for action=%s", notification.action)
    logger.info("Recipient: %s", notification.recipient)
    logger.info("Subject: %s", notification.subject)
    logger.debug("Body: %s", notification.html)


def notify_status_change(req: AssistanceRequest, action: str, rejection_reason: str | None = None) -> bool:
    """Fire-and-forget wrapper used after a decision; failures are logged, never raised."""
    try:
        send_status_notification(build_status_notification(req, action, rejection_reason))
        return True
    except Exception:
        logger.exception("Notification for request %s failed (ignored)", req.id)
        return False
