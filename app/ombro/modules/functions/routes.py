"""
JSON handlers for programmatic callers (bearer token, CORS-enabled).

Every failure is answered as {"error": ..., "details": ...} with the
matching HTTP status; nothing here renders HTML.
"""
from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from app.ombro.constants import ATTACHMENTS_BUCKET, DECISION_STATUSES, INVOICES_BUCKET, ROLE_ADMIN, ROLE_GESTORA
from app.ombro.db import db_session
from app.ombro.models import User
from app.ombro.modules.profile.service import delete_user_data
from app.ombro.modules.requests.models import AssistanceRequest
from app.ombro.modules.requests.notifications import build_status_notification, send_status_notification
from app.ombro.modules.requests.service import can_access_request, update_request_status
from app.ombro.security import TokenError, bearer_token_from_header, decode_access_token
from app.ombro.storage import storage_from_config

logger = logging.getLogger(__name__)

bp = Blueprint("functions", __name__)

# OPTIONS is answered by Flask's automatic handler plus flask-cors.
_ANY_METHOD = ["GET", "POST", "PUT", "PATCH", "DELETE"]
_DEFAULT_DETAILS = "Check function logs for more information"


class FunctionError(Exception):
    def __init__(self, status: int, message: str, details: str | None = None):
        super().__init__(message)
        self.status = status
        self.message = message
        self.details = details or _DEFAULT_DETAILS


def _error_response(status: int, message: str, details: str = _DEFAULT_DETAILS):
    return jsonify({"error": message, "details": details}), status


@bp.errorhandler(FunctionError)
def _handle_function_error(e: FunctionError):
    db_session().rollback()
    logger.warning("Function %s failed: %s (%s)", request.path, e.message, e.status)
    return _error_response(e.status, e.message, e.details)


@bp.errorhandler(Exception)
def _handle_unexpected(e: Exception):
    db_session().rollback()
    if isinstance(e, HTTPException):
        return _error_response(e.code or 500, e.name, e.description or _DEFAULT_DETAILS)
    logger.exception("Unhandled error in function %s", request.path)
    return _error_response(500, str(e) or "Internal error")


def _method_not_allowed():
    return jsonify({"error": "Method not allowed"}), 405


def _authenticated_user() -> User:
    header = request.headers.get("Authorization")
    if not header:
        raise FunctionError(401, "Missing authorization header")
    token = bearer_token_from_header(header)
    if not token:
        raise FunctionError(401, "Malformed authorization header")
    try:
        user_id = decode_access_token(token)
    except TokenError as e:
        raise FunctionError(401, str(e)) from e
    user = db_session().get(User, user_id)
    if not user or not user.is_active:
        raise FunctionError(401, "Unauthorized")
    return user


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise FunctionError(400, "Invalid JSON body")
    return data


def _text_field(body: dict, key: str) -> str | None:
    value = body.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise FunctionError(400, f"{key} must be a string")
    return value.strip()


def _request_id(body: dict) -> int:
    try:
        return int(body.get("requestId"))
    except (TypeError, ValueError):
        raise FunctionError(400, "requestId is required") from None


def serialize_request(req: AssistanceRequest) -> dict:
    return {
        "id": req.id,
        "user_id": req.user_id,
        "type": req.type,
        "description": req.description,
        "amount": float(req.amount or 0),
        "status": req.status,
        "approved_by": req.approved_by,
        "approved_at": req.approved_at.isoformat() if req.approved_at else None,
        "rejection_reason": req.rejection_reason,
        "polo": req.polo,
        "cpf": req.cpf,
        "requester_name": req.requester_name,
        "dependents": req.dependents or [],
        "invoices": req.invoices or [],
        "attachments": req.attachments or [],
        "created_at": req.created_at.isoformat() if req.created_at else None,
        "updated_at": req.updated_at.isoformat() if req.updated_at else None,
    }


@bp.route("/request-management", methods=_ANY_METHOD)
def request_management():
    if request.method != "POST":
        return _method_not_allowed()

    user = _authenticated_user()
    body = _json_body()
    request_id = _request_id(body)
    status = _text_field(body, "status") or ""
    reason = _text_field(body, "rejectionReason")
    if status not in DECISION_STATUSES:
        raise FunctionError(400, f"Invalid status: {status or '(empty)'}")

    if user.role not in (ROLE_GESTORA, ROLE_ADMIN):
        raise FunctionError(403, "Only gestora or admin users can update requests")

    s = db_session()
    req = s.get(AssistanceRequest, request_id)
    if not req or not can_access_request(user, req):
        raise FunctionError(404, "Request not found")

    update_request_status(s, req, status, user, rejection_reason=reason)
    s.commit()
    return jsonify({"success": True, "data": serialize_request(req), "message": f"Request {status} successfully"})


@bp.route("/send-notification-email", methods=_ANY_METHOD)
def send_notification_email():
    if request.method != "POST":
        return _method_not_allowed()

    body = _json_body()
    request_id = _request_id(body)
    action = _text_field(body, "action") or ""
    reason = _text_field(body, "rejectionReason")
    if action not in DECISION_STATUSES:
        raise FunctionError(400, f"Invalid action: {action or '(empty)'}")

    req = db_session().get(AssistanceRequest, request_id)
    if not req:
        raise FunctionError(404, f"Failed to fetch request: {request_id}")

    notification = build_status_notification(req, action, reason)
    send_status_notification(notification)
    return jsonify(
        {
            "success": True,
            "message": "Email notification logged",
            "details": {
                "recipient": notification.recipient,
                "subject": notification.subject,
                "action": notification.action,
            },
        }
    )


@bp.route("/user-data-deletion/<int:user_id>", methods=_ANY_METHOD)
def user_data_deletion(user_id: int):
    if request.method != "DELETE":
        return _method_not_allowed()

    user = _authenticated_user()
    if user.id != user_id:
        raise FunctionError(403, "You can only delete your own data")

    s = db_session()
    email = user.email
    delete_user_data(
        s,
        user,
        invoice_storage=storage_from_config(current_app.config, INVOICES_BUCKET),
        attachment_storage=storage_from_config(current_app.config, ATTACHMENTS_BUCKET),
    )
    s.commit()
    return jsonify(
        {
            "success": True,
            "message": "All user data has been permanently deleted in compliance with LGPD",
            "deletedUser": email,
        }
    )
