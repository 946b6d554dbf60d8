"""
Central constants for the Um Ombro Amigo application.
"""
from __future__ import annotations

# Work sites ("polos"); order is the display order everywhere.
POLOS = (
    "3M Sumaré",
    "3M Manaus",
    "3M Ribeirão Preto",
    "3M Itapetininga",
)

ROLE_SOLICITANTE = "solicitante"
ROLE_GESTORA = "gestora"
ROLE_ADMIN = "admin"
ROLES = (ROLE_SOLICITANTE, ROLE_GESTORA, ROLE_ADMIN)

# Roles a visitor may pick on the public sign-up form.
SELF_SERVICE_ROLES = (ROLE_SOLICITANTE, ROLE_GESTORA)

REQUEST_TYPES = (
    "psicológico",
    "médico",
    "odontológico",
    "fisioterapia",
    "outros",
)

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
REQUEST_STATUSES = (STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED)
DECISION_STATUSES = (STATUS_APPROVED, STATUS_REJECTED)

STATUS_LABELS = {
    STATUS_PENDING: "Pendente",
    STATUS_APPROVED: "Aprovada",
    STATUS_REJECTED: "Recusada",
}

DEPENDENT_RELATIONSHIPS = ("cônjuge", "filho(a)", "pai", "mãe", "outro")

# Storage buckets
INVOICES_BUCKET = "invoices"
ATTACHMENTS_BUCKET = "request-attachments"

ALLOWED_UPLOAD_EXTENSIONS = frozenset({"pdf", "jpg", "jpeg", "png"})

MIN_CPF_LENGTH = 11
MIN_PASSWORD_LENGTH = 6
