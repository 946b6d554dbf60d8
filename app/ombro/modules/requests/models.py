from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.ombro.models import Base

if TYPE_CHECKING:
    from app.ombro.models import User


class AssistanceRequest(Base):
    __tablename__ = "requests"
    __table_args__ = (
        Index("idx_requests_user", "user_id"),
        Index("idx_requests_polo", "polo"),
        Index("idx_requests_status", "status"),
        Index("idx_requests_created_at", "created_at"),
        CheckConstraint("status IN ('pending','approved','rejected')", name="ck_requests_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    type: Mapped[str] = mapped_column(String(32), nullable=False)  # psicológico, médico, ...
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    # pending -> approved | rejected
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    approved_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    polo: Mapped[str] = mapped_column(String(64), nullable=False)
    cpf: Mapped[str] = mapped_column(String(32), nullable=False)
    requester_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # [{"name": ..., "relationship": ...}]
    dependents: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    # [{"id", "value", "beneficiary", "sessions", "description", "fileName", "fileId"}]
    invoices: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    # storage keys in the request-attachments bucket
    attachments: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    user: Mapped["User"] = relationship("User", foreign_keys=[user_id], lazy="joined")
    approver: Mapped["User | None"] = relationship("User", foreign_keys=[approved_by], lazy="selectin")
    invoice_files: Mapped[list["Invoice"]] = relationship(
        "Invoice",
        back_populates="request",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Invoice.uploaded_at.desc()",
    )
    comments: Mapped[list["Comment"]] = relationship(
        "Comment",
        back_populates="request",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Comment.created_at.asc()",
    )

    @property
    def display_name(self) -> str:
        return self.requester_name or (self.user.name if self.user else "")


class Invoice(Base):
    """Uploaded invoice file belonging to a request."""

    __tablename__ = "invoices"
    __table_args__ = (
        Index("idx_invoices_request", "request_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_id: Mapped[int] = mapped_column(ForeignKey("requests.id", ondelete="CASCADE"), nullable=False)

    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_url: Mapped[str] = mapped_column(String(1024), nullable=False)  # storage key or absolute URL
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    request: Mapped[AssistanceRequest] = relationship("AssistanceRequest", back_populates="invoice_files")


class Comment(Base):
    __tablename__ = "comments"
    __table_args__ = (
        Index("idx_comments_request", "request_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_id: Mapped[int] = mapped_column(ForeignKey("requests.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    request: Mapped[AssistanceRequest] = relationship("AssistanceRequest", back_populates="comments")
    author: Mapped["User | None"] = relationship("User", lazy="selectin")
