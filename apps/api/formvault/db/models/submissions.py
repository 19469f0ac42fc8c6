"""SQLAlchemy ORM models."""

from __future__ import annotations

from typing import TYPE_CHECKING

from datetime import datetime

from sqlalchemy import (
    ForeignKey,
    Index,
    Integer,
    String,
    TIMESTAMP,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from formvault.db.base import Base

if TYPE_CHECKING:
    from formvault.db.models import Actor, Blob, Form, FormDef


class Submission(Base):
    """One per (form, instance id). Created on the first envelope, never overwritten."""

    __tablename__ = "submissions"
    __table_args__ = (
        UniqueConstraint("form_id", "instance_id", name="uq_submissions_form_instance"),
        Index("idx_submissions_form", "form_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    form_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("forms.id", ondelete="CASCADE"), nullable=False
    )
    instance_id: Mapped[str] = mapped_column(String(255), nullable=False)
    submitter_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("actors.id", ondelete="SET NULL"), nullable=True
    )
    device_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
    deleted_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    form: Mapped["Form"] = relationship()
    submitter: Mapped["Actor | None"] = relationship()
    defs: Mapped[list["SubmissionDef"]] = relationship(
        back_populates="submission", order_by="SubmissionDef.sequence"
    )


class SubmissionDef(Base):
    """
    Append-only version of a submission.

    ``sequence`` is the creation order within the submission, assigned inside
    the write transaction; the current def is the one with the greatest
    sequence. ``xml`` is NULL for encrypted defs, whose body lives in the
    attachment named by ``enc_data_attachment_name``.
    """

    __tablename__ = "submission_defs"
    __table_args__ = (
        UniqueConstraint("submission_id", "sequence", name="uq_submission_defs_sequence"),
        Index("idx_submission_defs_submission", "submission_id"),
        Index("idx_submission_defs_form_def", "form_def_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    submission_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("submissions.id", ondelete="CASCADE"), nullable=False
    )
    form_def_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("form_defs.id", ondelete="RESTRICT"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    xml: Mapped[str | None] = mapped_column(Text, nullable=True)
    envelope_sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    local_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    enc_data_attachment_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )

    submission: Mapped["Submission"] = relationship(back_populates="defs")
    form_def: Mapped["FormDef"] = relationship()
    attachments: Mapped[list["SubmissionAttachment"]] = relationship(
        back_populates="submission_def", order_by="SubmissionAttachment.name"
    )

    @property
    def is_encrypted(self) -> bool:
        return self.local_key is not None


class SubmissionAttachment(Base):
    """Expected file of a submission def. Join entity: no surrogate key."""

    __tablename__ = "submission_attachments"

    submission_def_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("submission_defs.id", ondelete="CASCADE"),
        primary_key=True,
    )
    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    blob_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("blobs.id", ondelete="RESTRICT"), nullable=True
    )
    index: Mapped[int] = mapped_column(Integer, nullable=False)

    submission_def: Mapped["SubmissionDef"] = relationship(back_populates="attachments")
    blob: Mapped["Blob | None"] = relationship()
