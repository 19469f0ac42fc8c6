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
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from formvault.db.base import Base

if TYPE_CHECKING:
    from formvault.db.models import Key


class Project(Base):
    """A project groups forms and owns at most one active managed key."""

    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    key_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("keys.id", ondelete="RESTRICT"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
    deleted_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    key: Mapped["Key | None"] = relationship()


class Form(Base):
    """A form, identified within its project by the XForm id attribute."""

    __tablename__ = "forms"
    __table_args__ = (
        UniqueConstraint("project_id", "xml_form_id", name="uq_forms_project_xml_form_id"),
        Index("idx_forms_project", "project_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    xml_form_id: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
    deleted_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    project: Mapped["Project"] = relationship()
    defs: Mapped[list["FormDef"]] = relationship(
        back_populates="form", order_by="FormDef.id"
    )


class FormDef(Base):
    """
    One version of a form definition. Append-only; the current def of a form
    is the one with the greatest id.
    """

    __tablename__ = "form_defs"
    __table_args__ = (
        Index("idx_form_defs_form", "form_id"),
        Index("idx_form_defs_key", "key_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    form_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("forms.id", ondelete="CASCADE"), nullable=False
    )
    xml: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[str] = mapped_column(
        String(255), server_default=text("''"), default="", nullable=False
    )
    key_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("keys.id", ondelete="RESTRICT"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )

    form: Mapped["Form"] = relationship(back_populates="defs")
    key: Mapped["Key | None"] = relationship()
