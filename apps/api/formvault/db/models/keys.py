"""SQLAlchemy ORM models."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Integer,
    String,
    TIMESTAMP,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from formvault.db.base import Base


class Key(Base):
    """
    Registered public key for submission encryption.

    Immutable once created and never deleted: historical submissions stay
    decryptable after a project rotates keys. ``private`` is set only for
    managed keys and holds the passphrase-protected private half.
    """

    __tablename__ = "keys"
    __table_args__ = (UniqueConstraint("public", name="uq_keys_public"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    public: Mapped[str] = mapped_column(Text, nullable=False)
    private: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    managed: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )
    hint: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
