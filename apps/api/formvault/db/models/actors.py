"""SQLAlchemy ORM models."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Integer, String, TIMESTAMP, func, text
from sqlalchemy.orm import Mapped, mapped_column

from formvault.db.base import Base
from formvault.db.enums import ActorType


class Actor(Base):
    """Identity that submitted data. Owned by the auth layer; read here for exports."""

    __tablename__ = "actors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(
        String(20),
        server_default=text(f"'{ActorType.USER.value}'"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
