"""FastAPI dependencies."""

from typing import Generator

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from formvault.core.errors import NotFoundError
from formvault.db.models import Actor
from formvault.db.session import SessionLocal


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_actor(
    x_actor_id: int | None = Header(default=None),
    db: Session = Depends(get_db),
) -> Actor | None:
    """
    Submitter identity forwarded by the authenticating proxy.

    Authentication happens upstream; an unknown id is a broken reference.
    """
    if x_actor_id is None:
        return None
    actor = db.get(Actor, x_actor_id)
    if actor is None:
        raise NotFoundError()
    return actor
