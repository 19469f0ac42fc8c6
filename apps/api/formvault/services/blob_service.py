"""Content-addressed blob storage (read/write contract used by submissions)."""

import hashlib

from sqlalchemy import select
from sqlalchemy.orm import Session

from formvault.db.models import Blob
from formvault.db.upsert import insert_ignoring_conflict


def calculate_checksum(content: bytes) -> str:
    """Calculate SHA-256 checksum of content."""
    return hashlib.sha256(content).hexdigest()


def ensure_blob(db: Session, content: bytes, content_type: str | None = None) -> Blob:
    """Store content once; identical bytes resolve to the existing blob."""
    sha = calculate_checksum(content)
    db.execute(
        insert_ignoring_conflict(
            db,
            Blob,
            {"sha": sha, "content": content, "content_type": content_type},
            conflict_columns=["sha"],
        )
    )
    return db.execute(select(Blob).where(Blob.sha == sha)).scalar_one()
