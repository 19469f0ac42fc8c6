"""Key vault: registration and resolution of submission encryption keys."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Callable, Iterable, Mapping

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from sqlalchemy import func, literal, select
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import Session

from formvault.core import crypto
from formvault.core.errors import AlreadyActiveError, NotFoundError, UndecryptableError
from formvault.core.structured_logging import build_log_context
from formvault.db.models import Form, FormDef, Key, Project, Submission, SubmissionDef
from formvault.db.upsert import dialect_name, insert_ignoring_conflict


logger = logging.getLogger(__name__)

# (ciphertext, key_id, wrapped_key, instance_id, index) -> plaintext
Decryptor = Callable[[bytes, int, str, str, int], bytes]

ENCRYPTED_VERSION_SUFFIX = "[encrypted]"


# =============================================================================
# Registration
# =============================================================================

def ensure(
    db: Session,
    public: str,
    *,
    private: dict | None = None,
    managed: bool = False,
    hint: str | None = None,
) -> int:
    """
    Register a public key, or return the id of the row already holding it.

    On PostgreSQL this is one statement: a conflict-ignoring insert in a CTE
    unioned with a lookup of the existing row, so concurrent first
    submissions racing on the same key all resolve to the winner's id.
    """
    values = {"public": public, "managed": managed, "hint": hint}
    if private is not None:
        values["private"] = private

    if dialect_name(db) == "postgresql":
        inserted = (
            postgresql.insert(Key)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["public"])
            .returning(Key.id)
            .cte("ins")
        )
        stmt = select(inserted.c.id).union_all(select(Key.id).where(Key.public == literal(public)))
        key_id = db.execute(stmt).scalars().first()
    else:
        # SQLite serializes writers, so the insert and the lookup cannot interleave.
        db.execute(insert_ignoring_conflict(db, Key, values, conflict_columns=["public"]))
        key_id = db.execute(select(Key.id).where(Key.public == public)).scalar_one()

    logger.info("key_registered", extra=build_log_context(key_id=key_id))
    return key_id


def get_by_id(db: Session, key_id: int) -> Key | None:
    return db.get(Key, key_id)


def set_managed_encryption(
    db: Session,
    project: Project,
    passphrase: str,
    hint: str | None = None,
) -> Key:
    """
    Enable managed encryption for a project.

    Generates a keypair protected by ``passphrase``, links it to the project,
    and re-versions every live form so submissions made against the old,
    unencrypted versions are rejected as stale.
    """
    from formvault.services import form_service

    if project.key_id is not None:
        raise AlreadyActiveError("managed encryption")

    material = crypto.generate_managed_key(passphrase)
    key_id = ensure(db, material.public, private=material.private, managed=True, hint=hint)
    project.key_id = key_id

    forms = (
        db.query(Form)
        .filter(Form.project_id == project.id, Form.deleted_at.is_(None))
        .order_by(Form.id)
        .all()
    )
    for form in forms:
        current = form_service.get_current_def(db, form)
        if current is None or current.key_id is not None:
            continue
        form_service.create_encrypted_def(
            db,
            form,
            current,
            key_id=key_id,
            public_key=material.public,
            version_suffix=ENCRYPTED_VERSION_SUFFIX,
        )

    db.flush()
    logger.info(
        "managed_encryption_enabled",
        extra=build_log_context(project_id=project.id, key_id=key_id),
    )
    return db.get(Key, key_id)


# =============================================================================
# Resolution
# =============================================================================

def get_active_by_form_id(db: Session, form_id: int) -> list[Key]:
    """Keys protecting at least one current encrypted def of the form, newest first."""
    latest = (
        select(func.max(SubmissionDef.sequence).label("sequence"), SubmissionDef.submission_id)
        .group_by(SubmissionDef.submission_id)
        .subquery("latest")
    )
    key_ids = (
        select(FormDef.key_id)
        .join(SubmissionDef, SubmissionDef.form_def_id == FormDef.id)
        .join(
            latest,
            (latest.c.submission_id == SubmissionDef.submission_id)
            & (latest.c.sequence == SubmissionDef.sequence),
        )
        .join(Submission, Submission.id == SubmissionDef.submission_id)
        .where(
            Submission.form_id == form_id,
            Submission.deleted_at.is_(None),
            SubmissionDef.local_key.is_not(None),
            FormDef.key_id.is_not(None),
        )
        .group_by(FormDef.key_id)
    )
    return list(db.execute(select(Key).where(Key.id.in_(key_ids)).order_by(Key.id.desc())).scalars())


def get_keys_for_project(db: Session, project_id: int) -> list[Key]:
    """Every key that ever protected a form of the project, plus its current managed key."""
    form_key_ids = (
        select(FormDef.key_id)
        .join(Form, Form.id == FormDef.form_id)
        .where(Form.project_id == project_id, FormDef.key_id.is_not(None))
    )
    project_key_ids = select(Project.key_id).where(
        Project.id == project_id, Project.key_id.is_not(None)
    )
    stmt = (
        select(Key)
        .where(Key.id.in_(form_key_ids) | Key.id.in_(project_key_ids))
        .order_by(Key.id.desc())
    )
    return list(db.execute(stmt).scalars())


def get_managed_by_ids(db: Session, ids: Iterable[int]) -> list[Key]:
    ids = list(ids)
    if not ids:
        return []
    stmt = select(Key).where(Key.managed.is_(True), Key.id.in_(ids)).order_by(Key.id)
    return list(db.execute(stmt).scalars())


def unlock_keys(keys: Iterable[Key], passphrase: str) -> dict[int, RSAPrivateKey]:
    """
    Try ``passphrase`` against every managed key and return those it opens.

    Raises UndecryptableError when the scope holds managed keys but the
    passphrase opens none of them.
    """
    unlocked: dict[int, RSAPrivateKey] = {}
    attempted = 0
    for key in keys:
        if not key.managed or not key.private:
            continue
        attempted += 1
        try:
            unlocked[key.id] = crypto.unlock_private_key(key.private, passphrase)
        except UndecryptableError:
            logger.info("key_unlock_failed", extra=build_log_context(key_id=key.id))
    if attempted and not unlocked:
        raise UndecryptableError()
    return unlocked


def unlock_for_scope(
    db: Session,
    passphrase: str,
    *,
    project_id: int | None = None,
    form_id: int | None = None,
) -> dict[int, RSAPrivateKey]:
    if form_id is not None:
        form = db.get(Form, form_id)
        if form is None:
            raise NotFoundError()
        keys = {key.id: key for key in get_active_by_form_id(db, form_id)}
        for key in get_keys_for_project(db, form.project_id):
            keys.setdefault(key.id, key)
        candidates = list(keys.values())
    elif project_id is not None:
        candidates = get_keys_for_project(db, project_id)
    else:
        raise ValueError("A project or form scope is required")
    return unlock_keys(candidates, passphrase)


def resolve_decryptable_keys(
    db: Session,
    passphrase: str,
    *,
    project_id: int | None = None,
    form_id: int | None = None,
) -> set[int]:
    """Ids of every historical key in scope that ``passphrase`` unlocks."""
    return set(unlock_for_scope(db, passphrase, project_id=project_id, form_id=form_id))


def build_decryptor(private_keys: Mapping[int, RSAPrivateKey]) -> Decryptor:
    """Bind an unlocked key map into a decryptor for one export request."""

    @lru_cache(maxsize=256)
    def unwrap(key_id: int, local_key: str) -> bytes:
        private_key = private_keys.get(key_id)
        if private_key is None:
            raise UndecryptableError()
        return crypto.unwrap_symmetric_key(private_key, local_key)

    def decrypt(ciphertext: bytes, key_id: int, local_key: str, instance_id: str, index: int) -> bytes:
        return crypto.decrypt_part(ciphertext, unwrap(key_id, local_key), instance_id, index)

    return decrypt
