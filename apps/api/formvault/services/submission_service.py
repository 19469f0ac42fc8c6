"""Submission store: append-only submission defs, attachment slots, export streams.

A submission never loses a def. Each def receives an explicit ``sequence``
assigned inside the write transaction, and "current" always means the def
with the greatest sequence. Every read of the current def resolves it with a
single statement joined against ``max(sequence) GROUP BY submission_id``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Collection, Iterator, Mapping, Sequence

from sqlalchemy import and_, case, false, func, null, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from formvault.core.config import settings
from formvault.core.errors import ConflictError, InternalConsistencyError, NotFoundError
from formvault.core.structured_logging import build_log_context
from formvault.db.models import (
    Actor,
    Blob,
    Form,
    FormDef,
    Submission,
    SubmissionAttachment,
    SubmissionDef,
)
from formvault.services import blob_service


logger = logging.getLogger(__name__)

SEQUENCE_CONSTRAINT = "uq_submission_defs_sequence"


@dataclass(frozen=True)
class EncryptionMeta:
    """
    Encryption state of an exported def.

    ``data`` is the ciphertext of the body, loaded only when the protecting
    key is in the caller's decryptable set.
    """

    key_id: int | None
    local_key: str
    index: int | None
    has_data: bool
    decryptable: bool
    data: bytes | None = None


@dataclass(frozen=True)
class ExportRow:
    def_: SubmissionDef
    submission: Submission
    submitter: Actor | None
    encryption: EncryptionMeta | None


@dataclass(frozen=True)
class ExportAttachment:
    name: str
    content: bytes | None
    index: int
    key_id: int | None
    instance_id: str
    local_key: str | None


# =============================================================================
# Current def resolution
# =============================================================================

def _latest_sequences(*criteria):
    stmt = select(
        SubmissionDef.submission_id.label("submission_id"),
        func.max(SubmissionDef.sequence).label("sequence"),
    )
    if criteria:
        stmt = stmt.where(*criteria)
    return stmt.group_by(SubmissionDef.submission_id).subquery("latest")


def _current_def_statement(latest, *criteria):
    return (
        select(Submission, SubmissionDef)
        .outerjoin(latest, latest.c.submission_id == Submission.id)
        .outerjoin(
            SubmissionDef,
            and_(
                SubmissionDef.submission_id == Submission.id,
                SubmissionDef.sequence == latest.c.sequence,
            ),
        )
        .where(Submission.deleted_at.is_(None), *criteria)
    )


def _log_submission_without_defs(submission: Submission) -> None:
    logger.critical(
        "submission_without_defs",
        extra=build_log_context(
            form_id=submission.form_id,
            submission_id=submission.id,
            instance_id=submission.instance_id,
        ),
    )


def _resolve_current(row) -> SubmissionDef | None:
    if row is None:
        return None
    submission, submission_def = row
    if submission_def is None:
        _log_submission_without_defs(submission)
        raise InternalConsistencyError()
    return submission_def


def get_current_def(db: Session, submission_id: int) -> SubmissionDef | None:
    """Current def of a live submission, or None when the submission does not exist."""
    latest = _latest_sequences(SubmissionDef.submission_id == submission_id)
    row = db.execute(_current_def_statement(latest, Submission.id == submission_id)).first()
    return _resolve_current(row)


def get_current_def_by_keys(
    db: Session,
    project_id: int,
    xml_form_id: str,
    instance_id: str,
) -> SubmissionDef | None:
    latest = _latest_sequences()
    stmt = _current_def_statement(
        latest,
        Submission.instance_id == instance_id,
        Form.project_id == project_id,
        Form.xml_form_id == xml_form_id,
        Form.deleted_at.is_(None),
    ).join(Form, Form.id == Submission.form_id)
    return _resolve_current(db.execute(stmt).first())


def get_submission(db: Session, form_id: int, instance_id: str) -> Submission | None:
    """Submission by identity, soft-deleted ones included."""
    return db.execute(
        select(Submission).where(
            Submission.form_id == form_id,
            Submission.instance_id == instance_id,
        )
    ).scalar_one_or_none()


def find_def_by_envelope(db: Session, submission_id: int, envelope_sha256: str) -> SubmissionDef | None:
    return db.execute(
        select(SubmissionDef)
        .where(
            SubmissionDef.submission_id == submission_id,
            SubmissionDef.envelope_sha256 == envelope_sha256,
        )
        .order_by(SubmissionDef.sequence.desc())
        .limit(1)
    ).scalar_one_or_none()


# =============================================================================
# Writes
# =============================================================================

def _is_sequence_conflict(error: IntegrityError) -> bool:
    constraint_name = getattr(getattr(error.orig, "diag", None), "constraint_name", None)
    if constraint_name == SEQUENCE_CONSTRAINT:
        return True
    message = str(error.orig) if error.orig else str(error)
    return SEQUENCE_CONSTRAINT in message or "submission_defs.sequence" in message


def _next_sequence(submission_id: int):
    return (
        select(func.coalesce(func.max(SubmissionDef.sequence), 0) + 1)
        .where(SubmissionDef.submission_id == submission_id)
        .scalar_subquery()
    )


def append_def(
    db: Session,
    submission: Submission,
    form_def: FormDef,
    *,
    envelope_sha256: str,
    xml: str | None = None,
    local_key: str | None = None,
    enc_data_attachment_name: str | None = None,
    signature: str | None = None,
    attachments: Sequence[tuple[str, int]] = (),
    carried_blobs: Mapping[str, int] | None = None,
) -> SubmissionDef:
    """
    Append a def and its attachment slots in one savepoint.

    The submission row is locked first so concurrent appends to the same
    submission serialize; the unique (submission_id, sequence) constraint
    backs that up on backends without row locks.
    """
    carried_blobs = carried_blobs or {}
    db.execute(select(Submission.id).where(Submission.id == submission.id).with_for_update())

    for attempt in range(3):
        submission_def = SubmissionDef(
            submission_id=submission.id,
            form_def_id=form_def.id,
            sequence=_next_sequence(submission.id),
            xml=xml,
            envelope_sha256=envelope_sha256,
            local_key=local_key,
            enc_data_attachment_name=enc_data_attachment_name,
            signature=signature,
        )
        try:
            with db.begin_nested():
                db.add(submission_def)
                db.flush()
                for name, index in attachments:
                    db.add(
                        SubmissionAttachment(
                            submission_def_id=submission_def.id,
                            name=name,
                            index=index,
                            blob_id=carried_blobs.get(name),
                        )
                    )
                db.flush()
            break
        except IntegrityError as exc:
            if _is_sequence_conflict(exc) and attempt < 2:
                continue
            raise ConflictError(
                fields=("submissionId", "sequence"),
                values=(submission.id, "next"),
            )

    logger.info(
        "submission_def_appended",
        extra=build_log_context(
            form_id=submission.form_id,
            submission_id=submission.id,
            instance_id=submission.instance_id,
        ),
    )
    return submission_def


def list_attachments(db: Session, submission_def: SubmissionDef) -> list[SubmissionAttachment]:
    return list(
        db.execute(
            select(SubmissionAttachment)
            .where(SubmissionAttachment.submission_def_id == submission_def.id)
            .order_by(SubmissionAttachment.index, SubmissionAttachment.name)
        ).scalars()
    )


def get_attachment(db: Session, submission_def: SubmissionDef, name: str) -> SubmissionAttachment:
    attachment = db.get(SubmissionAttachment, (submission_def.id, name))
    if attachment is None:
        raise NotFoundError()
    return attachment


def attach_blob(
    db: Session,
    submission_def: SubmissionDef,
    name: str,
    content: bytes,
    content_type: str | None = None,
) -> SubmissionAttachment:
    """Store attachment content and link it to an expected slot."""
    attachment = get_attachment(db, submission_def, name)
    blob = blob_service.ensure_blob(db, content, content_type)
    attachment.blob_id = blob.id
    db.flush()
    logger.info(
        "submission_attachment_updated",
        extra=build_log_context(submission_id=submission_def.submission_id),
    )
    return attachment


def clear_attachment(db: Session, submission_def: SubmissionDef, name: str) -> SubmissionAttachment:
    attachment = get_attachment(db, submission_def, name)
    attachment.blob_id = None
    db.flush()
    logger.info(
        "submission_attachment_updated",
        extra=build_log_context(submission_id=submission_def.submission_id),
    )
    return attachment


# =============================================================================
# Export streams
# =============================================================================

def _decryptable(key_ids: Collection[int]):
    """Plaintext defs, defs of unkeyed form versions, or defs whose key is unlocked."""
    return or_(
        SubmissionDef.local_key.is_(None),
        FormDef.key_id.is_(None),
        FormDef.key_id.in_(list(key_ids)) if key_ids else false(),
    )


def _export_rows_statement(form_id: int, key_ids: Collection[int], *criteria):
    latest = _latest_sequences()
    enc_attachment = aliased(SubmissionAttachment)
    decryptable = _decryptable(key_ids)

    # Outer joins keep a def-less submission visible so it can be reported.
    return (
        select(
            SubmissionDef,
            Submission,
            Actor,
            FormDef.key_id,
            enc_attachment.index,
            enc_attachment.blob_id,
            case((decryptable, Blob.content), else_=null()).label("data"),
            case((decryptable, True), else_=False).label("decryptable"),
        )
        .select_from(Submission)
        .outerjoin(latest, latest.c.submission_id == Submission.id)
        .outerjoin(
            SubmissionDef,
            and_(
                SubmissionDef.submission_id == Submission.id,
                SubmissionDef.sequence == latest.c.sequence,
            ),
        )
        .outerjoin(FormDef, FormDef.id == SubmissionDef.form_def_id)
        .outerjoin(Actor, Actor.id == Submission.submitter_id)
        .outerjoin(
            enc_attachment,
            and_(
                enc_attachment.submission_def_id == SubmissionDef.id,
                enc_attachment.name == SubmissionDef.enc_data_attachment_name,
            ),
        )
        .outerjoin(Blob, Blob.id == enc_attachment.blob_id)
        .where(Submission.form_id == form_id, Submission.deleted_at.is_(None), *criteria)
        .order_by(Submission.id.desc())
    )


def _to_export_row(row) -> ExportRow | None:
    submission_def, submission, submitter, key_id, index, blob_id, data, is_decryptable = row
    if submission_def is None:
        _log_submission_without_defs(submission)
        return None
    encryption = None
    if submission_def.local_key is not None:
        encryption = EncryptionMeta(
            key_id=key_id,
            local_key=submission_def.local_key,
            index=index,
            has_data=blob_id is not None,
            decryptable=bool(is_decryptable),
            data=data,
        )
    return ExportRow(submission_def, submission, submitter, encryption)


def stream_export_rows(
    db: Session,
    form_id: int,
    key_ids: Collection[int],
    *,
    offset: int | None = None,
    limit: int | None = None,
    yield_per: int | None = None,
) -> Iterator[ExportRow]:
    """
    Stream the current def of every live submission of a form, newest first.

    Rows whose key is not unlocked are still emitted, carrying only whether
    encrypted data exists. A live submission without defs is logged and
    skipped. Each call runs its own cursor, closed when the generator
    finishes or is closed.
    """
    stmt = _export_rows_statement(form_id, key_ids)
    if offset:
        stmt = stmt.offset(offset)
    if limit is not None:
        stmt = stmt.limit(limit)

    result = db.execute(stmt.execution_options(yield_per=yield_per or settings.EXPORT_YIELD_PER))
    try:
        for row in result:
            export_row = _to_export_row(row)
            if export_row is not None:
                yield export_row
    finally:
        result.close()


def get_for_export(
    db: Session,
    form_id: int,
    instance_id: str,
    key_ids: Collection[int],
) -> ExportRow | None:
    """Export row of one live submission, or None when it does not exist."""
    row = db.execute(_export_rows_statement(form_id, key_ids, Submission.instance_id == instance_id)).first()
    if row is None:
        return None
    export_row = _to_export_row(row)
    if export_row is None:
        raise InternalConsistencyError()
    return export_row


def stream_export_attachments(
    db: Session,
    form_id: int,
    key_ids: Collection[int],
    *,
    yield_per: int | None = None,
) -> Iterator[ExportAttachment]:
    """
    Stream the attachments of every current def the key set can read.

    The encrypted body is not a media file and is left out. Slots with no
    uploaded blob are emitted with ``content=None``.
    """
    latest = _latest_sequences()
    stmt = (
        select(
            SubmissionAttachment.name,
            SubmissionAttachment.index,
            Blob.content,
            FormDef.key_id,
            Submission.instance_id,
            SubmissionDef.local_key,
        )
        .select_from(SubmissionAttachment)
        .join(SubmissionDef, SubmissionDef.id == SubmissionAttachment.submission_def_id)
        .join(
            latest,
            and_(
                latest.c.submission_id == SubmissionDef.submission_id,
                latest.c.sequence == SubmissionDef.sequence,
            ),
        )
        .join(Submission, Submission.id == SubmissionDef.submission_id)
        .join(FormDef, FormDef.id == SubmissionDef.form_def_id)
        .outerjoin(Blob, Blob.id == SubmissionAttachment.blob_id)
        .where(
            Submission.form_id == form_id,
            Submission.deleted_at.is_(None),
            _decryptable(key_ids),
            or_(
                SubmissionDef.enc_data_attachment_name.is_(None),
                SubmissionAttachment.name != SubmissionDef.enc_data_attachment_name,
            ),
        )
        .order_by(Submission.id.desc(), SubmissionAttachment.index)
    )

    result = db.execute(stmt.execution_options(yield_per=yield_per or settings.EXPORT_YIELD_PER))
    try:
        for name, index, content, key_id, instance_id, local_key in result:
            yield ExportAttachment(
                name=name,
                content=content,
                index=index,
                key_id=key_id,
                instance_id=instance_id,
                local_key=local_key,
            )
    finally:
        result.close()
