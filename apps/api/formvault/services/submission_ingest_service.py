"""Submission ingest: envelope parsing and transactional creation.

``parse`` reads only what every envelope carries (form id, instance id,
version and, for encrypted envelopes, the key material and part names), so
the result is independent of any particular form version. ``create_all`` and
``create_version`` then check it against the form and hand it to the store.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Iterator

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from formvault.core.config import settings
from formvault.core.errors import (
    ConflictError,
    NotFoundError,
    SubmissionValidationError,
    VersionMismatchError,
)
from formvault.core.structured_logging import build_log_context
from formvault.db.models import Actor, Form, FormDef, Submission, SubmissionDef
from formvault.services import form_service, schema_service, submission_service


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmissionPartial:
    """Form-agnostic reading of one submission envelope."""

    xml_form_id: str
    instance_id: str
    version: str
    xml: str
    envelope_sha256: str
    local_key: str | None = None
    enc_data_attachment_name: str | None = None
    signature: str | None = None
    media_files: tuple[str, ...] = ()

    @property
    def is_encrypted(self) -> bool:
        return self.local_key is not None


def _text(element: ET.Element | None) -> str | None:
    if element is None or element.text is None:
        return None
    value = element.text.strip()
    return value or None


def _child(element: ET.Element, *names: str) -> ET.Element | None:
    current: ET.Element | None = element
    for name in names:
        if current is None:
            return None
        current = next(
            (c for c in current if isinstance(c.tag, str) and schema_service.local_name(c.tag) == name),
            None,
        )
    return current


def parse(raw: bytes | str) -> SubmissionPartial:
    """Parse a raw submission envelope."""
    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    if len(raw) > settings.MAX_SUBMISSION_BYTES:
        raise SubmissionValidationError("Submission is larger than the allowed maximum size.")
    if not raw.strip():
        raise SubmissionValidationError("Submission body is empty.")

    root = schema_service.parse_xml(raw)
    xml_form_id = (root.get("id") or "").strip()
    if not xml_form_id:
        raise SubmissionValidationError("Required parameter form ID xml attribute missing.")

    instance_id = (
        _text(_child(root, "meta", "instanceID"))
        or _text(_child(root, "instanceID"))
        or (root.get("instanceID") or "").strip()
        or f"uuid:{uuid.uuid4()}"
    )

    local_key = _text(_child(root, "base64EncryptedKey"))
    enc_data_attachment_name = _text(_child(root, "encryptedXmlFile"))
    signature = _text(_child(root, "base64EncryptedElementSignature"))
    if (local_key is None) != (enc_data_attachment_name is None) or (
        root.get("encrypted") == "yes" and local_key is None
    ):
        raise SubmissionValidationError(
            "Encrypted submissions must carry both base64EncryptedKey and encryptedXmlFile."
        )

    media_files: list[str] = []
    if local_key is not None:
        for media in root:
            if not isinstance(media.tag, str) or schema_service.local_name(media.tag) != "media":
                continue
            for file in media:
                name = _text(file) if isinstance(file.tag, str) else None
                if name and schema_service.local_name(file.tag) == "file":
                    media_files.append(name)

    try:
        xml = raw.decode("utf-8")
    except UnicodeDecodeError:
        raise SubmissionValidationError("Submission must be encoded as UTF-8.")

    return SubmissionPartial(
        xml_form_id=xml_form_id,
        instance_id=instance_id,
        version=root.get("version") or "",
        xml=xml,
        envelope_sha256=hashlib.sha256(raw).hexdigest(),
        local_key=local_key,
        enc_data_attachment_name=enc_data_attachment_name,
        signature=signature,
        media_files=tuple(media_files),
    )


# =============================================================================
# Attachment slots
# =============================================================================

def _binary_values(
    element: ET.Element,
    binary_paths: set[tuple[str, ...]],
    prefix: tuple[str, ...] = (),
) -> Iterator[str]:
    for child in element:
        if not isinstance(child.tag, str):
            continue
        path = prefix + (schema_service.local_name(child.tag),)
        if path in binary_paths:
            value = _text(child)
            if value:
                yield value
        elif len(child) > 0:
            yield from _binary_values(child, binary_paths, path)


def expected_attachments(partial: SubmissionPartial, form_def: FormDef) -> list[tuple[str, int]]:
    """
    Attachment slots implied by an envelope, as (name, index) pairs.

    Encrypted envelopes number their media files from 0 and put the encrypted
    body last. Plaintext envelopes get one slot per binary field value.
    """
    if partial.is_encrypted:
        names = list(partial.media_files) + [partial.enc_data_attachment_name]
    else:
        binary_paths = schema_service.binary_fields(schema_service.get_form_schema(form_def.xml))
        if not binary_paths:
            return []
        root = schema_service.parse_xml(partial.xml.encode("utf-8"))
        names = list(_binary_values(root, binary_paths))

    slots: list[tuple[str, int]] = []
    seen: set[str] = set()
    for index, name in enumerate(names):
        if name in seen:
            continue
        seen.add(name)
        slots.append((name, index))
    return slots


# =============================================================================
# Creation
# =============================================================================

def _check_against_form(partial: SubmissionPartial, form: Form, form_def: FormDef) -> None:
    if partial.xml_form_id != form.xml_form_id:
        raise SubmissionValidationError(
            f"The form ID in the submission ({partial.xml_form_id}) does not match "
            f"the form it was sent to ({form.xml_form_id})."
        )
    if partial.version != form_def.version:
        raise VersionMismatchError("version", partial.version)
    if partial.is_encrypted and form_def.key_id is None:
        raise SubmissionValidationError("Encrypted submissions are not accepted by this form.")


def _current_form_def(db: Session, form: Form) -> FormDef:
    form_def = form_service.get_current_def(db, form)
    if form_def is None:
        raise NotFoundError()
    return form_def


def _resolve_resubmission(
    db: Session,
    submission: Submission,
    partial: SubmissionPartial,
) -> tuple[Submission, SubmissionDef, bool]:
    context = build_log_context(
        form_id=submission.form_id,
        submission_id=submission.id,
        instance_id=submission.instance_id,
    )
    if submission.deleted_at is not None:
        logger.warning("submission_conflict", extra=context)
        raise ConflictError(
            "This submission has been deleted. You may not resubmit it.",
            fields=("instanceID",),
            values=(submission.instance_id,),
        )

    existing = submission_service.find_def_by_envelope(db, submission.id, partial.envelope_sha256)
    if existing is None:
        logger.warning("submission_conflict", extra=context)
        raise ConflictError(fields=("instanceID",), values=(submission.instance_id,))

    logger.info("submission_resubmitted", extra=context)
    return submission, existing, False


def create_all(
    db: Session,
    partial: SubmissionPartial,
    form: Form,
    actor: Actor | None = None,
    device_id: str | None = None,
) -> tuple[Submission, SubmissionDef, bool]:
    """
    Create a submission with its first def and attachment slots.

    Returns ``(submission, def, created)``. A byte-identical resubmission is a
    no-op returning the stored def with ``created=False``; different content
    under an existing instance id raises ConflictError.
    """
    form_def = _current_form_def(db, form)
    _check_against_form(partial, form, form_def)

    existing = submission_service.get_submission(db, form.id, partial.instance_id)
    if existing is not None:
        return _resolve_resubmission(db, existing, partial)

    submission = Submission(
        form_id=form.id,
        instance_id=partial.instance_id,
        submitter_id=actor.id if actor is not None else None,
        device_id=device_id,
    )
    try:
        with db.begin_nested():
            db.add(submission)
            db.flush()
    except IntegrityError:
        # Lost a race with a concurrent first submission of the same instance.
        existing = submission_service.get_submission(db, form.id, partial.instance_id)
        if existing is None:
            raise ConflictError(fields=("instanceID",), values=(partial.instance_id,))
        return _resolve_resubmission(db, existing, partial)

    submission_def = submission_service.append_def(
        db,
        submission,
        form_def,
        envelope_sha256=partial.envelope_sha256,
        xml=None if partial.is_encrypted else partial.xml,
        local_key=partial.local_key,
        enc_data_attachment_name=partial.enc_data_attachment_name,
        signature=partial.signature,
        attachments=expected_attachments(partial, form_def),
    )
    logger.info(
        "submission_created",
        extra=build_log_context(
            project_id=form.project_id,
            form_id=form.id,
            submission_id=submission.id,
            instance_id=submission.instance_id,
            key_id=form_def.key_id,
        ),
    )
    return submission, submission_def, True


def create_version(
    db: Session,
    submission: Submission,
    partial: SubmissionPartial,
) -> tuple[SubmissionDef, bool]:
    """
    Append a new def to an existing submission.

    Plaintext slots whose names survive from the previous def keep their
    uploaded content. Returns ``(def, created)``; resending the current
    envelope is a no-op.
    """
    if submission.deleted_at is not None:
        raise NotFoundError()
    if partial.instance_id != submission.instance_id:
        raise SubmissionValidationError(
            f"The instance ID in the submission ({partial.instance_id}) does not match "
            f"the submission it was sent to ({submission.instance_id})."
        )

    form = submission.form
    form_def = _current_form_def(db, form)
    _check_against_form(partial, form, form_def)

    current = submission_service.get_current_def(db, submission.id)
    if current is None:
        raise NotFoundError()
    if current.envelope_sha256 == partial.envelope_sha256:
        return current, False

    carried_blobs: dict[str, int] = {}
    if not partial.is_encrypted and not current.is_encrypted:
        carried_blobs = {
            attachment.name: attachment.blob_id
            for attachment in submission_service.list_attachments(db, current)
            if attachment.blob_id is not None
        }

    submission_def = submission_service.append_def(
        db,
        submission,
        form_def,
        envelope_sha256=partial.envelope_sha256,
        xml=None if partial.is_encrypted else partial.xml,
        local_key=partial.local_key,
        enc_data_attachment_name=partial.enc_data_attachment_name,
        signature=partial.signature,
        attachments=expected_attachments(partial, form_def),
        carried_blobs=carried_blobs,
    )
    return submission_def, True
