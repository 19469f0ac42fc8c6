"""Submission intake, attachment upload and export endpoints."""

from fastapi import APIRouter, Body, Depends, Form as FormField, Header, Query, Response, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from formvault.core.deps import get_actor, get_db
from formvault.core.errors import NotFoundError
from formvault.db.models import Actor
from formvault.schemas.submissions import AttachmentResponse, KeyResponse, SubmissionResponse
from formvault.services import (
    export_service,
    form_service,
    key_service,
    submission_ingest_service,
    submission_service,
)


router = APIRouter(prefix="/projects/{project_id}/forms/{xml_form_id}", tags=["submissions"])


@router.post("/submissions", response_model=SubmissionResponse, status_code=status.HTTP_201_CREATED)
def create_submission(
    project_id: int,
    xml_form_id: str,
    response: Response,
    body: bytes = Body(..., media_type="application/xml"),
    device_id: str | None = Query(default=None, alias="deviceID"),
    actor: Actor | None = Depends(get_actor),
    db: Session = Depends(get_db),
) -> SubmissionResponse:
    """
    Accept a submission envelope.

    Returns 201 when a submission is created and 200 when the same envelope
    was already stored.
    """
    form = form_service.get_form(db, project_id, xml_form_id)
    partial = submission_ingest_service.parse(body)
    submission, submission_def, created = submission_ingest_service.create_all(
        db, partial, form, actor=actor, device_id=device_id
    )
    db.commit()
    if not created:
        response.status_code = status.HTTP_200_OK

    attachments = submission_service.list_attachments(db, submission_def)
    return SubmissionResponse(
        submission_id=submission.id,
        def_id=submission_def.id,
        instance_id=submission.instance_id,
        created=created,
        encrypted=submission_def.is_encrypted,
        expected_attachments=[a.name for a in attachments],
    )


@router.post(
    "/submissions/{instance_id}/attachments/{name}",
    response_model=AttachmentResponse,
)
def upload_attachment(
    project_id: int,
    xml_form_id: str,
    instance_id: str,
    name: str,
    body: bytes = Body(..., media_type="application/octet-stream"),
    content_type: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> AttachmentResponse:
    """Upload the content of an expected attachment of the current def."""
    submission_def = submission_service.get_current_def_by_keys(db, project_id, xml_form_id, instance_id)
    if submission_def is None:
        raise NotFoundError()
    attachment = submission_service.attach_blob(db, submission_def, name, body, content_type)
    db.commit()
    return AttachmentResponse(name=attachment.name, blob_id=attachment.blob_id, index=attachment.index)


@router.get("/submissions/keys", response_model=list[KeyResponse])
def list_submission_keys(
    project_id: int,
    xml_form_id: str,
    db: Session = Depends(get_db),
) -> list[KeyResponse]:
    """Keys protecting current submissions of this form."""
    form = form_service.get_form(db, project_id, xml_form_id)
    return [KeyResponse.model_validate(key) for key in key_service.get_active_by_form_id(db, form.id)]


def _export_response(db: Session, project_id: int, xml_form_id: str, passphrase: str | None) -> StreamingResponse:
    form = form_service.get_form(db, project_id, xml_form_id)
    context = export_service.prepare_export(db, form, passphrase)
    headers = {"Content-Disposition": f'attachment; filename="{form.xml_form_id}.zip"'}
    return StreamingResponse(
        export_service.stream_export_zip(db, context),
        media_type="application/zip",
        headers=headers,
    )


@router.get("/submissions.csv.zip", response_class=StreamingResponse)
def export_submissions(
    project_id: int,
    xml_form_id: str,
    db: Session = Depends(get_db),
) -> StreamingResponse:
    """Export submissions readable without a passphrase (CSV tables + media, zipped)."""
    return _export_response(db, project_id, xml_form_id, None)


@router.post("/submissions.csv.zip", response_class=StreamingResponse)
def export_submissions_decrypted(
    project_id: int,
    xml_form_id: str,
    passphrase: str | None = FormField(default=None),
    db: Session = Depends(get_db),
) -> StreamingResponse:
    """Export submissions, decrypting those the passphrase unlocks."""
    return _export_response(db, project_id, xml_form_id, passphrase)
