"""Projects, forms and form definitions consumed by the submission pipeline."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from formvault.core.errors import ConflictError, NotFoundError
from formvault.core.structured_logging import build_log_context
from formvault.db.models import Form, FormDef, Project
from formvault.services import schema_service


logger = logging.getLogger(__name__)


def create_project(db: Session, name: str) -> Project:
    project = Project(name=name)
    db.add(project)
    db.flush()
    return project


def get_project(db: Session, project_id: int) -> Project:
    project = db.get(Project, project_id)
    if project is None or project.deleted_at is not None:
        raise NotFoundError()
    return project


def create_form(db: Session, project: Project, xml: str) -> Form:
    """
    Create a form and its first definition from XForm xml.

    A form carrying its own ``base64RsaPublicKey`` is self-encrypted and its
    key is registered as-is. Otherwise, when the project has managed
    encryption enabled, the project key is injected into the definition.
    """
    from formvault.services import key_service

    metadata = schema_service.get_form_metadata(xml)
    version = metadata.version
    if metadata.public_key:
        key_id = key_service.ensure(db, metadata.public_key)
    elif project.key_id is not None:
        key_id = project.key_id
        xml, version = schema_service.inject_public_key(
            xml, project.key.public, key_service.ENCRYPTED_VERSION_SUFFIX
        )
    else:
        key_id = None

    form = Form(project_id=project.id, xml_form_id=metadata.xml_form_id)
    try:
        with db.begin_nested():
            db.add(form)
            db.flush()
    except IntegrityError:
        raise ConflictError(fields=("xmlFormId",), values=(metadata.xml_form_id,))

    db.add(FormDef(form_id=form.id, xml=xml, version=version, key_id=key_id))
    db.flush()
    logger.info(
        "form_created",
        extra=build_log_context(project_id=project.id, form_id=form.id, key_id=key_id),
    )
    return form


def get_form(db: Session, project_id: int, xml_form_id: str) -> Form:
    form = db.execute(
        select(Form).where(
            Form.project_id == project_id,
            Form.xml_form_id == xml_form_id,
            Form.deleted_at.is_(None),
        )
    ).scalar_one_or_none()
    if form is None:
        raise NotFoundError()
    return form


def get_current_def(db: Session, form: Form) -> FormDef | None:
    """The form definition with the greatest id."""
    return db.execute(
        select(FormDef)
        .where(FormDef.form_id == form.id)
        .order_by(FormDef.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def create_encrypted_def(
    db: Session,
    form: Form,
    current: FormDef,
    *,
    key_id: int,
    public_key: str,
    version_suffix: str,
) -> FormDef:
    """Append a definition that asks clients to encrypt against ``public_key``."""
    xml, version = schema_service.inject_public_key(current.xml, public_key, version_suffix)
    form_def = FormDef(form_id=form.id, xml=xml, version=version, key_id=key_id)
    db.add(form_def)
    db.flush()
    return form_def
