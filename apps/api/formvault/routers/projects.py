"""Project-level endpoints: managed encryption."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from formvault.core.deps import get_db
from formvault.schemas.submissions import ManagedEncryptionRequest, ProjectKeyResponse
from formvault.services import form_service, key_service


router = APIRouter(prefix="/projects", tags=["projects"])


@router.post("/{project_id}/key", response_model=ProjectKeyResponse)
def enable_managed_encryption(
    project_id: int,
    data: ManagedEncryptionRequest,
    db: Session = Depends(get_db),
) -> ProjectKeyResponse:
    """Enable managed encryption; every live form gets a new encrypted version."""
    project = form_service.get_project(db, project_id)
    key = key_service.set_managed_encryption(db, project, data.passphrase, data.hint)
    db.commit()
    return ProjectKeyResponse(project_id=project.id, key_id=key.id, hint=key.hint)
