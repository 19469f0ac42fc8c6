"""Schemas for submissions, keys and exports."""

from datetime import datetime

from pydantic import BaseModel, Field


class ManagedEncryptionRequest(BaseModel):
    passphrase: str = Field(..., min_length=10, max_length=1024)
    hint: str | None = Field(None, max_length=255)


class ProjectKeyResponse(BaseModel):
    project_id: int
    key_id: int
    hint: str | None = None


class KeyResponse(BaseModel):
    id: int
    managed: bool
    hint: str | None = None
    public: str
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class SubmissionResponse(BaseModel):
    submission_id: int
    def_id: int
    instance_id: str
    created: bool
    encrypted: bool
    expected_attachments: list[str] = []


class AttachmentResponse(BaseModel):
    name: str
    blob_id: int | None
    index: int
