"""SQLAlchemy ORM models."""

from formvault.db.models.actors import Actor
from formvault.db.models.blobs import Blob
from formvault.db.models.keys import Key
from formvault.db.models.projects import Form, FormDef, Project
from formvault.db.models.submissions import (
    Submission,
    SubmissionAttachment,
    SubmissionDef,
)

__all__ = [
    "Actor",
    "Blob",
    "Form",
    "FormDef",
    "Key",
    "Project",
    "Submission",
    "SubmissionAttachment",
    "SubmissionDef",
]
