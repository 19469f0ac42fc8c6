"""Enum definitions for application constants."""

from formvault.db.enums.actors import ActorType
from formvault.db.enums.exports import ExportStatus
from formvault.db.enums.schema import FieldType

__all__ = [
    "ActorType",
    "ExportStatus",
    "FieldType",
]
