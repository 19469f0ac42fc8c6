"""Export-related enums."""

from enum import Enum


class ExportStatus(str, Enum):
    """Value of the Status column in tabular exports."""

    OK = ""
    MISSING_ENCRYPTED_DATA = "missing encrypted form data"
