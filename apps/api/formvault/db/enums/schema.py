"""Form schema enums."""

from enum import Enum


class FieldType(str, Enum):
    """Node kinds produced by the schema projector, plus the bind types it cares about."""

    REPEAT = "repeat"
    BINARY = "binary"
    UNKNOWN = "unknown"
