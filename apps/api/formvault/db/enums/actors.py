"""Actor-related enums."""

from enum import Enum


class ActorType(str, Enum):
    """Kind of identity that can submit data."""

    USER = "user"
    APP_USER = "app_user"
    PUBLIC_LINK = "public_link"
