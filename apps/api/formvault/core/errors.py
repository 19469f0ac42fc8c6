"""Error hierarchy shared by the submission, key and export services.

Every error carries an HTTP-style status code and a stable code string so the
API layer can render it without knowing which service raised it.
"""

from __future__ import annotations

from typing import Any, Sequence


class FormVaultError(Exception):
    """Base exception for formvault service errors."""

    status_code: int = 500
    code: str = "internal.unknown"
    default_message: str = "An unknown internal problem has occurred."

    def __init__(self, message: str | None = None, **details: Any):
        self.details = details
        super().__init__(message or self.default_message)

    @property
    def detail(self) -> str:
        return str(self)


class SubmissionValidationError(FormVaultError):
    """Malformed envelope or missing required field."""

    status_code = 400
    code = "user.invalid"
    default_message = "Could not parse the given submission."


class VersionMismatchError(FormVaultError):
    """Submission was made against a stale form version."""

    status_code = 400
    code = "user.version_mismatch"

    def __init__(self, field: str, value: str):
        self.field = field
        self.value = value
        super().__init__(
            f"Unexpected {field} value {value}; the submission could not be accepted "
            "because your copy of this form is an outdated version. Please get the "
            "latest version and try again.",
            field=field,
            value=value,
        )


class UndecryptableError(FormVaultError):
    """Wrong passphrase or corrupted envelope."""

    status_code = 400
    code = "user.undecryptable"
    default_message = (
        "Could not perform decryption. Double check your passphrase and your data and try again."
    )


class NotFoundError(FormVaultError):
    """A referenced form, submission, attachment or blob does not exist."""

    status_code = 404
    code = "user.not_found"
    default_message = "Could not find the resource you were looking for."


class ConflictError(FormVaultError):
    """Same identity, different content; also storage uniqueness violations."""

    status_code = 409
    code = "user.conflict"

    def __init__(self, message: str | None = None, fields: Sequence[str] = (), values: Sequence[Any] = ()):
        self.fields = list(fields)
        self.values = list(values)
        if message is None:
            message = (
                f"A resource already exists with {', '.join(self.fields)} "
                f"value(s) of {', '.join(str(v) for v in self.values)}."
            )
        super().__init__(message, fields=self.fields, values=self.values)


class AlreadyActiveError(ConflictError):
    """Tried to activate a feature that is already active."""

    def __init__(self, feature: str):
        self.feature = feature
        super().__init__(f"Could not activate feature ({feature}) as it was already activated.")


class InternalConsistencyError(FormVaultError):
    """A stored invariant does not hold (e.g. a live submission with zero defs)."""

    status_code = 500
    code = "internal.consistency"
    default_message = "An internal consistency fault has occurred."
