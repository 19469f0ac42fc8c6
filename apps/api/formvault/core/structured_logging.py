"""Structured logging helpers (payload-safe)."""

from typing import Any


def build_log_context(
    *,
    project_id: int | None = None,
    form_id: int | None = None,
    submission_id: int | None = None,
    instance_id: str | None = None,
    key_id: int | None = None,
) -> dict[str, Any]:
    """Return a log context dict carrying identifiers only, never content or key material."""
    context: dict[str, Any] = {}
    if project_id is not None:
        context["project_id"] = project_id
    if form_id is not None:
        context["form_id"] = form_id
    if submission_id is not None:
        context["submission_id"] = submission_id
    if instance_id:
        context["instance_id"] = instance_id
    if key_id is not None:
        context["key_id"] = key_id
    return context
