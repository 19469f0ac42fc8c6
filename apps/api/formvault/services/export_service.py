"""Streaming submission exports.

An export request is prepared once (passphrase checked, keys unlocked, column
layout fixed from the current form definition) and then streamed as a zip
archive: the root CSV table, one CSV per repeat group, then the media files.
Each table is its own pass over the store's row cursor, and the archive is
written in non-seekable mode so bytes leave as soon as an entry advances.
"""

from __future__ import annotations

import csv
import io
import logging
import re
import xml.etree.ElementTree as ET
import zipfile
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Iterator, Sequence

from sqlalchemy.orm import Session

from formvault.core.config import settings
from formvault.core.structured_logging import build_log_context
from formvault.db.enums import ExportStatus
from formvault.db.models import Form
from formvault.schemas.form_schema import FlatField
from formvault.services import form_service, key_service, schema_service, submission_service
from formvault.services.key_service import Decryptor
from formvault.services.submission_service import ExportAttachment, ExportRow


logger = logging.getLogger(__name__)

CSV_DANGEROUS_PREFIXES = ("=", "+", "-", "@")
INSTANCE_ID_COLUMN = "meta-instanceID"
ENCRYPTED_SUFFIX = ".enc"

_ILLEGAL_FILENAME_CHARS = re.compile(r'[/?<>\\:*|"\x00-\x1f\x80-\x9f]')
_RESERVED_FILENAME = re.compile(r"^\.+$")
_WINDOWS_RESERVED = re.compile(r"^(con|prn|aux|nul|com[0-9]|lpt[0-9])(\..*)?$", re.IGNORECASE)
_WINDOWS_TRAILING = re.compile(r"[. ]+$")


@dataclass
class ExportContext:
    """Everything one export request needs; owned by that request alone."""

    form: Form
    fields: list[FlatField]
    key_ids: set[int]
    decryptor: Decryptor
    media_dir: str = field(default_factory=lambda: settings.EXPORT_MEDIA_DIR)


# =============================================================================
# Helpers
# =============================================================================

def _csv_safe(value: str) -> str:
    if value and value.startswith(CSV_DANGEROUS_PREFIXES):
        return f"'{value}"
    return value


def _serialize_csv_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _write_csv_row(values: Sequence[Any]) -> bytes:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow([_csv_safe(_serialize_csv_value(value)) for value in values])
    return output.getvalue().encode("utf-8")


def sanitize_filename(name: str) -> str:
    """Make an attachment name safe as a single archive path segment."""
    cleaned = _ILLEGAL_FILENAME_CHARS.sub("", name)
    cleaned = _RESERVED_FILENAME.sub("", cleaned)
    cleaned = _WINDOWS_RESERVED.sub("", cleaned)
    cleaned = _WINDOWS_TRAILING.sub("", cleaned)
    return cleaned.encode("utf-8")[:255].decode("utf-8", errors="ignore")


def _find_all(element: ET.Element, path: Sequence[str]) -> Iterator[ET.Element]:
    if not path:
        yield element
        return
    head, rest = path[0], path[1:]
    for child in element:
        if isinstance(child.tag, str) and schema_service.local_name(child.tag) == head:
            yield from _find_all(child, rest)


def _value(element: ET.Element, path: Sequence[str]) -> str:
    found = next(_find_all(element, path), None)
    if found is None or found.text is None:
        return ""
    return found.text.strip()


def _leaf_fields(fields: Iterable[FlatField]) -> list[FlatField]:
    return [f for f in fields if not f.is_repeat and f.column_name != INSTANCE_ID_COLUMN]


def repeat_chains(fields: Iterable[FlatField], parents: tuple[FlatField, ...] = ()) -> list[tuple[FlatField, ...]]:
    """Every repeat with its enclosing repeats, outermost first, in document order."""
    chains: list[tuple[FlatField, ...]] = []
    for f in fields:
        if f.is_repeat:
            chain = parents + (f,)
            chains.append(chain)
            chains.extend(repeat_chains(f.children, chain))
    return chains


# =============================================================================
# Archive rendering
# =============================================================================

def stream_attachments(
    attachments: Iterable[ExportAttachment],
    decryptor: Decryptor,
    media_dir: str | None = None,
) -> Iterator[tuple[str, bytes]]:
    """
    Yield (archive path, bytes) per attachment, decrypting when it is encrypted.

    A slot with no uploaded content becomes an empty entry. A name that
    sanitizes to nothing is replaced by ``attachment-<index>``. Sanitized
    names may collide; duplicate entries are left for the reader to resolve.
    """
    media_dir = media_dir or settings.EXPORT_MEDIA_DIR
    for attachment in attachments:
        name = attachment.name
        content = attachment.content
        if attachment.local_key is not None:
            if name.endswith(ENCRYPTED_SUFFIX):
                name = name[: -len(ENCRYPTED_SUFFIX)]
            if content is not None:
                content = decryptor(
                    content,
                    attachment.key_id,
                    attachment.local_key,
                    attachment.instance_id,
                    attachment.index,
                )
        filename = sanitize_filename(name) or f"attachment-{attachment.index}"
        yield f"{media_dir}/{filename}", content or b""


# =============================================================================
# Tabular rendering
# =============================================================================

def _decrypted_body(row: ExportRow, decryptor: Decryptor) -> ET.Element | None | ExportStatus:
    """
    Parsed body of a row, None when the caller's keys cannot read it, or
    MISSING_ENCRYPTED_DATA when its key is unlocked but the body never arrived.
    """
    encryption = row.encryption
    if encryption is None:
        return schema_service.parse_xml(row.def_.xml or "")
    if not encryption.decryptable:
        return None
    if not encryption.has_data or encryption.data is None:
        return ExportStatus.MISSING_ENCRYPTED_DATA
    plaintext = decryptor(
        encryption.data,
        encryption.key_id,
        encryption.local_key,
        row.submission.instance_id,
        encryption.index,
    )
    return schema_service.parse_xml(plaintext)


def root_table_header(fields: Sequence[FlatField]) -> list[str]:
    return (
        ["SubmissionDate", INSTANCE_ID_COLUMN]
        + [f.column_name for f in _leaf_fields(fields)]
        + ["KEY", "SubmitterID", "SubmitterName", "Status"]
    )


def child_table_header(repeat: FlatField) -> list[str]:
    return [f.column_name for f in _leaf_fields(repeat.children)] + ["PARENT_KEY", "KEY"]


def render_root_rows(rows: Iterable[ExportRow], context: ExportContext) -> Iterator[list[Any]]:
    leaves = _leaf_fields(context.fields)
    for row in rows:
        body = _decrypted_body(row, context.decryptor)
        if body is None:
            continue
        submission = row.submission
        if isinstance(body, ExportStatus):
            values = [""] * len(leaves)
            status = body.value
        else:
            values = [_value(body, f.path) for f in leaves]
            status = ExportStatus.OK.value
        yield (
            [submission.created_at, submission.instance_id]
            + values
            + [
                submission.instance_id,
                row.submitter.id if row.submitter is not None else None,
                row.submitter.display_name if row.submitter is not None else None,
                status,
            ]
        )


def _repeat_instances(
    element: ET.Element,
    key: str,
    chain: Sequence[FlatField],
) -> Iterator[tuple[ET.Element, str, str]]:
    repeat = chain[0]
    for number, instance in enumerate(_find_all(element, repeat.path), start=1):
        child_key = f"{key}/{repeat.table_name}[{number}]"
        if len(chain) == 1:
            yield instance, key, child_key
        else:
            yield from _repeat_instances(instance, child_key, chain[1:])


def render_child_rows(
    rows: Iterable[ExportRow],
    chain: tuple[FlatField, ...],
    context: ExportContext,
) -> Iterator[list[Any]]:
    leaves = _leaf_fields(chain[-1].children)
    for row in rows:
        body = _decrypted_body(row, context.decryptor)
        if body is None or isinstance(body, ExportStatus):
            continue
        for instance, parent_key, key in _repeat_instances(body, row.submission.instance_id, chain):
            yield [_value(instance, f.path) for f in leaves] + [parent_key, key]


TableRenderer = Callable[[Iterable[ExportRow]], Iterator[list[Any]]]


def tables(context: ExportContext) -> list[tuple[str, list[str], TableRenderer]]:
    """(entry name, header, renderer) per CSV table, root table first."""
    xml_form_id = context.form.xml_form_id
    result: list[tuple[str, list[str], TableRenderer]] = [
        (
            f"{xml_form_id}.csv",
            root_table_header(context.fields),
            lambda rows: render_root_rows(rows, context),
        )
    ]
    for chain in repeat_chains(context.fields):
        result.append(
            (
                f"{xml_form_id}-{chain[-1].table_name}.csv",
                child_table_header(chain[-1]),
                lambda rows, chain=chain: render_child_rows(rows, chain, context),
            )
        )
    return result


# =============================================================================
# Zip streaming
# =============================================================================

class _ZipSink(io.RawIOBase):
    """Write-only, non-seekable buffer that the zip writer drains into."""

    def __init__(self) -> None:
        super().__init__()
        self._buffer = bytearray()
        self._position = 0

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        self._buffer += data
        self._position += len(data)
        return len(data)

    def tell(self) -> int:
        return self._position

    def flush(self) -> None:
        pass

    def drain(self) -> bytes:
        chunk = bytes(self._buffer)
        self._buffer.clear()
        return chunk


def prepare_export(db: Session, form: Form, passphrase: str | None = None) -> ExportContext:
    """
    Resolve keys and column layout before any byte is streamed, so a wrong
    passphrase fails the request instead of truncating the archive.
    """
    private_keys = (
        key_service.unlock_for_scope(db, passphrase, form_id=form.id) if passphrase else {}
    )
    form_def = form_service.get_current_def(db, form)
    fields = (
        schema_service.flatten(schema_service.get_form_schema(form_def.xml))
        if form_def is not None
        else []
    )
    return ExportContext(
        form=form,
        fields=fields,
        key_ids=set(private_keys),
        decryptor=key_service.build_decryptor(private_keys),
    )


def stream_export_zip(db: Session, context: ExportContext) -> Iterator[bytes]:
    """
    Stream the combined export archive.

    Closing this generator closes whichever cursor is open and stops all
    further decryption. Any failure ends the stream with an exception so a
    truncated archive is never mistaken for a complete one.
    """
    log_context = build_log_context(project_id=context.form.project_id, form_id=context.form.id)
    logger.info("export_started", extra=log_context)
    sink = _ZipSink()
    try:
        with zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
            for name, header, render in tables(context):
                rows = submission_service.stream_export_rows(db, context.form.id, context.key_ids)
                with closing(rows), archive.open(name, mode="w") as entry:
                    entry.write(_write_csv_row(header))
                    for values in render(rows):
                        entry.write(_write_csv_row(values))
                        chunk = sink.drain()
                        if chunk:
                            yield chunk
                chunk = sink.drain()
                if chunk:
                    yield chunk

            attachments = submission_service.stream_export_attachments(
                db, context.form.id, context.key_ids
            )
            with closing(attachments):
                for name, content in stream_attachments(attachments, context.decryptor, context.media_dir):
                    with archive.open(name, mode="w") as entry:
                        entry.write(content)
                    chunk = sink.drain()
                    if chunk:
                        yield chunk
        chunk = sink.drain()
        if chunk:
            yield chunk
    except GeneratorExit:
        logger.info("export_cancelled", extra=log_context)
        raise
    except Exception:
        logger.exception("export_failed", extra=log_context)
        raise
    logger.info("export_completed", extra=log_context)


def write_export(db: Session, context: ExportContext, out: io.BufferedIOBase) -> int:
    """Write the export archive to a file object; returns the byte count."""
    written = 0
    for chunk in stream_export_zip(db, context):
        out.write(chunk)
        written += len(chunk)
    return written
