"""Tests for tabular zip exports: flattening, decryption, key scoping and streaming."""

import csv
import io
import logging
import zipfile

import pytest
from sqlalchemy.exc import OperationalError

from formvault.core import crypto
from formvault.core.errors import UndecryptableError
from formvault.db.enums import ExportStatus
from formvault.db.models import Form
from formvault.services import (
    export_service,
    form_service,
    key_service,
    submission_ingest_service,
    submission_service,
)


ROOT_HEADER_HOUSEHOLD = [
    "SubmissionDate",
    "meta-instanceID",
    "village",
    "photo",
    "KEY",
    "SubmitterID",
    "SubmitterName",
    "Status",
]


def _export(db, form, passphrase=None) -> zipfile.ZipFile:
    context = export_service.prepare_export(db, form, passphrase)
    out = io.BytesIO()
    written = export_service.write_export(db, context, out)
    assert written == len(out.getvalue())
    return zipfile.ZipFile(io.BytesIO(out.getvalue()))


def _rows(archive: zipfile.ZipFile, name: str) -> list[list[str]]:
    return list(csv.reader(io.StringIO(archive.read(name).decode("utf-8"))))


def _submit(db, form, body):
    _, submission_def, _ = submission_ingest_service.create_all(
        db, submission_ingest_service.parse(body), form
    )
    db.commit()
    return submission_def


def _submit_encrypted(db, form, encrypt_submission, plaintext, instance_id, media=None, upload=True):
    """Submit an encrypted envelope against the form's current key; optionally upload its parts."""
    form_def = form_service.get_current_def(db, form)
    encrypted = encrypt_submission(
        form_def.key.public,
        form.xml_form_id,
        form_def.version,
        plaintext,
        instance_id=instance_id,
        media=media,
    )
    submission_def = _submit(db, form, encrypted.envelope)
    if upload:
        for name, content in encrypted.media.items():
            submission_service.attach_blob(db, submission_def, name, content)
        submission_service.attach_blob(db, submission_def, encrypted.body_name, encrypted.body)
        db.commit()
    return submission_def


# =============================================================================
# CSV helpers
# =============================================================================

class TestCsvHelpers:
    def test_formula_prefixes_are_escaped(self):
        line = export_service._write_csv_row(["=SUM(A1)", "+1", "-1", "@cmd", "plain"]).decode("utf-8")
        assert line == "'=SUM(A1),'+1,'-1,'@cmd,plain\r\n"

    def test_none_is_blank(self):
        assert export_service._write_csv_row([None, 3]).decode("utf-8") == ",3\r\n"

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("photo.jpg", "photo.jpg"),
            ("a/b:c?.jpg", "abc.jpg"),
            ("..", ""),
            ("con.txt", ""),
            ("trailing. ", "trailing"),
        ],
    )
    def test_sanitize_filename(self, name, expected):
        assert export_service.sanitize_filename(name) == expected

    def test_unusable_attachment_name_falls_back_to_index(self):
        attachment = submission_service.ExportAttachment(
            name="..", content=b"x", index=2, key_id=None, instance_id="uuid:a", local_key=None
        )

        entries = list(export_service.stream_attachments([attachment], key_service.build_decryptor({})))

        assert entries == [("media/attachment-2", b"x")]


# =============================================================================
# Plaintext exports
# =============================================================================

class TestPlaintextExport:
    def test_repeats_become_child_tables(self, db, household_form, household_submission):
        _submit(
            db,
            household_form,
            household_submission("uuid:h1", [("Ann", "40"), ("Ben", "12")], photo="house.jpg"),
        )

        archive = _export(db, household_form)

        root = _rows(archive, "household.csv")
        assert root[0] == ROOT_HEADER_HOUSEHOLD
        assert len(root) == 2
        assert root[1][1:] == ["uuid:h1", "Riverside", "house.jpg", "uuid:h1", "", "", ""]

        members = _rows(archive, "household-member.csv")
        assert members == [
            ["name", "age", "PARENT_KEY", "KEY"],
            ["Ann", "40", "uuid:h1", "uuid:h1/member[1]"],
            ["Ben", "12", "uuid:h1", "uuid:h1/member[2]"],
        ]

    def test_missing_media_is_an_empty_entry(self, db, household_form, household_submission):
        _submit(db, household_form, household_submission("uuid:m", [], photo="house.jpg"))

        archive = _export(db, household_form)

        assert archive.read("media/house.jpg") == b""

    def test_uploaded_media_is_included(self, db, household_form, household_submission):
        submission_def = _submit(db, household_form, household_submission("uuid:u", [], photo="house.jpg"))
        submission_service.attach_blob(db, submission_def, "house.jpg", b"\xff\xd8jpeg")
        db.commit()

        archive = _export(db, household_form)

        assert archive.read("media/house.jpg") == b"\xff\xd8jpeg"

    def test_submitter_columns(self, db, simple_form, actor, simple_submission):
        submission_ingest_service.create_all(
            db, submission_ingest_service.parse(simple_submission("uuid:a")), simple_form, actor=actor
        )
        db.commit()

        [_, row] = _rows(_export(db, simple_form), "simple.csv")
        assert row[-3:] == [str(actor.id), "Field Worker", ""]

    def test_formula_values_are_escaped(self, db, simple_form, simple_submission):
        _submit(db, simple_form, simple_submission("uuid:f", name="=HYPERLINK(&quot;x&quot;)"))

        [_, row] = _rows(_export(db, simple_form), "simple.csv")
        assert row[2] == "'=HYPERLINK(\"x\")"

    def test_empty_form_exports_headers_only(self, db, simple_form):
        archive = _export(db, simple_form)

        assert archive.namelist() == ["simple.csv"]
        assert len(_rows(archive, "simple.csv")) == 1


# =============================================================================
# Encrypted exports
# =============================================================================

class TestEncryptedExport:
    @pytest.fixture
    def encrypted_household(self, db, project, household_form, passphrase):
        key_service.set_managed_encryption(db, project, passphrase)
        db.commit()
        return household_form

    def test_decrypts_body_and_media(
        self, db, encrypted_household, passphrase, encrypt_submission, household_submission
    ):
        photo = bytes(range(256)) * 3
        _submit_encrypted(
            db,
            encrypted_household,
            encrypt_submission,
            household_submission("uuid:e1", [("Ann", "40"), ("Ben", "12")], photo="house.jpg"),
            "uuid:e1",
            media={"house.jpg": photo},
        )

        archive = _export(db, encrypted_household, passphrase)

        root = _rows(archive, "household.csv")
        assert root[1][1:] == ["uuid:e1", "Riverside", "house.jpg", "uuid:e1", "", "", ""]
        members = _rows(archive, "household-member.csv")
        assert [r[:2] for r in members[1:]] == [["Ann", "40"], ["Ben", "12"]]
        assert archive.read("media/house.jpg") == photo

    def test_decrypted_body_is_byte_identical(
        self, db, encrypted_household, passphrase, encrypt_submission, household_submission
    ):
        plaintext = household_submission("uuid:bytes", [("Ann", "40")], photo=None)
        _submit_encrypted(db, encrypted_household, encrypt_submission, plaintext, "uuid:bytes")

        private_keys = key_service.unlock_for_scope(db, passphrase, form_id=encrypted_household.id)
        decrypt = key_service.build_decryptor(private_keys)
        [row] = submission_service.stream_export_rows(db, encrypted_household.id, set(private_keys))

        encryption = row.encryption
        assert encryption.decryptable is True
        body = decrypt(encryption.data, encryption.key_id, encryption.local_key, "uuid:bytes", encryption.index)
        assert body == plaintext.encode("utf-8")

    def test_only_unlocked_historical_keys_decrypt(
        self, db, encrypted_household, passphrase, encrypt_submission, household_submission
    ):
        _submit_encrypted(
            db,
            encrypted_household,
            encrypt_submission,
            household_submission("uuid:first-key", [("Ann", "40")]),
            "uuid:first-key",
        )
        material = crypto.generate_managed_key("another passphrase")
        rotated = key_service.ensure(db, material.public, private=material.private, managed=True)
        form_service.create_encrypted_def(
            db,
            encrypted_household,
            form_service.get_current_def(db, encrypted_household),
            key_id=rotated,
            public_key=material.public,
            version_suffix="[rotated]",
        )
        db.commit()
        _submit_encrypted(
            db,
            encrypted_household,
            encrypt_submission,
            household_submission("uuid:second-key", [("Ben", "12")]),
            "uuid:second-key",
        )

        context = export_service.prepare_export(db, encrypted_household, passphrase)
        streamed = submission_service.stream_export_rows(db, encrypted_household.id, context.key_ids)
        rows = {r.submission.instance_id: r for r in streamed}
        assert rows["uuid:first-key"].encryption.data is not None
        assert rows["uuid:second-key"].encryption.has_data is True
        assert rows["uuid:second-key"].encryption.data is None

        root = _rows(_export(db, encrypted_household, passphrase), "household.csv")
        assert [r[1] for r in root[1:]] == ["uuid:first-key"]

    def test_rows_outside_key_set_are_left_out(
        self, db, encrypted_household, encrypt_submission, household_submission
    ):
        _submit_encrypted(
            db,
            encrypted_household,
            encrypt_submission,
            household_submission("uuid:locked", [("Ann", "40")], photo="house.jpg"),
            "uuid:locked",
            media={"house.jpg": b"secret"},
        )

        [row] = submission_service.stream_export_rows(db, encrypted_household.id, set())
        assert row.encryption.has_data is True
        assert row.encryption.decryptable is False
        assert row.encryption.data is None

        archive = _export(db, encrypted_household)
        assert len(_rows(archive, "household.csv")) == 1
        assert len(_rows(archive, "household-member.csv")) == 1
        assert "media/house.jpg" not in archive.namelist()

    def test_plaintext_and_encrypted_rows_mix(
        self, db, project, household_form, passphrase, encrypt_submission, household_submission
    ):
        _submit(db, household_form, household_submission("uuid:plain", [], photo=None))
        key_service.set_managed_encryption(db, project, passphrase)
        db.commit()
        _submit_encrypted(
            db,
            household_form,
            encrypt_submission,
            household_submission("uuid:secret", [], photo=None),
            "uuid:secret",
        )

        without = _rows(_export(db, household_form), "household.csv")
        assert [r[1] for r in without[1:]] == ["uuid:plain"]

        with_passphrase = _rows(_export(db, household_form, passphrase), "household.csv")
        assert [r[1] for r in with_passphrase[1:]] == ["uuid:secret", "uuid:plain"]

    def test_missing_body_is_flagged(
        self, db, encrypted_household, passphrase, encrypt_submission, household_submission
    ):
        _submit_encrypted(
            db,
            encrypted_household,
            encrypt_submission,
            household_submission("uuid:nobody", [("Ann", "40")]),
            "uuid:nobody",
            upload=False,
        )

        root = _rows(_export(db, encrypted_household, passphrase), "household.csv")
        assert root[1][2:4] == ["", ""]
        assert root[1][-1] == ExportStatus.MISSING_ENCRYPTED_DATA.value

    def test_wrong_passphrase_fails_before_streaming(self, db, encrypted_household):
        with pytest.raises(UndecryptableError):
            export_service.prepare_export(db, encrypted_household, "definitely wrong")


# =============================================================================
# Streaming
# =============================================================================

class TestStreaming:
    def test_closing_the_stream_stops_the_export(self, db, simple_form, simple_submission, caplog):
        for number in range(5):
            _submit(db, simple_form, simple_submission(f"uuid:s{number}"))
        context = export_service.prepare_export(db, simple_form)

        caplog.set_level(logging.INFO, logger="formvault.services.export_service")
        stream = export_service.stream_export_zip(db, context)
        assert next(stream)
        stream.close()

        messages = [r.getMessage() for r in caplog.records]
        assert "export_cancelled" in messages
        assert "export_completed" not in messages
        assert db.query(Form).count() == 1

    def test_completed_stream_is_a_valid_archive(self, db, simple_form, simple_submission, caplog):
        _submit(db, simple_form, simple_submission("uuid:done"))
        context = export_service.prepare_export(db, simple_form)

        caplog.set_level(logging.INFO, logger="formvault.services.export_service")
        data = b"".join(export_service.stream_export_zip(db, context))

        archive = zipfile.ZipFile(io.BytesIO(data))
        assert archive.testzip() is None
        assert "export_completed" in [r.getMessage() for r in caplog.records]

    def test_corrupt_body_fails_the_export(
        self, db, project, household_form, passphrase, encrypt_submission, household_submission, caplog
    ):
        key_service.set_managed_encryption(db, project, passphrase)
        db.commit()
        form_def = form_service.get_current_def(db, household_form)
        encrypted = encrypt_submission(
            form_def.key.public,
            household_form.xml_form_id,
            form_def.version,
            household_submission("uuid:corrupt", [("Ann", "40")]),
            instance_id="uuid:corrupt",
        )
        submission_def = _submit(db, household_form, encrypted.envelope)
        submission_service.attach_blob(db, submission_def, encrypted.body_name, encrypted.body[:-1])
        db.commit()
        context = export_service.prepare_export(db, household_form, passphrase)

        caplog.set_level(logging.INFO, logger="formvault.services.export_service")
        with pytest.raises(UndecryptableError):
            export_service.write_export(db, context, io.BytesIO())

        messages = [r.getMessage() for r in caplog.records]
        assert "export_failed" in messages
        assert "export_completed" not in messages

    def test_storage_error_mid_stream_fails_the_export(
        self, db, simple_form, simple_submission, monkeypatch, caplog
    ):
        for number in range(3):
            _submit(db, simple_form, simple_submission(f"uuid:lost{number}"))
        context = export_service.prepare_export(db, simple_form)
        stream_rows = submission_service.stream_export_rows

        def rows_then_disconnect(*args, **kwargs):
            rows = stream_rows(*args, **kwargs)
            try:
                yield next(rows)
                raise OperationalError("SELECT submissions", {}, Exception("connection lost"))
            finally:
                rows.close()

        monkeypatch.setattr(submission_service, "stream_export_rows", rows_then_disconnect)
        caplog.set_level(logging.INFO, logger="formvault.services.export_service")
        with pytest.raises(OperationalError):
            export_service.write_export(db, context, io.BytesIO())

        messages = [r.getMessage() for r in caplog.records]
        assert "export_failed" in messages
        assert "export_completed" not in messages
