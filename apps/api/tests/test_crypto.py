"""Tests for the managed-encryption primitives."""

import base64
import hashlib
import warnings

import pytest
from cryptography.utils import CryptographyDeprecationWarning

from formvault.core import crypto
from formvault.core.errors import UndecryptableError


@pytest.fixture(scope="module")
def managed_key():
    return crypto.generate_managed_key("a long enough passphrase", key_size=1024, iterations=1000)


def test_submission_iv_first_part_bumps_first_byte():
    key = bytes(range(32))
    seed = bytearray(hashlib.md5(b"uuid:abc" + key).digest())
    seed[0] = (seed[0] + 1) % 256

    assert crypto.submission_iv("uuid:abc", key, 0) == bytes(seed)


def test_submission_iv_wraps_after_sixteen_parts():
    key = bytes(32)
    seed = bytearray(hashlib.md5(b"uuid:abc" + key).digest())
    for i in range(18):
        seed[i % 16] = (seed[i % 16] + 1) % 256

    assert crypto.submission_iv("uuid:abc", key, 17) == bytes(seed)


def test_each_part_index_gets_distinct_iv():
    key = crypto.generate_symmetric_key()
    ivs = {crypto.submission_iv("uuid:1", key, index) for index in range(20)}
    assert len(ivs) == 20


def test_encrypt_then_decrypt_part():
    key = crypto.generate_symmetric_key()
    plaintext = b"<data id='x'><name>Alice</name></data>"

    ciphertext = crypto.encrypt_part(plaintext, key, "uuid:1", 3)

    assert ciphertext != plaintext
    assert len(ciphertext) % 16 == 0
    assert crypto.decrypt_part(ciphertext, key, "uuid:1", 3) == plaintext


def test_same_plaintext_differs_per_index():
    key = crypto.generate_symmetric_key()
    first = crypto.encrypt_part(b"same bytes", key, "uuid:1", 0)
    second = crypto.encrypt_part(b"same bytes", key, "uuid:1", 1)
    assert first != second


def test_part_cipher_raises_no_deprecation_warning():
    key = crypto.generate_symmetric_key()

    with warnings.catch_warnings():
        warnings.simplefilter("error", CryptographyDeprecationWarning)
        ciphertext = crypto.encrypt_part(b"<data/>", key, "uuid:w", 0)
        assert crypto.decrypt_part(ciphertext, key, "uuid:w", 0) == b"<data/>"


def test_decrypt_part_rejects_wrong_key_length():
    with pytest.raises(UndecryptableError):
        crypto.decrypt_part(b"\x00" * 16, b"short", "uuid:1", 0)


def test_managed_key_unlocks_with_its_passphrase(managed_key):
    private_key = crypto.unlock_private_key(managed_key.private, "a long enough passphrase")

    assert crypto.public_key_to_text(private_key.public_key()) == managed_key.public
    assert managed_key.private["iterations"] == 1000
    assert set(managed_key.private) == {"privkey", "salt", "iv", "iterations"}


def test_managed_key_rejects_wrong_passphrase(managed_key):
    with pytest.raises(UndecryptableError):
        crypto.unlock_private_key(managed_key.private, "not the passphrase at all")


def test_malformed_private_envelope_is_undecryptable():
    with pytest.raises(UndecryptableError):
        crypto.unlock_private_key({"salt": "AAAA"}, "whatever passphrase")


def test_wrap_and_unwrap_symmetric_key(managed_key):
    private_key = crypto.unlock_private_key(managed_key.private, "a long enough passphrase")
    symmetric_key = crypto.generate_symmetric_key()

    wrapped = crypto.wrap_symmetric_key(managed_key.public, symmetric_key)

    assert base64.b64decode(wrapped) != symmetric_key
    assert crypto.unwrap_symmetric_key(private_key, wrapped) == symmetric_key


def test_unwrap_with_other_key_is_undecryptable(managed_key):
    other = crypto.generate_managed_key("another passphrase!!", key_size=1024, iterations=1000)
    other_private = crypto.unlock_private_key(other.private, "another passphrase!!")
    wrapped = crypto.wrap_symmetric_key(managed_key.public, crypto.generate_symmetric_key())

    with pytest.raises(UndecryptableError):
        crypto.unwrap_symmetric_key(other_private, wrapped)


def test_load_public_key_accepts_pem():
    material = crypto.generate_managed_key("pem passphrase here", key_size=1024, iterations=1000)
    body = material.public
    pem = "-----BEGIN PUBLIC KEY-----\n" + "\n".join(
        body[i:i + 64] for i in range(0, len(body), 64)
    ) + "\n-----END PUBLIC KEY-----\n"

    assert crypto.public_key_to_text(crypto.load_public_key(pem)) == body


def test_load_public_key_rejects_garbage():
    with pytest.raises(UndecryptableError):
        crypto.load_public_key("bm90IGEga2V5")
