"""Managed-encryption primitives.

Submissions are protected with envelope encryption: the client generates a
random 256-bit symmetric key per submission, encrypts the body and each media
file with AES-256-CFB under an IV derived from (instance id, symmetric key,
part index), and wraps the symmetric key with the project's RSA public key
(OAEP, SHA-1). The wrapped key travels inline in the envelope as
``base64EncryptedKey`` and is stored on the def as ``local_key``.

Managed private keys are kept server-side as PKCS#8 DER encrypted with
AES-256-CBC under a PBKDF2-HMAC-SHA256 key derived from the passphrase.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import hashes, padding, serialization
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

try:
    from cryptography.hazmat.decrepit.ciphers.modes import CFB
except ImportError:  # releases before CFB moved to the decrepit package
    CFB = modes.CFB

from formvault.core.config import settings
from formvault.core.errors import UndecryptableError


SYMMETRIC_KEY_BYTES = 32
IV_BYTES = 16
SALT_BYTES = 16
AES_BLOCK_BITS = 128

_OAEP = asym_padding.OAEP(
    mgf=asym_padding.MGF1(algorithm=hashes.SHA1()),
    algorithm=hashes.SHA1(),
    label=None,
)


@dataclass(frozen=True)
class ManagedKeyMaterial:
    """A freshly generated managed keypair, ready to be stored."""

    public: str  # base64 DER SubjectPublicKeyInfo
    private: dict[str, Any]  # {privkey, salt, iv, iterations}, all base64 except iterations


# =============================================================================
# Encoding helpers
# =============================================================================

def _b64decode(value: str, what: str) -> bytes:
    try:
        return base64.b64decode(value, validate=False)
    except (binascii.Error, ValueError):
        raise UndecryptableError(f"Could not decode {what}.")


def strip_pem_envelope(pem: str) -> str:
    """Return the base64 body of a PEM document as a single line."""
    lines = [line.strip() for line in pem.strip().splitlines()]
    return "".join(line for line in lines if line and not line.startswith("-----"))


def public_key_to_text(public_key: rsa.RSAPublicKey) -> str:
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return base64.b64encode(der).decode("ascii")


def load_public_key(public: str) -> rsa.RSAPublicKey:
    """Load a base64 DER (or PEM) SubjectPublicKeyInfo public key."""
    der = _b64decode(strip_pem_envelope(public), "public key")
    try:
        key = serialization.load_der_public_key(der)
    except ValueError:
        raise UndecryptableError("Could not load public key.")
    if not isinstance(key, rsa.RSAPublicKey):
        raise UndecryptableError("Managed encryption requires an RSA public key.")
    return key


# =============================================================================
# Managed keypairs
# =============================================================================

def _derive_wrapping_key(passphrase: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=SYMMETRIC_KEY_BYTES,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def generate_managed_key(
    passphrase: str,
    *,
    key_size: int | None = None,
    iterations: int | None = None,
) -> ManagedKeyMaterial:
    """Generate an RSA keypair and protect its private half with the passphrase."""
    if not passphrase:
        raise ValueError("A passphrase is required to generate a managed key")
    iterations = iterations or settings.KEY_DERIVATION_ITERATIONS
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=key_size or settings.MANAGED_KEY_SIZE,
    )
    private_der = private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )

    salt = os.urandom(SALT_BYTES)
    iv = os.urandom(IV_BYTES)
    wrapping_key = _derive_wrapping_key(passphrase, salt, iterations)
    padder = padding.PKCS7(AES_BLOCK_BITS).padder()
    padded = padder.update(private_der) + padder.finalize()
    encryptor = Cipher(algorithms.AES(wrapping_key), modes.CBC(iv)).encryptor()
    privkey = encryptor.update(padded) + encryptor.finalize()

    return ManagedKeyMaterial(
        public=public_key_to_text(private_key.public_key()),
        private={
            "privkey": base64.b64encode(privkey).decode("ascii"),
            "salt": base64.b64encode(salt).decode("ascii"),
            "iv": base64.b64encode(iv).decode("ascii"),
            "iterations": iterations,
        },
    )


def unlock_private_key(private: dict[str, Any], passphrase: str) -> rsa.RSAPrivateKey:
    """Recover a managed private key; raises UndecryptableError on a wrong passphrase."""
    try:
        salt = _b64decode(private["salt"], "key salt")
        iv = _b64decode(private["iv"], "key iv")
        ciphertext = _b64decode(private["privkey"], "private key")
        iterations = int(private["iterations"])
    except (KeyError, TypeError, ValueError):
        raise UndecryptableError("Stored private key envelope is malformed.")

    wrapping_key = _derive_wrapping_key(passphrase, salt, iterations)
    decryptor = Cipher(algorithms.AES(wrapping_key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    try:
        unpadder = padding.PKCS7(AES_BLOCK_BITS).unpadder()
        private_der = unpadder.update(padded) + unpadder.finalize()
        key = serialization.load_der_private_key(private_der, password=None)
    except (ValueError, TypeError, InvalidKey):
        raise UndecryptableError()
    if not isinstance(key, rsa.RSAPrivateKey):
        raise UndecryptableError()
    return key


# =============================================================================
# Submission envelope encryption
# =============================================================================

def generate_symmetric_key() -> bytes:
    return os.urandom(SYMMETRIC_KEY_BYTES)


def wrap_symmetric_key(public: str | rsa.RSAPublicKey, symmetric_key: bytes) -> str:
    """Client side: wrap a submission key for transmission as base64EncryptedKey."""
    public_key = load_public_key(public) if isinstance(public, str) else public
    return base64.b64encode(public_key.encrypt(symmetric_key, _OAEP)).decode("ascii")


def unwrap_symmetric_key(private_key: rsa.RSAPrivateKey, local_key: str) -> bytes:
    wrapped = _b64decode(local_key, "wrapped submission key")
    try:
        return private_key.decrypt(wrapped, _OAEP)
    except ValueError:
        raise UndecryptableError()


def submission_iv(instance_id: str, symmetric_key: bytes, index: int) -> bytes:
    """IV for the part at ``index``: md5(instance id || key), bumped once per part up to index."""
    seed = bytearray(hashlib.md5(instance_id.encode("utf-8") + symmetric_key).digest())
    for i in range(index + 1):
        pos = i % IV_BYTES
        seed[pos] = (seed[pos] + 1) % 256
    return bytes(seed)


def encrypt_part(plaintext: bytes, symmetric_key: bytes, instance_id: str, index: int) -> bytes:
    """Client side: encrypt one submission part (body or media file)."""
    padder = padding.PKCS7(AES_BLOCK_BITS).padder()
    padded = padder.update(plaintext) + padder.finalize()
    iv = submission_iv(instance_id, symmetric_key, index)
    encryptor = Cipher(algorithms.AES(symmetric_key), CFB(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def decrypt_part(ciphertext: bytes, symmetric_key: bytes, instance_id: str, index: int) -> bytes:
    """Decrypt one submission part given explicit key-derivation inputs."""
    if len(symmetric_key) != SYMMETRIC_KEY_BYTES:
        raise UndecryptableError()
    iv = submission_iv(instance_id, symmetric_key, index)
    decryptor = Cipher(algorithms.AES(symmetric_key), CFB(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    try:
        unpadder = padding.PKCS7(AES_BLOCK_BITS).unpadder()
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError:
        raise UndecryptableError()
