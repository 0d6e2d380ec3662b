"""Reversible secret-value codec.

Encrypted values travel through plaintext YAML in the form::

    $enc <token>

where ``<token>`` is the URL-safe base64 encoding of a random salt followed by
a Fernet token. The Fernet key is derived from the process-wide passphrase
with PBKDF2-HMAC-SHA256 and the salt, so two encryptions of the same plaintext
never produce the same value.
"""
from __future__ import annotations

import base64
import binascii
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import CRYPT_KEY_ENV_VAR

LOGGER = logging.getLogger(__name__)

MARKER = "$enc"
SALT_LENGTH = 16
KDF_ITERATIONS = 100_000


class VariableKind(str, Enum):
    """Wire type of a Cloud Manager variable."""

    STRING = "string"
    SECRET_STRING = "secretString"


class CodecError(RuntimeError):
    """Base class for secret codec failures."""


class DecryptionError(CodecError):
    """Raised when a marked value cannot be decrypted with the current key."""


class MissingEncryptionKey(CodecError):
    """Raised when an encrypted value is met and no key material is loaded."""


class EncryptedValueNotAllowedForPlainVariable(CodecError):
    """Raised when an encrypted value is attached to a ``string`` variable."""


@dataclass(frozen=True)
class PlainValue:
    """Value stored verbatim in the input."""

    text: str

    @property
    def encrypted(self) -> bool:
        return False


@dataclass(frozen=True)
class EncryptedValue:
    """Marked ciphertext; only a :class:`SecretCodec` can open it."""

    token: str

    @property
    def encrypted(self) -> bool:
        return True

    @property
    def marked(self) -> str:
        return f"{MARKER} {self.token}"

    def __repr__(self) -> str:
        return "EncryptedValue(token='<encrypted>')"


VariableValue = PlainValue | EncryptedValue


@dataclass(frozen=True)
class ResolvedValue:
    """Plaintext ready to be sent to the server."""

    text: str
    secret: bool = False

    def __repr__(self) -> str:
        if self.secret:
            return "ResolvedValue('***')"
        return f"ResolvedValue({self.text!r})"

    def __str__(self) -> str:
        return "***" if self.secret else self.text


def parse_value(raw: object) -> VariableValue:
    """Classify *raw* as plain or encrypted.

    A value is encrypted when its first whitespace-separated token is the
    marker. It must then be followed by exactly one ciphertext token.
    """
    text = "" if raw is None else str(raw)
    parts = text.split()
    if not parts or parts[0] != MARKER:
        return PlainValue(text)
    if len(parts) != 2:
        raise DecryptionError(
            f"Encrypted values must look like '{MARKER} <token>'; "
            f"found {len(parts) - 1} token(s) after the marker."
        )
    return EncryptedValue(parts[1])


def _derive_key(passphrase: bytes, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase))


def encrypt(plaintext: str, key: bytes) -> str:
    """Return ``"$enc <token>"`` for *plaintext* under *key*."""
    if not key:
        raise MissingEncryptionKey("Encryption key material is empty.")
    salt = os.urandom(SALT_LENGTH)
    fernet_token = Fernet(_derive_key(key, salt)).encrypt(plaintext.encode("utf-8"))
    raw = salt + base64.urlsafe_b64decode(fernet_token)
    token = base64.urlsafe_b64encode(raw).decode("ascii")
    return f"{MARKER} {token}"


def decrypt(value: str | EncryptedValue, key: bytes) -> str:
    """Return the plaintext behind *value*.

    *value* may be the marked form, a bare token or an :class:`EncryptedValue`.
    """
    if not key:
        raise MissingEncryptionKey("Encryption key material is empty.")
    if isinstance(value, EncryptedValue):
        token = value.token
    else:
        parsed = parse_value(value)
        token = parsed.token if isinstance(parsed, EncryptedValue) else parsed.text.strip()
    try:
        raw = base64.urlsafe_b64decode(token.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError, ValueError) as exc:
        raise DecryptionError("Encrypted value is not valid base64.") from exc
    if len(raw) <= SALT_LENGTH:
        raise DecryptionError("Encrypted value is truncated.")
    salt, body = raw[:SALT_LENGTH], raw[SALT_LENGTH:]
    try:
        plaintext = Fernet(_derive_key(key, salt)).decrypt(base64.urlsafe_b64encode(body))
    except InvalidToken as exc:
        raise DecryptionError("Unable to decrypt value; wrong key or corrupted data.") from exc
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionError("Decrypted value is not valid UTF-8.") from exc


def resolve(value: VariableValue, kind: VariableKind, key: bytes | None) -> ResolvedValue:
    """Turn a parsed variable value into the plaintext to submit."""
    if isinstance(value, PlainValue):
        return ResolvedValue(value.text, secret=kind is VariableKind.SECRET_STRING)
    if kind is not VariableKind.SECRET_STRING:
        raise EncryptedValueNotAllowedForPlainVariable(
            "Encrypted values are only allowed for secretString variables."
        )
    if not key:
        raise MissingEncryptionKey(
            f"An encrypted value was found but no key is configured; set {CRYPT_KEY_ENV_VAR} "
            "or provide a key file."
        )
    return ResolvedValue(decrypt(value, key), secret=True)


class SecretCodec:
    """Codec bound to one key; injected wherever values are resolved."""

    def __init__(self, key: bytes | None) -> None:
        self._key = key or None

    def __repr__(self) -> str:
        state = "loaded" if self._key else "missing"
        return f"SecretCodec(key=<{state}>)"

    @property
    def has_key(self) -> bool:
        return self._key is not None

    def require_key(self) -> bytes:
        if self._key is None:
            raise MissingEncryptionKey(
                f"No encryption key configured; set {CRYPT_KEY_ENV_VAR} or provide a key file."
            )
        return self._key

    def encrypt(self, plaintext: str) -> str:
        return encrypt(plaintext, self.require_key())

    def decrypt(self, value: str | EncryptedValue) -> str:
        return decrypt(value, self.require_key())

    def resolve(self, value: VariableValue, kind: VariableKind) -> ResolvedValue:
        return resolve(value, kind, self._key)


def load_key_material(
    env: Mapping[str, str] | None = None,
    key_file: Path | None = None,
) -> bytes | None:
    """Return key material from the environment or *key_file*.

    The environment variable wins. Surrounding whitespace is stripped in both
    cases; an empty result counts as no key.
    """
    resolved_env = os.environ if env is None else env
    from_env = resolved_env.get(CRYPT_KEY_ENV_VAR, "").strip()
    if from_env:
        LOGGER.debug("Using encryption key from %s", CRYPT_KEY_ENV_VAR)
        return from_env.encode("utf-8")
    if key_file is None or not key_file.exists():
        return None
    try:
        content = key_file.read_bytes().strip()
    except OSError as exc:
        raise MissingEncryptionKey(f"Unable to read key file {key_file}: {exc}") from exc
    if not content:
        return None
    LOGGER.debug("Using encryption key from %s", key_file)
    return content


__all__ = [
    "CodecError",
    "DecryptionError",
    "EncryptedValue",
    "EncryptedValueNotAllowedForPlainVariable",
    "MARKER",
    "MissingEncryptionKey",
    "PlainValue",
    "ResolvedValue",
    "SecretCodec",
    "VariableKind",
    "VariableValue",
    "decrypt",
    "encrypt",
    "load_key_material",
    "parse_value",
    "resolve",
]
