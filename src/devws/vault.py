"""
Secret encryption for workspace specs.

SecretVault wraps an age x25519 identity (via pyrage). Ciphertext is the
ASCII-armored age format with its line breaks replaced by '|', so one secret
fits on one line of a YAML or TOML document:

    secrets:
      dbPassword: '-----BEGIN AGE ENCRYPTED FILE-----|YWdl...|-----END AGE ENCRYPTED FILE-----|'

Where the identity lives is up to an IdentityStore. FileIdentityStore keeps
it in a local file (DEVWS_AGE_IDENTITY); the volume-backed store lives in
devws.workspaces.identity.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pyrage

from devws.errors import ConfigError, ConflictError, DecryptionError, NotFoundError

logger = logging.getLogger("devws")

ARMOR_HEADER = "-----BEGIN AGE ENCRYPTED FILE-----"
ARMOR_FOOTER = "-----END AGE ENCRYPTED FILE-----"
LINE_SEPARATOR = "|"
_ARMOR_WIDTH = 64
_SECRET_KEY_PREFIX = "AGE-SECRET-KEY-"
_AGE_MAGIC = b"age-encryption.org/"


# --------------------------
# Armor
# --------------------------

def is_encrypted(value: str) -> bool:
    """
    True if value is devws ciphertext (single-line or multi-line armor).

    The whole value must dearmor to an age payload; plaintext that merely
    starts with the armor header is not ciphertext.
    """
    if not isinstance(value, str) or not value.lstrip().startswith(ARMOR_HEADER):
        return False
    try:
        return dearmor(value).startswith(_AGE_MAGIC)
    except DecryptionError:
        return False


def armor(data: bytes) -> str:
    b64 = base64.b64encode(data).decode("ascii")
    lines = [ARMOR_HEADER]
    lines.extend(b64[i:i + _ARMOR_WIDTH] for i in range(0, len(b64), _ARMOR_WIDTH))
    lines.append(ARMOR_FOOTER)
    return "\n".join(lines) + "\n"


def dearmor(text: str) -> bytes:
    lines = [line.strip() for line in text.replace(LINE_SEPARATOR, "\n").splitlines() if line.strip()]
    if len(lines) < 3 or lines[0] != ARMOR_HEADER or lines[-1] != ARMOR_FOOTER:
        raise DecryptionError("malformed ciphertext: missing age armor")
    try:
        return base64.b64decode("".join(lines[1:-1]), validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError(f"malformed ciphertext: {e}") from e


# --------------------------
# Identity stores
# --------------------------

class IdentityStore(ABC):
    """
    Where the age identity text is kept.
    """

    @property
    @abstractmethod
    def location(self) -> str:
        """Human-readable location for messages."""

    @abstractmethod
    def exists(self) -> bool: ...

    @abstractmethod
    def read(self) -> str:
        """Return the identity file text. Raises NotFoundError if absent."""

    @abstractmethod
    def write(self, text: str) -> None: ...


class FileIdentityStore(IdentityStore):
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    @property
    def location(self) -> str:
        return str(self.path)

    def exists(self) -> bool:
        return self.path.is_file()

    def read(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise NotFoundError(f"No encryption identity at {self.path}; run `devws system init`") from e

    def write(self, text: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(text, encoding="utf-8")
        os.chmod(self.path, 0o600)


def parse_identity(text: str) -> "pyrage.x25519.Identity":
    """
    Parse an age identity file (comment lines allowed, as written by age-keygen).
    """
    for line in text.splitlines():
        line = line.strip()
        if line.startswith(_SECRET_KEY_PREFIX):
            try:
                return pyrage.x25519.Identity.from_str(line)
            except pyrage.IdentityError as e:
                raise ConfigError(f"invalid age identity: {e}") from e
    raise ConfigError("no AGE-SECRET-KEY line in identity")


def format_identity(identity: "pyrage.x25519.Identity") -> str:
    created = datetime.now(timezone.utc).replace(microsecond=0).isoformat()
    return (
        f"# created: {created}\n"
        f"# public key: {identity.to_public()}\n"
        f"{identity}\n"
    )


# --------------------------
# Vault
# --------------------------

class SecretVault:
    """
    Encrypts and decrypts secret values with the identity held by `store`.

    The identity is loaded lazily on first use and cached for the lifetime of
    the vault.
    """

    def __init__(self, store: IdentityStore) -> None:
        self.store = store
        self._identity: Optional[pyrage.x25519.Identity] = None

    def has_identity(self) -> bool:
        return self._identity is not None or self.store.exists()

    @property
    def identity(self) -> "pyrage.x25519.Identity":
        if self._identity is None:
            self._identity = parse_identity(self.store.read())
        return self._identity

    @property
    def public_key(self) -> str:
        return str(self.identity.to_public())

    def init(self, force: bool = False, identity: Optional[str] = None) -> str:
        """
        Generate (or import) the keypair and persist it. Returns the public key.

        An existing identity is only replaced with force=True; every secret
        encrypted under the old key becomes undecryptable.
        """
        if self.store.exists() and not force:
            raise ConflictError(f"Encryption identity already exists at {self.store.location}; use --force to replace it")
        new_identity = parse_identity(identity) if identity else pyrage.x25519.Identity.generate()
        self.store.write(format_identity(new_identity))
        self._identity = new_identity
        if force:
            logger.warning("Encryption identity replaced at %s; existing secrets can no longer be decrypted", self.store.location)
        return str(new_identity.to_public())

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt to the vault's own public key. Output is single-line armored text.
        """
        data = pyrage.encrypt(plaintext.encode("utf-8"), [self.identity.to_public()])
        return armor(data).replace("\n", LINE_SEPARATOR)

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt single-line or multi-line armored ciphertext.

        Raises:
            DecryptionError on malformed input or when the stored identity
            is not a recipient.
        """
        data = dearmor(ciphertext)
        try:
            plain = pyrage.decrypt(data, [self.identity])
        except pyrage.DecryptError as e:
            raise DecryptionError(f"cannot decrypt with identity from {self.store.location}: {e}") from e
        try:
            return plain.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError(f"decrypted secret is not UTF-8: {e}") from e


__all__ = [
    "ARMOR_HEADER",
    "ARMOR_FOOTER",
    "LINE_SEPARATOR",
    "is_encrypted",
    "armor",
    "dearmor",
    "IdentityStore",
    "FileIdentityStore",
    "parse_identity",
    "format_identity",
    "SecretVault",
]
