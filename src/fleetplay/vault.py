"""Passphrase-keyed encryption of variable values.

Values are stored in YAML files tagged ``!vault`` and stay encrypted in the
effective variable mapping; they are decrypted only when a consumer reads
them. The key is derived from the passphrase with PBKDF2-HMAC-SHA256 and the
payload is a Fernet token.

Envelope format::

    $FLEETPLAY_VAULT;1.0;FERNET
    <hex salt>
    <fernet token>
"""

import base64
import binascii
import os
from pathlib import Path
from typing import Any

import yaml
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .exceptions import VaultError

VAULT_HEADER = "$FLEETPLAY_VAULT;1.0;FERNET"
VAULT_TAG = "!vault"
PBKDF2_ITERATIONS = 390_000
SALT_BYTES = 16


class VaultSecret:
    """A passphrase used to derive vault keys.

    The passphrase is never included in string representations.
    """

    def __init__(self, passphrase: str | bytes) -> None:
        if isinstance(passphrase, str):
            passphrase = passphrase.encode()
        if not passphrase:
            raise VaultError("Vault passphrase is empty")
        self._passphrase = passphrase

    @classmethod
    def from_file(cls, path: str | Path) -> "VaultSecret":
        """Read a passphrase from a file, ignoring trailing newlines."""
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            raise VaultError(f"Cannot read vault password file {path}: {e}") from e
        return cls(data.rstrip(b"\r\n"))

    def derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        return base64.urlsafe_b64encode(kdf.derive(self._passphrase))

    def __repr__(self) -> str:
        return "VaultSecret(***)"


class Vault:
    """Encrypts and decrypts vault envelopes with one secret.

    Example:
        >>> vault = Vault(VaultSecret("s3cret"))
        >>> envelope = vault.encrypt("db-password")
        >>> vault.decrypt(envelope)
        'db-password'
    """

    def __init__(self, secret: VaultSecret) -> None:
        self.secret = secret
        self._keys: dict[bytes, Fernet] = {}

    def _fernet(self, salt: bytes) -> Fernet:
        if salt not in self._keys:
            self._keys[salt] = Fernet(self.secret.derive_key(salt))
        return self._keys[salt]

    def encrypt(self, plaintext: str) -> str:
        salt = os.urandom(SALT_BYTES)
        token = self._fernet(salt).encrypt(plaintext.encode())
        return "\n".join([VAULT_HEADER, salt.hex(), token.decode()]) + "\n"

    def decrypt(self, envelope: str) -> str:
        lines = [line.strip() for line in envelope.strip().splitlines() if line.strip()]
        if len(lines) < 3 or lines[0] != VAULT_HEADER:
            raise VaultError("Value is not a vault envelope")
        try:
            salt = bytes.fromhex(lines[1])
        except ValueError as e:
            raise VaultError(f"Malformed vault salt: {e}") from e
        token = "".join(lines[2:]).encode()
        try:
            return self._fernet(salt).decrypt(token).decode()
        except (InvalidToken, binascii.Error) as e:
            raise VaultError("Vault decryption failed (wrong passphrase?)") from e

    @staticmethod
    def is_encrypted(text: str) -> bool:
        return text.lstrip().startswith(VAULT_HEADER)


class EncryptedValue:
    """An encrypted scalar kept opaque until resolution time."""

    def __init__(self, envelope: str) -> None:
        self.envelope = envelope

    def decrypt(self, vault: "Vault | None") -> str:
        if vault is None:
            raise VaultError("Encrypted value found but no vault secret was supplied")
        return vault.decrypt(self.envelope)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EncryptedValue):
            return NotImplemented
        return self.envelope == other.envelope

    def __hash__(self) -> int:
        return hash(self.envelope)

    def __repr__(self) -> str:
        return "EncryptedValue(***)"


class VaultLoader(yaml.SafeLoader):
    """SafeLoader that understands the ``!vault`` tag."""


def _construct_vault(loader: yaml.SafeLoader, node: yaml.Node) -> EncryptedValue:
    return EncryptedValue(loader.construct_scalar(node))


VaultLoader.add_constructor(VAULT_TAG, _construct_vault)


def load_yaml(text: str) -> Any:
    """Parse YAML text, turning ``!vault`` scalars into EncryptedValue."""
    return yaml.load(text, Loader=VaultLoader)


def format_encrypted_string(name: str, envelope: str) -> str:
    """Render an envelope as a YAML ``name: !vault |`` block."""
    body = "\n".join(f"  {line}" for line in envelope.strip().splitlines())
    return f"{name}: {VAULT_TAG} |\n{body}\n"
