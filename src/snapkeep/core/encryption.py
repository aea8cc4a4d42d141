"""Content encryption for sensitive files

Plaintext bytes are sealed with AES-256-GCM into a JSON envelope that carries
everything needed to open it again except the key:

    {"algorithm": "aes-256-gcm", "iv": "<hex>", "tag": "<hex>", "encrypted": "<hex>"}

The key lives in a dedicated key file next to the settings and is loaded once
per process.
"""

import json
import logging
import os
import secrets
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import DecryptionError, EncryptionError

ALGORITHM = "aes-256-gcm"
KEY_LENGTH = 32
IV_LENGTH = 12
TAG_LENGTH = 16

logger = logging.getLogger("ContentEncryptor")

_loaded_keys: dict[Path, bytes] = {}


def load_or_create_key(key_file: Path) -> bytes:
    """Load the encryption key, generating it on first use

    The key file is created owner-only (0600) and its permissions are
    tightened if they were loosened since.
    """
    key_file = Path(key_file).resolve()
    if key_file in _loaded_keys:
        return _loaded_keys[key_file]

    if key_file.exists():
        current_mode = os.stat(key_file).st_mode & 0o777
        if current_mode != 0o600:
            os.chmod(key_file, 0o600)
        with open(key_file, "rb") as f:
            key = f.read()
        if len(key) != KEY_LENGTH:
            raise EncryptionError(f"Key file {key_file} must hold {KEY_LENGTH} bytes, found {len(key)}")
    else:
        key_file.parent.mkdir(parents=True, exist_ok=True)
        key = secrets.token_bytes(KEY_LENGTH)
        fd = os.open(str(key_file), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        try:
            os.write(fd, key)
        finally:
            os.close(fd)
        logger.info(f"Generated new encryption key at {key_file}")

    _loaded_keys[key_file] = key
    return key


class ContentEncryptor:
    """Encrypts and decrypts file contents with a process-wide key"""

    def __init__(self, key: bytes):
        if len(key) != KEY_LENGTH:
            raise EncryptionError(f"Encryption key must be {KEY_LENGTH} bytes")
        self._cipher = AESGCM(key)

    @classmethod
    def from_key_file(cls, key_file: Path) -> "ContentEncryptor":
        return cls(load_or_create_key(key_file))

    def encrypt(self, plaintext: bytes) -> dict[str, str]:
        """Seal plaintext into an envelope with a fresh random IV"""
        iv = secrets.token_bytes(IV_LENGTH)
        sealed = self._cipher.encrypt(iv, plaintext, None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return {
            "algorithm": ALGORITHM,
            "iv": iv.hex(),
            "tag": tag.hex(),
            "encrypted": ciphertext.hex(),
        }

    def decrypt(self, envelope: dict[str, Any]) -> bytes:
        """Open an envelope

        Raises:
            DecryptionError: Unknown algorithm, malformed fields, or failed authentication
        """
        algorithm = envelope.get("algorithm", ALGORITHM)
        if algorithm != ALGORITHM:
            raise DecryptionError(f"Unsupported envelope algorithm: {algorithm}")

        try:
            iv = bytes.fromhex(envelope["iv"])
            tag = bytes.fromhex(envelope["tag"])
            ciphertext = bytes.fromhex(envelope["encrypted"])
        except (KeyError, TypeError, ValueError) as e:
            raise DecryptionError(f"Malformed envelope: {e}") from e

        if len(tag) != TAG_LENGTH:
            raise DecryptionError("Malformed envelope: bad authentication tag length")

        try:
            return self._cipher.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise DecryptionError("Envelope failed authentication (wrong key or tampered data)") from e
        except ValueError as e:
            raise DecryptionError(f"Malformed envelope: {e}") from e

    def dumps(self, plaintext: bytes) -> str:
        """Encrypt and serialize to the on-disk envelope text"""
        return json.dumps(self.encrypt(plaintext), indent=2)

    def loads(self, text: str) -> bytes:
        """Parse on-disk envelope text and decrypt it"""
        try:
            envelope = json.loads(text)
        except json.JSONDecodeError as e:
            raise DecryptionError(f"Envelope is not valid JSON: {e}") from e
        if not isinstance(envelope, dict):
            raise DecryptionError("Envelope must be a JSON object")
        return self.decrypt(envelope)

    def encrypt_file(self, source: Path, destination: Path) -> Path:
        """Write the envelope for ``source`` to ``destination``, creating parents"""
        plaintext = Path(source).read_bytes()
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_text(self.dumps(plaintext), encoding="utf-8")
        return destination

    def decrypt_file(self, source: Path, destination: Path) -> Path:
        """Write the plaintext of envelope file ``source`` to ``destination``"""
        plaintext = self.loads(Path(source).read_text(encoding="utf-8"))
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(plaintext)
        return destination
