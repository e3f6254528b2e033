"""AES-256-GCM encryption for stored marketplace API keys.

Key source precedence:
    1. MARKETSYNC_CREDENTIAL_KEY env var (base64-encoded 32-byte key)
    2. MARKETSYNC_CREDENTIAL_KEY_FILE env var (path to raw key file)
    3. Key file in the data directory (auto-generated on first use)

Ciphertext format: versioned JSON envelope
{"v": 1, "alg": "AES-256-GCM", "nonce": "<b64>", "ct": "<b64>"} with the
connection name bound as additional authenticated data, so an envelope copied
onto another connection row fails to decrypt.
"""

import base64
import binascii
import json
import logging
import os
import platform
import stat
from pathlib import Path

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

KEY_FILENAME = ".marketsync_key"
_CURRENT_VERSION = 1
_ALGORITHM = "AES-256-GCM"
_REQUIRED_KEY_LENGTH = 32
_NONCE_LENGTH = 12


class CredentialDecryptionError(Exception):
    """Raised when credential decryption fails for any reason."""


def _check_length(key: bytes, source: str) -> bytes:
    if len(key) != _REQUIRED_KEY_LENGTH:
        raise ValueError(
            f"{source} has invalid length {len(key)} (expected {_REQUIRED_KEY_LENGTH})"
        )
    return key


def get_or_create_key(key_dir: str | Path | None = None) -> bytes:
    """Load or generate the 32-byte AES-256 encryption key.

    Args:
        key_dir: Directory for the key file (source 3 only).
                 Defaults to the platform data directory.

    Returns:
        32-byte encryption key.

    Raises:
        ValueError: If a configured key is malformed or has the wrong length.
    """
    env_key = os.environ.get("MARKETSYNC_CREDENTIAL_KEY", "").strip()
    if env_key:
        try:
            key = base64.b64decode(env_key, validate=True)
        except binascii.Error as e:
            raise ValueError(
                f"MARKETSYNC_CREDENTIAL_KEY contains invalid base64: {e}"
            ) from e
        return _check_length(key, "MARKETSYNC_CREDENTIAL_KEY")

    env_key_file = os.environ.get("MARKETSYNC_CREDENTIAL_KEY_FILE", "").strip()
    if env_key_file:
        path = Path(env_key_file)
        if not path.is_file() or path.is_symlink():
            raise ValueError(
                f"MARKETSYNC_CREDENTIAL_KEY_FILE must be a regular file: {env_key_file}"
            )
        return _check_length(path.read_bytes(), f"Key file {env_key_file}")

    if key_dir is None:
        from src.utils.paths import get_data_dir
        key_dir = get_data_dir()
    directory = Path(key_dir)
    directory.mkdir(parents=True, exist_ok=True)
    key_path = directory / KEY_FILENAME

    if key_path.exists():
        key = _check_length(key_path.read_bytes(), f"Key file {key_path}")
        if platform.system() != "Windows":
            mode = stat.S_IMODE(key_path.stat().st_mode)
            if mode & (stat.S_IRGRP | stat.S_IWGRP | stat.S_IROTH | stat.S_IWOTH):
                logger.warning(
                    "Key file %s has permissions %o; recommend chmod 600",
                    key_path, mode,
                )
        return key

    key = os.urandom(_REQUIRED_KEY_LENGTH)
    try:
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        try:
            os.write(fd, key)
        finally:
            os.close(fd)
    except FileExistsError:
        # Another process created the key first; use theirs.
        return _check_length(key_path.read_bytes(), f"Key file {key_path}")

    logger.info("Generated new credential key at %s", key_path)
    return key


def encrypt_credentials(credentials: dict, key: bytes, aad: str = "") -> str:
    """Encrypt a credentials dict to a versioned JSON envelope string.

    Args:
        credentials: Dict of credential key-value pairs.
        key: 32-byte AES-256 key.
        aad: Additional authenticated data (the connection name).

    Returns:
        JSON envelope string.

    Raises:
        ValueError: If key is not exactly 32 bytes.
    """
    _check_length(key, "Encryption key")
    nonce = os.urandom(_NONCE_LENGTH)
    plaintext = json.dumps(credentials, sort_keys=True).encode("utf-8")
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, aad.encode("utf-8") if aad else None)
    return json.dumps({
        "v": _CURRENT_VERSION,
        "alg": _ALGORITHM,
        "nonce": base64.b64encode(nonce).decode("ascii"),
        "ct": base64.b64encode(ciphertext).decode("ascii"),
    })


def decrypt_credentials(encrypted: str, key: bytes, aad: str = "") -> dict:
    """Decrypt a versioned JSON envelope string back to a credentials dict.

    Args:
        encrypted: JSON envelope string from encrypt_credentials.
        key: 32-byte AES-256 key.
        aad: Additional authenticated data used at encryption time.

    Returns:
        Decrypted credentials dict.

    Raises:
        CredentialDecryptionError: If decryption fails for any reason.
    """
    if len(key) != _REQUIRED_KEY_LENGTH:
        raise CredentialDecryptionError(
            f"Decryption key must be exactly {_REQUIRED_KEY_LENGTH} bytes (got {len(key)})"
        )

    try:
        envelope = json.loads(encrypted)
    except (json.JSONDecodeError, TypeError) as e:
        raise CredentialDecryptionError(f"Invalid envelope format: {e}") from e
    if not isinstance(envelope, dict):
        raise CredentialDecryptionError("Envelope is not a JSON object")

    if envelope.get("v") != _CURRENT_VERSION:
        raise CredentialDecryptionError(
            f"Unsupported envelope version {envelope.get('v')} (expected {_CURRENT_VERSION})"
        )
    if envelope.get("alg") != _ALGORITHM:
        raise CredentialDecryptionError(
            f"Unsupported algorithm '{envelope.get('alg')}' (expected '{_ALGORITHM}')"
        )

    try:
        nonce = base64.b64decode(envelope["nonce"], validate=True)
        ciphertext = base64.b64decode(envelope["ct"], validate=True)
    except (KeyError, TypeError, binascii.Error) as e:
        raise CredentialDecryptionError(f"Malformed envelope fields: {e}") from e
    if len(nonce) != _NONCE_LENGTH:
        raise CredentialDecryptionError(
            f"Invalid nonce length {len(nonce)} (expected {_NONCE_LENGTH})"
        )

    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, aad.encode("utf-8") if aad else None)
        result = json.loads(plaintext.decode("utf-8"))
    except Exception as e:
        raise CredentialDecryptionError(f"Decryption failed: {e}") from e
    if not isinstance(result, dict):
        raise CredentialDecryptionError(
            f"Decrypted payload is not a dict (got {type(result).__name__})"
        )
    return result
