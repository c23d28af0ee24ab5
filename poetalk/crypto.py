"""At-rest encryption for the Poe API key.

Values are encrypted with Fernet from the ``cryptography`` library and stored
with an ``ENC:`` prefix, so a config written before encryption was enabled is
read as plaintext and migrated on the next save.

The Fernet key lives in ``<config dir>/.key`` with owner-only permissions,
separate from ``config.json``.
"""

import logging
import os
import platform
import subprocess
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .config import get_config_dir

logger = logging.getLogger(__name__)

_ENC_PREFIX = "ENC:"

_fernet: Optional[Fernet] = None


def _key_file() -> Path:
    return get_config_dir() / ".key"


def set_strict_permissions(filepath: Path) -> None:
    """Restrict *filepath* to its owner (``icacls`` on Windows, ``chmod 600`` elsewhere)."""
    try:
        if platform.system() == "Windows":
            username = os.environ.get("USERNAME", "")
            if not username:
                logger.warning(
                    "Cannot set permissions on %s: USERNAME env var not set",
                    filepath,
                )
                return
            result = subprocess.run(
                ["icacls", str(filepath), "/inheritance:r", "/grant:r", f"{username}:F"],
                capture_output=True,
                text=True,
                timeout=5,
            )
            if result.returncode != 0:
                logger.warning(
                    "icacls failed for %s: %s", filepath, result.stderr.strip()
                )
        else:
            os.chmod(str(filepath), 0o600)
    except FileNotFoundError:
        logger.warning("Cannot set permissions: %s does not exist", filepath)
    except subprocess.TimeoutExpired:
        logger.warning("Timeout setting permissions on %s", filepath)
    except OSError as e:
        logger.warning("Failed to set permissions on %s: %s", filepath, e)


def _get_or_create_key() -> bytes:
    key_file = _key_file()
    key_file.parent.mkdir(parents=True, exist_ok=True)

    if key_file.exists():
        key = key_file.read_bytes().strip()
        try:
            Fernet(key)
            return key
        except ValueError:
            logger.warning("Existing .key file is invalid, generating a new key")

    key = Fernet.generate_key()
    key_file.write_bytes(key)
    set_strict_permissions(key_file)
    logger.info("Generated new encryption key at %s", key_file)
    return key


def _get_fernet() -> Fernet:
    global _fernet
    if _fernet is None:
        _fernet = Fernet(_get_or_create_key())
    return _fernet


def reset_key_cache() -> None:
    """Forget the cached Fernet instance (the config dir may have changed)."""
    global _fernet
    _fernet = None


def encrypt_value(plaintext: str) -> str:
    """Encrypt a non-empty string into ``"ENC:<fernet-token>"``."""
    if not plaintext:
        return plaintext
    token = _get_fernet().encrypt(plaintext.encode("utf-8"))
    return _ENC_PREFIX + token.decode("ascii")


def decrypt_value(ciphertext: str) -> str:
    """Decrypt an ``"ENC:..."`` string back to plaintext.

    Values without the prefix are returned unchanged. A value that cannot be
    decrypted (key replaced or file corrupted) comes back as ``""`` so the
    user is asked for the API key again.
    """
    if not ciphertext or not ciphertext.startswith(_ENC_PREFIX):
        return ciphertext
    token = ciphertext[len(_ENC_PREFIX):]
    try:
        return _get_fernet().decrypt(token.encode("ascii")).decode("utf-8")
    except InvalidToken:
        logger.warning(
            "Failed to decrypt the stored API key (encryption key may have changed). "
            "Re-enter it in settings."
        )
        return ""


def mask_secret(value: str, visible: int = 6) -> str:
    """Return a log-safe form of *value*, e.g. ``pk_abc...``."""
    if not value:
        return ""
    if len(value) <= visible:
        return "*" * len(value)
    return value[:visible] + "..."
