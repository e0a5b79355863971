from __future__ import annotations

import logging
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from ..core.config import get_settings

logger = logging.getLogger(__name__)


class FieldDecryptionError(Exception):
    """A stored token could not be decrypted with any configured key."""


class FieldCipher:
    """
    Per-field encryption for free text written by users.

    The first key encrypts; every key can decrypt, so keys rotate by
    prepending a new one and re-saving.
    """

    def __init__(self, keys: list[str | bytes]):
        if not keys:
            raise ValueError("FieldCipher needs at least one key")
        self._fernet = MultiFernet([Fernet(k) for k in keys])

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, TypeError, ValueError, AttributeError) as exc:
            raise FieldDecryptionError("Stored field could not be decrypted") from exc


def _parse_keys(raw: str | None) -> list[str]:
    return [k.strip() for k in (raw or "").split(",") if k.strip()]


@lru_cache(maxsize=1)
def get_field_cipher() -> FieldCipher:
    settings = get_settings()
    keys = _parse_keys(settings.FIELD_ENCRYPTION_KEYS)
    if keys:
        return FieldCipher(keys)

    if settings.ENV == "dev":
        # Data written with this key is unreadable after a restart
        logger.warning("FIELD_ENCRYPTION_KEYS not set; using an ephemeral key for this process")
        return FieldCipher([Fernet.generate_key()])

    raise RuntimeError("FIELD_ENCRYPTION_KEYS must be set outside dev.")
