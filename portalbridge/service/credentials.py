from __future__ import annotations

import json
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from portalbridge.logging import get_logger
from portalbridge.storage.common import derive_cipher_key, user_handle
from portalbridge.storage.errors import CorruptRecordError
from portalbridge.storage.models import (
    LegacyCredentials,
    Secret,
    StoredSession,
    secret_from_dict,
    utcnow,
)

logger = get_logger(__name__)


class EncryptedUserStore:
    """Per-user encrypted secret persistence.

    Each identity gets its own key, ``sha256(master_key + identity.lower())``,
    so the master key alone does not decrypt a stored blob without the
    matching identity. Fernet encrypts with AES-128-CBC under a fresh random
    IV per token and authenticates it with HMAC-SHA256.
    """

    def __init__(self, backend, master_key: str) -> None:
        if not master_key:
            raise ValueError("master key material is required")
        self.backend = backend
        self._master_key = master_key

    def _cipher(self, identity: str) -> Fernet:
        return Fernet(derive_cipher_key(self._master_key, identity))

    async def save(self, identity: str, secret: Secret) -> None:
        handle = user_handle(identity)
        plaintext = json.dumps(secret.to_dict(), separators=(",", ":"))
        token = self._cipher(identity).encrypt(plaintext.encode("utf-8")).decode("ascii")
        await self.backend.put_secret(handle, token)
        logger.info("secret_saved", user_handle=handle, kind=secret.kind)

    async def load(self, identity: str) -> Optional[Secret]:
        """Return the stored secret, or None when absent or undecryptable."""

        handle = user_handle(identity)
        token = await self.backend.get_secret(handle)
        if not token:
            return None
        try:
            plaintext = self._cipher(identity).decrypt(token.encode("ascii"))
        except (InvalidToken, UnicodeEncodeError):
            logger.warning("secret_decrypt_failed", user_handle=handle)
            return None
        try:
            return secret_from_dict(json.loads(plaintext))
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError, AttributeError) as exc:
            logger.warning("secret_payload_corrupt", user_handle=handle, error=str(exc))
        except CorruptRecordError as exc:
            logger.warning("secret_payload_corrupt", user_handle=handle, error=exc.message)
        return None

    async def load_session(self, identity: str) -> Optional[StoredSession]:
        """A usable, unexpired session, or None."""

        secret = await self.load(identity)
        if secret is None:
            return None
        if isinstance(secret, LegacyCredentials):
            logger.info("legacy_credentials_ignored", user_handle=user_handle(identity))
            return None
        if secret.is_expired(utcnow()):
            logger.info(
                "stored_session_expired",
                user_handle=user_handle(identity),
                expired_at=secret.expires_at.isoformat(),
            )
            return None
        return secret

    async def clear(self, identity: str) -> bool:
        handle = user_handle(identity)
        removed = await self.backend.delete_secret(handle)
        logger.info("secret_cleared", user_handle=handle, removed=removed)
        return removed

    async def exists(self, identity: str) -> bool:
        return await self.backend.has_secret(user_handle(identity))
