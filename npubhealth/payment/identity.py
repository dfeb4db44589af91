"""Binding to the browser signing extension (NIP-07 style identity provider).

Signing itself stays with the provider; this module only asks it for the
public key, remembers the `(public_key, npub)` pair and formats the key.
"""

import asyncio
import re
from typing import Protocol

from bech32 import bech32_encode, convertbits

from npubhealth.common.config import settings
from npubhealth.common.errors import AuthUnavailable
from npubhealth.common.logging import logger


_PUBKEY_RE = re.compile(r"^[0-9a-f]{64}$")


class IdentityProvider(Protocol):
    async def get_public_key(self) -> str: ...


def normalize_public_key(public_key: str) -> str:
    """Return the lowercase 32-byte hex key, or raise ValueError."""

    key = (public_key or "").strip().lower()
    if not _PUBKEY_RE.match(key):
        raise ValueError("public key must be 64 hex characters")
    return key


def encode_npub(public_key: str) -> str:
    """Format a hex public key as a NIP-19 `npub` string."""

    return bech32_encode("npub", convertbits(bytes.fromhex(normalize_public_key(public_key)), 8, 5))


class IdentityBinder:
    """Keeps the authenticated public key and its display identifier."""

    def __init__(self, provider: IdentityProvider | None = None, timeout: float | None = None) -> None:
        self.provider = provider
        self.timeout = timeout or settings.identity_timeout_seconds
        self._public_key: str | None = None

    @property
    def public_key(self) -> str | None:
        return self._public_key

    @property
    def npub(self) -> str | None:
        return encode_npub(self._public_key) if self._public_key else None

    @property
    def is_authenticated(self) -> bool:
        return self._public_key is not None

    def restore(self, public_key: str | None) -> None:
        """Re-bind a persisted key; invalid or empty values log out."""

        if not public_key:
            self._public_key = None
            return
        try:
            self._public_key = normalize_public_key(public_key)
        except ValueError:
            logger.warning("discarding invalid persisted public key")
            self._public_key = None

    async def login(self) -> str:
        """Ask the provider for its public key and bind it."""

        if self.provider is None:
            raise AuthUnavailable("No Nostr extension found")
        try:
            raw = await asyncio.wait_for(self.provider.get_public_key(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise AuthUnavailable("Timed out waiting for the Nostr extension") from exc
        except AuthUnavailable:
            raise
        except Exception as exc:
            raise AuthUnavailable(f"Nostr extension refused the request: {exc}") from exc
        try:
            self._public_key = normalize_public_key(raw)
        except ValueError as exc:
            raise AuthUnavailable("Nostr extension returned an invalid public key") from exc
        logger.info("identity bound npub=%s", self.npub)
        return self._public_key

    def logout(self) -> None:
        self._public_key = None

    async def require_public_key(self) -> str:
        if self._public_key is not None:
            return self._public_key
        return await self.login()
