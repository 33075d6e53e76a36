"""
Installation identity.

The identity scopes which envelopes an installation may decrypt. It is
derived once from installation entropy (origin, install path, random data,
creation time), hashed with SHA-256 and truncated to 16 hex characters.
"""

from __future__ import annotations

import secrets
import string
import time
from typing import Optional

import structlog
from cryptography.hazmat.primitives import hashes

from .repositories import IdentityRepository
from .storage import KeyValueStore

logger = structlog.get_logger(__name__)

IDENTITY_LENGTH = 16
RANDOM_LENGTH = 32
_ALPHABET = string.ascii_letters + string.digits


def derive_identity(origin: str, install_path: str, random_data: str, timestamp: int) -> str:
    """Hash installation entropy into a fixed-length identity."""
    digest = hashes.Hash(hashes.SHA256())
    digest.update(f"{origin}|{install_path}|{random_data}|{timestamp}".encode("utf-8"))
    return digest.finalize().hex()[:IDENTITY_LENGTH]


class IdentityManager:
    """Creates and caches the persisted installation identity."""

    def __init__(self, store: KeyValueStore, origin: str, install_path: str) -> None:
        """
        Args:
            store: Persistent store holding the identity
            origin: Installation origin address (site URL)
            install_path: Installation storage path
        """
        self._repo = IdentityRepository(store)
        self._origin = origin
        self._install_path = install_path
        self._cached: Optional[str] = None

    async def get_or_create_identity(self) -> str:
        """
        Return the installation identity, creating it on first use.

        Creation uses set-if-absent, so concurrent first calls agree on one value.
        """
        if self._cached:
            return self._cached

        site_id = await self._repo.get()
        if not site_id:
            random_data = "".join(secrets.choice(_ALPHABET) for _ in range(RANDOM_LENGTH))
            candidate = derive_identity(
                self._origin, self._install_path, random_data, int(time.time())
            )
            site_id = await self._repo.create_if_absent(candidate)
            logger.info("site_identity_created", site_id=site_id)

        self._cached = site_id
        return site_id
