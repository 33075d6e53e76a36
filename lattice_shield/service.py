"""
Field protection service.

This module provides:
- ShieldService: Encrypt and decrypt field values as site-scoped envelopes

Crypto flow (encrypt):
1. Send plaintext and public key to the service (with retries)
2. Wrap the returned ciphertext in a V2 envelope tagged with the algorithm
   and this installation's identity

Crypto flow (decrypt):
1. Decode the envelope
2. Reject V2 envelopes whose site id differs from this installation's identity
3. Send the ciphertext and private key to the service (with retries)

Legacy envelopes carry no site id and are attempted with the given keys.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import structlog

from . import envelope as codec
from .client import GeneratedKeyPair, ServiceStatus
from .errors import (
    EnvelopeDecodeError,
    KeyNotFoundError,
    OperationFailedError,
    SiteMismatchError,
)
from .executor import Operation, RemoteOperationExecutor
from .identity import IdentityManager
from .models import KeyMaterial, SecurityLevel, utcnow
from .reporter import AuditReporter
from .repositories import KeyMaterialRepository
from .storage import KeyValueStore

logger = structlog.get_logger(__name__)


class ShieldService:
    """
    Site-scoped field encryption.

    Provides the encrypt/decrypt API used by the host plugin and by the
    migration orchestrator.
    """

    def __init__(
        self,
        store: KeyValueStore,
        executor: RemoteOperationExecutor,
        identity: IdentityManager,
        reporter: AuditReporter,
    ) -> None:
        self._keys = KeyMaterialRepository(store)
        self._executor = executor
        self._identity = identity
        self._reporter = reporter

    @property
    def identity(self) -> IdentityManager:
        return self._identity

    async def current_keys(self) -> KeyMaterial:
        """
        Get the active key material.

        Raises:
            KeyNotFoundError: If no keys have been generated
        """
        keys = await self._keys.get_current()
        if keys is None:
            raise KeyNotFoundError("No key material configured; generate keys first")
        return keys

    async def generate_keys(
        self, security_level: SecurityLevel, context: Optional[Dict[str, Any]] = None
    ) -> KeyMaterial:
        """
        Request a new key pair from the service (not persisted).

        Raises:
            OperationFailedError: If key generation failed after retries
        """
        result = await self._executor.execute(
            Operation.GENERATE_KEY_PAIR,
            dict(context or {}, security_level=security_level.value),
            security_level=security_level,
        )
        if not result.success:
            raise OperationFailedError(result)
        pair: GeneratedKeyPair = result.data
        return KeyMaterial(
            public_key=pair.public_key,
            private_key=pair.private_key,
            algorithm=pair.algorithm,
            security_level=pair.security_level,
            generated_at=utcnow(),
        )

    async def initialize_keys(
        self, security_level: SecurityLevel = SecurityLevel.STANDARD
    ) -> KeyMaterial:
        """Generate a key pair and install it as the active key material."""
        keys = await self.generate_keys(security_level, {"purpose": "initialize"})
        await self._keys.save_current(keys)
        site_id = await self._identity.get_or_create_identity()
        await self._reporter.log_activity(
            "Key pair generated successfully",
            "info",
            {"algorithm": keys.algorithm, "site_id": site_id},
        )
        return keys

    async def encrypt_value(
        self,
        plaintext: str,
        keys: Optional[KeyMaterial] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Encrypt a field value into an envelope.

        Empty or whitespace-only values are returned unchanged.

        Args:
            plaintext: Field value
            keys: Key material to use (defaults to the active keys)
            context: Diagnostic context (form/field ids)

        Raises:
            KeyNotFoundError: If no keys are configured
            OperationFailedError: If the service call failed after retries
        """
        if not plaintext or not plaintext.strip():
            return plaintext

        keys = keys or await self.current_keys()
        ctx = dict(context or {}, algorithm=keys.algorithm, data_size=len(plaintext))
        result = await self._executor.execute(
            Operation.ENCRYPT,
            ctx,
            plaintext=plaintext,
            public_key=keys.public_key,
            algorithm=keys.algorithm,
        )
        if not result.success:
            raise OperationFailedError(result)

        site_id = await self._identity.get_or_create_identity()
        return codec.encode(result.data, keys.algorithm, site_id)

    async def decrypt_value(
        self,
        value: str,
        keys: Optional[KeyMaterial] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Decrypt an envelope produced by this installation.

        Args:
            value: Envelope string
            keys: Key material to use (defaults to the active keys)
            context: Diagnostic context

        Raises:
            EnvelopeDecodeError: If value is not an envelope
            SiteMismatchError: If the envelope belongs to another installation
            KeyNotFoundError: If no keys are configured
            OperationFailedError: If the service call failed after retries
        """
        ctx = dict(context or {}, data_length=len(value or ""))
        try:
            env = codec.decode(value)
        except EnvelopeDecodeError as e:
            await self._reporter.report("Data Decryption", self._reporter.classify(e, ctx))
            raise

        site_id = await self._identity.get_or_create_identity()
        ctx.update(data_version=env.format_version.value, site_id=site_id)
        if env.site_id is not None and env.site_id != site_id:
            error = SiteMismatchError(env.site_id, site_id)
            await self._reporter.report(
                "Data Decryption",
                self._reporter.classify(error, dict(ctx, data_site_id=env.site_id)),
            )
            raise error

        keys = keys or await self.current_keys()
        result = await self._executor.execute(
            Operation.DECRYPT,
            ctx,
            ciphertext=env.ciphertext,
            private_key=keys.private_key,
        )
        if not result.success:
            raise OperationFailedError(result)
        return result.data

    async def service_status(self) -> Optional[ServiceStatus]:
        """Service health, or None if the service could not be reached."""
        result = await self._executor.execute(Operation.STATUS, {"purpose": "status"})
        return result.data if result.success else None

    @staticmethod
    def is_protected(value: object) -> bool:
        """Whether a stored value is an envelope rather than plaintext."""
        return codec.is_envelope(value)
