"""
Lattice Shield

Post-quantum field encryption core: site-scoped envelopes around ciphertext
produced by a remote cryptographic service, retried remote calls with
classified errors, and checkpointed key migration with rollback.

Overview
--------
- **Envelopes** wrap opaque ciphertext with its algorithm tag, the owning
  installation's identity and a format version
- **Remote operations** (key generation, encrypt, decrypt, status) run
  through a retry policy and report failures with user-facing messages
- **Migrations** re-encrypt stored envelopes under new keys in bounded
  batches, with a checkpoint that rollback restores

Quick Start
-----------
```python
import asyncio
import asyncpg
from lattice_shield import (
    AuditReporter,
    HttpCryptoService,
    IdentityManager,
    MigrationOrchestrator,
    PostgresEntryStore,
    PostgresKeyValueStore,
    RemoteOperationExecutor,
    SecurityLevel,
    Settings,
    ShieldService,
    create_schema,
)

async def main():
    settings = Settings.from_env()
    pool = await asyncpg.create_pool(settings.database_url)
    await create_schema(pool)
    store = PostgresKeyValueStore(pool)
    reporter = AuditReporter(store)

    async with HttpCryptoService(settings.service_url, settings.api_key) as crypto:
        executor = RemoteOperationExecutor(crypto, reporter)
        identity = IdentityManager(store, settings.site_origin, settings.install_path)
        service = ShieldService(store, executor, identity, reporter)

        await service.initialize_keys(SecurityLevel.STANDARD)
        stored = await service.encrypt_value("Sensitive data")
        plaintext = await service.decrypt_value(stored)

        orchestrator = MigrationOrchestrator(
            store, PostgresEntryStore(pool), service, reporter, settings
        )
        await orchestrator.backup_keys()
        run = await orchestrator.start(SecurityLevel.HIGH, batch_size=100)
        while run.is_active:
            run = await orchestrator.run_batch()

asyncio.run(main())
```

Modules
-------
- `envelope`: Versioned envelope codec
- `client`: Cryptographic service contract and httpx implementation
- `executor`: Retry policy and remote operation executor
- `reporter`: Error, activity and audit logs, admin notices
- `identity`: Installation identity
- `service`: Field encrypt/decrypt
- `migration`: Migration orchestrator
- `storage` / `postgres_storage`: In-memory and PostgreSQL stores
- `config` / `log` / `cli`: Settings, structlog setup, admin CLI
"""

__version__ = "0.1.0"

# ============================================================================
# Error Exports
# ============================================================================

from .errors import (
    BackupRequiredError,
    ConfigError,
    CryptoServiceError,
    EnvelopeDecodeError,
    ErrorCode,
    KeyNotFoundError,
    MigrationError,
    MigrationStateError,
    OperationFailedError,
    ShieldError,
    SiteMismatchError,
    StorageError,
)

# ============================================================================
# Envelope Codec Exports
# ============================================================================

from .envelope import (
    CLASSICAL_PREFIX,
    PQ_PREFIX,
    Envelope,
    FormatVersion,
    decode,
    encode,
    is_envelope,
    is_post_quantum,
)

# ============================================================================
# Model Exports
# ============================================================================

from .models import (
    Backup,
    Checkpoint,
    EncryptedEntry,
    EntryState,
    IntegrityReport,
    KeyMaterial,
    MigrationRun,
    MigrationStatus,
    RollbackResult,
    SecurityLevel,
)

# ============================================================================
# Storage Exports
# ============================================================================

from .storage import (
    EntryStore,
    InMemoryEntryStore,
    InMemoryKeyValueStore,
    KeyValueStore,
)

from .postgres_storage import (
    PostgresEntryStore,
    PostgresKeyValueStore,
    create_schema,
)

# ============================================================================
# Service Exports (Primary API)
# ============================================================================

from .config import Settings
from .log import configure_logging
from .reporter import AuditReporter, ErrorRecord, ReportOutcome
from .client import CryptoService, GeneratedKeyPair, HttpCryptoService, ServiceStatus
from .executor import Operation, OperationResult, RemoteOperationExecutor, RetryPolicy
from .identity import IdentityManager
from .service import ShieldService
from .migration import MigrationOrchestrator

# ============================================================================
# Public API
# ============================================================================

__all__ = [
    # Version
    "__version__",
    # Errors
    "ShieldError",
    "ErrorCode",
    "CryptoServiceError",
    "OperationFailedError",
    "EnvelopeDecodeError",
    "SiteMismatchError",
    "KeyNotFoundError",
    "StorageError",
    "ConfigError",
    "MigrationError",
    "BackupRequiredError",
    "MigrationStateError",
    # Envelope codec
    "Envelope",
    "FormatVersion",
    "PQ_PREFIX",
    "CLASSICAL_PREFIX",
    "encode",
    "decode",
    "is_envelope",
    "is_post_quantum",
    # Models
    "SecurityLevel",
    "KeyMaterial",
    "Backup",
    "Checkpoint",
    "MigrationStatus",
    "MigrationRun",
    "EncryptedEntry",
    "EntryState",
    "IntegrityReport",
    "RollbackResult",
    # Storage
    "KeyValueStore",
    "EntryStore",
    "InMemoryKeyValueStore",
    "InMemoryEntryStore",
    "PostgresKeyValueStore",
    "PostgresEntryStore",
    "create_schema",
    # Services
    "Settings",
    "configure_logging",
    "AuditReporter",
    "ErrorRecord",
    "ReportOutcome",
    "CryptoService",
    "HttpCryptoService",
    "GeneratedKeyPair",
    "ServiceStatus",
    "Operation",
    "OperationResult",
    "RetryPolicy",
    "RemoteOperationExecutor",
    "IdentityManager",
    "ShieldService",
    "MigrationOrchestrator",
]
