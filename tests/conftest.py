"""
Pytest configuration and fixtures for lattice-shield tests.
"""

from __future__ import annotations

import base64
import os
from collections import Counter, defaultdict
from pathlib import Path
from typing import AsyncGenerator, Dict, List, Set, Union

import asyncpg
import pytest
from dotenv import load_dotenv

from lattice_shield import (
    AuditReporter,
    CryptoService,
    CryptoServiceError,
    ErrorCode,
    GeneratedKeyPair,
    IdentityManager,
    InMemoryEntryStore,
    InMemoryKeyValueStore,
    MigrationOrchestrator,
    RemoteOperationExecutor,
    RetryPolicy,
    SecurityLevel,
    ServiceStatus,
    Settings,
    ShieldService,
    create_schema,
)


class FakeCryptoService(CryptoService):
    """
    Deterministic in-process cryptographic service.

    Key pair N is ("pk-N", "sk-N"); ciphertext is "<public key>:<base64 plaintext>"
    and only decrypts with the matching private key. Failures are injected
    per method with ``fail()``.
    """

    def __init__(self) -> None:
        self.generated = 0
        self.calls: Counter = Counter()
        self._failures: Dict[str, List[Union[ErrorCode, Exception]]] = defaultdict(list)

    def fail(self, method: str, *failures: Union[ErrorCode, Exception]) -> None:
        """Queue errors raised by the next calls to ``method``; exceptions are raised as is."""
        self._failures[method].extend(failures)

    async def _record(self, method: str) -> None:
        self.calls[method] += 1
        if self._failures[method]:
            failure = self._failures[method].pop(0)
            if isinstance(failure, Exception):
                raise failure
            raise CryptoServiceError(failure, f"injected {failure}")

    async def generate_key_pair(self, security_level: SecurityLevel) -> GeneratedKeyPair:
        await self._record("generate_key_pair")
        self.generated += 1
        return GeneratedKeyPair(
            public_key=f"pk-{self.generated}",
            private_key=f"sk-{self.generated}",
            algorithm=security_level.default_algorithm,
            security_level=security_level,
        )

    async def encrypt(self, plaintext: str, public_key: str, algorithm: str) -> str:
        await self._record("encrypt")
        payload = base64.b64encode(plaintext.encode("utf-8")).decode("ascii")
        return f"{public_key}:{payload}"

    async def decrypt(self, ciphertext: str, private_key: str) -> str:
        await self._record("decrypt")
        key_id, _, payload = ciphertext.partition(":")
        if key_id != "pk-" + private_key[len("sk-"):]:
            raise CryptoServiceError(ErrorCode.DECRYPTION_FAILED, "key mismatch")
        return base64.b64decode(payload).decode("utf-8")

    async def status(self) -> ServiceStatus:
        await self._record("status")
        return ServiceStatus(
            available=True,
            functional=True,
            supported_algorithms=["ML-KEM-768", "ML-KEM-1024"],
            version="fake",
            health="healthy",
        )


class RecordingSleep:
    """Replacement for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def kv_store() -> InMemoryKeyValueStore:
    """Create an in-memory named-value store for testing."""
    return InMemoryKeyValueStore()


@pytest.fixture
def entry_store() -> InMemoryEntryStore:
    """Create an in-memory entry store for testing."""
    return InMemoryEntryStore()


@pytest.fixture
def crypto() -> FakeCryptoService:
    return FakeCryptoService()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def reporter(kv_store: InMemoryKeyValueStore) -> AuditReporter:
    return AuditReporter(kv_store)


@pytest.fixture
def executor(
    crypto: FakeCryptoService, reporter: AuditReporter, sleep: RecordingSleep
) -> RemoteOperationExecutor:
    return RemoteOperationExecutor(crypto, reporter, RetryPolicy(), sleep=sleep)


@pytest.fixture
def identity(kv_store: InMemoryKeyValueStore) -> IdentityManager:
    return IdentityManager(kv_store, "https://shop.example.test", "/var/www/html")


@pytest.fixture
def service(
    kv_store: InMemoryKeyValueStore,
    executor: RemoteOperationExecutor,
    identity: IdentityManager,
    reporter: AuditReporter,
) -> ShieldService:
    return ShieldService(kv_store, executor, identity, reporter)


@pytest.fixture
def orchestrator(
    kv_store: InMemoryKeyValueStore,
    entry_store: InMemoryEntryStore,
    service: ShieldService,
    reporter: AuditReporter,
) -> MigrationOrchestrator:
    return MigrationOrchestrator(kv_store, entry_store, service, reporter, Settings())


@pytest.fixture
async def pg_pool() -> AsyncGenerator[asyncpg.Pool, None]:
    """Create a PostgreSQL connection pool for testing."""
    # Load environment from project root
    env_path = Path(__file__).parent.parent / ".env"
    load_dotenv(env_path)

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set, skipping PostgreSQL tests")

    pool = await asyncpg.create_pool(database_url)
    if pool is None:
        pytest.skip("Failed to create PostgreSQL connection pool")

    await create_schema(pool)
    await pool.execute("TRUNCATE TABLE pqls_options, pqls_entries")

    yield pool

    await pool.close()
