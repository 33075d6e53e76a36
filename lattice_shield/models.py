"""
Data model for key material and migration state.

This module provides:
- SecurityLevel: Post-quantum security level selection
- KeyMaterial: Active public/private key pair and its algorithm
- Backup: Retained prior KeyMaterial
- Checkpoint: Restorable snapshot of pre-migration state
- MigrationStatus / MigrationRun: Migration state machine record
- EncryptedEntry / EntryState: One protected value in the host corpus
- IntegrityReport / RollbackResult: Operation results

All persisted types convert to and from plain dicts (``to_dict`` / ``from_dict``)
so they can be stored as opaque JSON values.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .errors import StorageError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SecurityLevel(Enum):
    """Security level requested from the key-generation call."""

    STANDARD = "standard"
    HIGH = "high"

    def __str__(self) -> str:
        return self.value

    @property
    def default_algorithm(self) -> str:
        """Algorithm expected for this level when the service does not name one."""
        return "ML-KEM-1024" if self is SecurityLevel.HIGH else "ML-KEM-768"

    @classmethod
    def from_str(cls, s: str) -> SecurityLevel:
        """Parse from string."""
        try:
            return cls(str(s).lower())
        except ValueError:
            raise ValueError(f"Invalid security level: {s}")


@dataclass
class KeyMaterial:
    """
    Key pair produced by the remote key-generation call.

    The private key is held as an opaque string issued by the service and is
    never included in repr output.
    """

    public_key: str
    private_key: str
    algorithm: str
    security_level: SecurityLevel = SecurityLevel.STANDARD
    generated_at: datetime = field(default_factory=utcnow)

    def __repr__(self) -> str:
        return (
            f"KeyMaterial(algorithm={self.algorithm!r}, "
            f"security_level={self.security_level.value!r}, "
            f"generated_at={self.generated_at.isoformat()!r}, private_key=[REDACTED])"
        )

    def same_keys(self, other: Optional[KeyMaterial]) -> bool:
        """Whether other holds the same key pair and algorithm."""
        return (
            other is not None
            and self.public_key == other.public_key
            and self.private_key == other.private_key
            and self.algorithm == other.algorithm
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "public_key": self.public_key,
            "private_key": self.private_key,
            "algorithm": self.algorithm,
            "security_level": self.security_level.value,
            "generated_at": _ts(self.generated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> KeyMaterial:
        try:
            return cls(
                public_key=data["public_key"],
                private_key=data["private_key"],
                algorithm=data["algorithm"],
                security_level=SecurityLevel.from_str(data.get("security_level", "standard")),
                generated_at=_parse_ts(data.get("generated_at")) or utcnow(),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Invalid stored key material: {e}") from e


@dataclass
class Backup:
    """Prior KeyMaterial retained until a migration is trusted."""

    key_material: KeyMaterial
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key_material": self.key_material.to_dict(),
            "created_at": _ts(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Backup:
        try:
            return cls(
                key_material=KeyMaterial.from_dict(data["key_material"]),
                created_at=_parse_ts(data.get("created_at")) or utcnow(),
            )
        except (KeyError, TypeError) as e:
            raise StorageError(f"Invalid stored backup: {e}") from e


class MigrationStatus(Enum):
    """Migration run status."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    def __str__(self) -> str:
        return self.value

    @property
    def allows_new_run(self) -> bool:
        return self is not MigrationStatus.IN_PROGRESS

    @classmethod
    def from_str(cls, s: str) -> MigrationStatus:
        """Parse from string."""
        try:
            return cls(s.lower())
        except (AttributeError, ValueError):
            raise StorageError(f"Invalid migration status: {s}")


@dataclass
class Checkpoint:
    """Snapshot sufficient to restore pre-migration state."""

    run_id: str
    key_material: KeyMaterial
    migration_status: MigrationStatus
    encrypted_entry_count: int
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def security_level(self) -> SecurityLevel:
        return self.key_material.security_level

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "key_material": self.key_material.to_dict(),
            "security_level": self.security_level.value,
            "migration_status": self.migration_status.value,
            "encrypted_entry_count": self.encrypted_entry_count,
            "timestamp": _ts(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Checkpoint:
        try:
            return cls(
                run_id=data["run_id"],
                key_material=KeyMaterial.from_dict(data["key_material"]),
                migration_status=MigrationStatus.from_str(data["migration_status"]),
                encrypted_entry_count=int(data["encrypted_entry_count"]),
                timestamp=_parse_ts(data.get("timestamp")) or utcnow(),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Invalid stored checkpoint: {e}") from e


@dataclass
class MigrationRun:
    """
    One migration run.

    ``target_keys`` is the KeyMaterial being migrated to; it stays on the run
    after completion so a later rollback can re-convert migrated entries.
    """

    run_id: str
    status: MigrationStatus
    security_level: SecurityLevel
    batch_size: int
    verify_integrity: bool
    start_time: datetime = field(default_factory=utcnow)
    target_keys: Optional[KeyMaterial] = None
    completed_time: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None
    processed_count: int = 0
    migrated_count: int = 0
    failed_count: int = 0
    integrity_failures: int = 0

    @property
    def is_active(self) -> bool:
        return self.status is MigrationStatus.IN_PROGRESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "security_level": self.security_level.value,
            "batch_size": self.batch_size,
            "verify_integrity": self.verify_integrity,
            "start_time": _ts(self.start_time),
            "target_keys": self.target_keys.to_dict() if self.target_keys else None,
            "completed_time": _ts(self.completed_time),
            "rolled_back_at": _ts(self.rolled_back_at),
            "processed_count": self.processed_count,
            "migrated_count": self.migrated_count,
            "failed_count": self.failed_count,
            "integrity_failures": self.integrity_failures,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> MigrationRun:
        try:
            target = data.get("target_keys")
            return cls(
                run_id=data["run_id"],
                status=MigrationStatus.from_str(data["status"]),
                security_level=SecurityLevel.from_str(data["security_level"]),
                batch_size=int(data["batch_size"]),
                verify_integrity=bool(data["verify_integrity"]),
                start_time=_parse_ts(data.get("start_time")) or utcnow(),
                target_keys=KeyMaterial.from_dict(target) if target else None,
                completed_time=_parse_ts(data.get("completed_time")),
                rolled_back_at=_parse_ts(data.get("rolled_back_at")),
                processed_count=int(data.get("processed_count", 0)),
                migrated_count=int(data.get("migrated_count", 0)),
                failed_count=int(data.get("failed_count", 0)),
                integrity_failures=int(data.get("integrity_failures", 0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Invalid stored migration run: {e}") from e


class EntryState(Enum):
    """Per-entry migration mark."""

    MIGRATED = "migrated"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


@dataclass
class EncryptedEntry:
    """One stored field value in the host corpus."""

    entry_id: str
    value: str
    field_id: Optional[str] = None
    migration_id: Optional[str] = None
    migration_state: Optional[EntryState] = None


@dataclass
class IntegrityReport:
    """Result of a standalone integrity check."""

    total_checked: int
    verified: int
    failed: int

    @property
    def success_rate_percent(self) -> float:
        if self.total_checked == 0:
            return 100.0
        return round(self.verified / self.total_checked * 100, 2)

    @property
    def rating(self) -> str:
        rate = self.success_rate_percent
        if rate >= 95:
            return "excellent"
        if rate >= 90:
            return "good"
        return "poor"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_checked": self.total_checked,
            "verified": self.verified,
            "failed": self.failed,
            "success_rate_percent": self.success_rate_percent,
            "rating": self.rating,
        }


@dataclass
class RollbackResult:
    """Result of a rollback."""

    restored_keys: KeyMaterial
    reverted_count: int
    revert_failed_count: int
    unreverted_count: int = 0

    def __str__(self) -> str:
        text = (
            f"keys restored to {self.restored_keys.algorithm}, "
            f"{self.reverted_count} entries reverted, {self.revert_failed_count} failed"
        )
        if self.unreverted_count:
            text += f", {self.unreverted_count} written after completion left unchanged"
        return text
