"""
Error taxonomy and exception classes for lattice-shield.

This module defines:
- ErrorCode: classified failure kinds reported by remote operations
- The exception hierarchy rooted at ShieldError
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .executor import OperationResult


class ErrorCode(Enum):
    """Classified failure kinds (values match the plugin's stored error codes)."""

    ENCRYPTION_FAILED = 1001
    DECRYPTION_FAILED = 1002
    KEY_GENERATION_FAILED = 1003
    CONNECTION_FAILED = 1004
    INVALID_KEY = 1005
    SERVICE_UNAVAILABLE = 1006
    RATE_LIMIT_EXCEEDED = 1007
    TIMEOUT = 1008
    INVALID_DATA = 1009
    PERMISSION_DENIED = 1010

    def __str__(self) -> str:
        return self.name

    @property
    def retryable(self) -> bool:
        """Whether a failure of this kind may succeed when attempted again."""
        return self in _RETRYABLE

    @property
    def critical(self) -> bool:
        """Whether this failure needs a standing notice for the administrator."""
        return self in _CRITICAL

    @property
    def requires_admin_action(self) -> bool:
        return self in _ADMIN_ACTION

    @classmethod
    def from_value(cls, value: object) -> Optional[ErrorCode]:
        """Parse a stored code (int, numeric string or name); None if unknown."""
        if isinstance(value, ErrorCode):
            return value
        if isinstance(value, int):
            try:
                return cls(value)
            except ValueError:
                return None
        if isinstance(value, str):
            if value.isdigit():
                return cls.from_value(int(value))
            return cls.__members__.get(value.upper())
        return None


_RETRYABLE = frozenset(
    {
        ErrorCode.CONNECTION_FAILED,
        ErrorCode.SERVICE_UNAVAILABLE,
        ErrorCode.RATE_LIMIT_EXCEEDED,
        ErrorCode.TIMEOUT,
    }
)

_CRITICAL = frozenset(
    {
        ErrorCode.KEY_GENERATION_FAILED,
        ErrorCode.INVALID_KEY,
        ErrorCode.SERVICE_UNAVAILABLE,
    }
)

_ADMIN_ACTION = frozenset({ErrorCode.PERMISSION_DENIED, ErrorCode.INVALID_KEY})


class ShieldError(Exception):
    """Base exception for all lattice-shield operations."""

    pass


class CryptoServiceError(ShieldError):
    """The remote cryptographic service call failed with a classified error."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def retryable(self) -> bool:
        return self.code.retryable

    def __repr__(self) -> str:
        return f"CryptoServiceError({self.code}, {self.message!r})"


class OperationFailedError(ShieldError):
    """A remote operation gave up; carries the normalized failure result."""

    def __init__(self, result: OperationResult) -> None:
        super().__init__(result.message)
        self.result = result

    @property
    def code(self) -> Optional[ErrorCode]:
        return self.result.code


class EnvelopeDecodeError(ShieldError):
    """Value is not a recognized ciphertext envelope."""

    pass


class SiteMismatchError(ShieldError):
    """Envelope was produced by a different installation."""

    code = ErrorCode.PERMISSION_DENIED

    def __init__(self, envelope_site_id: str, current_site_id: str) -> None:
        super().__init__(
            "Data encrypted by a different site; access denied "
            f"(envelope site {envelope_site_id}, current site {current_site_id})"
        )
        self.envelope_site_id = envelope_site_id
        self.current_site_id = current_site_id


class KeyNotFoundError(ShieldError):
    """Required key material is not configured."""

    code = ErrorCode.INVALID_KEY


class StorageError(ShieldError):
    """Storage backend error (database, in-memory, etc.)."""

    pass


class ConfigError(ShieldError):
    """Configuration error."""

    pass


class MigrationError(ShieldError):
    """A migration could not be started, advanced or rolled back."""

    pass


class BackupRequiredError(MigrationError):
    """A migration was requested before the current keys were backed up."""

    pass


class MigrationStateError(MigrationError):
    """The requested transition is not legal in the current migration state."""

    pass
