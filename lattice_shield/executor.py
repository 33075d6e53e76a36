"""
Remote operation executor with classified retries.

This module provides:
- Operation: Remote operations offered by the cryptographic service
- RetryPolicy: Attempt cap and exponential backoff, independent of the operation
- OperationResult: Normalized outcome of an execution
- RemoteOperationExecutor: Runs one operation through the policy and reports

Retry strategy:
1. Call the operation
2. On a retryable CryptoServiceError, sleep the current delay, then multiply it
3. Non-retryable errors stop after the first attempt
4. The final failure is reported and returned, never raised
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from .client import CryptoService
from .errors import ErrorCode, ShieldError
from .reporter import AuditReporter

logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class Operation(Enum):
    """Remote operations."""

    GENERATE_KEY_PAIR = "generate_key_pair"
    ENCRYPT = "encrypt"
    DECRYPT = "decrypt"
    STATUS = "status"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry strategy: ``max_attempts`` total, delay starting at ``base_delay``
    and multiplied by ``multiplier`` after each failed attempt.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0

    def delays(self) -> List[float]:
        """Delay slept after each failed attempt, in attempt order."""
        return [self.base_delay * self.multiplier ** i for i in range(self.max_attempts)]

    async def run(
        self,
        call: Callable[[], Awaitable[Any]],
        sleep: Sleep = asyncio.sleep,
        on_failure: Optional[Callable[[ShieldError, int], Awaitable[None]]] = None,
    ) -> _Attempts:
        """
        Run ``call`` under the policy.

        Only ShieldErrors whose ``retryable`` flag is set are retried; each
        retryable failure is followed by the current delay.
        """
        attempts = 0
        last_error: Optional[ShieldError] = None
        for delay in self.delays():
            attempts += 1
            try:
                return _Attempts(value=await call(), attempts=attempts)
            except ShieldError as e:
                if on_failure is not None:
                    await on_failure(e, attempts)
                if not getattr(e, "retryable", False):
                    return _Attempts(error=e, attempts=attempts)
                await sleep(delay)
                last_error = e
        return _Attempts(error=last_error, attempts=attempts)


@dataclass
class _Attempts:
    value: Any = None
    error: Optional[ShieldError] = None
    attempts: int = 0


@dataclass
class OperationResult:
    """Normalized outcome of a remote operation."""

    success: bool
    data: Any = None
    message: str = ""
    code: Optional[ErrorCode] = None
    can_retry: bool = False
    requires_admin_action: bool = False
    attempts: int = 0
    error: Optional[str] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True, "attempts": self.attempts}
        return {
            "success": False,
            "message": self.message,
            "code": self.code.value if self.code else None,
            "can_retry": self.can_retry,
        }


class RemoteOperationExecutor:
    """
    Executes cryptographic service operations with retries.

    Usage:
        result = await executor.execute(
            Operation.ENCRYPT, {"field_id": "3"},
            plaintext="...", public_key=keys.public_key, algorithm=keys.algorithm,
        )
    """

    def __init__(
        self,
        service: CryptoService,
        reporter: AuditReporter,
        policy: Optional[RetryPolicy] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._service = service
        self._reporter = reporter
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self._calls: Dict[Operation, Callable[..., Awaitable[Any]]] = {
            Operation.GENERATE_KEY_PAIR: service.generate_key_pair,
            Operation.ENCRYPT: service.encrypt,
            Operation.DECRYPT: service.decrypt,
            Operation.STATUS: service.status,
        }

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def execute(
        self,
        operation: Operation,
        context: Optional[Dict[str, Any]] = None,
        **params: Any,
    ) -> OperationResult:
        """
        Run one remote operation.

        Args:
            operation: Operation to run
            context: Diagnostic context recorded with failures
            **params: Arguments for the CryptoService method

        Returns:
            OperationResult; ``success`` is False after the final failure
        """
        call = self._calls[operation]
        ctx = dict(context or {}, operation=operation.value)

        async def log_attempt(error: ShieldError, attempt: int) -> None:
            logger.warning(
                "remote_attempt_failed",
                operation=operation.value,
                attempt=attempt,
                max_attempts=self._policy.max_attempts,
                error=str(error),
            )

        outcome = await self._policy.run(
            lambda: call(**params), sleep=self._sleep, on_failure=log_attempt
        )

        if outcome.error is None:
            if outcome.attempts > 1:
                await self._reporter.log_activity(
                    f"Service request succeeded on attempt {outcome.attempts}",
                    "info",
                    ctx,
                )
            return OperationResult(success=True, data=outcome.value, attempts=outcome.attempts)

        record = self._reporter.classify(
            outcome.error, dict(ctx, attempts=outcome.attempts)
        )
        if record.code is None:
            record.code = ErrorCode.CONNECTION_FAILED
        report = await self._reporter.report(f"Service {operation.value}", record)
        return OperationResult(
            success=False,
            message=report.message,
            code=record.code,
            can_retry=report.can_retry,
            requires_admin_action=report.requires_admin_action,
            attempts=outcome.attempts,
            error=record.message,
        )
