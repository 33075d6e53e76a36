"""
Remote cryptographic service client.

This module provides:
- CryptoService: Abstract contract for the external cryptographic service
- HttpCryptoService: httpx implementation against the service's REST API
- GeneratedKeyPair / ServiceStatus: Typed responses
- request_timeout: Per-call timeout scaled to payload size and algorithm

Every failure surfaces as a CryptoServiceError carrying a classified
ErrorCode; raw transport errors never escape.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
import structlog

from . import __version__
from .config import BASE_TIMEOUT, MAX_TIMEOUT, PQ_TIMEOUT_FACTOR, STATUS_TIMEOUT
from .envelope import is_post_quantum
from .errors import CryptoServiceError, ErrorCode
from .models import SecurityLevel

logger = structlog.get_logger(__name__)


@dataclass
class GeneratedKeyPair:
    """Key pair returned by the key-generation endpoint."""

    public_key: str
    private_key: str
    algorithm: str
    security_level: SecurityLevel

    def __repr__(self) -> str:
        return f"GeneratedKeyPair(algorithm={self.algorithm!r}, private_key=[REDACTED])"


@dataclass
class ServiceStatus:
    """Health of the cryptographic service."""

    available: bool
    functional: bool
    supported_algorithms: List[str] = field(default_factory=list)
    version: Optional[str] = None
    health: str = "unknown"
    issues: List[str] = field(default_factory=list)


def request_timeout(data_size: int, algorithm: Optional[str]) -> float:
    """
    Timeout in seconds for a call carrying ``data_size`` bytes.

    15s base plus 1s per started KiB (1.5s for post-quantum), capped at 60s.
    """
    factor = PQ_TIMEOUT_FACTOR if is_post_quantum(algorithm) else 1.0
    return min(BASE_TIMEOUT + math.ceil(data_size / 1024) * factor, MAX_TIMEOUT)


class CryptoService(ABC):
    """Abstract contract for the external cryptographic service."""

    @abstractmethod
    async def generate_key_pair(self, security_level: SecurityLevel) -> GeneratedKeyPair:
        """Generate a key pair for a security level."""
        ...

    @abstractmethod
    async def encrypt(self, plaintext: str, public_key: str, algorithm: str) -> str:
        """Encrypt plaintext, returning opaque ciphertext."""
        ...

    @abstractmethod
    async def decrypt(self, ciphertext: str, private_key: str) -> str:
        """Decrypt opaque ciphertext."""
        ...

    @abstractmethod
    async def status(self) -> ServiceStatus:
        """Report service availability and supported algorithms."""
        ...


class HttpCryptoService(CryptoService):
    """
    Cryptographic service over HTTP.

    Endpoints (relative to ``base_url``):
    - GET  /generate-keypair?securityLevel=...
    - POST /encrypt  {data, publicKey, algorithm[, securityLevel]}
    - POST /decrypt  {encryptedData, privateKey}   (Bearer API key)
    - GET  /status
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Args:
            base_url: Service base URL
            api_key: Bearer token sent with decrypt calls
            client: Optional preconfigured httpx client (owned by the caller)
        """
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()
        self._headers = {
            "Content-Type": "application/json",
            "User-Agent": f"lattice-shield/{__version__}",
        }

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HttpCryptoService:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def generate_key_pair(self, security_level: SecurityLevel) -> GeneratedKeyPair:
        data = await self._request(
            "GET",
            "/generate-keypair",
            ErrorCode.KEY_GENERATION_FAILED,
            timeout=BASE_TIMEOUT * 2,
            params={"securityLevel": security_level.value},
        )
        if not data.get("publicKey") or not data.get("privateKey"):
            raise CryptoServiceError(
                ErrorCode.KEY_GENERATION_FAILED, "Response missing required keys"
            )
        level = data.get("securityLevel")
        try:
            returned_level = SecurityLevel.from_str(level) if level else security_level
        except ValueError as e:
            raise CryptoServiceError(ErrorCode.INVALID_DATA, f"Invalid securityLevel: {e}") from e
        return GeneratedKeyPair(
            public_key=data["publicKey"],
            private_key=data["privateKey"],
            algorithm=data.get("algorithm") or security_level.default_algorithm,
            security_level=returned_level,
        )

    async def encrypt(self, plaintext: str, public_key: str, algorithm: str) -> str:
        body: Dict[str, Any] = {
            "data": plaintext,
            "publicKey": public_key.strip(),
            "algorithm": algorithm,
        }
        data = await self._request(
            "POST",
            "/encrypt",
            ErrorCode.ENCRYPTION_FAILED,
            timeout=request_timeout(len(plaintext.encode("utf-8")), algorithm),
            json=body,
        )
        encrypted = data.get("encryptedData")
        if not isinstance(encrypted, str) or not encrypted:
            raise CryptoServiceError(
                ErrorCode.ENCRYPTION_FAILED, "Missing encryptedData in response"
            )
        return encrypted

    async def decrypt(self, ciphertext: str, private_key: str) -> str:
        headers = {}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        data = await self._request(
            "POST",
            "/decrypt",
            ErrorCode.DECRYPTION_FAILED,
            timeout=request_timeout(len(ciphertext), None),
            json={"encryptedData": ciphertext, "privateKey": private_key},
            headers=headers,
        )
        decrypted = data.get("decryptedData")
        if not isinstance(decrypted, str):
            raise CryptoServiceError(
                ErrorCode.DECRYPTION_FAILED, "Missing decryptedData in response"
            )
        return decrypted

    async def status(self) -> ServiceStatus:
        data = await self._request(
            "GET",
            "/status",
            ErrorCode.SERVICE_UNAVAILABLE,
            timeout=STATUS_TIMEOUT,
            ok_statuses=(200, 206),
        )
        oqs = data.get("oqs") or {}
        health = data.get("health") or {}
        if not isinstance(oqs, dict) or not isinstance(health, dict):
            raise CryptoServiceError(ErrorCode.INVALID_DATA, "Unexpected status response shape")
        return ServiceStatus(
            available=bool(oqs.get("available", False)),
            functional=bool(oqs.get("functional", False)),
            supported_algorithms=list(oqs.get("supportedAlgorithms") or []),
            version=oqs.get("version"),
            health=health.get("overall", "unknown"),
            issues=list(health.get("issues") or []),
        )

    async def _request(
        self,
        method: str,
        path: str,
        failure_code: ErrorCode,
        timeout: float,
        ok_statuses: tuple = (200,),
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        """Send one request and return the decoded JSON object, or raise classified."""
        url = f"{self._base_url}{path}"
        try:
            response = await self._client.request(
                method,
                url,
                headers={**self._headers, **(headers or {})},
                timeout=timeout,
                **kwargs,
            )
        except httpx.TimeoutException as e:
            raise CryptoServiceError(ErrorCode.TIMEOUT, f"Request timeout: {e}") from e
        except httpx.HTTPError as e:
            raise CryptoServiceError(
                ErrorCode.CONNECTION_FAILED, f"Connection failed: {e}"
            ) from e

        status = response.status_code
        logger.debug("service_response", method=method, path=path, status=status)

        if status not in ok_statuses:
            raise CryptoServiceError(
                self._code_for_status(status, failure_code),
                self._error_message(response),
            )

        try:
            data = response.json()
        except ValueError as e:
            raise CryptoServiceError(
                ErrorCode.INVALID_DATA, f"Invalid JSON response: {e}"
            ) from e
        if not isinstance(data, dict):
            raise CryptoServiceError(ErrorCode.INVALID_DATA, "Unexpected response shape")
        return data

    @staticmethod
    def _code_for_status(status: int, failure_code: ErrorCode) -> ErrorCode:
        if status in (401, 403):
            return ErrorCode.PERMISSION_DENIED
        if status == 400:
            return ErrorCode.INVALID_DATA
        if status == 429:
            return ErrorCode.RATE_LIMIT_EXCEEDED
        if status == 503:
            return ErrorCode.SERVICE_UNAVAILABLE
        return failure_code

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("error"):
            message = str(body["error"])
            if body.get("details"):
                message += f" - Details: {body['details']}"
            return f"HTTP {response.status_code}: {message}"
        return f"HTTP {response.status_code}"
