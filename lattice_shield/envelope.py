"""
Ciphertext envelope codec.

This module provides:
- FormatVersion: Legacy (unstructured) or V2 (structured, site-scoped)
- Envelope: Decoded envelope with ciphertext and metadata
- encode / decode / is_envelope: Pure conversions to and from the at-rest string

Format:
- V2: ``<prefix>::<base64(json({encrypted, algorithm, data, site_id, encrypted_at, version}))>``
- Legacy: ``<legacy-prefix>::<payload>``

The prefix tells post-quantum and classical envelopes apart without decoding.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple, Union

from .errors import EnvelopeDecodeError

PQ_PREFIX = "pqls_pq_encrypted::"
CLASSICAL_PREFIX = "pqls_rsa_encrypted::"
LEGACY_PREFIXES: Tuple[str, ...] = ("pqls_encrypted::", "legacy::")

V2_PREFIXES: Tuple[str, ...] = (PQ_PREFIX, CLASSICAL_PREFIX)
ALL_PREFIXES: Tuple[str, ...] = V2_PREFIXES + LEGACY_PREFIXES


class FormatVersion(Enum):
    """Envelope format version (value is the ``version`` field in V2 JSON)."""

    LEGACY = "1.0"
    V2 = "2.0"

    def __str__(self) -> str:
        return self.value


@dataclass
class Envelope:
    """Decoded ciphertext envelope."""

    ciphertext: str
    algorithm_tag: Optional[str] = None
    site_id: Optional[str] = None
    format_version: FormatVersion = FormatVersion.V2
    encrypted_at: Optional[datetime] = field(default=None, compare=False)

    @property
    def is_legacy(self) -> bool:
        return self.format_version is FormatVersion.LEGACY


def is_post_quantum(algorithm_tag: Optional[str]) -> bool:
    """
    Whether an algorithm tag names a post-quantum KEM.

    RSA/OAEP names are classical; anything not naming ML-KEM or Kyber is
    treated as classical too.
    """
    if not algorithm_tag:
        return False
    tag = algorithm_tag.lower()
    if "rsa" in tag or "oaep" in tag:
        return False
    return "ml-kem" in tag or "kyber" in tag


def prefix_for(algorithm_tag: Optional[str]) -> str:
    """Envelope prefix for an algorithm tag."""
    return PQ_PREFIX if is_post_quantum(algorithm_tag) else CLASSICAL_PREFIX


def is_envelope(value: object) -> bool:
    """True iff value starts with a recognized envelope prefix."""
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if not isinstance(value, str) or not value:
        return False
    return value.startswith(ALL_PREFIXES)


def encode(
    ciphertext: str,
    algorithm_tag: str,
    site_id: str,
    encrypted_at: Optional[datetime] = None,
) -> str:
    """
    Build a V2 envelope string.

    Args:
        ciphertext: Opaque ciphertext returned by the cryptographic service
        algorithm_tag: Algorithm that produced the ciphertext
        site_id: Identity of the installation producing the envelope
        encrypted_at: Encryption time (defaults to now, UTC)

    Returns:
        Envelope string with a family prefix
    """
    timestamp = encrypted_at or datetime.now(timezone.utc)
    record = {
        "encrypted": True,
        "algorithm": algorithm_tag,
        "data": ciphertext,
        "site_id": site_id,
        "encrypted_at": timestamp.isoformat(),
        "version": FormatVersion.V2.value,
    }
    body = json.dumps(record, separators=(",", ":")).encode("utf-8")
    return prefix_for(algorithm_tag) + base64.standard_b64encode(body).decode("ascii")


def decode(value: Union[str, bytes]) -> Envelope:
    """
    Parse an envelope string.

    V2-prefixed values whose body is not a valid V2 record are read as Legacy
    with the remainder as payload.

    Raises:
        EnvelopeDecodeError: If the value carries no recognized prefix
    """
    if isinstance(value, bytes):
        try:
            value = value.decode("utf-8")
        except UnicodeDecodeError as e:
            raise EnvelopeDecodeError(f"Envelope is not valid UTF-8: {e}") from e
    if not isinstance(value, str):
        raise EnvelopeDecodeError(f"Unsupported envelope type: {type(value).__name__}")

    for prefix in V2_PREFIXES:
        if value.startswith(prefix):
            remainder = value[len(prefix):]
            envelope = _decode_v2(remainder)
            if envelope is not None:
                return envelope
            return Envelope(ciphertext=remainder, format_version=FormatVersion.LEGACY)

    for prefix in LEGACY_PREFIXES:
        if value.startswith(prefix):
            return Envelope(
                ciphertext=value[len(prefix):],
                format_version=FormatVersion.LEGACY,
            )

    raise EnvelopeDecodeError("Value is not a recognized envelope")


def _decode_v2(body: str) -> Optional[Envelope]:
    try:
        raw = base64.b64decode(body, validate=True)
        record = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError):
        return None

    if not isinstance(record, dict) or record.get("version") != FormatVersion.V2.value:
        return None
    data = record.get("data")
    if not isinstance(data, str):
        return None

    return Envelope(
        ciphertext=data,
        algorithm_tag=record.get("algorithm"),
        site_id=record.get("site_id"),
        format_version=FormatVersion.V2,
        encrypted_at=_parse_timestamp(record.get("encrypted_at")),
    )


def _parse_timestamp(value: object) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
