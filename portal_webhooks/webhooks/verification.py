"""Webhook signature verification: constant-time HMAC over the raw body.

Security contract:
- Signatures are computed over the exact wire bytes, never re-encoded JSON
- All comparisons use hmac.compare_digest() (constant-time, no timing attacks)
- Every failure (missing, malformed, wrong length, crypto error) returns False
  and is logged with a reason; callers cannot tell the reasons apart
- Empty secret -> verification always fails (fail-closed)
- Secrets are never logged
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class SignatureAlgorithm(str, Enum):
    """Closed set of digest/encoding conventions used by upstream providers."""

    SHA1_HEX = "sha1_hex"           # generic, optional "sha1=" prefix
    SHA256_HEX = "sha256_hex"       # generic, optional "sha256=" prefix
    SHA256_BASE64 = "sha256_base64"
    MPESA = "mpesa"                 # Safaricom: HMAC-SHA256, base64
    KOPOKOPO = "kopokopo"           # Kopokopo: HMAC-SHA1, hex


class VerificationFailureReason(str, Enum):
    """Why a signature was rejected. Logged only, never returned to senders."""

    MISSING_SIGNATURE = "missing_signature"
    MISSING_SECRET = "missing_secret"
    UNKNOWN_ALGORITHM = "unknown_algorithm"
    MALFORMED_SIGNATURE = "malformed_signature"
    LENGTH_MISMATCH = "length_mismatch"
    COMPARISON_FAILED = "comparison_failed"
    CRYPTO_ERROR = "crypto_error"


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of a signature check."""

    valid: bool
    reason: VerificationFailureReason | None = None

    def __bool__(self) -> bool:
        return self.valid


@dataclass(frozen=True)
class _AlgorithmProfile:
    digest: str
    encoding: str  # "hex" or "base64"
    prefix: str | None = None  # accepted algorithm-name prefix, e.g. "sha256="


_ALGORITHM_PROFILES: dict[SignatureAlgorithm, _AlgorithmProfile] = {
    SignatureAlgorithm.SHA1_HEX: _AlgorithmProfile("sha1", "hex", prefix="sha1="),
    SignatureAlgorithm.SHA256_HEX: _AlgorithmProfile("sha256", "hex", prefix="sha256="),
    SignatureAlgorithm.SHA256_BASE64: _AlgorithmProfile("sha256", "base64"),
    SignatureAlgorithm.MPESA: _AlgorithmProfile("sha256", "base64"),
    SignatureAlgorithm.KOPOKOPO: _AlgorithmProfile("sha1", "hex"),
}

_HEX_RE = re.compile(r"[0-9a-f]+")
_BASE64_RE = re.compile(r"[A-Za-z0-9+/]+={0,2}")


def _secret_bytes(secret: bytes | str) -> bytes:
    if isinstance(secret, str):
        return secret.encode("utf-8")
    return bytes(secret)


def _profile_for(algorithm: SignatureAlgorithm | str) -> _AlgorithmProfile:
    return _ALGORITHM_PROFILES[SignatureAlgorithm(algorithm)]


def compute_signature(
    payload: bytes,
    secret: bytes | str,
    algorithm: SignatureAlgorithm | str,
) -> str:
    """Compute the signature a provider would send for ``payload``.

    Returns the bare encoded digest (no ``sha256=`` style prefix).
    """
    profile = _profile_for(algorithm)
    digest = hmac.new(_secret_bytes(secret), payload, getattr(hashlib, profile.digest)).digest()
    if profile.encoding == "base64":
        return base64.b64encode(digest).decode("ascii")
    return binascii.hexlify(digest).decode("ascii")


def _normalize_claimed(claimed: str, profile: _AlgorithmProfile) -> str | None:
    """Return the claimed signature in canonical form, or None if malformed."""
    candidate = claimed
    if profile.prefix and candidate.startswith(profile.prefix):
        candidate = candidate[len(profile.prefix):]
    if profile.encoding == "hex":
        # Hex digests compare case-insensitively.
        candidate = candidate.lower()
        if not _HEX_RE.fullmatch(candidate) or len(candidate) % 2:
            return None
        return candidate
    if not _BASE64_RE.fullmatch(candidate) or len(candidate) % 4:
        return None
    return candidate


def check_signature(
    payload: bytes,
    claimed_signature: str | None,
    secret: bytes | str,
    algorithm: SignatureAlgorithm | str,
) -> VerificationResult:
    """Check ``claimed_signature`` against HMAC(secret, payload).

    Never raises. The returned reason is for logging only.

    Args:
        payload: Raw request body bytes, exactly as received
        claimed_signature: Signature header value sent by the provider
        secret: Shared secret for this provider
        algorithm: Digest/encoding convention of the provider

    Returns:
        VerificationResult with valid=True only on an exact match
    """
    try:
        profile = _profile_for(algorithm)
    except (KeyError, ValueError):
        return VerificationResult(False, VerificationFailureReason.UNKNOWN_ALGORITHM)

    if not secret:
        return VerificationResult(False, VerificationFailureReason.MISSING_SECRET)
    if not claimed_signature:
        return VerificationResult(False, VerificationFailureReason.MISSING_SIGNATURE)

    try:
        expected = compute_signature(payload, secret, algorithm)
    except (TypeError, ValueError, AttributeError):
        return VerificationResult(False, VerificationFailureReason.CRYPTO_ERROR)

    candidate = _normalize_claimed(claimed_signature, profile)
    if candidate is None:
        return VerificationResult(False, VerificationFailureReason.MALFORMED_SIGNATURE)

    # compare_digest returns False for unequal lengths without short-circuiting
    # on the first differing byte.
    if hmac.compare_digest(expected.encode("ascii"), candidate.encode("ascii")):
        return VerificationResult(True)
    if len(candidate) != len(expected):
        return VerificationResult(False, VerificationFailureReason.LENGTH_MISMATCH)
    return VerificationResult(False, VerificationFailureReason.COMPARISON_FAILED)


def verify_hmac(
    payload: bytes,
    claimed_signature: str | None,
    secret: bytes | str,
    algorithm: SignatureAlgorithm | str,
) -> bool:
    """Verify a webhook signature. Returns True only if it is authentic."""
    result = check_signature(payload, claimed_signature, secret, algorithm)
    if not result.valid:
        logger.warning(
            "Webhook signature rejected: algorithm=%s reason=%s",
            getattr(algorithm, "value", algorithm),
            result.reason.value if result.reason else "unknown",
        )
    return result.valid


def verify_mpesa(payload: bytes, signature: str | None, secret: bytes | str) -> bool:
    """Verify a Safaricom M-Pesa callback (HMAC-SHA256, base64).

    Safaricom sends the signature in the X-Safaricom-Signature header.
    """
    return verify_hmac(payload, signature, secret, SignatureAlgorithm.MPESA)


def verify_kopokopo(payload: bytes, signature: str | None, secret: bytes | str) -> bool:
    """Verify a Kopokopo notification (HMAC-SHA1, hex).

    Kopokopo sends the signature in the X-Kopokopo-Signature header.
    """
    return verify_hmac(payload, signature, secret, SignatureAlgorithm.KOPOKOPO)


def verify_webhook_signature(
    payload: bytes,
    signature: str | None,
    secret: bytes | str,
    digest: str = "sha256",
) -> bool:
    """Verify a generic hex HMAC signature, optionally prefixed with ``sha256=``."""
    algorithm = {
        "sha1": SignatureAlgorithm.SHA1_HEX,
        "sha256": SignatureAlgorithm.SHA256_HEX,
    }.get(digest)
    if algorithm is None:
        logger.warning("Unsupported webhook digest: %s", digest)
        return False
    return verify_hmac(payload, signature, secret, algorithm)
