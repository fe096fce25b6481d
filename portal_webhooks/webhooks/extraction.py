"""Webhook payload extraction: raw body plus provider signature header.

The body is read once as raw bytes. Parsing happens only after the
signature has been verified, and only in the business handler.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, NamedTuple, Protocol

logger = logging.getLogger(__name__)

# Known provider signature headers, checked in order.
# Adding a provider: append its header here and give it a SignatureAlgorithm.
SIGNATURE_HEADERS: tuple[str, ...] = (
    "x-signature",
    "x-safaricom-signature",
    "x-kopokopo-signature",
)


class InboundRequest(Protocol):
    """The slice of an HTTP request the extractor needs (Starlette-compatible)."""

    headers: Mapping[str, str]

    async def body(self) -> bytes: ...


@dataclass(frozen=True)
class RawWebhookRequest:
    """An inbound webhook exactly as received."""

    body: bytes
    signatures: tuple[tuple[str, str], ...] = ()

    @property
    def signature(self) -> str | None:
        """First signature header present, in lookup order."""
        return self.signatures[0][1] if self.signatures else None


class ExtractionResult(NamedTuple):
    payload: bytes
    signature: str | None
    ok: bool
    request: RawWebhookRequest | None = None


def _candidate_signatures(
    headers: Mapping[str, Any],
    header_names: tuple[str, ...],
) -> tuple[tuple[str, str], ...]:
    lowered = {str(k).lower(): v for k, v in headers.items()}
    return tuple(
        (name, lowered[name])
        for name in header_names
        if lowered.get(name)
    )


async def extract(
    request: InboundRequest,
    header_names: tuple[str, ...] = SIGNATURE_HEADERS,
) -> ExtractionResult:
    """Read the raw body and locate the signature header.

    Never raises: an unreadable body gives ok=False. An empty body is
    still ok=True; validity of the content is not this layer's concern.
    """
    try:
        body = await request.body()
        signatures = _candidate_signatures(request.headers, header_names)
    except Exception as e:
        logger.warning(
            "Failed to read webhook request: %s: %s", type(e).__name__, str(e)[:200]
        )
        return ExtractionResult(b"", None, False)

    raw = RawWebhookRequest(body=bytes(body), signatures=signatures)
    if raw.signature is None:
        logger.info("Webhook request carries none of the signature headers %s", header_names)
    return ExtractionResult(raw.body, raw.signature, True, raw)
