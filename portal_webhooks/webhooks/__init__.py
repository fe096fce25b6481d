"""Webhook inbound system.

Receives payment-provider callbacks (M-Pesa, Kopokopo, generic x-signature).
Each webhook is signature-verified over its raw body, then handed to a
business handler with bounded exponential-backoff retry.
"""

from portal_webhooks.webhooks.extraction import RawWebhookRequest, extract
from portal_webhooks.webhooks.intake import IntakeResult, IntakeState, handle_webhook
from portal_webhooks.webhooks.retry import (
    Failure,
    ProcessingOutcome,
    RetryPolicy,
    Success,
    run_with_retry,
)
from portal_webhooks.webhooks.verification import (
    SignatureAlgorithm,
    VerificationResult,
    verify_hmac,
)

__all__ = [
    "Failure",
    "IntakeResult",
    "IntakeState",
    "ProcessingOutcome",
    "RawWebhookRequest",
    "RetryPolicy",
    "SignatureAlgorithm",
    "Success",
    "VerificationResult",
    "extract",
    "handle_webhook",
    "run_with_retry",
    "verify_hmac",
]
