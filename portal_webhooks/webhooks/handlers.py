"""Webhook HTTP handlers: FastAPI routes for payment-provider callbacks.

Each route hands the request to handle_webhook(), which:
1. Reads the raw body (needed for HMAC verification)
2. Verifies the provider-specific signature
3. Runs the business handler with bounded retry

Security contract:
- Never return error details to the webhook caller (no verification oracle)
- Every rejection (unreadable body, missing or bad signature, missing
  secret) gets the same 401 body
- Processing failures answer 500 so the provider redelivers
- Secrets are read from the environment per request and never logged
"""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from typing import Any, Mapping

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from portal_webhooks.monitoring import PerformanceMonitor
from portal_webhooks.webhooks.intake import (
    BusinessHandler,
    IntakeResult,
    handle_webhook,
    validate_deadline,
)
from portal_webhooks.webhooks.retry import RetryPolicy, Success
from portal_webhooks.webhooks.verification import SignatureAlgorithm

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    algorithm: SignatureAlgorithm
    secret_env: str


# Provider -> signature convention and secret env var
PROVIDER_CONFIG: dict[str, ProviderConfig] = {
    "mpesa": ProviderConfig("mpesa", SignatureAlgorithm.MPESA, "MPESA_WEBHOOK_SECRET"),
    "kopokopo": ProviderConfig("kopokopo", SignatureAlgorithm.KOPOKOPO, "KOPOKOPO_WEBHOOK_SECRET"),
    "generic": ProviderConfig("generic", SignatureAlgorithm.SHA256_HEX, "WEBHOOK_SECRET"),
}


def env_float(name: str) -> float | None:
    """Finite float from the environment, or None if unset or unusable."""
    raw = os.environ.get(name, "")
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return None
    if not math.isfinite(value):
        logger.warning("Ignoring non-finite %s=%r", name, raw)
        return None
    return value


def env_int(name: str) -> int | None:
    """Integer from the environment, or None if unset or not an integer."""
    raw = os.environ.get(name, "")
    if not raw:
        return None
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return None


def policy_from_env() -> RetryPolicy:
    """Retry policy from WEBHOOK_MAX_ATTEMPTS / WEBHOOK_BASE_DELAY_SECONDS.

    Out-of-range values fall back to the defaults (3 attempts, 1s).
    """
    max_attempts = env_int("WEBHOOK_MAX_ATTEMPTS")
    if max_attempts is not None and max_attempts < 1:
        logger.warning("Ignoring WEBHOOK_MAX_ATTEMPTS=%d (must be >= 1)", max_attempts)
        max_attempts = None

    base_delay = env_float("WEBHOOK_BASE_DELAY_SECONDS")
    if base_delay is not None and base_delay < 0:
        logger.warning("Ignoring WEBHOOK_BASE_DELAY_SECONDS=%s (must be >= 0)", base_delay)
        base_delay = None

    return RetryPolicy(
        max_attempts=max_attempts if max_attempts is not None else 3,
        base_delay=base_delay if base_delay is not None else 1.0,
    )


def deadline_from_env() -> float | None:
    """Processing deadline from WEBHOOK_DEADLINE_SECONDS; values <= 0 mean none."""
    deadline = env_float("WEBHOOK_DEADLINE_SECONDS")
    if deadline is not None and deadline <= 0:
        logger.warning("Ignoring WEBHOOK_DEADLINE_SECONDS=%s (must be > 0)", deadline)
        return None
    return deadline


def _get_secret(provider: ProviderConfig) -> str:
    secret = os.environ.get(provider.secret_env, "")
    if not secret:
        logger.warning("%s not set, rejecting %s webhook", provider.secret_env, provider.name)
    return secret


def _to_response(provider: str, result: IntakeResult) -> JSONResponse:
    """Translate an intake result into the provider-facing HTTP response."""
    if not result.accepted:
        status_code, status = 401, "rejected"
    elif isinstance(result.outcome, Success):
        status_code, status = 200, "processed"
    else:
        status_code, status = 500, "failed"

    if provider == "mpesa":
        # Safaricom expects ResultCode 0 for accepted callbacks.
        return JSONResponse(
            {
                "ResultCode": 0 if status_code == 200 else 1,
                "ResultDesc": "Accepted" if status_code == 200 else "Rejected",
            },
            status_code=status_code,
        )
    return JSONResponse({"status": status}, status_code=status_code)


def register_webhook_routes(
    app: FastAPI,
    business_handlers: Mapping[str, BusinessHandler],
    *,
    policy: RetryPolicy | None = None,
    monitor: PerformanceMonitor | None = None,
    deadline: float | None = None,
) -> None:
    """Register POST /webhooks/{provider} for every provider with a handler.

    Args:
        app: FastAPI application
        business_handlers: provider name -> coroutine function taking the raw payload
        policy: Retry policy (defaults to policy_from_env())
        monitor: Monitor owned by the app; exposed on GET /webhooks/metrics
        deadline: Optional processing deadline in seconds (must be > 0)
    """
    unknown = set(business_handlers) - set(PROVIDER_CONFIG)
    if unknown:
        raise ValueError(f"No provider config for: {', '.join(sorted(unknown))}")
    validate_deadline(deadline)

    retry_policy = policy or policy_from_env()

    def _make_route(provider: ProviderConfig, business_handler: BusinessHandler):
        async def webhook_route(request: Request) -> JSONResponse:
            result = await handle_webhook(
                request,
                _get_secret(provider),
                provider.algorithm,
                retry_policy,
                business_handler,
                monitor=monitor,
                deadline=deadline,
            )
            logger.info(
                "Webhook %s -> state=%s accepted=%s",
                provider.name,
                result.state.value,
                result.accepted,
            )
            return _to_response(provider.name, result)

        webhook_route.__name__ = f"{provider.name}_webhook"
        return webhook_route

    for name, business_handler in business_handlers.items():
        provider = PROVIDER_CONFIG[name]
        app.add_api_route(
            f"/webhooks/{name}",
            _make_route(provider, business_handler),
            methods=["POST"],
        )

    @app.get("/webhooks/metrics")
    async def webhook_metrics() -> dict[str, Any]:
        """Processing duration summaries (internal)."""
        return {"metrics": monitor.get_all_metrics() if monitor else {}}

    logger.info(
        "Webhook routes registered: /webhooks/{%s}", ",".join(sorted(business_handlers))
    )
