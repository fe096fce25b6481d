"""FastAPI app exposing the payment webhook endpoints.

Run with: uvicorn portal_webhooks.serve:create_app --factory
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Mapping

from fastapi import FastAPI

from portal_webhooks.monitoring import PerformanceMonitor
from portal_webhooks.webhooks.handlers import deadline_from_env, register_webhook_routes
from portal_webhooks.webhooks.intake import BusinessHandler
from portal_webhooks.webhooks.retry import RetryPolicy

logger = logging.getLogger(__name__)

# Fields logged from a C2B confirmation / STK callback
_PAYMENT_FIELDS = ("TransactionType", "TransID", "TransAmount", "BillRefNumber", "TransTime")


async def log_payment_confirmation(payload: bytes) -> dict[str, Any]:
    """Default business handler: decode the verified payload and log it.

    Raises on undecodable JSON so the failure is retried and reported.
    """
    data = json.loads(payload)
    if not isinstance(data, dict):
        raise ValueError("payment payload must be a JSON object")

    body = data.get("Body")
    stk = body.get("stkCallback") if isinstance(body, dict) else None
    if isinstance(stk, dict):
        summary = {
            "CheckoutRequestID": stk.get("CheckoutRequestID"),
            "ResultCode": stk.get("ResultCode"),
        }
    else:
        summary = {k: data[k] for k in _PAYMENT_FIELDS if k in data}

    logger.info("Payment webhook received: %s", summary)
    return summary


def create_app(
    business_handlers: Mapping[str, BusinessHandler] | None = None,
    *,
    policy: RetryPolicy | None = None,
    monitor: PerformanceMonitor | None = None,
) -> FastAPI:
    """Build the webhook app. The monitor is created here and owned by the app."""
    if os.environ.get("LOG_LEVEL"):
        logging.basicConfig(level=os.environ["LOG_LEVEL"].upper())

    app = FastAPI(title="Portal Payment Webhooks")
    app.state.monitor = monitor or PerformanceMonitor()

    handlers = business_handlers or {
        "mpesa": log_payment_confirmation,
        "kopokopo": log_payment_confirmation,
        "generic": log_payment_confirmation,
    }
    register_webhook_routes(
        app,
        handlers,
        policy=policy,
        monitor=app.state.monitor,
        deadline=deadline_from_env(),
    )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app
