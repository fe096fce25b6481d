"""Webhook intake: receive, authenticate, process with retry.

Per-request state machine:
    received -> extracted -> {rejected | verified} -> {succeeded | retries_exhausted}

Security contract:
- Extraction failures, missing signatures and bad signatures produce the
  exact same rejection; the distinct reason is only written to the log
- The business handler only ever sees payloads whose signature verified
- Processing failures are returned with full detail (error, attempt count)
  for the internal caller; what the sender sees is the boundary's decision
"""

from __future__ import annotations

import asyncio
import functools
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from portal_webhooks.monitoring import PerformanceMonitor, timed
from portal_webhooks.webhooks.extraction import InboundRequest, extract
from portal_webhooks.webhooks.retry import (
    Failure,
    ProcessingOutcome,
    RetryPolicy,
    Success,
    run_with_retry,
)
from portal_webhooks.webhooks.verification import SignatureAlgorithm, check_signature

logger = logging.getLogger(__name__)

BusinessHandler = Callable[[bytes], Awaitable[Any]]

REJECTION_MESSAGE = "could not process"


class IntakeState(str, Enum):
    RECEIVED = "received"
    EXTRACTED = "extracted"
    REJECTED = "rejected"
    VERIFIED = "verified"
    SUCCEEDED = "succeeded"
    RETRIES_EXHAUSTED = "retries_exhausted"


class FailureKind(str, Enum):
    """Internal failure taxonomy (audit log only)."""

    EXTRACTION = "extraction_failed"      # body unreadable; sender may redeliver
    VERIFICATION = "verification_failed"  # missing/malformed/mismatched signature
    PROCESSING = "processing_failed"      # handler failed on every attempt


@dataclass(frozen=True)
class IntakeResult:
    """What handle_webhook reports to the HTTP boundary."""

    accepted: bool
    state: IntakeState
    outcome: ProcessingOutcome | None = None
    message: str = ""


_REJECTED = IntakeResult(
    accepted=False,
    state=IntakeState.REJECTED,
    outcome=None,
    message=REJECTION_MESSAGE,
)


def _audit(state: IntakeState, failure: FailureKind | None = None, detail: str = "") -> None:
    logger.info(
        "WEBHOOK_AUDIT state=%s failure=%s %s",
        state.value,
        failure.value if failure else "-",
        detail,
    )


def validate_deadline(deadline: float | None) -> None:
    """Raise ValueError unless ``deadline`` is None or a finite number > 0.

    A non-positive deadline would expire before the first attempt starts.
    """
    if deadline is None:
        return
    if not math.isfinite(deadline) or deadline <= 0:
        raise ValueError(f"deadline must be a finite number > 0, got {deadline}")


class _CountingWork:
    """Counts invocations so a deadline can report attempts made so far."""

    def __init__(self, work: Callable[[], Awaitable[Any]]) -> None:
        self._work = work
        self.calls = 0

    async def __call__(self) -> Any:
        self.calls += 1
        return await self._work()


async def handle_webhook(
    request: InboundRequest,
    secret: bytes | str,
    algorithm: SignatureAlgorithm | str,
    policy: RetryPolicy,
    business_handler: BusinessHandler,
    *,
    monitor: PerformanceMonitor | None = None,
    deadline: float | None = None,
) -> IntakeResult:
    """Authenticate an inbound webhook and process it with bounded retry.

    Args:
        request: Inbound request exposing ``headers`` and ``await body()``
        secret: Shared secret of the provider (never logged)
        algorithm: Provider's signature convention
        policy: Retry budget for the business handler
        business_handler: Coroutine function called with the verified raw payload
        monitor: Optional monitor recording each attempt under "webhook.process"
        deadline: Optional seconds (> 0) for the whole processing stage; a
            timeout becomes a Failure carrying TimeoutError

    Returns:
        IntakeResult. Rejections are all identical; accepted results carry the
        ProcessingOutcome.

    Raises:
        ValueError: If ``deadline`` is not a finite number > 0.
    """
    validate_deadline(deadline)
    _audit(IntakeState.RECEIVED)

    payload, signature, ok, _ = await extract(request)
    if not ok:
        _audit(IntakeState.REJECTED, FailureKind.EXTRACTION, "reason=unreadable_body")
        return _REJECTED
    _audit(IntakeState.EXTRACTED)

    verification = check_signature(payload, signature, secret, algorithm)
    if not verification.valid:
        reason = verification.reason.value if verification.reason else "unknown"
        _audit(IntakeState.REJECTED, FailureKind.VERIFICATION, f"reason={reason}")
        return _REJECTED
    _audit(IntakeState.VERIFIED)

    work: Callable[[], Awaitable[Any]] = functools.partial(business_handler, payload)
    if monitor is not None:
        work = timed(work, "webhook.process", monitor)
    counting = _CountingWork(work)

    if deadline is None:
        outcome = await run_with_retry(counting, policy)
    else:
        try:
            outcome = await asyncio.wait_for(run_with_retry(counting, policy), deadline)
        except asyncio.TimeoutError as e:
            logger.error("Webhook processing exceeded deadline of %.2fs", deadline)
            outcome = Failure(last_error=e, attempts_made=counting.calls)

    if isinstance(outcome, Success):
        _audit(IntakeState.SUCCEEDED, detail=f"attempts={outcome.attempts_made}")
        return IntakeResult(accepted=True, state=IntakeState.SUCCEEDED, outcome=outcome)

    _audit(
        IntakeState.RETRIES_EXHAUSTED,
        FailureKind.PROCESSING,
        f"attempts={outcome.attempts_made} error={type(outcome.last_error).__name__}",
    )
    return IntakeResult(
        accepted=True,
        state=IntakeState.RETRIES_EXHAUSTED,
        outcome=outcome,
    )
