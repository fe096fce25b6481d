"""Tests for the webhook intake orchestrator (extract -> verify -> retry).

Scenarios:
- A: correct signature -> accepted, handler invoked once, Success
- B: signature from another secret -> rejected, handler never invoked
- C: handler fails twice then succeeds -> accepted, Success after 3 calls
- D: handler always fails -> accepted, Failure with attempts_made=3
- All rejection reasons look identical to the caller
"""

from __future__ import annotations

import asyncio
import json

import pytest

from portal_webhooks.monitoring import PerformanceMonitor
from portal_webhooks.webhooks.intake import (
    REJECTION_MESSAGE,
    IntakeState,
    handle_webhook,
)
from portal_webhooks.webhooks.retry import Failure, RetryPolicy, Success
from portal_webhooks.webhooks.verification import SignatureAlgorithm, compute_signature

PAYLOAD = b'{"amount":100}'
SECRET = "topsecret"
ALGORITHM = SignatureAlgorithm.SHA256_HEX
POLICY = RetryPolicy(max_attempts=3, base_delay=0)


class _Handler:
    """Business handler double: fails ``failures`` times, records payloads."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.payloads: list[bytes] = []

    @property
    def calls(self) -> int:
        return len(self.payloads)

    async def __call__(self, payload: bytes) -> dict:
        self.payloads.append(payload)
        if self.calls <= self.failures:
            raise RuntimeError(f"database unavailable (call {self.calls})")
        return json.loads(payload)


def _signed_request(make_request, payload: bytes = PAYLOAD, secret: str = SECRET):
    signature = compute_signature(payload, secret, ALGORITHM)
    return make_request(payload, {"x-signature": signature})


class TestEndToEndScenarios:

    @pytest.mark.asyncio
    async def test_scenario_a_valid_signature(self, make_request):
        handler = _Handler()
        result = await handle_webhook(_signed_request(make_request), SECRET, ALGORITHM, POLICY, handler)

        assert result.accepted is True
        assert result.state == IntakeState.SUCCEEDED
        assert result.outcome == Success(result={"amount": 100}, attempts_made=1)
        assert handler.payloads == [PAYLOAD]

    @pytest.mark.asyncio
    async def test_scenario_b_wrong_secret(self, make_request):
        handler = _Handler()
        request = _signed_request(make_request, secret="another-secret")
        result = await handle_webhook(request, SECRET, ALGORITHM, POLICY, handler)

        assert result.accepted is False
        assert result.state == IntakeState.REJECTED
        assert result.outcome is None
        assert result.message == REJECTION_MESSAGE
        assert handler.calls == 0

    @pytest.mark.asyncio
    async def test_scenario_c_succeeds_on_third_attempt(self, make_request):
        handler = _Handler(failures=2)
        result = await handle_webhook(_signed_request(make_request), SECRET, ALGORITHM, POLICY, handler)

        assert result.accepted is True
        assert isinstance(result.outcome, Success)
        assert result.outcome.attempts_made == 3
        assert handler.calls == 3

    @pytest.mark.asyncio
    async def test_scenario_d_retries_exhausted(self, make_request):
        handler = _Handler(failures=100)
        result = await handle_webhook(_signed_request(make_request), SECRET, ALGORITHM, POLICY, handler)

        assert result.accepted is True
        assert result.state == IntakeState.RETRIES_EXHAUSTED
        assert isinstance(result.outcome, Failure)
        assert result.outcome.attempts_made == 3
        assert isinstance(result.outcome.last_error, RuntimeError)
        assert handler.calls == 3


class TestRejections:
    """Every rejection reason produces the same result."""

    @pytest.mark.asyncio
    async def test_rejections_are_indistinguishable(self, make_request):
        handler = _Handler()
        requests = [
            make_request(PAYLOAD, {}),                                   # no signature
            make_request(PAYLOAD, {"x-signature": "not-hex"}),           # malformed
            make_request(PAYLOAD, {"x-signature": "00" * 32}),           # mismatch
            make_request(error=ConnectionResetError("client went away")),  # unreadable
        ]
        results = [
            await handle_webhook(r, SECRET, ALGORITHM, POLICY, handler) for r in requests
        ]

        assert all(r == results[0] for r in results)
        assert results[0].accepted is False
        assert handler.calls == 0

    @pytest.mark.asyncio
    async def test_missing_secret_rejects(self, make_request):
        handler = _Handler()
        result = await handle_webhook(_signed_request(make_request), "", ALGORITHM, POLICY, handler)
        assert result.accepted is False
        assert handler.calls == 0

    @pytest.mark.asyncio
    async def test_reserialized_json_fails_verification(self, make_request):
        """Signature covers exact wire bytes; re-encoded JSON does not verify."""
        signature = compute_signature(PAYLOAD, SECRET, ALGORITHM)
        reencoded = json.dumps(json.loads(PAYLOAD)).encode()  # '{"amount": 100}'
        request = make_request(reencoded, {"x-signature": signature})
        result = await handle_webhook(request, SECRET, ALGORITHM, POLICY, _Handler())
        assert result.accepted is False

    @pytest.mark.asyncio
    async def test_audit_log_records_reason_without_secret(self, make_request, caplog):
        request = make_request(PAYLOAD, {"x-signature": "00" * 32})
        with caplog.at_level("INFO"):
            await handle_webhook(request, SECRET, ALGORITHM, POLICY, _Handler())
        assert "WEBHOOK_AUDIT" in caplog.text
        assert "verification_failed" in caplog.text
        assert SECRET not in caplog.text


class TestProviderAlgorithms:

    @pytest.mark.asyncio
    async def test_mpesa_signature_header(self, make_request):
        signature = compute_signature(PAYLOAD, SECRET, SignatureAlgorithm.MPESA)
        request = make_request(PAYLOAD, {"X-Safaricom-Signature": signature})
        result = await handle_webhook(request, SECRET, SignatureAlgorithm.MPESA, POLICY, _Handler())
        assert result.accepted is True

    @pytest.mark.asyncio
    async def test_kopokopo_signature_header(self, make_request):
        signature = compute_signature(PAYLOAD, SECRET, SignatureAlgorithm.KOPOKOPO)
        request = make_request(PAYLOAD, {"X-Kopokopo-Signature": signature})
        result = await handle_webhook(request, SECRET, SignatureAlgorithm.KOPOKOPO, POLICY, _Handler())
        assert result.accepted is True


class TestInstrumentationAndDeadline:

    @pytest.mark.asyncio
    async def test_monitor_records_each_attempt(self, make_request):
        monitor = PerformanceMonitor()
        handler = _Handler(failures=2)
        await handle_webhook(
            _signed_request(make_request), SECRET, ALGORITHM, POLICY, handler, monitor=monitor
        )
        summary = monitor.get_metrics("webhook.process")
        assert summary is not None
        assert summary.count == 3

    @pytest.mark.asyncio
    async def test_deadline_becomes_failure(self, make_request):
        calls = 0

        async def hangs(payload: bytes) -> None:
            nonlocal calls
            calls += 1
            await asyncio.sleep(10)

        result = await handle_webhook(
            _signed_request(make_request), SECRET, ALGORITHM, POLICY, hangs, deadline=0.05
        )
        assert result.accepted is True
        assert result.state == IntakeState.RETRIES_EXHAUSTED
        assert isinstance(result.outcome, Failure)
        assert isinstance(result.outcome.last_error, asyncio.TimeoutError)
        assert result.outcome.attempts_made == calls == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("deadline", [0, -1.0, float("nan")])
    async def test_non_positive_deadline_rejected_before_processing(self, make_request, deadline):
        handler = _Handler()
        with pytest.raises(ValueError, match="deadline"):
            await handle_webhook(
                _signed_request(make_request), SECRET, ALGORITHM, POLICY, handler, deadline=deadline
            )
        assert handler.calls == 0

    @pytest.mark.asyncio
    async def test_short_deadline_still_invokes_handler(self, make_request):
        handler = _Handler()
        result = await handle_webhook(
            _signed_request(make_request), SECRET, ALGORITHM, POLICY, handler, deadline=0.5
        )
        assert isinstance(result.outcome, Success)
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_deadline_not_hit_returns_success(self, make_request):
        result = await handle_webhook(
            _signed_request(make_request), SECRET, ALGORITHM, POLICY, _Handler(), deadline=5
        )
        assert isinstance(result.outcome, Success)

    @pytest.mark.asyncio
    async def test_concurrent_webhooks_are_independent(self, make_request):
        good = _Handler()
        flaky = _Handler(failures=1)
        results = await asyncio.gather(
            handle_webhook(_signed_request(make_request), SECRET, ALGORITHM, POLICY, good),
            handle_webhook(_signed_request(make_request), SECRET, ALGORITHM, POLICY, flaky),
            handle_webhook(
                _signed_request(make_request, secret="forged"), SECRET, ALGORITHM, POLICY, good
            ),
        )
        assert [r.accepted for r in results] == [True, True, False]
        assert results[0].outcome.attempts_made == 1
        assert results[1].outcome.attempts_made == 2
        assert good.calls == 1
