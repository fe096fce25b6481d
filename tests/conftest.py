"""Shared fixtures for the webhook test suite."""

from __future__ import annotations

from typing import Mapping

import pytest


class FakeRequest:
    """Minimal stand-in for a Starlette request: headers plus async body()."""

    def __init__(
        self,
        body: bytes = b"",
        headers: Mapping[str, str] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.headers = dict(headers or {})
        self._body = body
        self._error = error
        self.body_reads = 0

    async def body(self) -> bytes:
        self.body_reads += 1
        if self._error is not None:
            raise self._error
        return self._body


@pytest.fixture()
def make_request():
    """Factory for FakeRequest objects."""

    def _make(
        body: bytes = b"",
        headers: Mapping[str, str] | None = None,
        error: Exception | None = None,
    ) -> FakeRequest:
        return FakeRequest(body=body, headers=headers, error=error)

    return _make
