"""Shared test fixtures for docbridge."""

from __future__ import annotations

import os

import httpx
import pytest


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's DOCBRIDGE_* variables out of the tests."""
    for key in list(os.environ):
        if key.startswith("DOCBRIDGE_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def mock_client():
    """Factory for an ``httpx.AsyncClient`` backed by a request handler.

    The handler may be sync or async and receives the ``httpx.Request``.
    """

    def factory(handler) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return factory
