"""Pytest configuration for test isolation.

Settings are read from the environment (and a ``.env`` file) through a cached
``get_settings()``. A developer's real API keys would otherwise switch on the
Anthropic and embedding clients during tests, and a cached Settings object
from one test would leak into the next.

The autouse fixture pins the environment to ``test``, clears the provider
keys and resets the settings cache around every test. The remaining fixtures
build transactions and the in-memory repositories the engine runs against.
"""

from __future__ import annotations

from datetime import date
from itertools import count
from pathlib import Path

import pytest

from ledgerlens.common.config import get_settings
from ledgerlens.domain.categorization.schemas import NormalizedTransaction
from ledgerlens.domain.categorization.taxonomy import category_id_for
from tests.helpers.memory_repositories import (
    ORG_ID,
    InMemoryOscillationRepository,
    InMemoryRuleVersionRepository,
    InMemoryTransactionRepository,
    InMemoryVendorEmbeddingRepository,
)


@pytest.fixture(autouse=True)
def _isolate_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Hermetic settings: no provider keys, no .env from the working tree."""

    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("JSON_LOGS", "false")
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def make_tx():
    """Factory for NormalizedTransaction with sensible defaults."""

    ids = count(1)

    def _make(
        description: str = "",
        amount_cents: int = -1000,
        merchant_name: str | None = None,
        mcc: str | None = None,
        org_id: str = ORG_ID,
        tx_id: str | None = None,
    ) -> NormalizedTransaction:
        return NormalizedTransaction(
            id=tx_id or f"tx_{next(ids)}",
            org_id=org_id,
            date=date(2025, 1, 15),
            amount_cents=amount_cents,
            description=description,
            merchant_name=merchant_name,
            mcc=mcc,
        )

    return _make


@pytest.fixture
def cat_id():
    """Category id lookup by slug."""
    return category_id_for


@pytest.fixture
def rule_repo() -> InMemoryRuleVersionRepository:
    return InMemoryRuleVersionRepository()


@pytest.fixture
def embedding_repo() -> InMemoryVendorEmbeddingRepository:
    return InMemoryVendorEmbeddingRepository()


@pytest.fixture
def oscillation_repo() -> InMemoryOscillationRepository:
    return InMemoryOscillationRepository()


@pytest.fixture
def transaction_repo() -> InMemoryTransactionRepository:
    return InMemoryTransactionRepository()
