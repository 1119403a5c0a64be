"""
Test Suite: Billing DB initialization
=====================================

- production guard requires BILLING_INIT_CONFIRM=YES
- dry run reports without writing
- existing collections and indexes are skipped
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from token_billing.db_init import (
    REQUIRED_COLLECTIONS,
    REQUIRED_INDEXES,
    check_environment,
    initialize,
)
from token_billing.mongo_store import LEDGER


@pytest.fixture
def mock_db():
    collection = MagicMock()
    collection.index_information = AsyncMock(return_value={"_id_": {}, "idx_account_sequence_unique": {}})
    collection.create_index = AsyncMock()
    collection.update_one = AsyncMock()

    db = MagicMock()
    db.list_collection_names = AsyncMock(return_value=[LEDGER])
    db.create_collection = AsyncMock()
    db.__getitem__.return_value = collection
    return db


class TestEnvironmentGuard:

    def test_development_allowed(self, monkeypatch):
        monkeypatch.delenv("APP_ENV", raising=False)
        allowed, message = check_environment()
        assert allowed is True
        assert "development" in message

    def test_production_blocked_without_confirm(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        monkeypatch.delenv("BILLING_INIT_CONFIRM", raising=False)
        allowed, message = check_environment()
        assert allowed is False
        assert "BILLING_INIT_CONFIRM" in message

    def test_production_allowed_with_confirm(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        monkeypatch.setenv("BILLING_INIT_CONFIRM", "YES")
        allowed, _ = check_environment()
        assert allowed is True


class TestInitialize:

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, mock_db):
        report = await initialize(mock_db, dry_run=True)

        mock_db.create_collection.assert_not_called()
        mock_db.__getitem__.return_value.create_index.assert_not_called()
        mock_db.__getitem__.return_value.update_one.assert_not_called()
        assert any("[DRY-RUN]" in line for line in report)

    @pytest.mark.asyncio
    async def test_creates_missing_only(self, mock_db):
        report = await initialize(mock_db)

        created = [c.args[0] for c in mock_db.create_collection.call_args_list]
        assert LEDGER not in created
        assert len(created) == len(REQUIRED_COLLECTIONS) - 1

        index_names = [c.kwargs["name"] for c in mock_db.__getitem__.return_value.create_index.call_args_list]
        assert "idx_account_sequence_unique" not in index_names
        assert len(index_names) == len(REQUIRED_INDEXES) - 1
        assert any("Version stamp updated" in line for line in report)

    def test_unique_indexes_back_the_store_contract(self):
        unique = {
            (collection, tuple(field for field, _ in spec))
            for collection, spec, options in REQUIRED_INDEXES
            if options.get("unique")
        }
        assert ("token_ledger", ("account_id", "sequence_no")) in unique
        assert ("token_ledger", ("account_id", "idempotency_key")) in unique
        assert ("billing_invoices", ("correlation_id",)) in unique
        assert ("idempotent_responses", ("account_id", "idempotency_key")) in unique
