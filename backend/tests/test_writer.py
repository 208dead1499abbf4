"""Test the idempotent transaction writer."""

from decimal import Decimal

import pytest

from app.schemas.connection import NormalizedTransaction
from app.services.providers.base import content_fingerprint
from app.services.writer import write_transactions
from fakes import USER_ID


def make_tx(tx_id: str, provider: str, amount: float = 10.0) -> NormalizedTransaction:
    return NormalizedTransaction(
        id=tx_id,
        user_id=USER_ID,
        date="2026-01-15",
        amount=amount,
        currency="USD",
        description="Test entry",
        type="Inflow",
        account="Main",
        provider=provider,
    )


WISE_FINGERPRINT_ID = "wise-" + content_fingerprint("2026-01-15", Decimal("10"), "Test entry", "USD")


@pytest.mark.parametrize("tx_id, provider", [
    ("stripe-txn_1", "stripe"),
    ("paypal-5TY05013RG002845M", "paypal"),
    ("wise-CARD-123456", "wise"),
    (WISE_FINGERPRINT_ID, "wise"),
])
def test_replay_writes_exactly_once(db, tx_id, provider):
    """Writing the same deterministic id twice stores one row and counts it once."""
    first = write_transactions(db, [make_tx(tx_id, provider)])
    second = write_transactions(db, [make_tx(tx_id, provider)])

    assert first == 1
    assert second == 0
    assert list(db.transactions) == [tx_id]


def test_duplicates_within_one_call_are_collapsed(db):
    txs = [make_tx("stripe-txn_1", "stripe"), make_tx("stripe-txn_1", "stripe"), make_tx("stripe-txn_2", "stripe")]

    assert write_transactions(db, txs) == 2
    assert sorted(db.transactions) == ["stripe-txn_1", "stripe-txn_2"]


def test_existing_row_is_not_overwritten(db):
    """ignore-duplicates semantics: the first write wins."""
    write_transactions(db, [make_tx("stripe-txn_1", "stripe", amount=10.0)])
    write_transactions(db, [make_tx("stripe-txn_1", "stripe", amount=99.0)])

    assert db.transactions["stripe-txn_1"]["amount"] == 10.0


def test_batches_respect_batch_size(db):
    txs = [make_tx(f"stripe-txn_{i}", "stripe") for i in range(1200)]

    assert write_transactions(db, txs, batch_size=500) == 1200
    assert db.upsert_calls == 3


def test_partial_replay_counts_only_new_rows(db):
    write_transactions(db, [make_tx(f"paypal-{i}", "paypal") for i in range(5)])

    written = write_transactions(db, [make_tx(f"paypal-{i}", "paypal") for i in range(3, 8)])

    assert written == 3
    assert len(db.transactions) == 8


def test_empty_input(db):
    assert write_transactions(db, []) == 0
    assert db.upsert_calls == 0
