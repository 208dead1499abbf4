"""Test window bisection on RESULTSET_TOO_LARGE."""

import math
from datetime import timedelta

import pytest

from app.services import job_queue
from app.services.chunk_processor import process_next_chunk
from app.services.providers import ResultSetTooLarge
from app.services.splitter import WindowTooSmallToSplit, split_job
from app.utils.dates import parse_timestamp
from fakes import FIXED_NOW, USER_ID


class AlwaysTooLarge:
    """Adapter stub that refuses every window."""

    name = "stripe"

    def fetch_page(self, connection, window_start, window_end, cursor):
        raise ResultSetTooLarge("too many rows")


def add_job(db, days: float, session_id: str | None = None, priority: int = 104) -> dict:
    return db.create_sync_job(job_queue.new_job(
        user_id=USER_ID,
        connection_id="conn-stripe",
        provider="stripe",
        job_type="historical",
        chunk_start=FIXED_NOW - timedelta(days=days),
        chunk_end=FIXED_NOW,
        priority=priority,
        session_id=session_id,
    ))


def span(job: dict) -> timedelta:
    return parse_timestamp(job["chunk_end"]) - parse_timestamp(job["chunk_start"])


def test_split_shrinks_original_and_adds_sibling(db):
    original = add_job(db, days=30, session_id="session-1")
    claimed = job_queue.claim_next_job(db)
    claimed_with_cursor = {**claimed, "cursor": "page-3"}

    first, second = split_job(db, claimed_with_cursor)

    midpoint = FIXED_NOW - timedelta(days=15)
    assert first["id"] == original["id"]
    assert first["status"] == "pending"
    assert first["cursor"] is None
    assert parse_timestamp(first["chunk_end"]) == midpoint
    assert parse_timestamp(second["chunk_start"]) == midpoint
    assert parse_timestamp(second["chunk_end"]) == FIXED_NOW
    assert second["session_id"] == "session-1"
    assert second["priority"] == original["priority"]
    assert second["status"] == "pending"


def test_split_refuses_one_day_window(db):
    add_job(db, days=1)
    claimed = job_queue.claim_next_job(db)

    with pytest.raises(WindowTooSmallToSplit):
        split_job(db, claimed)


def test_split_after_lost_claim_changes_nothing(db):
    original = add_job(db, days=30)
    claimed = job_queue.claim_next_job(db)
    db.update_sync_job(claimed["id"], {"status": "pending", "claimed_at": None})

    assert split_job(db, claimed) == (None, None)
    assert span(db.get_sync_job_by_id(original["id"])) == timedelta(days=30)
    assert len(db.sync_jobs) == 1


@pytest.mark.parametrize("days", [1, 2, 7, 30, 31, 365])
def test_always_too_large_terminates_within_log2_splits(db, stripe_connection, days):
    """Splitting a window that never fits ends in failed jobs after ceil(log2(W / 1 day)) levels."""
    add_job(db, days=days)
    max_depth = math.ceil(math.log2(days))
    budget = 2 ** (max_depth + 1) + 1

    splits = 0
    for _ in range(budget):
        result = process_next_chunk(db, adapter_factory=lambda provider: AlwaysTooLarge())
        if result["status"] == "idle":
            break
        if result.get("split"):
            splits += 1
    else:
        pytest.fail("splitting did not terminate")

    jobs = list(db.sync_jobs.values())
    assert all(job["status"] == "failed" for job in jobs)
    assert splits == len(jobs) - 1
    # Every leaf sits at most max_depth halvings below the original window.
    for job in jobs:
        assert span(job) <= timedelta(days=1)
        assert span(job) >= timedelta(days=days) / (2 ** max_depth)
        assert "too large" in job["error_message"].lower()


def test_failed_sibling_insert_keeps_whole_window_queued(db, stripe_connection, monkeypatch):
    """The claimed job is only shrunk once its second half exists."""
    original = add_job(db, days=30)

    def refuse_insert(job_data):
        raise RuntimeError("insert failed")

    monkeypatch.setattr(db, "create_sync_job", refuse_insert)
    result = process_next_chunk(db, adapter_factory=lambda provider: AlwaysTooLarge())

    assert result["status"] == "error"
    stored = db.get_sync_job_by_id(original["id"])
    assert stored["status"] == "pending"
    assert stored["attempts"] == 1
    assert span(stored) == timedelta(days=30)
    assert len(db.sync_jobs) == 1


def test_claim_lost_after_sibling_insert_still_covers_window(db):
    original = add_job(db, days=30)
    claimed = job_queue.claim_next_job(db)
    create_sync_job = db.create_sync_job

    def insert_then_lose_claim(job_data):
        created = create_sync_job(job_data)
        db.update_sync_job(claimed["id"], {"claimed_at": "someone-else"})
        return created

    db.create_sync_job = insert_then_lose_claim
    first, second = split_job(db, claimed)

    assert first is None
    assert span(db.get_sync_job_by_id(original["id"])) == timedelta(days=30)
    assert parse_timestamp(second["chunk_start"]) == FIXED_NOW - timedelta(days=15)
    assert parse_timestamp(second["chunk_end"]) == FIXED_NOW
