"""Test session progress aggregation."""

import random
from datetime import timedelta

import pytest

from app.services import job_queue
from app.services.historical_sync import build_chunks, enqueue_session
from app.services.session_service import summarize_jobs, update_session_progress
from app.services.splitter import WindowTooSmallToSplit, split_job
from app.utils.dates import utcnow
from fakes import FIXED_NOW, USER_ID


def seed_session(db, months: int = 6) -> dict:
    start = FIXED_NOW - timedelta(days=30 * months)
    return enqueue_session(
        db,
        user_id=USER_ID,
        connection_id="conn-stripe",
        provider="stripe",
        sync_type="historical",
        chunks=build_chunks(start, FIXED_NOW),
    )


class TestSummarizeJobs:
    """Pure counter/status computation."""

    def test_01_running_until_every_job_is_terminal(self):
        jobs = [
            {"status": "completed", "records_processed": 10},
            {"status": "pending", "records_processed": 3},
        ]
        summary = summarize_jobs(jobs, "partial")

        assert summary["status"] == "running"
        assert summary["completed_chunks"] == 1
        assert summary["total_chunks"] == 2
        assert summary["total_records"] == 13

    def test_02_partial_policy_completes_with_note(self):
        jobs = [{"status": "completed", "records_processed": 5}, {"status": "failed", "records_processed": 0}]
        summary = summarize_jobs(jobs, "partial")

        assert summary["status"] == "completed"
        assert summary["failed_chunks"] == 1
        assert summary["error_message"] == "Completed with errors: 1 of 2 chunk(s) failed"

    def test_03_fail_policy_fails_session(self):
        jobs = [{"status": "completed", "records_processed": 5}, {"status": "failed", "records_processed": 0}]
        summary = summarize_jobs(jobs, "fail")

        assert summary["status"] == "failed"
        assert summary["error_message"] == "1 of 2 chunk(s) failed"

    def test_04_clean_completion(self):
        jobs = [{"status": "completed", "records_processed": 1}] * 3
        summary = summarize_jobs(jobs, "fail")

        assert summary["status"] == "completed"
        assert summary["error_message"] is None


class TestUpdateSessionProgress:
    """update_session_progress against stored jobs."""

    def test_01_total_chunks_grows_with_split(self, db):
        session = seed_session(db, months=3)
        assert session["total_chunks"] == len(db.get_session_jobs(session["id"]))

        job = job_queue.claim_next_job(db)
        split_job(db, job)
        updated = update_session_progress(db, session["id"])

        assert updated["total_chunks"] == session["total_chunks"] + 1
        assert updated["status"] == "running"

    def test_02_completed_at_set_once(self, db):
        session = seed_session(db, months=1)
        while (job := job_queue.claim_next_job(db)) is not None:
            job_queue.advance_job(db, job, None, written=2)

        first = update_session_progress(db, session["id"])
        second = update_session_progress(db, session["id"])

        assert first["status"] == "completed"
        assert first["completed_at"] is not None
        assert second["completed_at"] == first["completed_at"]
        assert second["total_records"] == 2 * second["total_chunks"]

    def test_03_fail_policy_from_settings(self, db, monkeypatch):
        monkeypatch.setenv("SESSION_FAILURE_POLICY", "fail")
        session = seed_session(db, months=2)
        first = job_queue.claim_next_job(db)
        job_queue.fail_job(db, first, "Invalid API key")
        while (job := job_queue.claim_next_job(db)) is not None:
            job_queue.advance_job(db, job, None, written=1)

        updated = update_session_progress(db, session["id"])

        assert updated["status"] == "failed"
        assert updated["failed_chunks"] == 1

    def test_04_missing_session(self, db):
        assert update_session_progress(db, "missing") is None


@pytest.mark.parametrize("seed", range(12))
def test_random_interleavings_keep_session_consistent(db, seed):
    """Counters stay bounded and monotonic; the session is terminal iff every job is."""
    rng = random.Random(seed)
    session = seed_session(db, months=rng.randint(2, 8))
    previous_completed = 0

    for _ in range(5000):
        job = job_queue.claim_next_job(db)
        if job is None:
            break

        action = rng.choice(["complete", "page", "split", "fail", "retry"])
        if action == "complete":
            job_queue.advance_job(db, job, None, written=rng.randint(0, 20))
        elif action == "page":
            job_queue.advance_job(db, job, f"cursor-{rng.randint(1, 99)}", written=rng.randint(0, 20))
        elif action == "split":
            try:
                split_job(db, job)
            except WindowTooSmallToSplit as e:
                job_queue.fail_job(db, job, str(e))
        elif action == "fail":
            job_queue.fail_job(db, job, "Invalid API key")
        else:
            # Backdated so the retry is immediately claimable again.
            job_queue.retry_or_fail(db, job, "503", now=utcnow() - timedelta(days=2))

        updated = update_session_progress(db, session["id"])
        jobs = db.get_session_jobs(session["id"])
        all_terminal = all(j["status"] in job_queue.TERMINAL_STATUSES for j in jobs)

        assert updated["total_chunks"] == len(jobs)
        assert updated["completed_chunks"] <= updated["total_chunks"]
        assert updated["completed_chunks"] >= previous_completed
        assert (updated["status"] != "running") == all_terminal
        previous_completed = updated["completed_chunks"]
    else:
        pytest.fail("queue never drained")

    final = db.get_sync_session_by_id(session["id"])
    assert final["status"] in ("completed", "failed")
    assert final["completed_chunks"] == final["total_chunks"]
