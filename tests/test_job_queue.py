"""
Persistent job queue tests: ordering, delays, retries, stalls and retention.
"""
from datetime import datetime, timedelta

import pytest

from app.exceptions import QueueUnavailableError
from app.models.sync_jobs import QueueJob
from app.services.job_queue import JobQueue


@pytest.fixture
def queue(db):
    return JobQueue(db, "test-queue", enabled=True)


def _future():
    return datetime.utcnow() + timedelta(seconds=5)


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------

def test_claims_highest_priority_first(queue):
    low = queue.add("low", {"brand_id": 1}, priority=1)
    high = queue.add("high", {"brand_id": 1}, priority=10)
    mid = queue.add("mid", {"brand_id": 1}, priority=5)

    claimed = [queue.claim_next(now=_future()).id for _ in range(3)]

    assert claimed == [high.id, mid.id, low.id]
    assert queue.claim_next(now=_future()) is None


def test_fifo_within_priority(queue):
    first = queue.add("a", {}, priority=3)
    second = queue.add("b", {}, priority=3)

    assert queue.claim_next(now=_future()).id == first.id
    assert queue.claim_next(now=_future()).id == second.id


def test_delayed_job_not_ready_before_run_at(queue):
    job = queue.add("later", {}, delay=60)
    assert job.status == "delayed"

    assert queue.claim_next() is None
    claimed = queue.claim_next(now=datetime.utcnow() + timedelta(seconds=61))
    assert claimed.id == job.id


def test_claim_marks_active_and_counts_attempt(queue):
    queue.add("work", {"brand_id": 1})

    job = queue.claim_next(now=_future())

    assert job.status == "active"
    assert job.attempts_made == 1
    assert job.started_at is not None


def test_peek_does_not_claim(queue):
    job = queue.add("work", {})

    assert queue.peek_next(now=_future()).id == job.id
    assert queue.peek_next(now=_future()).status == "waiting"


def test_queues_are_isolated(db, queue):
    other = JobQueue(db, "other-queue", enabled=True)
    other.add("work", {})

    assert queue.claim_next(now=_future()) is None


def test_disabled_queue_rejects_jobs(db):
    with pytest.raises(QueueUnavailableError):
        JobQueue(db, "off", enabled=False).add("work", {})


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------

def test_failure_retries_with_exponential_backoff(queue):
    queue.add("flaky", {}, attempts=3, backoff_delay=10)
    now = datetime(2030, 1, 1, 12, 0)

    job = queue.claim_next(now=now)
    assert queue.fail(job, "boom", now=now) is True
    assert job.status == "delayed"
    assert job.run_at == now + timedelta(seconds=10)
    assert job.last_error == "boom"

    job = queue.claim_next(now=now + timedelta(seconds=10))
    assert queue.fail(job, "boom again", now=now) is True
    assert job.run_at == now + timedelta(seconds=20)

    job = queue.claim_next(now=now + timedelta(seconds=20))
    assert job.attempts_made == 3
    assert queue.fail(job, "final", now=now) is False
    assert job.status == "failed"
    assert job.finished_at == now


def test_single_attempt_fails_immediately(queue):
    queue.add("once", {})
    job = queue.claim_next(now=_future())

    assert queue.fail(job, ValueError("bad payload")) is False
    assert job.last_error == "bad payload"


# ---------------------------------------------------------------------------
# Stalled jobs
# ---------------------------------------------------------------------------

def test_stalled_job_returns_to_waiting(queue):
    queue.add("slow", {}, timeout=60)
    start = datetime(2030, 1, 1, 12, 0)
    job = queue.claim_next(now=start)

    assert queue.recover_stalled(now=start + timedelta(seconds=30)) == {"recovered": 0, "failed": 0}
    assert queue.recover_stalled(now=start + timedelta(seconds=61)) == {"recovered": 1, "failed": 0}

    assert job.status == "waiting"
    assert job.stalled_count == 1


def test_job_stalling_too_often_fails(queue):
    queue.add("stuck", {}, timeout=60)
    now = datetime(2030, 1, 1, 12, 0)
    job = None

    for _ in range(3):
        job = queue.claim_next(now=now)
        now += timedelta(seconds=61)
        queue.recover_stalled(now=now)

    job = queue.claim_next(now=now)
    now += timedelta(seconds=61)
    result = queue.recover_stalled(now=now)

    assert result == {"recovered": 0, "failed": 1}
    assert job.status == "failed"
    assert job.last_error == "job stalled more than allowable limit"


def test_jobs_without_timeout_never_stall(queue):
    queue.add("open-ended", {})
    queue.claim_next(now=_future())

    assert queue.recover_stalled(now=datetime.utcnow() + timedelta(days=1)) == {"recovered": 0, "failed": 0}


# ---------------------------------------------------------------------------
# Retention and cleanup
# ---------------------------------------------------------------------------

def test_completed_jobs_trimmed_to_limit(db, queue):
    for i in range(3):
        queue.add("work", {"n": i}, remove_on_complete=2)
    for _ in range(3):
        queue.complete(queue.claim_next(now=_future()), {"ok": True})

    assert queue.counts()["completed"] == 2


def test_remove_on_complete_zero_deletes_job(db, queue):
    queue.add("work", {}, remove_on_complete=0)
    job = queue.claim_next(now=_future())
    job_id = job.id

    queue.complete(job)

    assert db.query(QueueJob).filter(QueueJob.id == job_id).first() is None


def test_remove_by_brand_matches_payload_keys(queue):
    queue.add("a", {"brand_id": 7})
    queue.add("b", {"brandId": 7})
    queue.add("c", {"brand_id": 8})
    active = queue.add("d", {"brand_id": 7}, priority=100)
    queue.claim_next(now=_future())

    removed = queue.remove_by_brand(7)

    assert removed == 2
    remaining = {job.name for job in queue.get_waiting()}
    assert remaining == {"c"}
    assert queue.get_job(active.id).status == "active"


def test_counts_by_status(queue):
    queue.add("a", {})
    queue.add("b", {}, delay=60)

    counts = queue.counts()

    assert counts["waiting"] == 1
    assert counts["delayed"] == 1
    assert counts["active"] == 0


def test_failed_jobs_listed_newest_first(queue):
    first = queue.add("a", {})
    second = queue.add("b", {})
    now = datetime(2030, 1, 1, 12, 0)

    queue.fail(queue.claim_next(now=now), "first", now=now)
    queue.fail(queue.claim_next(now=now), "second", now=now + timedelta(minutes=1))

    assert [job.id for job in queue.get_failed()] == [second.id, first.id]
