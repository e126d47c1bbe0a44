#!/usr/bin/env python3
"""
Job Queue Tests

Exercises submission, claiming order, terminal transitions, requeue and the
exactly-once claim guarantee with two queue handles on one database file.
"""

import os
import shutil
import sqlite3
import tempfile
import threading
import time
from datetime import timedelta

from unveil.core.errors import (
    AlreadyTerminalError,
    ClaimConflictError,
    DuplicateJobError,
    JobNotFoundError,
    QueueFaultError,
    UnclaimedJobError,
)
from unveil.core.job_queue import COMPLETED, FAILED, PENDING, PROCESSING, JobQueue


def test_submit_rejects_duplicates():
    """Submitting a URL twice leaves exactly one job."""
    print("🔍 Testing duplicate submission...")
    with JobQueue(":memory:") as queue:
        assert queue.submit("https://example.com/a") is True
        assert queue.submit("https://example.com/a") is False
        assert queue.count_url("https://example.com/a") == 1

        try:
            queue.enqueue("https://example.com/a")
        except DuplicateJobError as e:
            assert e.code == "DUPLICATE"
            print(f"   ✓ Duplicate rejected: {e}")
        else:
            raise AssertionError("enqueue accepted a duplicate URL")

        # A finished job still blocks resubmission
        job = queue.claim_next()
        queue.complete(job.id)
        assert queue.submit("https://example.com/a") is False
        assert queue.count_url("https://example.com/a") == 1


def test_submit_rejects_empty_url():
    with JobQueue(":memory:") as queue:
        try:
            queue.enqueue("   ")
        except ValueError:
            pass
        else:
            raise AssertionError("empty URL accepted")
        assert queue.stats()[PENDING] == 0


def test_claim_order_is_oldest_first():
    print("🔍 Testing claim order...")
    with JobQueue(":memory:") as queue:
        urls = [f"https://example.com/{i}" for i in range(4)]
        for url in urls:
            queue.submit(url)

        claimed = []
        while True:
            job = queue.claim_next()
            if job is None:
                break
            assert job.status == PROCESSING
            assert job.started_at is not None
            claimed.append(job.url)

        assert claimed == urls
        assert queue.claim_next() is None
        print(f"   ✓ Claimed {len(claimed)} jobs in submission order")


def test_terminal_transitions():
    print("🔍 Testing terminal transitions...")
    with JobQueue(":memory:") as queue:
        queue.submit("https://example.com/ok")
        queue.submit("https://example.com/bad")
        ok = queue.claim_next()
        bad = queue.claim_next()

        assert queue.complete(ok.id) is True
        assert queue.fail(bad.id, "[NAVIGATION_FAILURE@navigate] HTTP 404") is True

        done = queue.get(ok.id)
        failed = queue.get(bad.id)
        assert done.status == COMPLETED and done.completed_at is not None
        assert failed.status == FAILED and "HTTP 404" in failed.error_message

        # Completed and failed are final
        assert queue.complete(ok.id) is False
        assert queue.fail(ok.id, "late failure") is False
        try:
            queue.transition(bad.id, COMPLETED)
        except AlreadyTerminalError as e:
            assert e.status == FAILED
        else:
            raise AssertionError("transition out of failed was allowed")

        try:
            queue.transition(999, COMPLETED)
        except JobNotFoundError as e:
            assert e.job_id == 999
        else:
            raise AssertionError("unknown job id accepted")

        try:
            queue.transition(ok.id, PENDING)
        except ValueError:
            pass
        else:
            raise AssertionError("non-terminal status accepted by transition")

        assert queue.stats() == {PENDING: 0, PROCESSING: 0, COMPLETED: 1, FAILED: 1}
        print("   ✓ Terminal statuses are never overwritten")


def test_requeue():
    print("🔍 Testing requeue...")
    with JobQueue(":memory:") as queue:
        queue.submit("https://example.com/retry")
        queue.submit("https://example.com/other")
        job = queue.claim_next()
        queue.fail(job.id, "boom")

        assert queue.requeue(job.id) is True
        again = queue.get(job.id)
        assert again.status == PENDING
        assert again.retry_count == 1
        assert again.error_message is None
        assert again.started_at is None and again.completed_at is None

        # Already pending: nothing to do
        assert queue.requeue(job.id) is False

        # Requeued work goes to the back of the line
        assert queue.claim_next().url == "https://example.com/other"
        assert queue.claim_next().url == "https://example.com/retry"
        print("   ✓ Requeue resets the job and bumps retry_count")


def test_reclaim_stale():
    print("🔍 Testing stale reclaim...")
    with JobQueue(":memory:") as queue:
        queue.submit("https://example.com/orphan")
        job = queue.claim_next()

        assert queue.reclaim_stale(timedelta(minutes=30)) == []
        assert queue.get(job.id).status == PROCESSING

        time.sleep(0.01)
        assert queue.reclaim_stale(timedelta(0)) == [job.id]
        reclaimed = queue.get(job.id)
        assert reclaimed.status == PENDING
        assert reclaimed.retry_count == 1
        assert queue.claim_next().id == job.id


def test_list_jobs_filters_by_status():
    with JobQueue(":memory:") as queue:
        for i in range(3):
            queue.submit(f"https://example.com/{i}")
        first = queue.claim_next()
        queue.fail(first.id, "nope")

        assert [j.url for j in queue.list_jobs(FAILED)] == ["https://example.com/0"]
        assert len(queue.list_jobs(PENDING)) == 2
        assert len(queue.list_jobs(limit=1)) == 1
        try:
            queue.list_jobs("archived")
        except ValueError:
            pass
        else:
            raise AssertionError("unknown status accepted")


def test_concurrent_claims_are_exclusive():
    """Two workers with their own connections never receive the same job."""
    print("🔍 Testing concurrent claims...")
    tmp = tempfile.mkdtemp(prefix="unveil_queue_")
    db_path = os.path.join(tmp, "queue.db")
    try:
        with JobQueue(db_path) as seed:
            for i in range(40):
                seed.submit(f"https://example.com/story/{i}")

        claimed = {"a": [], "b": []}
        errors = []

        def worker(name):
            try:
                with JobQueue(db_path, busy_timeout=10) as queue:
                    while True:
                        job = queue.claim_next()
                        if job is None:
                            return
                        claimed[name].append(job.id)
                        queue.complete(job.id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in claimed]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert not errors, errors
        all_ids = claimed["a"] + claimed["b"]
        assert len(all_ids) == 40
        assert len(set(all_ids)) == 40
        with JobQueue(db_path) as check:
            assert check.stats()[COMPLETED] == 40
        print(f"   ✓ Worker A: {len(claimed['a'])}, worker B: {len(claimed['b'])}, no overlap")
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def test_contention_is_retried_then_surfaces():
    print("🔍 Testing lock contention...")
    tmp = tempfile.mkdtemp(prefix="unveil_queue_")
    db = os.path.join(tmp, "queue.db")
    holder = None
    try:
        queue = JobQueue(db, busy_timeout=0.05, max_attempts=2, backoff=0.01)
        queue.submit("https://example.com/locked")

        holder = sqlite3.connect(db, isolation_level=None)
        holder.execute("BEGIN IMMEDIATE")
        try:
            queue.claim_next()
            raise AssertionError("claim should not succeed while the database is locked")
        except QueueFaultError as e:
            assert e.stage == "claim"
        holder.execute("ROLLBACK")

        assert queue.claim_next().url == "https://example.com/locked"

        # A lost claim is retried rather than skipped
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) == 1:
                raise ClaimConflictError("taken", stage="claim")
            return "ok"

        assert queue._with_retry("claim", flaky) == "ok"
        assert len(attempts) == 2
        queue.close()
        print("   ✓ Contention retried, exhaustion raised QueueFaultError")
    finally:
        if holder is not None:
            holder.close()
        shutil.rmtree(tmp, ignore_errors=True)


def test_pending_job_cannot_finish_unclaimed():
    with JobQueue(":memory:") as queue:
        job = queue.enqueue("https://example.com/waiting")
        for finish in (lambda: queue.complete(job.id), lambda: queue.fail(job.id, "never ran")):
            try:
                finish()
            except UnclaimedJobError as e:
                assert e.job_id == job.id
            else:
                raise AssertionError("pending job reached a terminal status without a claim")
        assert queue.get(job.id).status == PENDING

        claimed = queue.claim_next()
        assert queue.complete(claimed.id) is True


def test_reader_lock_does_not_poison_connection():
    """A busy COMMIT is rolled back, so the queue recovers once the reader finishes."""
    print("🔍 Testing reader contention...")
    tmp = tempfile.mkdtemp(prefix="unveil_queue_")
    db = os.path.join(tmp, "queue.db")
    reader = None
    try:
        queue = JobQueue(db, busy_timeout=0.05, max_attempts=2, backoff=0.01)
        reader = sqlite3.connect(db, isolation_level=None)

        reader.execute("BEGIN")
        reader.execute("SELECT COUNT(*) FROM jobs").fetchone()
        try:
            queue.submit("https://example.com/contended")
            raise AssertionError("submit committed while a reader held the database")
        except QueueFaultError as e:
            assert e.stage == "submit"
        assert not queue._conn.in_transaction
        reader.execute("COMMIT")

        assert queue.submit("https://example.com/contended") is True

        reader.execute("BEGIN")
        reader.execute("SELECT COUNT(*) FROM jobs").fetchone()
        try:
            queue.claim_next()
            raise AssertionError("claim committed while a reader held the database")
        except QueueFaultError:
            pass
        assert not queue._conn.in_transaction
        reader.execute("COMMIT")

        job = queue.claim_next()
        assert job.url == "https://example.com/contended"
        assert queue.stats()[PROCESSING] == 1
        queue.close()
        print("   ✓ Queue usable again after the reader released its lock")
    finally:
        if reader is not None:
            reader.close()
        shutil.rmtree(tmp, ignore_errors=True)


def test_queue_survives_reopen():
    tmp = tempfile.mkdtemp(prefix="unveil_queue_")
    db_path = os.path.join(tmp, "nested", "queue.db")
    try:
        with JobQueue(db_path) as queue:
            queue.submit("https://example.com/persist")
        with JobQueue(db_path) as queue:
            job = queue.claim_next()
            assert job is not None and job.url == "https://example.com/persist"
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def main():
    """Run all queue tests."""
    print("🚀 Starting Job Queue Tests\n")

    tests = [
        ("Duplicate Submission", test_submit_rejects_duplicates),
        ("Empty URL", test_submit_rejects_empty_url),
        ("Claim Order", test_claim_order_is_oldest_first),
        ("Terminal Transitions", test_terminal_transitions),
        ("Requeue", test_requeue),
        ("Stale Reclaim", test_reclaim_stale),
        ("List Jobs", test_list_jobs_filters_by_status),
        ("Concurrent Claims", test_concurrent_claims_are_exclusive),
        ("Lock Contention", test_contention_is_retried_then_surfaces),
        ("Reader Contention", test_reader_lock_does_not_poison_connection),
        ("Unclaimed Transition", test_pending_job_cannot_finish_unclaimed),
        ("Reopen", test_queue_survives_reopen),
    ]

    passed = 0
    for test_name, test_func in tests:
        try:
            test_func()
            passed += 1
            print(f"✅ {test_name} PASSED")
        except AssertionError as e:
            print(f"❌ {test_name} FAILED: {e}")
        except Exception as e:
            print(f"❌ {test_name} CRASHED: {e}")

    print(f"\nTEST RESULTS: {passed}/{len(tests)} tests passed")
    return passed == len(tests)


if __name__ == "__main__":
    raise SystemExit(0 if main() else 1)
