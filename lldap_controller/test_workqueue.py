"""Tests for the work queue and backoff."""

import threading
import time

import pytest

from lldap_controller.resources import ObjectKey
from lldap_controller.workqueue import ExponentialBackoff, WorkQueue

A = ObjectKey("ServiceUser", "default", "a")
B = ObjectKey("ServiceUser", "default", "b")


@pytest.fixture
def queue():
    q = WorkQueue()
    yield q
    q.shutdown()


def test_duplicate_adds_collapse(queue):
    queue.add(A)
    queue.add(A)
    queue.add(B)

    assert len(queue) == 2
    assert queue.get(timeout=1) == A
    assert queue.get(timeout=1) == B
    assert queue.get(timeout=0.05) is None


def test_key_not_handed_out_while_processing(queue):
    queue.add(A)
    assert queue.get(timeout=1) == A

    queue.add(A)
    assert queue.get(timeout=0.05) is None, "Same key must not run concurrently"

    queue.done(A)
    assert queue.get(timeout=1) == A, "Added again while processing, so queued on done"
    queue.done(A)
    assert queue.get(timeout=0.05) is None


def test_add_after_delays_key(queue):
    queue.add_after(A, 0.1)
    assert len(queue) == 0

    start = time.monotonic()
    assert queue.get(timeout=2) == A
    assert time.monotonic() - start >= 0.05


def test_add_after_keeps_earliest_deadline(queue):
    queue.add_after(A, 0.1)
    queue.add_after(A, 60)

    assert queue.get(timeout=2) == A
    queue.done(A)
    assert queue.get(timeout=0.2) is None


def test_shutdown_releases_waiting_workers():
    queue = WorkQueue()
    results = []
    worker = threading.Thread(target=lambda: results.append(queue.get()))
    worker.start()

    queue.shutdown()
    worker.join(timeout=2)

    assert results == [None]
    assert queue.shutting_down
    queue.add(A)
    assert len(queue) == 0


def test_pending_lists_queued_and_in_flight(queue):
    queue.add(A)
    queue.add(B)
    queue.get(timeout=1)

    assert set(queue.pending()) == {A, B}


def test_backoff_doubles_up_to_cap():
    backoff = ExponentialBackoff(5, 60)

    assert [backoff.next_delay(A) for _ in range(6)] == [5, 10, 20, 40, 60, 60]
    assert backoff.failures(A) == 6
    assert backoff.next_delay(B) == 5, "Tracked per key"

    backoff.forget(A)
    assert backoff.next_delay(A) == 5


def test_backoff_survives_many_failures():
    backoff = ExponentialBackoff(5, 300)
    for _ in range(2000):
        delay = backoff.next_delay(A)
    assert delay == 300
