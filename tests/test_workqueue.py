"""Tests for the keyed work queue."""

import threading
import time

import pytest

from napi_ingress_controller.workqueue import ShutDown, WorkQueue


class TestWorkQueue:
    def test_deduplicates(self) -> None:
        queue: WorkQueue[str] = WorkQueue()
        queue.add("a")
        queue.add("a")
        queue.add("b")
        assert len(queue) == 2
        assert queue.get(timeout=0.1) == "a"
        assert queue.get(timeout=0.1) == "b"
        assert queue.get(timeout=0.05) is None

    def test_key_in_flight_is_not_handed_out_twice(self) -> None:
        queue: WorkQueue[str] = WorkQueue()
        queue.add("a")
        assert queue.get(timeout=0.1) == "a"

        queue.add("a")
        assert queue.get(timeout=0.05) is None

        queue.done("a")
        assert queue.get(timeout=0.1) == "a"

    def test_done_without_readd(self) -> None:
        queue: WorkQueue[str] = WorkQueue()
        queue.add("a")
        queue.get(timeout=0.1)
        queue.done("a")
        assert queue.get(timeout=0.05) is None

    def test_add_after(self) -> None:
        queue: WorkQueue[str] = WorkQueue()
        queue.add_after("a", 0.05)
        assert len(queue) == 0
        start = time.monotonic()
        assert queue.get(timeout=1) == "a"
        assert time.monotonic() - start >= 0.04

    def test_repeated_resync_keeps_one_delayed_entry(self) -> None:
        queue: WorkQueue[str] = WorkQueue()
        for _ in range(6):
            queue.add("ing")
            assert queue.get(timeout=0.1) == "ing"
            queue.done("ing")
            queue.add_after("ing", 300)

        assert queue.num_waiting() == 1
        assert len(queue._delayed) == 1

    def test_earlier_add_after_wins(self) -> None:
        queue: WorkQueue[str] = WorkQueue()
        queue.add_after("a", 300)
        queue.add_after("a", 0.05)

        assert queue.get(timeout=1) == "a"
        queue.done("a")
        assert queue.num_waiting() == 0
        # The superseded 300s entry does not hand the key out again
        assert queue.get(timeout=0.1) is None

    def test_rate_limited_backoff_doubles_and_caps(self) -> None:
        queue: WorkQueue[str] = WorkQueue(base_delay=1.0, max_delay=4.0)
        delays = [queue.add_rate_limited("a") for _ in range(4)]
        assert delays == [1.0, 2.0, 4.0, 4.0]
        assert queue.num_requeues("a") == 4

        queue.forget("a")
        assert queue.num_requeues("a") == 0
        assert queue.add_rate_limited("a") == 1.0

    def test_shut_down_unblocks_get(self) -> None:
        queue: WorkQueue[str] = WorkQueue()
        errors: list[BaseException] = []

        def _consume() -> None:
            try:
                queue.get()
            except ShutDown as exc:
                errors.append(exc)

        t = threading.Thread(target=_consume)
        t.start()
        time.sleep(0.05)
        queue.shut_down()
        t.join(timeout=1)
        assert not t.is_alive()
        assert len(errors) == 1

    def test_add_after_shut_down_ignored(self) -> None:
        queue: WorkQueue[str] = WorkQueue()
        queue.shut_down()
        queue.add("a")
        assert len(queue) == 0
        with pytest.raises(ShutDown):
            queue.get(timeout=0.05)
