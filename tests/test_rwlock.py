"""Tests for fleet_core.rwlock."""

import threading
import time

from fleet_core.rwlock import RWLock


class TestRWLock:
    def test_readers_share(self):
        """Several readers hold the lock at the same time."""
        lock = RWLock()
        inside = []
        barrier = threading.Barrier(3, timeout=2.0)

        def reader():
            with lock.read():
                inside.append(1)
                barrier.wait()

        threads = [threading.Thread(target=reader) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=3.0)
        assert len(inside) == 3

    def test_writer_excludes_readers(self):
        """A reader waits for the writer to finish."""
        lock = RWLock()
        order = []

        with lock.write():
            thread = threading.Thread(target=lambda: (lock.acquire_read(), order.append("read"), lock.release_read()))
            thread.start()
            time.sleep(0.05)
            order.append("write-done")
        thread.join(timeout=2.0)
        assert order == ["write-done", "read"]

    def test_waiting_writer_blocks_new_readers(self):
        """Once a writer waits, new readers queue behind it."""
        lock = RWLock()
        order = []
        lock.acquire_read()

        writer = threading.Thread(target=lambda: (lock.acquire_write(), order.append("write"), lock.release_write()))
        writer.start()
        time.sleep(0.05)
        reader = threading.Thread(target=lambda: (lock.acquire_read(), order.append("read"), lock.release_read()))
        reader.start()
        time.sleep(0.05)
        assert order == []

        lock.release_read()
        writer.join(timeout=2.0)
        reader.join(timeout=2.0)
        assert order == ["write", "read"]
