"""
Tests for the bounded worker pool.
"""
import pytest
import threading
import time
from tally_ingest.workers import is_cancelled, map_bounded


class TestMapBounded:
    """Tests for ordering, laziness and cancellation."""

    def test_results_in_input_order(self):
        def slow_for_small(n):
            time.sleep(0.001 * (10 - n))
            return n * n

        assert list(map_bounded(slow_for_small, range(10), max_workers=4)) == [n * n for n in range(10)]

    def test_zero_workers_still_runs(self):
        assert list(map_bounded(str, [1, 2], max_workers=0)) == ["1", "2"]

    def test_consumes_input_lazily(self):
        """Test that no more than two windows of items are pulled ahead."""
        pulled = []

        def source():
            for i in range(100):
                pulled.append(i)
                yield i

        results = map_bounded(lambda n: n, source(), max_workers=2)
        assert next(results) == 0
        assert len(pulled) <= 5

    def test_cancel_stops_new_units(self):
        cancel = threading.Event()
        seen = []

        def work(n):
            seen.append(n)
            if n == 0:
                cancel.set()
            return n

        results = list(map_bounded(work, range(1000), max_workers=1, cancel=cancel))
        assert results[0] == 0
        assert len(results) < 1000

    def test_errors_propagate(self):
        def boom(n):
            raise ValueError(f"bad {n}")

        with pytest.raises(ValueError):
            list(map_bounded(boom, [1], max_workers=1))


class TestIsCancelled:
    def test_none_is_not_cancelled(self):
        assert is_cancelled(None) is False

    def test_set_event(self):
        event = threading.Event()
        event.set()
        assert is_cancelled(event) is True


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
