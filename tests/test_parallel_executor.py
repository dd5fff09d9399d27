"""
Unit tests for the parallel task executor.

Tests TaskParallelExecutor for ordering, error handling and the
sequential fallback path.
"""

import threading
import time

import numpy as np
import pytest

from pathlib import Path
import sys

sys.path.append(str(Path(__file__).parent.parent / "src"))

from scan_registration.acceleration import TaskParallelExecutor


def _square_worker(item, offset=0):
    """Worker with a small random delay so completion order differs from input order."""
    time.sleep(np.random.default_rng(item).uniform(0.001, 0.01))
    return item * item + offset


def _error_worker(item):
    if item == 2:
        raise ValueError(f"Intentional error on item {item}")
    return item


class TestTaskParallelExecutor:
    def test_executor_initialization(self):
        assert TaskParallelExecutor().n_workers >= 1
        assert TaskParallelExecutor(n_workers=4).n_workers == 4
        # Minimum workers (should be at least 1)
        assert TaskParallelExecutor(n_workers=0).n_workers == 1

    def test_empty_items(self):
        assert TaskParallelExecutor(n_workers=2).map_tasks([], _square_worker) == []

    def test_results_keep_input_order(self):
        executor = TaskParallelExecutor(n_workers=4)
        results = executor.map_tasks(list(range(12)), _square_worker, worker_kwargs={"offset": 1})
        assert results == [i * i + 1 for i in range(12)]

    def test_sequential_fallback_single_worker(self):
        threads = set()

        def worker(item):
            threads.add(threading.current_thread().name)
            return item

        results = TaskParallelExecutor(n_workers=1).map_tasks([1, 2, 3], worker)
        assert results == [1, 2, 3]
        assert threads == {threading.current_thread().name}

    def test_progress_callback(self):
        calls = []
        TaskParallelExecutor(n_workers=3).map_tasks(
            list(range(5)),
            _square_worker,
            progress_callback=lambda done, total: calls.append((done, total)),
        )
        assert [c[0] for c in calls] == [1, 2, 3, 4, 5]
        assert all(total == 5 for _, total in calls)

    @pytest.mark.parametrize("n_workers", [1, 3])
    def test_worker_error_is_wrapped(self, n_workers):
        with pytest.raises(RuntimeError, match="Task 2 failed") as excinfo:
            TaskParallelExecutor(n_workers=n_workers).map_tasks([0, 1, 2, 3], _error_worker)
        assert isinstance(excinfo.value.__cause__, ValueError)
