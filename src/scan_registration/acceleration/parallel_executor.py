"""
Parallel execution infrastructure for independent registration tasks.

Provides TaskParallelExecutor for distributing per-seed ICP refinement and
per-level pyramid construction across worker threads. Tasks share only
read-only arrays (pyramids, voxel indices), so threads avoid the pickling
cost of process pools while numpy releases the GIL in the heavy kernels.
"""

from __future__ import annotations

import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Optional

from ..utils.logging import setup_logger

logger = setup_logger(__name__)


class TaskParallelExecutor:
    """
    Parallel executor for independent tasks.

    Runs a worker function over a list of items and collects results in the
    same order as the input. Falls back to sequential execution when only one
    worker or one item is involved.

    Example:
        executor = TaskParallelExecutor(n_workers=4)
        results = executor.map_tasks(
            items=seeds,
            worker_fn=refiner.refine_seed,
            worker_kwargs={'model_pyramid': model_pyr, 'scan_pyramid': scan_pyr},
        )
    """

    def __init__(self, n_workers: Optional[int] = None):
        """
        Initialize parallel executor.

        Args:
            n_workers: Number of worker threads. If None, uses cpu_count - 1
                to leave one core for coordination. Minimum is 1.
        """
        if n_workers is None:
            n_workers = max(1, (os.cpu_count() or 1) - 1)
        else:
            n_workers = max(1, int(n_workers))

        self.n_workers = n_workers
        logger.debug("Initialized TaskParallelExecutor with %d workers", self.n_workers)

    def map_tasks(
        self,
        items: List[Any],
        worker_fn: Callable,
        worker_kwargs: Optional[Dict[str, Any]] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> List[Any]:
        """
        Map worker function over items.

        Args:
            items: Items to process
            worker_fn: Function with signature worker_fn(item, **worker_kwargs) -> result
            worker_kwargs: Fixed keyword arguments passed to each worker call
            progress_callback: Optional callback called after each item
                completes. Signature: callback(completed_count, total_count)

        Returns:
            List of results in same order as input items

        Raises:
            RuntimeError: If any task fails (original exception chained)
        """
        worker_kwargs = worker_kwargs or {}
        n_items = len(items)
        if n_items == 0:
            return []

        start_time = time.time()

        if self.n_workers == 1 or n_items == 1:
            results = []
            for i, item in enumerate(items):
                try:
                    results.append(worker_fn(item, **worker_kwargs))
                except Exception as e:
                    logger.error("Error processing task %d: %s", i, e, exc_info=True)
                    raise RuntimeError(f"Task {i} failed: {e}") from e
                if progress_callback:
                    progress_callback(i + 1, n_items)
            logger.debug(
                "Sequential processing complete: %d tasks in %.3fs",
                n_items,
                time.time() - start_time,
            )
            return results

        results_by_index: Dict[int, Any] = {}
        first_error: Optional[BaseException] = None
        first_error_idx = -1
        with ThreadPoolExecutor(max_workers=min(self.n_workers, n_items)) as pool:
            futures = {
                pool.submit(worker_fn, item, **worker_kwargs): i for i, item in enumerate(items)
            }
            for completed, future in enumerate(as_completed(futures), start=1):
                idx = futures[future]
                try:
                    results_by_index[idx] = future.result()
                except Exception as e:
                    logger.error("Task %d failed: %s: %s", idx, type(e).__name__, e)
                    if first_error is None:
                        first_error, first_error_idx = e, idx
                if progress_callback:
                    progress_callback(completed, n_items)

        if first_error is not None:
            raise RuntimeError(f"Task {first_error_idx} failed: {first_error}") from first_error

        logger.debug(
            "Parallel processing complete: %d tasks on %d workers in %.3fs",
            n_items,
            self.n_workers,
            time.time() - start_time,
        )
        # Reorder results to match input order
        return [results_by_index[i] for i in range(n_items)]
