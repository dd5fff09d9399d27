"""
Acceleration Module

Thread-based parallel execution of independent registration tasks
(per-seed ICP refinement and per-level pyramid construction).
"""

from .parallel_executor import TaskParallelExecutor

__all__ = [
    "TaskParallelExecutor",
]
