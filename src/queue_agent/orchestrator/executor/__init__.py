"""Executor implementations."""

from queue_agent.orchestrator.executor.base import (
    ExecutorClosedError,
    ExecutorError,
    ExecutorFactory,
    ExecutorHandle,
)
from queue_agent.orchestrator.executor.subprocess_executor import (
    SubprocessExecutor,
    SubprocessExecutorFactory,
)

__all__ = [
    "ExecutorClosedError",
    "ExecutorError",
    "ExecutorFactory",
    "ExecutorHandle",
    "SubprocessExecutor",
    "SubprocessExecutorFactory",
]
