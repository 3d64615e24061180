"""
Scheduler Module.

Named periodic jobs with pause/resume/execute-now and
persisted run statistics.
"""

from .registry import (
    JobRegistry,
    JobRunResult,
    RunStatus,
    RunTrigger,
    SchedulerJobConfig,
)


__all__ = [
    "JobRegistry",
    "JobRunResult",
    "RunStatus",
    "RunTrigger",
    "SchedulerJobConfig",
]
