from datetime import datetime
from typing import Dict, Iterable

from ..storage.schema import TaskRecord, TaskStatus

ESTIMATED_RUN_SECONDS = 300
RUNNING_PROGRESS_CAP = 80


class Metrics:
    @staticmethod
    def task_progress(task: TaskRecord, now: datetime) -> int:
        # Rough estimate for progress bars; the backend reports no real progress.
        if task.status == TaskStatus.PENDING:
            return 0
        if task.status == TaskStatus.RUNNING:
            if task.started_at is None:
                return 10
            elapsed = max(0.0, (now - task.started_at).total_seconds())
            return round(min(elapsed / ESTIMATED_RUN_SECONDS * RUNNING_PROGRESS_CAP, RUNNING_PROGRESS_CAP))
        if task.status == TaskStatus.COMPLETED:
            return 100
        return 100 if task.execution_time is not None else 0

    @staticmethod
    def task_stats(tasks: Iterable[TaskRecord]) -> Dict[str, float]:
        counts = {status: 0 for status in TaskStatus}
        durations = []
        total = 0
        for task in tasks:
            total += 1
            counts[task.status] += 1
            if task.execution_time is not None:
                durations.append(task.execution_time)
        return {
            "total_tasks": total,
            "pending_tasks": counts[TaskStatus.PENDING],
            "running_tasks": counts[TaskStatus.RUNNING],
            "completed_tasks": counts[TaskStatus.COMPLETED],
            "failed_tasks": counts[TaskStatus.FAILED],
            "cancelled_tasks": counts[TaskStatus.CANCELLED],
            "average_execution_time": round(sum(durations) / len(durations), 2) if durations else 0,
            "success_rate": round(counts[TaskStatus.COMPLETED] / total * 100, 2) if total else 0,
        }
