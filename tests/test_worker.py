from pathlib import Path
import sys

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from conftest import SERVICE_ID, run_status
from orderflow.storage.schema import TaskStatus
from worker import celery_app as worker


@pytest.fixture(autouse=True)
def wired(monkeypatch, orch):
    monkeypatch.setattr(worker, "_orchestrator", lambda: orch)


def test_dispatch_task_starts_queued_task(orch, paid_order):
    task = orch.lifecycle.create_for_order(paid_order.id, SERVICE_ID, {"age": 30})

    summary = worker.dispatch_task(task.id)

    assert summary["status"] == "running"
    assert orch.lifecycle.get(task.id).external_execution_id == "run-1"


def test_dispatch_task_skips_cancelled_task(orch, paid_order, dify):
    task = orch.lifecycle.create_for_order(paid_order.id, SERVICE_ID, {})
    orch.cancel_task(task.id)

    assert worker.dispatch_task(task.id)["status"] == "cancelled"
    assert dify.requests == []


def test_sync_and_sweep(orch, running_task, dify):
    dify.status = [run_status("succeeded", outputs={"ok": True})]

    assert worker.sync_task(running_task.id)["status"] == TaskStatus.COMPLETED.value
    assert worker.sweep_stale_tasks() == {"checked": 0, "synced": 0, "failed": [], "errors": []}
