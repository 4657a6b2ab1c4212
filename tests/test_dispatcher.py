from pathlib import Path
import sys

import httpx
import orjson

sys.path.append(str(Path(__file__).resolve().parents[1]))

from conftest import SERVICE_ID, sse_started
from orderflow.storage.schema import OrderStatus, TaskStatus


def _server_error():
    return httpx.Response(500, json={"code": "internal_error", "message": "upstream exploded"})


def test_three_transient_failures_then_success(orch, paid_order, dify, sleeps):
    dify.start = [_server_error(), _server_error(), _server_error(), sse_started()]

    task = orch.start_for_order(paid_order.id)

    assert task.status == TaskStatus.RUNNING
    assert task.retry_count == 3
    assert task.external_task_id == "ext-task-1"
    assert task.external_execution_id == "run-1"
    assert sleeps == [1.0, 2.0, 4.0]
    assert len(dify.calls("/workflows/run")) == 4
    assert orch.orders.get_order(paid_order.id).status == OrderStatus.PROCESSING


def test_retries_exhausted_fail_the_task(orch, paid_order, dify, sleeps):
    dify.start = [_server_error() for _ in range(4)]

    task = orch.start_for_order(paid_order.id)

    assert task.status == TaskStatus.FAILED
    assert task.retry_count == 3
    assert task.error_message.startswith("dispatch failed after 4 attempts")
    assert len(dify.calls("/workflows/run")) == 4
    # A failed task leaves the order dispatchable and no replacement task exists.
    assert orch.orders.get_order(paid_order.id).status == OrderStatus.PROCESSING
    assert len(orch.repo.tasks_for_order(paid_order.id)) == 1


def test_permanent_rejection_is_not_retried(orch, paid_order, dify, sleeps):
    dify.start = [httpx.Response(401, json={"code": "unauthorized", "message": "Access token is invalid"})]

    task = orch.start_for_order(paid_order.id)

    assert task.status == TaskStatus.FAILED
    assert task.retry_count == 0
    assert "Access token is invalid" in task.error_message
    assert sleeps == []


def test_timeouts_are_retried(orch, paid_order, dify, sleeps):
    dify.start = [httpx.ReadTimeout("slow"), sse_started(task_id="ext-9", run_id="run-9")]

    task = orch.start_for_order(paid_order.id)

    assert task.status == TaskStatus.RUNNING
    assert task.retry_count == 1
    assert task.external_execution_id == "run-9"
    assert sleeps == [1.0]


def test_unconfigured_service_fails_without_backend_call(orch, paid_order, dify):
    orch.save_service(SERVICE_ID, "Personality Analysis", is_active=False)

    task = orch.start_for_order(paid_order.id)

    assert task.status == TaskStatus.FAILED
    assert "disabled" in task.error_message
    assert dify.requests == []


def test_start_request_shape(orch, paid_order, dify):
    task = orch.start_for_order(paid_order.id)

    request = dify.calls("/workflows/run")[0]
    assert request.headers["authorization"] == "Bearer app-secret"
    assert orjson.loads(request.content) == {
        "inputs": {"age": 30},
        "response_mode": "streaming",
        "user": f"task-{task.id}",
    }


def test_cancel_between_attempts_stops_retrying(orch, paid_order, dify, sleeps):
    dify.start = [_server_error(), _server_error(), sse_started()]
    task = orch.lifecycle.create_for_order(paid_order.id, SERVICE_ID, {"age": 30})

    def cancel_then_sleep(seconds):
        sleeps.append(seconds)
        orch.lifecycle.transition(task, TaskStatus.CANCELLED)

    orch.dispatcher.sleep = cancel_then_sleep
    result = orch.dispatcher.submit(task)

    assert result.status == TaskStatus.CANCELLED
    assert len(dify.calls("/workflows/run")) == 2
