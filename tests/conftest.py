from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys

import httpx
import orjson
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from orderflow.config import Settings
from orderflow.services.backend import DifyBackend
from orderflow.services.notifier import Notifier
from orderflow.services.orchestrator import Orchestrator
from orderflow.storage.memory import MemoryRepo
from orderflow.storage.schema import OrderStatus, PaymentMethod

BASE_URL = "https://dify.test/v1"
SERVICE_ID = "svc-personality"


class FixedClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.events = []

    def publish(self, event, payload):
        self.events.append((event, payload))

    def names(self):
        return [e for e, _ in self.events]


def sse_started(task_id="ext-task-1", run_id="run-1") -> httpx.Response:
    event = {"event": "workflow_started", "task_id": task_id, "workflow_run_id": run_id, "data": {"id": run_id}}
    body = b"event: ping\n\n" + b"data: " + orjson.dumps(event) + b"\n\n"
    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)


def run_status(status, outputs=None, error=None) -> httpx.Response:
    return httpx.Response(200, json={"id": "run-1", "status": status, "outputs": outputs, "error": error,
                                     "elapsed_time": 1.5})


class FakeDify:
    """Scriptable stand-in for the workflow API behind ``httpx.MockTransport``.

    Each queue holds ``httpx.Response`` objects or exceptions; an empty queue
    falls back to a healthy default.
    """

    def __init__(self):
        self.requests = []
        self.start = []
        self.status = []
        self.stop = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "POST" and path.endswith("/workflows/run"):
            return self._next(self.start, request, sse_started)
        if request.method == "GET" and "/workflows/run/" in path:
            return self._next(self.status, request, lambda: run_status("running"))
        if request.method == "POST" and path.endswith("/stop"):
            return self._next(self.stop, request, lambda: httpx.Response(200, json={"result": "success"}))
        return httpx.Response(404, json={"code": "not_found"})

    @staticmethod
    def _next(queue, request, default):
        item = queue.pop(0) if queue else default()
        if isinstance(item, Exception):
            if isinstance(item, httpx.RequestError):
                item.request = request
            raise item
        return item

    def calls(self, suffix=None):
        return [r for r in self.requests if suffix is None or r.url.path.endswith(suffix)]


@pytest.fixture
def cfg():
    return Settings(
        store_backend="memory",
        dify_base_url=None,
        dify_api_key=None,
        max_retries=3,
        max_task_retries=3,
        retry_delay_seconds=1.0,
        retry_max_delay_seconds=30,
        poll_interval_seconds=3,
        lock_wait_seconds=5,
        stale_task_seconds=300,
        max_execution_seconds=3600,
        auto_dispatch_on_paid=True,
    )


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def dify():
    return FakeDify()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def orch(cfg, clock, notifier, dify, sleeps):
    backend = DifyBackend(response_mode="streaming", transport=httpx.MockTransport(dify.handler))
    orchestrator = Orchestrator(MemoryRepo(cfg), backend, notifier=notifier, cfg=cfg, clock=clock,
                                sleep=sleeps.append)
    orchestrator.save_service(SERVICE_ID, "Personality Analysis", base_url=BASE_URL, api_key="app-secret")
    return orchestrator


@pytest.fixture
def paid_order(orch):
    order = orch.orders.create_order("user-1", SERVICE_ID, {"age": 30}, "99.00")
    return orch.orders.update_status(order.id, OrderStatus.PAID, payment_method=PaymentMethod.ALIPAY,
                                     transaction_id="tx-1")


@pytest.fixture
def running_task(orch, paid_order):
    return orch.start_for_order(paid_order.id)
