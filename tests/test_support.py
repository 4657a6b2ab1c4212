from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
import sys

import orjson

sys.path.append(str(Path(__file__).resolve().parents[1]))

from orderflow.config import Settings
from orderflow.services.metrics import Metrics
from orderflow.services.notifier import Notifier, RedisNotifier
from orderflow.storage.memory import MemoryRepo
from orderflow.storage.repo import build_repo, decode_record, encode_record
from orderflow.storage.schema import OrderRecord, TaskRecord, TaskStatus

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_record_codec_keeps_types():
    order = OrderRecord(user_id="u1", ai_service_id="svc", amount=Decimal("99.00"),
                        service_data={"answers": [1, 2, {"q": None}]}, created_at=NOW, updated_at=NOW)

    encoded = encode_record(order)

    assert all(isinstance(v, str) for v in encoded.values())
    assert encoded["paid_at"] == "null"
    assert decode_record(OrderRecord, encoded) == order


def test_memory_backend_is_selectable():
    assert isinstance(build_repo(Settings(store_backend="memory")), MemoryRepo)


def _task(status, started=None, execution_time=None):
    return TaskRecord(order_id="o1", ai_service_id="svc", status=status, started_at=started,
                      execution_time=execution_time)


def test_progress_estimate():
    assert Metrics.task_progress(_task(TaskStatus.PENDING), NOW) == 0
    assert Metrics.task_progress(_task(TaskStatus.RUNNING), NOW) == 10
    assert Metrics.task_progress(_task(TaskStatus.RUNNING, NOW - timedelta(seconds=150)), NOW) == 40
    assert Metrics.task_progress(_task(TaskStatus.RUNNING, NOW - timedelta(hours=1)), NOW) == 80
    assert Metrics.task_progress(_task(TaskStatus.COMPLETED), NOW) == 100
    assert Metrics.task_progress(_task(TaskStatus.FAILED, execution_time=12), NOW) == 100
    assert Metrics.task_progress(_task(TaskStatus.CANCELLED), NOW) == 0


def test_task_stats():
    stats = Metrics.task_stats([
        _task(TaskStatus.COMPLETED, execution_time=10),
        _task(TaskStatus.COMPLETED, execution_time=20),
        _task(TaskStatus.FAILED, execution_time=3),
        _task(TaskStatus.RUNNING),
    ])

    assert stats["total_tasks"] == 4
    assert stats["completed_tasks"] == 2
    assert stats["running_tasks"] == 1
    assert stats["average_execution_time"] == 11.0
    assert stats["success_rate"] == 50.0
    assert Metrics.task_stats([])["success_rate"] == 0


class _FakeRedis:
    def __init__(self, fail=False):
        self.messages = []
        self.fail = fail

    def publish(self, channel, message):
        if self.fail:
            raise ConnectionError("redis down")
        self.messages.append((channel, message))


def test_redis_notifier_publishes_json():
    client = _FakeRedis()

    RedisNotifier(client, "task-updates").notify("task_started", {"taskId": "t1", "at": NOW})

    channel, message = client.messages[0]
    assert channel == "task-updates"
    assert orjson.loads(message) == {"event": "task_started", "payload": {"taskId": "t1", "at": NOW.isoformat()}}


def test_notification_failures_are_swallowed():
    RedisNotifier(_FakeRedis(fail=True), "task-updates").notify("task_failed", {})
    Notifier().notify("task_failed", {})
