from contextlib import contextmanager
from typing import Iterator, List, Optional, Tuple, Type, TypeVar

import orjson
import redis
from loguru import logger
from pydantic import BaseModel
from redis.exceptions import LockError

from .schema import OrderRecord, OrderStatus, ServiceRecord, TaskRecord, TaskStatus
from ..config import Settings, settings as default_settings
from ..errors import OrderBusy, PersistenceError

M = TypeVar("M", bound=BaseModel)


def encode_record(rec: BaseModel) -> dict[str, str]:
    # Every field is stored as its own JSON value so None, dicts and decimals survive the hash.
    return {k: orjson.dumps(v).decode() for k, v in rec.model_dump(mode="json").items()}


def decode_record(model: Type[M], data: dict[str, str]) -> M:
    return model.model_validate({k: orjson.loads(v) for k, v in data.items()})


@contextmanager
def _guard(action: str) -> Iterator[None]:
    try:
        yield
    except redis.RedisError as exc:
        logger.error(f"Redis {action} failed: {exc}")
        raise PersistenceError(f"store {action} failed", {"reason": str(exc)}) from exc


class Repo:
    ACTIVE_TASKS = "tasks:active"
    TASK_INDEX = "tasks:index"
    ORDER_INDEX = "orders:index"

    def __init__(self, client: redis.Redis | None = None, cfg: Settings | None = None):
        cfg = cfg or default_settings
        self.r = client or redis.from_url(cfg.redis_url, decode_responses=True)
        self.lock_timeout = cfg.lock_timeout_seconds
        self.lock_wait = cfg.lock_wait_seconds

    def _order_key(self, order_id: str) -> str:
        return f"order:{order_id}"

    def _task_key(self, task_id: str) -> str:
        return f"task:{task_id}"

    def _service_key(self, service_id: str) -> str:
        return f"service:{service_id}"

    def _order_tasks_key(self, order_id: str) -> str:
        return f"order:{order_id}:tasks"

    def _order_active_key(self, order_id: str) -> str:
        return f"order:{order_id}:active"

    def _user_orders_key(self, user_id: str) -> str:
        return f"user:{user_id}:orders"

    @contextmanager
    def order_lock(self, order_id: str) -> Iterator[None]:
        lock = self.r.lock(f"lock:order:{order_id}", timeout=self.lock_timeout, blocking_timeout=self.lock_wait)
        with _guard("lock"):
            acquired = lock.acquire()
        if not acquired:
            raise OrderBusy(order_id)
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError as exc:
                logger.warning(f"Order lock for {order_id} expired before release: {exc}")

    def ping(self) -> bool:
        with _guard("ping"):
            return bool(self.r.ping())

    # orders

    def save_order(self, rec: OrderRecord) -> None:
        score = rec.created_at.timestamp()
        with _guard("order write"):
            pipe = self.r.pipeline(transaction=True)
            pipe.hset(self._order_key(rec.id), mapping=encode_record(rec))
            pipe.zadd(self.ORDER_INDEX, {rec.id: score})
            pipe.zadd(self._user_orders_key(rec.user_id), {rec.id: score})
            pipe.execute()

    def get_order(self, order_id: str) -> Optional[OrderRecord]:
        with _guard("order read"):
            data = self.r.hgetall(self._order_key(order_id))
        if not data:
            return None
        return decode_record(OrderRecord, data)

    def list_orders(self, user_id: str | None = None, status: OrderStatus | None = None,
                    offset: int = 0, limit: int = 20) -> Tuple[List[OrderRecord], int]:
        index = self._user_orders_key(user_id) if user_id else self.ORDER_INDEX
        with _guard("order list"):
            ids = self.r.zrevrange(index, 0, -1)
        orders = [o for o in (self.get_order(i) for i in ids) if o is not None]
        if status is not None:
            orders = [o for o in orders if o.status == status]
        return orders[offset:offset + limit], len(orders)

    def delete_order(self, order_id: str) -> int:
        order = self.get_order(order_id)
        if order is None:
            return 0
        with _guard("order delete"):
            task_ids = self.r.zrange(self._order_tasks_key(order_id), 0, -1)
            pipe = self.r.pipeline(transaction=True)
            for task_id in task_ids:
                pipe.delete(self._task_key(task_id))
                pipe.zrem(self.TASK_INDEX, task_id)
                pipe.srem(self.ACTIVE_TASKS, task_id)
            pipe.delete(self._order_tasks_key(order_id), self._order_active_key(order_id))
            pipe.delete(self._order_key(order_id))
            pipe.zrem(self.ORDER_INDEX, order_id)
            pipe.zrem(self._user_orders_key(order.user_id), order_id)
            pipe.execute()
        return len(task_ids)

    # tasks

    def insert_task(self, rec: TaskRecord) -> None:
        score = rec.created_at.timestamp()
        with _guard("task insert"):
            pipe = self.r.pipeline(transaction=True)
            pipe.hset(self._task_key(rec.id), mapping=encode_record(rec))
            pipe.zadd(self.TASK_INDEX, {rec.id: score})
            pipe.zadd(self._order_tasks_key(rec.order_id), {rec.id: score})
            if rec.is_active:
                pipe.sadd(self.ACTIVE_TASKS, rec.id)
                pipe.set(self._order_active_key(rec.order_id), rec.id)
            pipe.execute()

    def save_task(self, rec: TaskRecord) -> None:
        active_key = self._order_active_key(rec.order_id)
        with _guard("task write"):
            current_active = self.r.get(active_key)
            pipe = self.r.pipeline(transaction=True)
            pipe.hset(self._task_key(rec.id), mapping=encode_record(rec))
            if rec.is_active:
                pipe.sadd(self.ACTIVE_TASKS, rec.id)
                pipe.set(active_key, rec.id)
            else:
                pipe.srem(self.ACTIVE_TASKS, rec.id)
                if current_active == rec.id:
                    pipe.delete(active_key)
            pipe.execute()

    def get_task(self, task_id: str) -> Optional[TaskRecord]:
        with _guard("task read"):
            data = self.r.hgetall(self._task_key(task_id))
        if not data:
            return None
        return decode_record(TaskRecord, data)

    def tasks_for_order(self, order_id: str) -> List[TaskRecord]:
        with _guard("task list"):
            ids = self.r.zrevrange(self._order_tasks_key(order_id), 0, -1)
        return [t for t in (self.get_task(i) for i in ids) if t is not None]

    def active_task_for_order(self, order_id: str) -> Optional[TaskRecord]:
        with _guard("task read"):
            task_id = self.r.get(self._order_active_key(order_id))
        if not task_id:
            return None
        task = self.get_task(task_id)
        if task is None or not task.is_active:
            return None
        return task

    def list_active_tasks(self) -> List[TaskRecord]:
        with _guard("task list"):
            ids = self.r.smembers(self.ACTIVE_TASKS)
        tasks = [t for t in (self.get_task(i) for i in ids) if t is not None and t.is_active]
        return sorted(tasks, key=lambda t: t.created_at)

    def count_active_tasks(self) -> int:
        with _guard("task count"):
            return int(self.r.scard(self.ACTIVE_TASKS))

    def list_tasks(self, order_id: str | None = None, ai_service_id: str | None = None,
                   status: TaskStatus | None = None, offset: int = 0,
                   limit: int | None = 20) -> Tuple[List[TaskRecord], int]:
        index = self._order_tasks_key(order_id) if order_id else self.TASK_INDEX
        with _guard("task list"):
            ids = self.r.zrevrange(index, 0, -1)
        tasks = [t for t in (self.get_task(i) for i in ids) if t is not None]
        if ai_service_id:
            tasks = [t for t in tasks if t.ai_service_id == ai_service_id]
        if status is not None:
            tasks = [t for t in tasks if t.status == status]
        if limit is None:
            return tasks[offset:], len(tasks)
        return tasks[offset:offset + limit], len(tasks)

    # ai services

    def save_service(self, rec: ServiceRecord) -> None:
        with _guard("service write"):
            self.r.hset(self._service_key(rec.id), mapping=encode_record(rec))

    def get_service(self, service_id: str) -> Optional[ServiceRecord]:
        with _guard("service read"):
            data = self.r.hgetall(self._service_key(service_id))
        if not data:
            return None
        return decode_record(ServiceRecord, data)


def build_repo(cfg: Settings | None = None):
    cfg = cfg or default_settings
    if cfg.store_backend == "memory":
        from .memory import MemoryRepo
        return MemoryRepo(cfg)
    return Repo(cfg=cfg)
