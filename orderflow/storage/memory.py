import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple

from .schema import OrderRecord, OrderStatus, ServiceRecord, TaskRecord, TaskStatus
from ..config import Settings, settings as default_settings
from ..errors import OrderBusy


class MemoryRepo:
    """In-process store with the same contract as the Redis ``Repo``.

    Records are deep-copied on the way in and out so callers never share
    mutable state with the store. Used for local development
    (``STORE_BACKEND=memory``) and by the test suite.
    """

    def __init__(self, cfg: Settings | None = None):
        cfg = cfg or default_settings
        self.lock_wait = cfg.lock_wait_seconds
        self._mutex = threading.RLock()
        self._order_locks: Dict[str, threading.Lock] = {}
        self._orders: Dict[str, OrderRecord] = {}
        self._tasks: Dict[str, TaskRecord] = {}
        self._services: Dict[str, ServiceRecord] = {}

    @contextmanager
    def order_lock(self, order_id: str) -> Iterator[None]:
        with self._mutex:
            lock = self._order_locks.setdefault(order_id, threading.Lock())
        if not lock.acquire(timeout=self.lock_wait):
            raise OrderBusy(order_id)
        try:
            yield
        finally:
            lock.release()

    def ping(self) -> bool:
        return True

    def save_order(self, rec: OrderRecord) -> None:
        with self._mutex:
            self._orders[rec.id] = rec.model_copy(deep=True)

    def get_order(self, order_id: str) -> Optional[OrderRecord]:
        with self._mutex:
            rec = self._orders.get(order_id)
            return rec.model_copy(deep=True) if rec else None

    def list_orders(self, user_id: str | None = None, status: OrderStatus | None = None,
                    offset: int = 0, limit: int = 20) -> Tuple[List[OrderRecord], int]:
        with self._mutex:
            orders = [o.model_copy(deep=True) for o in self._orders.values()]
        if user_id:
            orders = [o for o in orders if o.user_id == user_id]
        if status is not None:
            orders = [o for o in orders if o.status == status]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders[offset:offset + limit], len(orders)

    def delete_order(self, order_id: str) -> int:
        with self._mutex:
            if self._orders.pop(order_id, None) is None:
                return 0
            task_ids = [t.id for t in self._tasks.values() if t.order_id == order_id]
            for task_id in task_ids:
                del self._tasks[task_id]
            return len(task_ids)

    def insert_task(self, rec: TaskRecord) -> None:
        with self._mutex:
            self._tasks[rec.id] = rec.model_copy(deep=True)

    def save_task(self, rec: TaskRecord) -> None:
        with self._mutex:
            self._tasks[rec.id] = rec.model_copy(deep=True)

    def get_task(self, task_id: str) -> Optional[TaskRecord]:
        with self._mutex:
            rec = self._tasks.get(task_id)
            return rec.model_copy(deep=True) if rec else None

    def tasks_for_order(self, order_id: str) -> List[TaskRecord]:
        tasks, _ = self.list_tasks(order_id=order_id, limit=None)
        return tasks

    def active_task_for_order(self, order_id: str) -> Optional[TaskRecord]:
        with self._mutex:
            for rec in self._tasks.values():
                if rec.order_id == order_id and rec.is_active:
                    return rec.model_copy(deep=True)
        return None

    def list_active_tasks(self) -> List[TaskRecord]:
        with self._mutex:
            tasks = [t.model_copy(deep=True) for t in self._tasks.values() if t.is_active]
        return sorted(tasks, key=lambda t: t.created_at)

    def count_active_tasks(self) -> int:
        with self._mutex:
            return sum(1 for t in self._tasks.values() if t.is_active)

    def list_tasks(self, order_id: str | None = None, ai_service_id: str | None = None,
                   status: TaskStatus | None = None, offset: int = 0,
                   limit: int | None = 20) -> Tuple[List[TaskRecord], int]:
        with self._mutex:
            tasks = [t.model_copy(deep=True) for t in self._tasks.values()]
        if order_id:
            tasks = [t for t in tasks if t.order_id == order_id]
        if ai_service_id:
            tasks = [t for t in tasks if t.ai_service_id == ai_service_id]
        if status is not None:
            tasks = [t for t in tasks if t.status == status]
        tasks.sort(key=lambda t: t.created_at, reverse=True)
        if limit is None:
            return tasks[offset:], len(tasks)
        return tasks[offset:offset + limit], len(tasks)

    def save_service(self, rec: ServiceRecord) -> None:
        with self._mutex:
            self._services[rec.id] = rec.model_copy(deep=True)

    def get_service(self, service_id: str) -> Optional[ServiceRecord]:
        with self._mutex:
            rec = self._services.get(service_id)
            return rec.model_copy(deep=True) if rec else None
