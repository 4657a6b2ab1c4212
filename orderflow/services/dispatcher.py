import time
from typing import Callable

from loguru import logger
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from .backend import BackendError, DifyBackend, StartResult, backend_user
from .lifecycle import TaskLifecycleManager
from .service_config import ServiceConfig, ServiceConfigResolver
from ..errors import ConfigurationError, InvalidTaskTransition, PersistenceError
from ..storage.schema import TaskRecord, TaskStatus


class _DispatchAborted(Exception):
    """The task left ``pending`` (e.g. was cancelled) between attempts."""


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, BackendError) and exc.transient


class TaskDispatcher:
    def __init__(self, lifecycle: TaskLifecycleManager, resolver: ServiceConfigResolver, backend: DifyBackend,
                 max_retries: int = 3, retry_delay: float = 1.0, retry_max_delay: float = 30.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.lifecycle = lifecycle
        self.resolver = resolver
        self.backend = backend
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.retry_max_delay = retry_max_delay
        self.sleep = sleep

    def submit(self, task: TaskRecord) -> TaskRecord:
        """Start ``task`` on the backend and move it to ``running`` or ``failed``.

        Transient backend failures are retried ``max_retries`` times with
        exponential backoff (``retry_delay * 2**attempt``), persisting
        ``retry_count`` before every retry. Permanent failures and exhausted
        retries fail the task; no replacement task is created.
        """
        task = self.lifecycle.get(task.id)
        if task.status != TaskStatus.PENDING:
            raise InvalidTaskTransition(task.id, task.status.value, TaskStatus.RUNNING.value,
                                        "only pending tasks can be dispatched")
        try:
            config = self.resolver.get_config(task.ai_service_id)
        except ConfigurationError as exc:
            logger.warning(f"Task {task.id} cannot be dispatched: {exc.message}")
            return self._fail(task, exc.message)

        current = task
        user = backend_user(task.id)

        def before_sleep(state: RetryCallState) -> None:
            nonlocal current
            current = self.lifecycle.get(task.id)
            if current.status != TaskStatus.PENDING:
                raise _DispatchAborted()
            current = self.lifecycle.record_retry(current)
            logger.warning(
                f"Dispatch of task {task.id} failed on attempt {state.attempt_number}: "
                f"{state.outcome.exception()}; retrying in {state.next_action.sleep:.1f}s"
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.retry_delay, exp_base=2, max=self.retry_max_delay),
            retry=retry_if_exception(_is_transient),
            before_sleep=before_sleep,
            sleep=self.sleep,
            reraise=True,
        )
        try:
            handle = retrying(self.backend.start, config, task.input_data, user)
        except _DispatchAborted:
            logger.info(f"Task {task.id} left pending while dispatching, giving up")
            return current
        except BackendError as exc:
            if exc.transient:
                message = f"dispatch failed after {current.retry_count + 1} attempts: {exc}"
            else:
                message = f"dispatch rejected by backend: {exc}"
            logger.error(f"Task {task.id}: {message}")
            return self._fail(current, message)

        return self._mark_running(current, config, handle, user)

    def _mark_running(self, task: TaskRecord, config: ServiceConfig, handle: StartResult, user: str) -> TaskRecord:
        fields = {
            "external_task_id": handle.external_task_id,
            "external_execution_id": handle.external_execution_id,
        }
        try:
            return self.lifecycle.transition(task, TaskStatus.RUNNING, fields)
        except InvalidTaskTransition:
            logger.warning(f"Task {task.id} was cancelled while starting, stopping run {handle.external_execution_id}")
            self._stop_quietly(config, handle, user)
            return self.lifecycle.get(task.id)
        except PersistenceError:
            self._stop_quietly(config, handle, user)
            raise

    def _fail(self, task: TaskRecord, message: str) -> TaskRecord:
        try:
            return self.lifecycle.transition(task, TaskStatus.FAILED, {"error_message": message})
        except InvalidTaskTransition:
            return self.lifecycle.get(task.id)

    def _stop_quietly(self, config: ServiceConfig, handle: StartResult, user: str) -> None:
        try:
            self.backend.stop(config, handle.external_task_id, user)
        except BackendError as exc:
            logger.warning(f"Could not stop orphaned run {handle.external_execution_id}: {exc}")
