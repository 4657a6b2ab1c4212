"""HTTP adapter for the external AI execution backend (Dify workflow API).

Three capabilities are used:

- ``start``: ``POST /workflows/run``. In streaming mode the SSE stream is read
  only until the first event that carries ``task_id``/``workflow_run_id``;
  in blocking mode the handle comes from the JSON body.
- ``query_status``: ``GET /workflows/run/{workflow_run_id}``.
- ``stop``: ``POST /workflows/tasks/{task_id}/stop``.

Failures surface as ``BackendError`` with ``transient`` set for network
errors, timeouts, 5xx and 429; any other 4xx is permanent.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import httpx
import orjson
from loguru import logger

from .service_config import ServiceConfig

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})


class ExecutionState(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    STOPPED = "stopped"
    NOT_FOUND = "not_found"


_STATE_MAP = {
    "running": ExecutionState.RUNNING,
    "waiting": ExecutionState.RUNNING,
    "succeeded": ExecutionState.SUCCEEDED,
    "partial-succeeded": ExecutionState.SUCCEEDED,
    "failed": ExecutionState.FAILED,
    "stopped": ExecutionState.STOPPED,
}


@dataclass
class StartResult:
    external_task_id: str
    external_execution_id: str


@dataclass
class StatusResult:
    state: ExecutionState
    outputs: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    elapsed_time: Optional[float] = None


class BackendError(Exception):
    def __init__(self, message: str, transient: bool, status_code: int | None = None):
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


def backend_user(task_id: str) -> str:
    # Dify scopes runs to an end-user; stop must present the same one as start.
    return f"task-{task_id}"


def is_transient_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in TRANSIENT_STATUS_CODES


class DifyBackend:
    def __init__(self, response_mode: str = "streaming", transport: httpx.BaseTransport | None = None):
        self.response_mode = response_mode
        self.transport = transport

    def _client(self, config: ServiceConfig) -> httpx.Client:
        return httpx.Client(
            base_url=config.base_url,
            timeout=config.timeout,
            transport=self.transport,
            headers={"Authorization": f"Bearer {config.credential}"},
        )

    def start(self, config: ServiceConfig, input_data: Dict[str, Any], user: str) -> StartResult:
        payload = {"inputs": input_data, "response_mode": self.response_mode, "user": user}
        try:
            with self._client(config) as client:
                if self.response_mode == "streaming":
                    with client.stream("POST", "/workflows/run", json=payload) as r:
                        if r.status_code >= 400:
                            r.read()
                            raise _http_error(r)
                        return _read_handle(r)
                r = client.post("/workflows/run", json=payload)
                if r.status_code >= 400:
                    raise _http_error(r)
                return _handle_from(_json(r))
        except httpx.TimeoutException as exc:
            raise BackendError(f"backend timed out after {config.timeout}s", transient=True) from exc
        except httpx.TransportError as exc:
            raise BackendError(f"backend unreachable: {exc}", transient=True) from exc

    def query_status(self, config: ServiceConfig, execution_id: str) -> StatusResult:
        try:
            with self._client(config) as client:
                r = client.get(f"/workflows/run/{execution_id}")
        except httpx.TimeoutException as exc:
            raise BackendError(f"backend timed out after {config.timeout}s", transient=True) from exc
        except httpx.TransportError as exc:
            raise BackendError(f"backend unreachable: {exc}", transient=True) from exc

        if r.status_code == 404:
            return StatusResult(state=ExecutionState.NOT_FOUND)
        if r.status_code >= 400:
            raise _http_error(r)
        data = _json(r)
        if not isinstance(data, dict):
            raise BackendError("backend status response is not an object", transient=False)
        raw_state = str(data.get("status") or "running").lower()
        state = _STATE_MAP.get(raw_state)
        if state is None:
            logger.warning(f"Unknown execution status {raw_state!r} for run {execution_id}, treating as running")
            state = ExecutionState.RUNNING
        return StatusResult(
            state=state,
            outputs=_parse_outputs(data.get("outputs")),
            error=data.get("error") or None,
            elapsed_time=data.get("elapsed_time"),
        )

    def stop(self, config: ServiceConfig, external_task_id: str, user: str) -> None:
        try:
            with self._client(config) as client:
                r = client.post(f"/workflows/tasks/{external_task_id}/stop", json={"user": user})
        except httpx.TimeoutException as exc:
            raise BackendError(f"backend timed out after {config.timeout}s", transient=True) from exc
        except httpx.TransportError as exc:
            raise BackendError(f"backend unreachable: {exc}", transient=True) from exc
        if r.status_code >= 400:
            raise _http_error(r)


def _http_error(r: httpx.Response) -> BackendError:
    message = None
    try:
        body = r.json()
        if isinstance(body, dict):
            message = body.get("message") or body.get("error") or body.get("code")
    except ValueError:
        message = r.text[:200] or None
    return BackendError(
        f"backend returned HTTP {r.status_code}: {message or r.reason_phrase}",
        transient=is_transient_status(r.status_code),
        status_code=r.status_code,
    )


def _json(r: httpx.Response) -> Any:
    try:
        return r.json()
    except ValueError as exc:
        raise BackendError(f"backend returned a non-JSON body (HTTP {r.status_code})", transient=False) from exc


def _handle_from(data: Any) -> StartResult:
    if not isinstance(data, dict):
        raise BackendError("backend response is not an object", transient=False)
    task_id = data.get("task_id")
    run_id = data.get("workflow_run_id") or (data.get("data") or {}).get("id")
    if not task_id or not run_id:
        raise BackendError("backend response has no execution handle", transient=False)
    return StartResult(external_task_id=str(task_id), external_execution_id=str(run_id))


def _read_handle(r: httpx.Response) -> StartResult:
    if "application/json" in r.headers.get("content-type", ""):
        r.read()
        return _handle_from(_json(r))
    for line in r.iter_lines():
        if not line.startswith("data:"):
            continue
        try:
            event = orjson.loads(line[5:].strip())
        except orjson.JSONDecodeError as exc:
            raise BackendError(f"malformed event from backend: {line[:200]}", transient=False) from exc
        if not isinstance(event, dict):
            raise BackendError(f"malformed event from backend: {line[:200]}", transient=False)
        if event.get("event") == "error":
            try:
                status = int(event.get("status") or 500)
            except (TypeError, ValueError):
                status = 500
            raise BackendError(
                f"backend returned HTTP {status}: {event.get('message') or event.get('code')}",
                transient=is_transient_status(status),
                status_code=status,
            )
        if event.get("task_id") and event.get("workflow_run_id"):
            return _handle_from(event)
    raise BackendError("backend stream ended before the workflow started", transient=True)


def _parse_outputs(raw: Any) -> Optional[Dict[str, Any]]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, str):
        try:
            raw = orjson.loads(raw)
        except orjson.JSONDecodeError:
            return {"text": raw}
    if isinstance(raw, dict):
        return raw
    return {"result": raw}
