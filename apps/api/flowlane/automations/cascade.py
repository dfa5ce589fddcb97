from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Any, Protocol

from flowlane.core.celery_app import RUN_CASCADE_TASK, celery_app
from flowlane.core.config import get_settings


logger = logging.getLogger("flowlane.automations.cascade")


@dataclass(frozen=True)
class CascadeRequest:
    card_id: str
    pipe_id: str
    stage_id: str
    depth: int
    correlation_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> CascadeRequest:
        return cls(
            card_id=str(payload["card_id"]),
            pipe_id=str(payload["pipe_id"]),
            stage_id=str(payload["stage_id"]),
            depth=int(payload.get("depth") or 0),
            correlation_id=payload.get("correlation_id"),
        )


CascadeRunner = Callable[[CascadeRequest], object]


class CascadeDispatcher(Protocol):
    def dispatch(self, request: CascadeRequest, runner: CascadeRunner) -> bool: ...


class ThreadCascadeDispatcher:
    """Runs cascaded automation passes on a small worker pool, detached from the caller."""

    def __init__(self, max_workers: int = 4) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="automation-cascade")
        self._pending: set[Future[None]] = set()
        self._idle = threading.Condition()

    def dispatch(self, request: CascadeRequest, runner: CascadeRunner) -> bool:
        try:
            future = self._executor.submit(self._run, request, runner)
        except RuntimeError as exc:
            logger.exception(
                "automation_cascade_enqueue_failed",
                extra={"card_id": request.card_id, "stage_id": request.stage_id, "error": str(exc)[:500]},
            )
            return False
        with self._idle:
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return True

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every scheduled cascade, including ones scheduled by cascades, has finished."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._pending, timeout=timeout)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def _discard(self, future: Future[None]) -> None:
        with self._idle:
            self._pending.discard(future)
            if not self._pending:
                self._idle.notify_all()

    def _run(self, request: CascadeRequest, runner: CascadeRunner) -> None:
        try:
            runner(request)
        except Exception as exc:
            logger.exception(
                "automation_cascade_failed",
                extra={
                    "card_id": request.card_id,
                    "pipe_id": request.pipe_id,
                    "stage_id": request.stage_id,
                    "cascade_depth": request.depth,
                    "error": str(exc)[:500],
                },
            )


class CeleryCascadeDispatcher:
    def dispatch(self, request: CascadeRequest, runner: CascadeRunner) -> bool:
        try:
            celery_app.send_task(RUN_CASCADE_TASK, args=[request.to_payload()])
        except Exception as exc:
            logger.exception(
                "automation_cascade_enqueue_failed",
                extra={"card_id": request.card_id, "stage_id": request.stage_id, "error": str(exc)[:500]},
            )
            return False
        logger.info(
            "automation.cascade.enqueued",
            extra={"card_id": request.card_id, "stage_id": request.stage_id, "cascade_depth": request.depth},
        )
        return True


_thread_dispatcher: ThreadCascadeDispatcher | None = None
_thread_dispatcher_lock = threading.Lock()


def get_thread_dispatcher() -> ThreadCascadeDispatcher:
    global _thread_dispatcher

    with _thread_dispatcher_lock:
        if _thread_dispatcher is None:
            _thread_dispatcher = ThreadCascadeDispatcher(max_workers=get_settings().cascade_max_workers)
        return _thread_dispatcher


def shutdown_thread_dispatcher() -> None:
    global _thread_dispatcher

    with _thread_dispatcher_lock:
        dispatcher, _thread_dispatcher = _thread_dispatcher, None
    if dispatcher is not None:
        dispatcher.shutdown()


def build_cascade_dispatcher() -> CascadeDispatcher:
    if get_settings().cascade_backend.lower() == "celery":
        return CeleryCascadeDispatcher()
    return get_thread_dispatcher()
