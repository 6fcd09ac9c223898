from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from app.constants import MAX_CONCURRENT_LIMIT, STATUS_PENDING
from app.schemas import (
    IN_FLIGHT_STATES,
    STATE_EVENT_STATUS,
    TERMINAL_STATES,
    AuthContext,
    ItemState,
    OperationHandle,
    ProgressEvent,
    RunStatus,
)
from app.services.auth import require_credentials
from app.services.correlator import OperationCorrelator
from app.services.errors import (
    ConfigurationError,
    FlowError,
    PollTransportError,
    RunCancelledError,
    SessionLostError,
    SubmissionError,
)
from app.services.poller import StatusPoller
from app.services.session import SessionProvider
from app.services.storage import FlowRepository, get_repository
from app.services.submission import SubmissionDriver

LOGGER = logging.getLogger("flow.orchestrator")

CANCELLED_MESSAGE = "Cancelled"
DISCONNECTED_MESSAGE = "Browser disconnected"
COMPLETED_RUN_STATUSES = frozenset(
    {RunStatus.finished.value, RunStatus.failed.value, RunStatus.cancelled.value}
)

EventSink = Callable[[ProgressEvent], None]


def _utcnow() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


@dataclass
class WorkItem:
    id: str
    text: str
    state: ItemState = ItemState.idle
    message: str = ""
    result_url: Optional[str] = None
    handle: Optional[OperationHandle] = None
    polling_since: Optional[float] = None
    last_progress: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_in_flight(self) -> bool:
        return self.state in IN_FLIGHT_STATES

    def assign_handle(self, handle: OperationHandle) -> None:
        if self.handle is not None:
            raise ValueError(f"Work item {self.id} already has operation {self.handle.operation_name}")
        self.handle = handle


@dataclass
class BatchRun:
    run_id: str
    items: List[WorkItem]
    limit: int
    auth: AuthContext
    admitted: int = 0
    sinks: List[EventSink] = field(default_factory=list)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)
    owner: Optional[threading.Thread] = None
    project_id: Optional[str] = None
    note: Optional[str] = None
    poll_failures: int = 0
    poll_resume_at: float = 0.0

    def in_flight(self) -> int:
        return sum(1 for item in self.items if item.is_in_flight)

    def unresolved(self) -> List[WorkItem]:
        return [item for item in self.items if not item.is_terminal]

    def is_complete(self) -> bool:
        return all(item.is_terminal for item in self.items)

    def next_unadmitted(self) -> Optional[WorkItem]:
        if self.admitted >= len(self.items):
            return None
        return self.items[self.admitted]

    def oldest_without_handle(self) -> Optional[WorkItem]:
        for item in self.items[: self.admitted]:
            if item.state == ItemState.submitted and item.handle is None:
                return item
        return None

    def holds_handle(self, handle: OperationHandle) -> bool:
        return any(
            item.handle is not None
            and (item.handle.scene_id == handle.scene_id or item.handle.operation_name == handle.operation_name)
            for item in self.items
        )

    def with_state(self, state: ItemState) -> List[WorkItem]:
        return [item for item in self.items if item.state == state]


class BatchOrchestrator:
    """Drive batches of prompts through the browser session and poll them to completion.

    Runs are queued and processed one at a time on a worker thread, since they all
    share a single browser profile. Within a run one control loop owns every item
    state change: it admits items into the concurrency window, assigns operation
    handles reported by the correlator, and applies batched poll results.
    """

    def __init__(
        self,
        repo: Optional[FlowRepository] = None,
        *,
        session_factory: Optional[Callable[[Dict[str, Any]], Any]] = None,
        driver_factory: Optional[Callable[[Any, Dict[str, Any]], Any]] = None,
        poller: Optional[StatusPoller] = None,
        correlator_factory: Optional[Callable[[], OperationCorrelator]] = None,
        clock: Callable[[], float] = time.monotonic,
        auto_start: bool = True,
    ) -> None:
        self._repo = repo or get_repository()
        self._session_factory = session_factory or self._default_session
        self._driver_factory = driver_factory or self._default_driver
        self._poller = poller or StatusPoller()
        self._correlator_factory = correlator_factory or OperationCorrelator
        self._clock = clock
        self._auto_start = auto_start
        self._queue: "queue.Queue[str]" = queue.Queue()
        self._lock = threading.Lock()
        self._pending: Dict[str, BatchRun] = {}
        self._active: Optional[BatchRun] = None
        self._worker: Optional[threading.Thread] = None

    @staticmethod
    def _default_session(config: Dict[str, Any]) -> SessionProvider:
        return SessionProvider(
            headless=config["headless"],
            login_timeout=config["login_timeout_seconds"],
        )

    @staticmethod
    def _default_driver(session: Any, config: Dict[str, Any]) -> SubmissionDriver:
        return SubmissionDriver(session, type_delay_ms=config["type_delay_ms"])

    # ------------------------------------------------------------------ control surface
    def start(
        self,
        items: Iterable[Dict[str, str]],
        auth: AuthContext,
        *,
        limit: Optional[int] = None,
        sinks: Optional[List[EventSink]] = None,
        source_run_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        work = [{"id": str(item["id"]), "text": str(item["text"])} for item in items]
        if not work:
            raise ValueError("At least one work item is required.")
        ids = [item["id"] for item in work]
        if len(set(ids)) != len(ids):
            raise ValueError("Work item ids must be unique within a batch.")
        require_credentials(auth, [self._poller.endpoint])
        if limit is None:
            limit = self._repo.get_config()["max_concurrent_items"]
        if limit < 1 or limit > MAX_CONCURRENT_LIMIT:
            raise ConfigurationError(
                f"Concurrency limit must be between 1 and {MAX_CONCURRENT_LIMIT}."
            )

        run = self._repo.create_run({"limit": limit, "source_run_id": source_run_id})
        self._repo.create_items(run["id"], work)
        batch = BatchRun(
            run_id=run["id"],
            items=[WorkItem(id=item["id"], text=item["text"]) for item in work],
            limit=limit,
            auth=auth,
            sinks=list(sinks or []),
        )
        self._refresh_run_summary(batch)
        with self._lock:
            self._pending[batch.run_id] = batch
        LOGGER.info("Queued run %s with %s items (limit=%s)", batch.run_id, len(work), limit)
        if self._auto_start:
            self._queue.put(batch.run_id)
            self._ensure_worker()
        return self._repo.get_run(batch.run_id) or run

    def rerun(self, run_id: str, auth: AuthContext, *, limit: Optional[int] = None) -> Dict[str, Any]:
        """Start a new run from the items of ``run_id`` that did not succeed."""
        record = self._repo.get_run(run_id)
        if not record:
            raise ValueError("Run not found")
        if self.is_active(run_id) or record.get("status") not in COMPLETED_RUN_STATUSES:
            raise ValueError("Only completed runs can be rerun.")
        remaining = [
            {"id": item["item_id"], "text": item["text"]}
            for item in self._repo.list_items(run_id)
            if item.get("state") != ItemState.succeeded.value
        ]
        if not remaining:
            raise ValueError("Every item in this run already succeeded.")
        return self.start(remaining, auth, limit=limit, source_run_id=run_id)

    def stop(self, timeout: Optional[float] = 10.0) -> List[str]:
        """Cancel the active run and every queued run; safe to call when idle."""
        with self._lock:
            queued = list(self._pending.values())
            self._pending.clear()
            active = self._active
        cancelled: List[str] = []
        for batch in queued:
            if not batch.cancel_event.is_set():
                batch.cancel_event.set()
                cancelled.append(batch.run_id)
            self._abandon(batch)
        if active is not None and not active.cancel_event.is_set():
            active.cancel_event.set()
            cancelled.append(active.run_id)
            LOGGER.info("Cancellation requested for active run %s", active.run_id)
        if active is not None:
            self._await_release(active, timeout)
        return cancelled

    def cancel_run(self, run_id: str, timeout: Optional[float] = 10.0) -> bool:
        with self._lock:
            batch = self._pending.pop(run_id, None)
            active = self._active if self._active and self._active.run_id == run_id else None
        if batch is not None:
            batch.cancel_event.set()
            self._abandon(batch)
            return True
        if active is None or active.cancel_event.is_set():
            return False
        active.cancel_event.set()
        LOGGER.info("Cancellation requested for active run %s", run_id)
        self._await_release(active, timeout)
        return True

    def is_active(self, run_id: str) -> bool:
        with self._lock:
            if run_id in self._pending:
                return True
            return self._active is not None and self._active.run_id == run_id

    def _await_release(self, batch: BatchRun, timeout: Optional[float]) -> None:
        if batch.owner is threading.current_thread():
            return
        if timeout and not batch.done.wait(timeout):
            LOGGER.warning("Run %s did not release its session within %ss", batch.run_id, timeout)

    def _abandon(self, batch: BatchRun) -> None:
        LOGGER.info("Run %s cancelled before start", batch.run_id)
        self._fail_unresolved(batch, CANCELLED_MESSAGE)
        self._finalize(batch)

    # ------------------------------------------------------------------ worker
    def _ensure_worker(self) -> None:
        if self._worker and self._worker.is_alive():
            return
        self._worker = threading.Thread(target=self._run_loop, daemon=True, name="flow-orchestrator")
        self._worker.start()

    def _run_loop(self) -> None:
        while True:
            run_id = self._queue.get()
            try:
                self.execute_now(run_id)
            except Exception:
                LOGGER.exception("Unhandled error while processing run %s", run_id)
            finally:
                self._queue.task_done()

    def execute_now(self, run_id: str) -> None:
        """Execute a queued run immediately in the current thread (used by tests)."""
        with self._lock:
            batch = self._pending.pop(run_id, None)
            if batch is None:
                LOGGER.info("Run %s is no longer queued; skipping", run_id)
                return
            batch.owner = threading.current_thread()
            self._active = batch
        try:
            self._process_run(batch)
        finally:
            with self._lock:
                if self._active is batch:
                    self._active = None

    # ------------------------------------------------------------------ processing
    def _process_run(self, batch: BatchRun) -> None:
        run_id = batch.run_id
        if batch.cancel_event.is_set():
            self._abandon(batch)
            return

        config = self._repo.get_config()
        self._repo.update_run(
            run_id,
            {"status": RunStatus.executing.value, "started_at": _utcnow()},
        )
        LOGGER.info("Starting run %s", run_id)
        try:
            session = self._session_factory(config)
            with session:
                session.start(config["profile_dir"])
                session.ensure_authenticated(batch.cancel_event)
                batch.project_id = session.ensure_work_context()
                self._repo.update_run(run_id, {"project_id": batch.project_id})
                driver = self._driver_factory(session, config)
                driver.ensure_ready(config["input_timeout_seconds"])
                correlator = self._correlator_factory()
                correlator.attach(session)
                self._control_loop(batch, session, driver, correlator, config)
        except RunCancelledError:
            self._fail_unresolved(batch, CANCELLED_MESSAGE)
        except SessionLostError as exc:
            LOGGER.error("Run %s lost its browser session: %s", run_id, exc)
            batch.note = DISCONNECTED_MESSAGE
            self._fail_unresolved(batch, DISCONNECTED_MESSAGE)
        except FlowError as exc:
            LOGGER.error("Run %s aborted: %s", run_id, exc)
            batch.note = str(exc)
            self._fail_unresolved(batch, str(exc))
        except Exception as exc:
            LOGGER.exception("Unexpected failure in run %s", run_id)
            batch.note = f"Unexpected error: {exc}"
            self._fail_unresolved(batch, batch.note)
        finally:
            self._finalize(batch)

    def _control_loop(self, batch: BatchRun, session, driver, correlator, config: Dict[str, Any]) -> None:
        interval = float(config["poll_interval_seconds"])
        while not batch.is_complete():
            if batch.cancel_event.is_set():
                raise RunCancelledError(CANCELLED_MESSAGE)
            if not session.is_connected():
                raise SessionLostError(DISCONNECTED_MESSAGE)
            self.run_cycle(batch, driver, correlator, config)
            if batch.is_complete():
                break
            session.wait(interval, batch.cancel_event)

    def run_cycle(self, batch: BatchRun, driver, correlator, config: Dict[str, Any]) -> None:
        """One admission, correlation and poll step over ``batch``."""
        strict = bool(config.get("await_handle_before_submit"))
        if strict:
            self._correlate(batch, correlator)
        self._admit(batch, driver, strict)
        self._correlate(batch, correlator)
        self._poll(batch, config)

    def _admit(self, batch: BatchRun, driver, strict: bool) -> None:
        while batch.in_flight() < batch.limit:
            if batch.cancel_event.is_set():
                return
            if strict and batch.oldest_without_handle() is not None:
                return
            item = batch.next_unadmitted()
            if item is None:
                return
            batch.admitted += 1
            if item.is_terminal:
                continue
            self._transition(batch, item, ItemState.queued, "Queued")
            try:
                driver.submit(item.text)
            except SubmissionError as exc:
                self._transition(batch, item, ItemState.failed, f"Submission failed: {exc}")
                continue
            self._transition(batch, item, ItemState.submitted, "Submitted")

    def _correlate(self, batch: BatchRun, correlator) -> None:
        for handle in correlator.drain():
            if batch.holds_handle(handle):
                LOGGER.debug("Ignoring repeated confirmation for %s", handle.operation_name)
                continue
            item = batch.oldest_without_handle()
            if item is None:
                LOGGER.info(
                    "No submitted item is waiting for operation %s (scene %s); dropping",
                    handle.operation_name,
                    handle.scene_id,
                )
                continue
            item.assign_handle(handle)
            self._repo.update_item(
                batch.run_id,
                item.id,
                {"operation_name": handle.operation_name, "scene_id": handle.scene_id},
            )
            self._transition(batch, item, ItemState.awaiting_handle, "Processing...")

    def _poll(self, batch: BatchRun, config: Dict[str, Any]) -> None:
        now = self._clock()
        for item in batch.with_state(ItemState.awaiting_handle):
            item.polling_since = now
            self._transition(batch, item, ItemState.polling, "Waiting for generation status")

        polling = batch.with_state(ItemState.polling)
        if polling and now >= batch.poll_resume_at:
            self._query_statuses(batch, polling, config, now)
        self._expire_stuck(batch, config, now)

    def _query_statuses(self, batch: BatchRun, polling: List[WorkItem], config: Dict[str, Any], now: float) -> None:
        try:
            statuses = self._poller.poll([item.handle for item in polling], batch.auth)
        except PollTransportError as exc:
            batch.poll_failures += 1
            interval = float(config["poll_interval_seconds"])
            cap = float(config["poll_backoff_max_seconds"])
            delay = min(interval * 2 ** (batch.poll_failures - 1), cap)
            batch.poll_resume_at = now + delay
            LOGGER.warning(
                "Status poll failed for run %s (attempt %s); retrying in %.1fs: %s",
                batch.run_id,
                batch.poll_failures,
                delay,
                exc,
            )
            return
        batch.poll_failures = 0
        batch.poll_resume_at = 0.0

        by_scene = {item.handle.scene_id: item for item in polling}
        for status in statuses:
            item = by_scene.pop(status.scene_id, None)
            if item is None:
                continue
            if status.is_success:
                self._transition(batch, item, ItemState.succeeded, "Completed", result_url=status.result_url)
            elif status.is_failure:
                self._transition(batch, item, ItemState.failed, status.error_message or "Unknown error")
            else:
                self._progress(batch, item, f"Processing ({status.status or STATUS_PENDING})...")

    def _expire_stuck(self, batch: BatchRun, config: Dict[str, Any], now: float) -> None:
        poll_timeout = int(config.get("poll_timeout_seconds") or 0)
        if not poll_timeout:
            return
        for item in batch.with_state(ItemState.polling):
            if item.polling_since is not None and now - item.polling_since > poll_timeout:
                self._transition(batch, item, ItemState.failed, f"Timed out after {poll_timeout} seconds")

    # ------------------------------------------------------------------ state & events
    def _transition(
        self,
        batch: BatchRun,
        item: WorkItem,
        state: ItemState,
        message: str,
        *,
        result_url: Optional[str] = None,
    ) -> bool:
        if item.is_terminal:
            LOGGER.debug("Item %s is already %s; ignoring %s", item.id, item.state.value, state.value)
            return False
        item.state = state
        item.message = message
        if result_url:
            item.result_url = result_url
        self._repo.update_item(
            batch.run_id,
            item.id,
            {"state": state.value, "message": message, "result_url": item.result_url},
        )
        self._emit(batch, item, message)
        if item.is_terminal:
            self._refresh_run_summary(batch)
        return True

    def _progress(self, batch: BatchRun, item: WorkItem, message: str) -> None:
        if item.last_progress == message:
            return
        item.last_progress = message
        item.message = message
        self._repo.update_item(batch.run_id, item.id, {"message": message})
        self._emit(batch, item, message)

    def _emit(self, batch: BatchRun, item: WorkItem, message: str) -> ProgressEvent:
        status = STATE_EVENT_STATUS[item.state]
        stored = self._repo.append_event(
            batch.run_id,
            {
                "item_id": item.id,
                "message": message,
                "status": status.value,
                "state": item.state.value,
                "result_url": item.result_url,
            },
        )
        event = ProgressEvent.model_validate(stored)
        LOGGER.info("[%s] %s: %s", item.id, status.value.upper(), message)
        for sink in batch.sinks:
            try:
                sink(event)
            except Exception:
                LOGGER.exception("Event sink failed for run %s", batch.run_id)
        return event

    def _fail_unresolved(self, batch: BatchRun, message: str) -> None:
        for item in batch.unresolved():
            self._transition(batch, item, ItemState.failed, message)

    def _refresh_run_summary(self, batch: BatchRun) -> Dict[str, Any]:
        total = len(batch.items)
        succeeded = sum(1 for item in batch.items if item.state == ItemState.succeeded)
        failed = sum(1 for item in batch.items if item.state == ItemState.failed)
        summary = {
            "items_total": total,
            "items_succeeded": succeeded,
            "items_failed": failed,
            "items_pending": total - succeeded - failed,
            "progress": round((succeeded + failed) / total * 100.0, 1) if total else 0.0,
        }
        self._repo.update_run(batch.run_id, {"summary": summary})
        return summary

    def _finalize(self, batch: BatchRun) -> None:
        summary = self._refresh_run_summary(batch)
        if batch.cancel_event.is_set():
            final_status = RunStatus.cancelled
        elif batch.note or summary["items_failed"]:
            final_status = RunStatus.failed
        else:
            final_status = RunStatus.finished
        self._repo.update_run(
            batch.run_id,
            {
                "status": final_status.value,
                "note": batch.note,
                "completed_at": _utcnow(),
            },
        )
        batch.done.set()
        LOGGER.info(
            "Completed run %s: %s (succeeded=%s failed=%s)",
            batch.run_id,
            final_status.value,
            summary["items_succeeded"],
            summary["items_failed"],
        )


_orchestrator: Optional[BatchOrchestrator] = None


def get_orchestrator() -> BatchOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = BatchOrchestrator()
    return _orchestrator


def shutdown_orchestrator() -> None:
    """Stop the shared orchestrator if one was ever created."""
    if _orchestrator is not None:
        _orchestrator.stop()
