"""
sysaidmin.orchestrator — Plan lifecycle and two-phase execution.

``PlanOrchestrator`` drives one plan at a time:

1.  **Classify** every task against the allowlist, in plan order, before
    anything runs.  Blocked tasks are reported immediately and never run.
2.  **Commands** — every allowed ``CommandTask``, in plan order.
3.  **File edits** — every allowed ``FileEditTask``, in plan order.
4.  **Record** — the finished plan goes to the ``SessionRecorder``.

Execution is best-effort: a failed task never stops its siblings.  Each
``run`` / ``start`` returns a ``RunHandle``; while a handle is outstanding
any further plan is rejected with ``PlanRejectedError``.

With ``max_workers > 1`` commands run concurrently, and file edits run in
per-path lanes: edits to the same real path stay serial, lanes run side by
side.  Edits never start before every command has finished.

Just before an edit runs, its target is resolved through symlinks; if the
real path falls outside the allowlist the edit fails without being written.
Backups taken during a run are shared across its edits, so a file edited
twice keeps the backup of its pre-plan content.
"""

from __future__ import annotations

import os
import threading
from collections.abc import Callable, MutableMapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from sysaidmin.config import SysaidminSettings, get_settings
from sysaidmin.errors import PersistenceError, PlanRejectedError
from sysaidmin.executor.backup import BackupManager
from sysaidmin.executor.runner import TaskExecutor
from sysaidmin.logging import get_logger
from sysaidmin.plan.models import (
    BackupRecord,
    CommandTask,
    FileEditTask,
    Plan,
    Task,
    TaskOutcome,
    TaskStatus,
    utcnow,
)
from sysaidmin.safety.allowlist import Allowlist
from sysaidmin.session.recorder import SessionRecorder, SessionSnapshot

log = get_logger(__name__)

OutcomeListener = Callable[[TaskOutcome], None]


class Executor(Protocol):
    """Anything that can run one task and report its terminal outcome."""

    def execute(
        self,
        task: Task,
        dry_run: bool = False,
        backups_taken: MutableMapping[str, BackupRecord] | None = None,
    ) -> TaskOutcome:
        ...


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


@dataclass
class TaskState:
    """Mutable status of one task within one run."""

    task: Task
    status: TaskStatus = TaskStatus.PROPOSED
    outcome: TaskOutcome | None = None


class RunHandle:
    """Ownership token for the plan currently executing.

    The orchestrator refuses new plans while a handle is not ``done``.
    """

    def __init__(self, plan: Plan, dry_run: bool) -> None:
        self.plan = plan
        self.dry_run = dry_run
        self.states: dict[int, TaskState] = {t.id: TaskState(task=t) for t in plan.tasks}
        self.outcomes: list[TaskOutcome] = []
        self.started_at: datetime = utcnow()
        self.finished_at: datetime | None = None
        self.snapshot: SessionSnapshot | None = None
        self.snapshot_path: str | None = None
        self.audit_degraded = False
        self.audit_errors: list[str] = []
        self.backups_taken: dict[str, BackupRecord] = {}
        self.error: BaseException | None = None
        self._cancel = threading.Event()
        self._done = threading.Event()
        self._lock = threading.Lock()

    # -- control ---------------------------------------------------------

    def cancel(self) -> None:
        """Stop before the next task starts.  A task already running completes."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the run is finished.  Re-raises an engine crash, if any."""
        finished = self._done.wait(timeout)
        if finished and self.error is not None:
            raise self.error
        return finished

    # -- state -----------------------------------------------------------

    def status_of(self, task_id: int) -> TaskStatus:
        return self.states[task_id].status

    def _advance(self, task_id: int, target: TaskStatus) -> None:
        with self._lock:
            state = self.states[task_id]
            state.status = state.status.advance(target)

    def tasks_with(self, status: TaskStatus) -> list[Task]:
        return [s.task for s in self.states.values() if s.status is status]

    @property
    def failed(self) -> bool:
        return any(s.status is TaskStatus.FAILED for s in self.states.values())


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


def _lane_key(task: FileEditTask) -> str:
    return os.path.realpath(task.target or task.path)


class PlanOrchestrator:
    """Runs plans one at a time under the allowlist.

    Parameters
    ----------
    allowlist : Allowlist
        Compiled policy used to classify every task.
    executor : Executor
        Runs allowed tasks (normally a ``TaskExecutor``).
    recorder : SessionRecorder | None
        Receives the event log, command history and final snapshot.
    dry_run : bool
        Default mode for runs that do not say otherwise.
    max_workers : int
        Upper bound on tasks running at once within a group.
    """

    def __init__(
        self,
        allowlist: Allowlist,
        executor: Executor,
        recorder: SessionRecorder | None = None,
        *,
        dry_run: bool = False,
        max_workers: int = 1,
    ) -> None:
        self.allowlist = allowlist
        self.executor = executor
        self.recorder = recorder
        self.dry_run = dry_run
        self.max_workers = max(1, max_workers)
        self._listeners: list[OutcomeListener] = []
        self._active: RunHandle | None = None
        self._lock = threading.Lock()
        self._emit_lock = threading.Lock()

    def subscribe(self, listener: OutcomeListener) -> None:
        """Register a callable that receives every outcome as it is emitted."""
        self._listeners.append(listener)

    @property
    def active(self) -> RunHandle | None:
        with self._lock:
            return self._active

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(self, plan: Plan, dry_run: bool | None = None) -> RunHandle:
        """Execute *plan* in the calling thread and return the finished handle.

        Raises
        ------
        PlanRejectedError
            If another plan is still running.
        """
        handle = self._begin(plan, dry_run)
        self._drive(handle)
        handle.wait()
        return handle

    def start(self, plan: Plan, dry_run: bool | None = None) -> RunHandle:
        """Execute *plan* on a background thread; returns at once.

        Raises
        ------
        PlanRejectedError
            If another plan is still running.
        """
        handle = self._begin(plan, dry_run)
        thread = threading.Thread(
            target=self._drive,
            args=(handle,),
            name=f"sysaidmin-plan-{plan.request_id}",
            daemon=True,
        )
        thread.start()
        return handle

    def _begin(self, plan: Plan, dry_run: bool | None) -> RunHandle:
        with self._lock:
            if self._active is not None and not self._active.done:
                log.warning(
                    "plan rejected, another plan is running",
                    request_id=plan.request_id,
                    active=self._active.plan.request_id,
                )
                raise PlanRejectedError(
                    f"plan {plan.request_id} rejected: plan {self._active.plan.request_id} is still running"
                )
            handle = RunHandle(plan, self.dry_run if dry_run is None else dry_run)
            self._active = handle
        log.info("plan accepted", request_id=plan.request_id, tasks=len(plan), dry_run=handle.dry_run)
        return handle

    # ------------------------------------------------------------------
    # The run
    # ------------------------------------------------------------------

    def _drive(self, handle: RunHandle) -> None:
        try:
            commands, edits = self._classify(handle)
            self._run_group(handle, commands, lanes=None)
            self._run_group(handle, edits, lanes=_lane_key)
            self._cancel_leftovers(handle)
            handle.finished_at = utcnow()
            self._record(handle)
        except BaseException as exc:
            handle.error = exc
            log.exception("plan run crashed", request_id=handle.plan.request_id)
        finally:
            with self._lock:
                if self._active is handle:
                    self._active = None
            handle._done.set()

    def _classify(self, handle: RunHandle) -> tuple[list[CommandTask], list[FileEditTask]]:
        commands: list[CommandTask] = []
        edits: list[FileEditTask] = []
        for task in handle.plan.tasks:
            verdict = self.allowlist.classify(task)
            handle._advance(task.id, verdict.status)
            if not verdict.allowed:
                log.info("task blocked", task_id=task.id, reason=verdict.reason)
                self._emit(handle, TaskOutcome(task_id=task.id, status=TaskStatus.BLOCKED, detail=verdict.detail or ""))
            elif isinstance(task, CommandTask):
                commands.append(task)
            else:
                edits.append(task)
        return commands, edits

    def _run_group(
        self,
        handle: RunHandle,
        tasks: Sequence[Task],
        lanes: Callable[[FileEditTask], str] | None,
    ) -> None:
        if not tasks:
            return
        if self.max_workers == 1 or len(tasks) == 1:
            self._run_lane(handle, tasks)
            return

        grouped: dict[str, list[Task]] = {}
        for task in tasks:
            key = lanes(task) if lanes is not None else str(task.id)
            grouped.setdefault(key, []).append(task)

        workers = min(self.max_workers, len(grouped))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sysaidmin-task") as pool:
            futures = [pool.submit(self._run_lane, handle, lane) for lane in grouped.values()]
            for future in futures:
                future.result()

    def _run_lane(self, handle: RunHandle, tasks: Sequence[Task]) -> None:
        for task in tasks:
            if handle.cancelled:
                return
            self._execute_one(handle, task)

    def _execute_one(self, handle: RunHandle, task: Task) -> None:
        handle._advance(task.id, TaskStatus.RUNNING)
        try:
            escaped = self._resolved_outside_allowlist(task)
            if escaped is not None:
                log.warning("edit target resolves outside allowlist", task_id=task.id, path=task.path, resolved=escaped)
                outcome = TaskOutcome(
                    task_id=task.id,
                    status=TaskStatus.FAILED,
                    detail=f"path not permitted after resolving symlinks: {task.path} -> {escaped}",
                )
            else:
                outcome = self.executor.execute(task, dry_run=handle.dry_run, backups_taken=handle.backups_taken)
        except Exception as exc:
            log.exception("executor raised", task_id=task.id)
            outcome = TaskOutcome(
                task_id=task.id,
                status=TaskStatus.FAILED,
                detail=f"execution error: {type(exc).__name__}: {exc}",
            )
        if outcome.status not in (TaskStatus.SUCCEEDED, TaskStatus.FAILED):
            outcome = TaskOutcome(
                task_id=task.id,
                status=TaskStatus.FAILED,
                detail=f"executor returned non-terminal status {outcome.status.value}",
            )
        handle._advance(task.id, outcome.status)

        if isinstance(task, CommandTask) and not outcome.simulated and outcome.exit_code is not None:
            self._append_history(handle, task, outcome)
        self._emit(handle, outcome)

    def _resolved_outside_allowlist(self, task: Task) -> str | None:
        """Return the real path of an edit whose symlinks lead outside the allowlist.

        Classification is lexical; this check runs just before the write, so
        it sees the filesystem as it is when the edit happens.
        """
        if not isinstance(task, FileEditTask) or task.target is None:
            return None
        resolved = os.path.realpath(task.target)
        if resolved == task.target or self.allowlist.is_path_allowed(resolved):
            return None
        return resolved

    def _cancel_leftovers(self, handle: RunHandle) -> None:
        for task in handle.tasks_with(TaskStatus.ALLOWED):
            handle._advance(task.id, TaskStatus.CANCELLED)
            self._emit(
                handle,
                TaskOutcome(task_id=task.id, status=TaskStatus.CANCELLED, detail="cancelled before execution"),
            )
        if handle.cancelled:
            log.warning("plan cancelled", request_id=handle.plan.request_id)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _emit(self, handle: RunHandle, outcome: TaskOutcome) -> None:
        with self._emit_lock:
            handle.states[outcome.task_id].outcome = outcome
            handle.outcomes.append(outcome)
            if self.recorder is not None:
                try:
                    self.recorder.log_event(handle.plan.request_id, outcome)
                except PersistenceError as exc:
                    self._degrade(handle, exc)
            for listener in self._listeners:
                try:
                    listener(outcome)
                except Exception:
                    log.exception("outcome listener failed", task_id=outcome.task_id)

    def _append_history(self, handle: RunHandle, task: CommandTask, outcome: TaskOutcome) -> None:
        if self.recorder is None:
            return
        try:
            self.recorder.history.append(
                task.command,
                cwd=getattr(self.executor, "cwd", None),
                exit_code=outcome.exit_code,
                stdout=outcome.stdout,
                stderr=outcome.stderr,
            )
        except PersistenceError as exc:
            self._degrade(handle, exc)

    def _record(self, handle: RunHandle) -> None:
        snapshot = SessionSnapshot(
            plan=handle.plan,
            outcomes=tuple(handle.states[t.id].outcome for t in handle.plan.tasks),
            dry_run=handle.dry_run,
            cancelled=handle.cancelled,
            started_at=handle.started_at,
            finished_at=handle.finished_at or utcnow(),
        )
        handle.snapshot = snapshot
        if self.recorder is None:
            return
        try:
            handle.snapshot_path = str(self.recorder.record(snapshot))
        except PersistenceError as exc:
            self._degrade(handle, exc)

    @staticmethod
    def _degrade(handle: RunHandle, exc: PersistenceError) -> None:
        handle.audit_degraded = True
        handle.audit_errors.append(str(exc))
        log.error("AUDIT DEGRADED: session record not persisted", request_id=handle.plan.request_id, error=str(exc))


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_orchestrator(settings: SysaidminSettings | None = None) -> PlanOrchestrator:
    """Factory: build a fully-wired orchestrator from settings.

    Raises
    ------
    PolicyConfigError
        If the configured allowlist is invalid.
    """
    settings = settings or get_settings()
    allowlist = Allowlist.from_settings(settings.allowlist)
    executor = TaskExecutor(
        shell=settings.default_shell,
        timeout=settings.command_timeout,
        backups=BackupManager(),
        cwd=settings.working_dir,
        output_cap=settings.max_output_kb * 1024,
        create_missing_files=settings.create_missing_files,
    )
    recorder = SessionRecorder(settings.session_dir)
    return PlanOrchestrator(
        allowlist,
        executor,
        recorder,
        dry_run=settings.dry_run,
        max_workers=settings.max_workers,
    )
