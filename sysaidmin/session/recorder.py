"""
sysaidmin.session.recorder — Durable, append-only audit of plan runs.

Layout of the session directory::

    plan-<YYYYmmdd-HHMMSS>-<request-id>.json   one snapshot per finished plan
    events.jsonl                               every outcome, as it happened
    sysaidmin.history.sh                       every command that actually ran

Snapshots are written to a temp file and hard-linked into place, so an
existing snapshot is never overwritten (a colliding name gets ``-1``, ``-2``
... appended).  Any write failure raises ``PersistenceError``; the
orchestrator reports it as degraded audit and carries on.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from sysaidmin.errors import PersistenceError
from sysaidmin.logging import get_logger
from sysaidmin.plan.models import Plan, TaskOutcome, TaskStatus
from sysaidmin.session.history import HISTORY_FILENAME, CommandHistory, open_log_for_append

log = get_logger(__name__)

EVENTS_FILENAME = "events.jsonl"
SNAPSHOT_GLOB = "plan-*.json"

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


def _slug(value: str) -> str:
    return _UNSAFE_NAME_CHARS.sub("-", value).strip("-.")[:64] or "request"


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SessionSnapshot:
    """A finished plan together with the final outcome of every task.

    Attributes
    ----------
    plan : Plan
        The plan exactly as accepted.
    outcomes : tuple[TaskOutcome, ...]
        One terminal outcome per task, in plan order.
    dry_run : bool
        Whether the run was simulated.
    cancelled : bool
        Whether the run was cancelled before every allowed task started.
    started_at, finished_at : datetime
        Run boundaries (UTC).
    """

    plan: Plan
    outcomes: tuple[TaskOutcome, ...]
    dry_run: bool
    cancelled: bool
    started_at: datetime
    finished_at: datetime

    def __post_init__(self) -> None:
        if len(self.outcomes) != len(self.plan.tasks):
            raise ValueError(
                f"snapshot needs one outcome per task ({len(self.plan.tasks)}), got {len(self.outcomes)}"
            )
        for outcome in self.outcomes:
            if not outcome.status.is_terminal:
                raise ValueError(f"task {outcome.task_id} is not terminal ({outcome.status.value})")

    @property
    def statuses(self) -> dict[int, TaskStatus]:
        return {o.task_id: o.status for o in self.outcomes}

    def count(self, status: TaskStatus) -> int:
        return sum(1 for o in self.outcomes if o.status is status)

    def to_dict(self) -> dict[str, Any]:
        results = []
        for outcome in self.outcomes:
            entry = outcome.to_dict()
            entry["backup_path"] = outcome.backup.backup_path if outcome.backup else None
            results.append(entry)
        return {
            "request_id": self.plan.request_id,
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "plan": self.plan.to_dict(),
            "results": results,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionSnapshot:
        return cls(
            plan=Plan.from_dict(data["plan"]),
            outcomes=tuple(TaskOutcome.from_dict(r) for r in data["results"]),
            dry_run=bool(data["dry_run"]),
            cancelled=bool(data.get("cancelled", False)),
            started_at=datetime.fromisoformat(data["started_at"]),
            finished_at=datetime.fromisoformat(data["finished_at"]),
        )


# ---------------------------------------------------------------------------
# Recorder
# ---------------------------------------------------------------------------


def _snapshot_order(path: Path) -> tuple[str, int, int, str]:
    # Timestamp from the name, then write time, so "req-42" sorts before
    # its collision copy "req-42-1".
    try:
        written = path.stat().st_mtime_ns
    except OSError:
        written = 0
    return path.name[len("plan-") : len("plan-YYYYmmdd-HHMMSS")], written, len(path.name), path.name


class SessionRecorder:
    """Sole owner of snapshot persistence under *session_dir*."""

    def __init__(self, session_dir: str | Path) -> None:
        self.session_dir = Path(session_dir).expanduser()
        self.events_path = self.session_dir / EVENTS_FILENAME
        self.history = CommandHistory(self.session_dir / HISTORY_FILENAME)
        self._events_lock = threading.Lock()

    def _ensure_dir(self) -> None:
        try:
            self.session_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        except OSError as exc:
            raise PersistenceError(f"cannot create session directory {self.session_dir}: {exc}") from exc

    def snapshot_name(self, snapshot: SessionSnapshot) -> str:
        stamp = snapshot.finished_at.strftime("%Y%m%d-%H%M%S")
        return f"plan-{stamp}-{_slug(snapshot.plan.request_id)}"

    def record(self, snapshot: SessionSnapshot) -> Path:
        """Persist *snapshot* as a new JSON document and return its path.

        Raises
        ------
        PersistenceError
            If the document cannot be written.
        """
        self._ensure_dir()
        payload = json.dumps(snapshot.to_dict(), indent=2, ensure_ascii=False).encode("utf-8")
        base = self.snapshot_name(snapshot)

        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.session_dir, prefix=".snapshot-", suffix=".tmp")
        except OSError as exc:
            raise PersistenceError(f"cannot write snapshot in {self.session_dir}: {exc}") from exc

        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            suffix = 0
            while True:
                name = f"{base}.json" if suffix == 0 else f"{base}-{suffix}.json"
                target = self.session_dir / name
                try:
                    os.link(tmp_name, target)
                    break
                except FileExistsError:
                    suffix += 1
        except OSError as exc:
            raise PersistenceError(f"failed writing snapshot {base}: {exc}") from exc
        finally:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass

        log.info("session snapshot recorded", path=str(target), request_id=snapshot.plan.request_id)
        return target

    def log_event(self, request_id: str, outcome: TaskOutcome) -> None:
        """Append one outcome to the JSON-lines event log."""
        line = json.dumps({"request_id": request_id, **outcome.to_dict()}, ensure_ascii=False)
        with self._events_lock:
            self._ensure_dir()
            try:
                with open_log_for_append(self.events_path) as fh:
                    fh.write(line + "\n")
            except OSError as exc:
                raise PersistenceError(f"failed appending to {self.events_path}: {exc}") from exc

    def read_events(self, request_id: str | None = None) -> list[dict[str, Any]]:
        """Return logged events, optionally only those for *request_id*."""
        if not self.events_path.exists():
            return []
        events = []
        with open(self.events_path, "r", encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    log.warning("skipping malformed event line", path=str(self.events_path))
                    continue
                if request_id is None or event.get("request_id") == request_id:
                    events.append(event)
        return events

    def list_snapshots(self) -> list[Path]:
        """Return snapshot files, oldest first."""
        if not self.session_dir.exists():
            return []
        return sorted(self.session_dir.glob(SNAPSHOT_GLOB), key=_snapshot_order)

    def load(self, path: str | Path) -> SessionSnapshot:
        """Read a recorded snapshot back for export or replay."""
        with open(path, "r", encoding="utf-8") as fh:
            return SessionSnapshot.from_dict(json.load(fh))
