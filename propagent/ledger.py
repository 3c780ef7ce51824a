"""
Run ledger - the audit trail of every workflow execution.

The ledger records, for each Run:
- its lifecycle (QUEUED -> RUNNING -> COMPLETED | ESCALATED | FAILED)
- ordered Steps (PLANNED -> RUNNING -> DONE | FAILED | SKIPPED)
- an append-only ActionLog of API calls, policy decisions and memory access
- Exceptions raised for human review

Status changes are checked against the state machines in
propagent.schemas.ledger; an illegal change raises InvalidTransitionError.

Idempotency: create_run_for_key() claims a dedupe key and creates the Run in
one step, returning None when the key was already claimed. This replaces the
check-then-act pattern (run_exists_for_key followed by create_run), which
races when two dispatchers deliver the same trigger.

Implementations:
- InMemoryRunLedger: dict-backed, for tests
- FileRunLedger: JSON files in a directory tree, dedupe keys claimed with
  exclusive-create marker files so several processes can share one tree
"""

import hashlib
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from propagent.errors import InvalidTransitionError, NotFoundError, StorageError
from propagent.schemas.ledger import (
    RUN_TRANSITIONS,
    STEP_TRANSITIONS,
    ActionLogRecord,
    ActionLogType,
    ExceptionCategory,
    ExceptionRecord,
    ExceptionStatus,
    RunRecord,
    RunStatus,
    Severity,
    StepRecord,
    StepStatus,
)
from propagent.utils import generate_ulid

logger = logging.getLogger(__name__)

ABANDONED_REASON = "abandoned"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunLedger(ABC):
    """
    Abstract base class for the run ledger.

    Lifecycle rules live here; implementations provide storage primitives:
    - runs: _put_run / _get_run / _iter_runs
    - dedupe keys: _claim_key / _release_key / _key_exists
    - steps: _put_step / _get_step / _steps_for
    - action log: _append_log / _logs_for
    - exceptions: _put_exception / _iter_exceptions
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or _utcnow
        self._lock = threading.RLock()

    # -- storage primitives ---------------------------------------------------

    @abstractmethod
    def _put_run(self, run: RunRecord) -> None:
        pass

    @abstractmethod
    def _get_run(self, run_id: str) -> Optional[RunRecord]:
        pass

    @abstractmethod
    def _iter_runs(self) -> Iterable[RunRecord]:
        pass

    @abstractmethod
    def _claim_key(self, dedupe_key: str, run_id: str) -> bool:
        """Atomically claim a dedupe key; False if it was already claimed."""
        pass

    @abstractmethod
    def _release_key(self, dedupe_key: str) -> None:
        """Drop a claimed key whose run could not be written."""
        pass

    @abstractmethod
    def _key_exists(self, dedupe_key: str) -> bool:
        pass

    @abstractmethod
    def _put_step(self, step: StepRecord) -> None:
        pass

    @abstractmethod
    def _get_step(self, step_id: str) -> Optional[StepRecord]:
        pass

    @abstractmethod
    def _steps_for(self, run_id: str) -> list[StepRecord]:
        pass

    @abstractmethod
    def _append_log(self, record: ActionLogRecord) -> None:
        pass

    @abstractmethod
    def _logs_for(self, run_id: str) -> list[ActionLogRecord]:
        pass

    @abstractmethod
    def _put_exception(self, record: ExceptionRecord) -> None:
        pass

    @abstractmethod
    def _iter_exceptions(self) -> Iterable[ExceptionRecord]:
        pass

    # -- runs -----------------------------------------------------------------

    def create_run(
        self,
        trigger_type: str,
        trigger_ref: Optional[str] = None,
        property_id: Optional[str] = None,
    ) -> str:
        """Create a QUEUED Run and return its id."""
        run = RunRecord(
            run_id=generate_ulid(),
            trigger_type=trigger_type,
            trigger_ref=trigger_ref,
            property_id=property_id,
            created_at=self._clock(),
        )
        with self._lock:
            self._put_run(run)
        logger.debug(f"Created run {run.run_id} ({trigger_type})", extra={"run_id": run.run_id})
        return run.run_id

    def create_run_for_key(
        self,
        dedupe_key: str,
        trigger_type: str,
        property_id: Optional[str] = None,
    ) -> Optional[str]:
        """
        Create a QUEUED Run for a dedupe key unless one already exists.

        Returns:
            The new run id, or None if the key was already claimed
        """
        run_id = generate_ulid()
        with self._lock:
            if not self._claim_key(dedupe_key, run_id):
                logger.info(f"Duplicate trigger skipped: {dedupe_key}")
                return None
            try:
                self._put_run(RunRecord(
                    run_id=run_id,
                    trigger_type=trigger_type,
                    trigger_ref=dedupe_key,
                    property_id=property_id,
                    created_at=self._clock(),
                ))
            except Exception:
                self._release_key(dedupe_key)
                raise
        return run_id

    def run_exists_for_key(self, dedupe_key: str) -> bool:
        with self._lock:
            return self._key_exists(dedupe_key)

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        with self._lock:
            return self._get_run(run_id)

    def list_runs(
        self,
        status: Optional[RunStatus] = None,
        since: Optional[datetime] = None,
    ) -> list[RunRecord]:
        """Runs newest first, optionally filtered by status and creation time."""
        with self._lock:
            runs = list(self._iter_runs())
        if status is not None:
            runs = [r for r in runs if r.status == status]
        if since is not None:
            runs = [r for r in runs if r.created_at >= since]
        return sorted(runs, key=lambda r: (r.created_at, r.run_id), reverse=True)

    def _transition_run(self, run_id: str, target: RunStatus, **changes: Any) -> RunRecord:
        with self._lock:
            run = self._get_run(run_id)
            if run is None:
                raise NotFoundError("Run", run_id)
            if target not in RUN_TRANSITIONS[run.status]:
                raise InvalidTransitionError("Run", run_id, run.status.value, target.value)
            run.status = target
            for name, value in changes.items():
                setattr(run, name, value)
            self._put_run(run)
        logger.debug(f"Run {run_id} -> {target.value}", extra={"run_id": run_id})
        return run

    def start_run(self, run_id: str) -> None:
        self._transition_run(run_id, RunStatus.RUNNING, started_at=self._clock())

    def complete_run(self, run_id: str, summary: str) -> None:
        self._transition_run(run_id, RunStatus.COMPLETED, completed_at=self._clock(), summary=summary)

    def escalate_run(self, run_id: str, summary: str) -> None:
        self._transition_run(run_id, RunStatus.ESCALATED, completed_at=self._clock(), summary=summary)

    def fail_run(self, run_id: str, error: str) -> None:
        self._transition_run(run_id, RunStatus.FAILED, completed_at=self._clock(), error=error)

    def hold_run(self, run_id: str, reason: str) -> None:
        """Record why a QUEUED run is being held; the status is unchanged."""
        with self._lock:
            run = self._get_run(run_id)
            if run is None:
                raise NotFoundError("Run", run_id)
            run.error = reason
            self._put_run(run)

    # -- steps ----------------------------------------------------------------

    def add_step(
        self,
        run_id: str,
        step_order: int,
        name: str,
        input: Optional[dict[str, Any]] = None,
    ) -> str:
        """Add a PLANNED step and return its id."""
        step = StepRecord(
            step_id=generate_ulid(),
            run_id=run_id,
            step_order=step_order,
            name=name,
            input=input,
        )
        with self._lock:
            if self._get_run(run_id) is None:
                raise NotFoundError("Run", run_id)
            self._put_step(step)
        return step.step_id

    def get_step(self, step_id: str) -> Optional[StepRecord]:
        with self._lock:
            return self._get_step(step_id)

    def get_steps(self, run_id: str) -> list[StepRecord]:
        with self._lock:
            return sorted(self._steps_for(run_id), key=lambda s: s.step_order)

    def _transition_step(self, step_id: str, target: StepStatus, **changes: Any) -> StepRecord:
        with self._lock:
            step = self._get_step(step_id)
            if step is None:
                raise NotFoundError("Step", step_id)
            if target not in STEP_TRANSITIONS[step.status]:
                raise InvalidTransitionError("Step", step_id, step.status.value, target.value)
            step.status = target
            for name, value in changes.items():
                setattr(step, name, value)
            self._put_step(step)
        return step

    def start_step(self, step_id: str) -> None:
        self._transition_step(step_id, StepStatus.RUNNING, started_at=self._clock())

    def complete_step(self, step_id: str, output: Optional[dict[str, Any]] = None) -> None:
        self._transition_step(step_id, StepStatus.DONE, completed_at=self._clock(), output=output)

    def fail_step(self, step_id: str, error: str) -> None:
        self._transition_step(step_id, StepStatus.FAILED, completed_at=self._clock(), error=error)

    def skip_step(self, step_id: str, reason: str) -> None:
        self._transition_step(step_id, StepStatus.SKIPPED, completed_at=self._clock(), error=reason)

    # -- action log -----------------------------------------------------------

    def log_action(
        self,
        run_id: str,
        action_type: ActionLogType,
        target: str,
        step_id: Optional[str] = None,
        request: Optional[dict[str, Any]] = None,
        response: Optional[dict[str, Any]] = None,
        policy_decision: Optional[str] = None,
        policy_reason: Optional[str] = None,
    ) -> str:
        """Append one immutable action log entry and return its id."""
        record = ActionLogRecord(
            log_id=generate_ulid(),
            run_id=run_id,
            action_type=action_type,
            target=target,
            step_id=step_id,
            request=request,
            response=response,
            policy_decision=policy_decision,
            policy_reason=policy_reason,
            created_at=self._clock(),
        )
        with self._lock:
            self._append_log(record)
        return record.log_id

    def list_action_logs(self, run_id: str) -> list[ActionLogRecord]:
        with self._lock:
            return list(self._logs_for(run_id))

    # -- exceptions -----------------------------------------------------------

    def create_exception(
        self,
        severity: Severity,
        category: ExceptionCategory,
        title: str,
        details: str,
        run_id: Optional[str] = None,
        property_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
        requires_by: Optional[datetime] = None,
    ) -> str:
        """
        Create an OPEN exception for human review.

        Best-effort: a storage failure is logged and the correlation id is
        still returned, so escalation paths never fail the Run themselves.
        """
        record = ExceptionRecord(
            exception_id=generate_ulid(),
            severity=severity,
            category=category,
            title=title,
            details=details,
            run_id=run_id,
            property_id=property_id,
            context=context or {},
            requires_by=requires_by,
            created_at=self._clock(),
        )
        try:
            with self._lock:
                self._put_exception(record)
        except Exception as e:
            logger.error(
                f"Failed to persist exception {record.exception_id} ({title}): {e}",
                extra={"run_id": run_id, "event": "exception.persist_failed"},
                exc_info=True,
            )
        else:
            logger.info(
                f"Exception raised [{severity.value}/{category.value}]: {title}",
                extra={"run_id": run_id, "event": "exception.created"},
            )
        return record.exception_id

    def list_exceptions(
        self,
        run_id: Optional[str] = None,
        property_id: Optional[str] = None,
    ) -> list[ExceptionRecord]:
        with self._lock:
            records = list(self._iter_exceptions())
        if run_id is not None:
            records = [r for r in records if r.run_id == run_id]
        if property_id is not None:
            records = [r for r in records if r.property_id == property_id]
        return sorted(records, key=lambda r: (r.created_at, r.exception_id))

    def count_open_exceptions(
        self,
        severity: Optional[Severity] = None,
        include_acknowledged: bool = False,
    ) -> int:
        """Exceptions still awaiting resolution, optionally counting ACK'd ones."""
        statuses = {ExceptionStatus.OPEN}
        if include_acknowledged:
            statuses.add(ExceptionStatus.ACK)
        with self._lock:
            records = list(self._iter_exceptions())
        return sum(
            1 for r in records
            if r.status in statuses and (severity is None or r.severity == severity)
        )

    # -- recovery -------------------------------------------------------------

    def reconcile_abandoned(self, older_than: timedelta) -> list[str]:
        """
        Fail Runs left non-terminal for longer than ``older_than``.

        Open steps of those Runs are failed too, so every step of a
        terminated Run ends in a terminal status.

        Returns:
            Ids of the Runs that were failed
        """
        cutoff = self._clock() - older_than
        reconciled = []
        with self._lock:
            stale = [
                r for r in self._iter_runs()
                if not r.status.is_terminal and (r.started_at or r.created_at) < cutoff
            ]
            for run in stale:
                for step in self._steps_for(run.run_id):
                    if not step.status.is_terminal:
                        self.fail_step(step.step_id, ABANDONED_REASON)
                self.fail_run(run.run_id, ABANDONED_REASON)
                reconciled.append(run.run_id)
        if reconciled:
            logger.warning(f"Reconciled {len(reconciled)} abandoned run(s)")
        return reconciled


class InMemoryRunLedger(RunLedger):
    """
    In-memory implementation of RunLedger for testing.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(clock)
        self._runs: dict[str, RunRecord] = {}
        self._keys: dict[str, str] = {}
        self._steps: dict[str, StepRecord] = {}
        self._logs: list[ActionLogRecord] = []
        self._exceptions: dict[str, ExceptionRecord] = {}

    def _put_run(self, run: RunRecord) -> None:
        self._runs[run.run_id] = RunRecord.from_dict(run.to_dict())

    def _get_run(self, run_id: str) -> Optional[RunRecord]:
        run = self._runs.get(run_id)
        return RunRecord.from_dict(run.to_dict()) if run else None

    def _iter_runs(self) -> Iterable[RunRecord]:
        return [RunRecord.from_dict(r.to_dict()) for r in self._runs.values()]

    def _claim_key(self, dedupe_key: str, run_id: str) -> bool:
        if dedupe_key in self._keys:
            return False
        self._keys[dedupe_key] = run_id
        return True

    def _release_key(self, dedupe_key: str) -> None:
        self._keys.pop(dedupe_key, None)

    def _key_exists(self, dedupe_key: str) -> bool:
        return dedupe_key in self._keys or any(r.trigger_ref == dedupe_key for r in self._runs.values())

    def _put_step(self, step: StepRecord) -> None:
        self._steps[step.step_id] = StepRecord.from_dict(step.to_dict())

    def _get_step(self, step_id: str) -> Optional[StepRecord]:
        step = self._steps.get(step_id)
        return StepRecord.from_dict(step.to_dict()) if step else None

    def _steps_for(self, run_id: str) -> list[StepRecord]:
        return [StepRecord.from_dict(s.to_dict()) for s in self._steps.values() if s.run_id == run_id]

    def _append_log(self, record: ActionLogRecord) -> None:
        self._logs.append(record)

    def _logs_for(self, run_id: str) -> list[ActionLogRecord]:
        return [r for r in self._logs if r.run_id == run_id]

    def _put_exception(self, record: ExceptionRecord) -> None:
        self._exceptions[record.exception_id] = record

    def _iter_exceptions(self) -> Iterable[ExceptionRecord]:
        return list(self._exceptions.values())

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        with self._lock:
            self._runs.clear()
            self._keys.clear()
            self._steps.clear()
            self._logs.clear()
            self._exceptions.clear()


class FileRunLedger(RunLedger):
    """
    File-based implementation of RunLedger.

    Stores records as JSON files in a directory tree:
        store_dir/
            runs/
                {run_id}.json
            steps/
                {run_id}/
                    {step_id}.json
            actions/
                {run_id}/
                    {log_id}.json
            exceptions/
                {exception_id}.json
            dedupe/
                {sha256(dedupe_key)}.json
    """

    def __init__(self, store_dir: Path | str, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(clock)
        self._store_dir = Path(store_dir)
        self._ensure_dirs()

    def _ensure_dirs(self) -> None:
        """Create the directory structure if needed."""
        for subdir in ["runs", "steps", "actions", "exceptions", "dedupe"]:
            (self._store_dir / subdir).mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _write_json(path: Path, data: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        try:
            with open(tmp_path, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}") from e

    @staticmethod
    def _read_json(path: Path) -> Optional[dict[str, Any]]:
        if not path.exists():
            return None
        with open(path) as f:
            return json.load(f)

    def _marker_path(self, dedupe_key: str) -> Path:
        digest = hashlib.sha256(dedupe_key.encode("utf-8")).hexdigest()
        return self._store_dir / "dedupe" / f"{digest}.json"

    def _put_run(self, run: RunRecord) -> None:
        self._write_json(self._store_dir / "runs" / f"{run.run_id}.json", run.to_dict())

    def _get_run(self, run_id: str) -> Optional[RunRecord]:
        data = self._read_json(self._store_dir / "runs" / f"{run_id}.json")
        return RunRecord.from_dict(data) if data else None

    def _iter_runs(self) -> Iterable[RunRecord]:
        for path in sorted((self._store_dir / "runs").glob("*.json")):
            data = self._read_json(path)
            if data:
                yield RunRecord.from_dict(data)

    def _claim_key(self, dedupe_key: str, run_id: str) -> bool:
        try:
            # "x" fails if the marker exists, across processes
            with open(self._marker_path(dedupe_key), "x") as f:
                json.dump({"dedupe_key": dedupe_key, "run_id": run_id}, f)
        except FileExistsError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to claim dedupe key {dedupe_key}: {e}") from e
        return True

    def _release_key(self, dedupe_key: str) -> None:
        self._marker_path(dedupe_key).unlink(missing_ok=True)

    def _key_exists(self, dedupe_key: str) -> bool:
        return self._marker_path(dedupe_key).exists()

    def _put_step(self, step: StepRecord) -> None:
        self._write_json(self._store_dir / "steps" / step.run_id / f"{step.step_id}.json", step.to_dict())

    def _get_step(self, step_id: str) -> Optional[StepRecord]:
        for path in (self._store_dir / "steps").glob(f"*/{step_id}.json"):
            data = self._read_json(path)
            if data:
                return StepRecord.from_dict(data)
        return None

    def _steps_for(self, run_id: str) -> list[StepRecord]:
        steps_dir = self._store_dir / "steps" / run_id
        if not steps_dir.exists():
            return []
        return [StepRecord.from_dict(self._read_json(p)) for p in steps_dir.glob("*.json")]

    def _append_log(self, record: ActionLogRecord) -> None:
        self._write_json(self._store_dir / "actions" / record.run_id / f"{record.log_id}.json", record.to_dict())

    def _logs_for(self, run_id: str) -> list[ActionLogRecord]:
        logs_dir = self._store_dir / "actions" / run_id
        if not logs_dir.exists():
            return []
        records = [ActionLogRecord.from_dict(self._read_json(p)) for p in logs_dir.glob("*.json")]
        return sorted(records, key=lambda r: (r.created_at, r.log_id))

    def _put_exception(self, record: ExceptionRecord) -> None:
        self._write_json(self._store_dir / "exceptions" / f"{record.exception_id}.json", record.to_dict())

    def _iter_exceptions(self) -> Iterable[ExceptionRecord]:
        for path in (self._store_dir / "exceptions").glob("*.json"):
            data = self._read_json(path)
            if data:
                yield ExceptionRecord.from_dict(data)
