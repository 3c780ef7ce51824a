"""
Ledger schemas - Run, Step, ActionLog and Exception records.

A Run is one execution of a workflow for a single trigger. It owns an
ordered list of Steps, an append-only ActionLog, and zero or more
Exceptions (human-facing escalations, not Python exceptions).

State machines:
    Run:  QUEUED -> RUNNING -> COMPLETED | ESCALATED | FAILED
    Step: PLANNED -> RUNNING -> DONE | FAILED | SKIPPED

A PLANNED step may also be failed or skipped directly (it was never
started). Terminal states are final.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

# ULID type alias for documentation
ULID = str


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class RunStatus(str, Enum):
    """Status of a workflow run."""
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    ESCALATED = "ESCALATED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.ESCALATED, RunStatus.FAILED)


class StepStatus(str, Enum):
    """Status of a step within a run."""
    PLANNED = "PLANNED"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.DONE, StepStatus.FAILED, StepStatus.SKIPPED)


RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.QUEUED: frozenset({RunStatus.RUNNING, RunStatus.ESCALATED, RunStatus.FAILED}),
    RunStatus.RUNNING: frozenset({RunStatus.COMPLETED, RunStatus.ESCALATED, RunStatus.FAILED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.ESCALATED: frozenset(),
    RunStatus.FAILED: frozenset(),
}

STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PLANNED: frozenset({StepStatus.RUNNING, StepStatus.FAILED, StepStatus.SKIPPED}),
    StepStatus.RUNNING: frozenset({StepStatus.DONE, StepStatus.FAILED, StepStatus.SKIPPED}),
    StepStatus.DONE: frozenset(),
    StepStatus.FAILED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
}


class ActionLogType(str, Enum):
    """Kind of atomic action recorded in the action log."""
    API_CALL = "API_CALL"
    DECISION = "DECISION"
    ESCALATION = "ESCALATION"
    MEMORY_READ = "MEMORY_READ"
    MEMORY_WRITE = "MEMORY_WRITE"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ExceptionCategory(str, Enum):
    LEGAL = "LEGAL"
    FINANCIAL = "FINANCIAL"
    SAFETY = "SAFETY"
    SLA = "SLA"
    SYSTEM = "SYSTEM"


class ExceptionStatus(str, Enum):
    """Exception status; only OPEN is set by the core, humans set the rest."""
    OPEN = "OPEN"
    ACK = "ACK"
    RESOLVED = "RESOLVED"
    DISMISSED = "DISMISSED"


@dataclass
class RunRecord:
    """
    A record of one workflow run.

    Attributes:
        run_id: ULID uniquely identifying this run
        trigger_type: What started the run (event, schedule, manual, inbound)
        trigger_ref: Dedupe key for idempotent triggers (None for ad hoc runs)
        property_id: Property the run acts on, if any
        status: Current RunStatus
        created_at: When the run was queued
        started_at: When the run moved to RUNNING
        completed_at: When the run reached a terminal status
        summary: Human-readable summary on COMPLETED / ESCALATED
        error: Error message on FAILED (or why a queued run is held)
    """
    run_id: ULID
    trigger_type: str
    trigger_ref: Optional[str] = None
    property_id: Optional[str] = None
    status: RunStatus = RunStatus.QUEUED
    created_at: datetime = field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    summary: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "run_id": self.run_id,
            "trigger_type": self.trigger_type,
            "trigger_ref": self.trigger_ref,
            "property_id": self.property_id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "summary": self.summary,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunRecord":
        """Deserialize from dictionary."""
        return cls(
            run_id=data["run_id"],
            trigger_type=data["trigger_type"],
            trigger_ref=data.get("trigger_ref"),
            property_id=data.get("property_id"),
            status=RunStatus(data.get("status", "QUEUED")),
            created_at=datetime.fromisoformat(data["created_at"]),
            started_at=_parse(data.get("started_at")),
            completed_at=_parse(data.get("completed_at")),
            summary=data.get("summary"),
            error=data.get("error"),
        )


@dataclass
class StepRecord:
    """
    An ordered unit of work within a run.

    Attributes:
        step_id: ULID of the step
        run_id: Owning run
        step_order: 1-based position within the run
        name: Human-readable step name
        status: Current StepStatus
        input: Input payload recorded when the step was planned
        output: Output payload recorded on DONE
        error: Error message on FAILED, or the reason on SKIPPED
    """
    step_id: ULID
    run_id: ULID
    step_order: int
    name: str
    status: StepStatus = StepStatus.PLANNED
    input: Optional[dict[str, Any]] = None
    output: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "run_id": self.run_id,
            "step_order": self.step_order,
            "name": self.name,
            "status": self.status.value,
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepRecord":
        return cls(
            step_id=data["step_id"],
            run_id=data["run_id"],
            step_order=int(data["step_order"]),
            name=data["name"],
            status=StepStatus(data.get("status", "PLANNED")),
            input=data.get("input"),
            output=data.get("output"),
            error=data.get("error"),
            started_at=_parse(data.get("started_at")),
            completed_at=_parse(data.get("completed_at")),
        )


@dataclass(frozen=True)
class ActionLogRecord:
    """
    One atomic action or decision taken during a run. Never mutated.

    Attributes:
        log_id: ULID of the entry
        run_id: Owning run
        action_type: API_CALL, DECISION, ESCALATION, MEMORY_READ, MEMORY_WRITE
        target: What was acted on (e.g. "WO_CREATE", "preferred_vendor_HVAC")
        step_id: Step the action belongs to, if any
        request: Request payload
        response: Response payload
        policy_decision: ALLOW / APPROVAL / BLOCK for DECISION entries
        policy_reason: Reason accompanying the decision
    """
    log_id: ULID
    run_id: ULID
    action_type: ActionLogType
    target: str
    step_id: Optional[ULID] = None
    request: Optional[dict[str, Any]] = None
    response: Optional[dict[str, Any]] = None
    policy_decision: Optional[str] = None
    policy_reason: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "log_id": self.log_id,
            "run_id": self.run_id,
            "action_type": self.action_type.value,
            "target": self.target,
            "created_at": self.created_at.isoformat(),
        }
        if self.step_id is not None:
            result["step_id"] = self.step_id
        if self.request is not None:
            result["request"] = self.request
        if self.response is not None:
            result["response"] = self.response
        if self.policy_decision is not None:
            result["policy_decision"] = self.policy_decision
            result["policy_reason"] = self.policy_reason
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ActionLogRecord":
        return cls(
            log_id=data["log_id"],
            run_id=data["run_id"],
            action_type=ActionLogType(data["action_type"]),
            target=data["target"],
            step_id=data.get("step_id"),
            request=data.get("request"),
            response=data.get("response"),
            policy_decision=data.get("policy_decision"),
            policy_reason=data.get("policy_reason"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass
class ExceptionRecord:
    """
    A human-facing escalation raised by a workflow.

    Created OPEN whenever policy returns BLOCK or APPROVAL, or a step fails
    in a way a human must see. Later transitions happen outside the core.
    """
    exception_id: ULID
    severity: Severity
    category: ExceptionCategory
    title: str
    details: str
    run_id: Optional[ULID] = None
    property_id: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)
    status: ExceptionStatus = ExceptionStatus.OPEN
    requires_by: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "exception_id": self.exception_id,
            "run_id": self.run_id,
            "property_id": self.property_id,
            "severity": self.severity.value,
            "category": self.category.value,
            "title": self.title,
            "details": self.details,
            "context": self.context,
            "status": self.status.value,
            "requires_by": _iso(self.requires_by),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExceptionRecord":
        return cls(
            exception_id=data["exception_id"],
            run_id=data.get("run_id"),
            property_id=data.get("property_id"),
            severity=Severity(data["severity"]),
            category=ExceptionCategory(data["category"]),
            title=data["title"],
            details=data.get("details", ""),
            context=data.get("context") or {},
            status=ExceptionStatus(data.get("status", "OPEN")),
            requires_by=_parse(data.get("requires_by")),
            created_at=datetime.fromisoformat(data["created_at"]),
        )
