"""
Shared workflow machinery.

Every workflow entry point has the same shape:

    def run_x_autopilot(ctx: WorkflowContext, trigger: XTrigger) -> None:
        execute_workflow(ctx, trigger.run_id, trigger.property_id, "x", lambda rec: _run(ctx, rec, trigger))

execute_workflow() starts the Run, calls the body with a RunRecorder and
closes the Run:

- body returns normally, no exception raised  -> COMPLETED with its summary
- body returns normally, exception(s) raised  -> ESCALATED with its summary
- body raises (NotFoundError or anything else) -> FAILED with the message

Inside the body, each step is a context manager:

    with rec.step("Load PM Schedule", {"scheduleId": schedule_id}) as step:
        schedule = ...
        step.output = {"scheduleTitle": schedule.title}

The step is added and started on entry. On normal exit it is completed with
``step.output`` unless the body already finished it (step.fail / step.skip /
step.complete); if the body raises, the step is failed with the message and
the exception propagates. Either way no step is left PLANNED or RUNNING.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable, Iterable, Iterator, Optional

from propagent.clients.notifications import Notifier
from propagent.clients.reasoning import ReasoningClient
from propagent.errors import NotFoundError, PropagentError
from propagent.ledger import RunLedger
from propagent.memory import AgentMemory
from propagent.policy.store import PolicyStore
from propagent.repositories import Repositories
from propagent.schemas.domain import LeaseStatus, Notification, NotificationType, Property
from propagent.schemas.ledger import ActionLogType, ExceptionCategory, Severity
from propagent.schemas.policy import PolicyResult
from propagent.templates import render_notification
from propagent.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class WorkflowContext:
    """Collaborators shared by all workflows and the agent loop."""
    repos: Repositories
    ledger: RunLedger
    memory: AgentMemory
    policy_store: PolicyStore
    reasoning: ReasoningClient
    notifier: Notifier
    clock: Callable[[], datetime] = utcnow
    tz: tzinfo = timezone.utc

    def now(self) -> datetime:
        return self.clock()

    def local_now(self) -> datetime:
        """Current time in the configured timezone, for quiet hours."""
        return self.clock().astimezone(self.tz)

    def notify(
        self,
        user_id: str,
        template: str,
        type: NotificationType = NotificationType.AGENT_ACTION,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        **variables: Any,
    ) -> None:
        """Render a notification template and hand it to the notifier."""
        title, body = render_notification(template, **variables)
        self.notifier.deliver(Notification(
            user_id=user_id,
            title=title,
            body=body,
            type=type,
            entity_type=entity_type,
            entity_id=entity_id,
            created_at=self.now(),
        ))

    def load_property(self, property_id: str) -> Property:
        prop = self.repos.properties.get(property_id)
        if prop is None:
            raise NotFoundError("Property", property_id)
        return prop

    def unit_tenant_user(self, unit_id: Optional[str], statuses: Iterable[LeaseStatus]) -> Optional[str]:
        """User id of the tenant holding a lease on the unit, if any."""
        if unit_id is None:
            return None
        lease = self.repos.leases.find_for_unit(unit_id, statuses)
        if lease is None:
            return None
        tenant = self.repos.tenants.get(lease.tenant_id)
        return tenant.user_id if tenant else None


class StepHandle:
    """The running step yielded by RunRecorder.step()."""

    def __init__(self, recorder: "RunRecorder", step_id: str):
        self._recorder = recorder
        self.step_id = step_id
        self.output: Optional[dict[str, Any]] = None
        self.finished = False

    def complete(self, output: Optional[dict[str, Any]] = None) -> None:
        self._recorder.ledger.complete_step(self.step_id, output)
        self.finished = True

    def fail(self, error: str) -> None:
        self._recorder.ledger.fail_step(self.step_id, error)
        self.finished = True

    def skip(self, reason: str) -> None:
        self._recorder.ledger.skip_step(self.step_id, reason)
        self.finished = True

    def log(self, action_type: ActionLogType, target: str, **kwargs: Any) -> str:
        return self._recorder.log_action(action_type, target, step_id=self.step_id, **kwargs)

    def log_decision(self, target: str, result: PolicyResult) -> str:
        return self.log(
            ActionLogType.DECISION,
            target,
            policy_decision=result.decision.value,
            policy_reason=result.reason,
        )


class RunRecorder:
    """
    Ledger writer for a single Run.

    Assigns step orders, attaches run_id/property_id to every record and
    tracks whether any exception was raised (which makes the Run ESCALATED).
    """

    def __init__(self, ctx: WorkflowContext, run_id: str, property_id: Optional[str]):
        self.ctx = ctx
        self.ledger = ctx.ledger
        self.run_id = run_id
        self.property_id = property_id
        self.escalated = False
        self._step_order = 0

    @contextmanager
    def step(self, name: str, input: Optional[dict[str, Any]] = None) -> Iterator[StepHandle]:
        self._step_order += 1
        step_id = self.ledger.add_step(self.run_id, self._step_order, name, input)
        self.ledger.start_step(step_id)
        handle = StepHandle(self, step_id)
        logger.debug(f"Step {self._step_order}: {name}", extra={"run_id": self.run_id, "step": name})
        try:
            yield handle
        except Exception as e:
            if not handle.finished:
                handle.fail(str(e) or type(e).__name__)
            raise
        if not handle.finished:
            handle.complete(handle.output)

    def log_action(self, action_type: ActionLogType, target: str, **kwargs: Any) -> str:
        return self.ledger.log_action(self.run_id, action_type, target, **kwargs)

    def raise_exception(
        self,
        severity: Severity,
        category: ExceptionCategory,
        title: str,
        details: str,
        context: Optional[dict[str, Any]] = None,
        requires_by: Optional[datetime] = None,
    ) -> str:
        """Create an OPEN exception for this Run and mark the Run escalated."""
        self.escalated = True
        return self.ledger.create_exception(
            severity=severity,
            category=category,
            title=title,
            details=details,
            run_id=self.run_id,
            property_id=self.property_id,
            context=context,
            requires_by=requires_by,
        )


def execute_workflow(
    ctx: WorkflowContext,
    run_id: str,
    property_id: Optional[str],
    workflow_name: str,
    body: Callable[[RunRecorder], str],
) -> None:
    """
    Run a workflow body inside a Run lifecycle. Never raises.

    Args:
        ctx: Workflow collaborators
        run_id: A QUEUED Run created by the caller
        property_id: Property the Run is about
        workflow_name: Name used in log messages
        body: Receives the RunRecorder and returns the Run summary
    """
    recorder = RunRecorder(ctx, run_id, property_id)
    log_extra = {"run_id": run_id, "event": f"workflow.{workflow_name}"}
    try:
        ctx.ledger.start_run(run_id)
        logger.info(f"Starting {workflow_name} workflow for property {property_id}", extra=log_extra)
        summary = body(recorder)
        if recorder.escalated:
            ctx.ledger.escalate_run(run_id, summary)
            logger.info(f"Workflow {workflow_name} escalated: {summary}", extra=log_extra)
        else:
            ctx.ledger.complete_run(run_id, summary)
            logger.info(f"Workflow {workflow_name} completed: {summary}", extra=log_extra)
    except Exception as e:
        message = str(e) or type(e).__name__
        logger.error(
            f"Workflow {workflow_name} failed: {message}",
            exc_info=not isinstance(e, NotFoundError),
            extra=log_extra,
        )
        try:
            ctx.ledger.fail_run(run_id, message)
        except PropagentError as fail_error:
            logger.error(f"Could not mark run {run_id} FAILED: {fail_error}", extra=log_extra)
