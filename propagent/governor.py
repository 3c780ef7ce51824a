"""
Safety governor - global brake on autonomous execution.

The governor state lives in the memory store under scope system/global,
key ``governor_state``, so every process sharing the store sees the same
kill switch and pause window.

Two ways autonomy gets switched off:
- kill switch: set by an operator, stays on until turned off
- auto-pause: evaluate_and_auto_pause() pauses for one hour when the share
  of FAILED Runs in the recent window, or the number of open CRITICAL
  exceptions, reaches its threshold

The dispatcher consults can_execute_autonomy() before starting a workflow,
and the agent loop consults it before auto-executing an action.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from propagent.ledger import RunLedger
from propagent.memory import MemoryStore
from propagent.policy.store import PolicyStore
from propagent.schemas.ledger import ExceptionCategory, RunStatus, Severity
from propagent.schemas.memory import ScopeType
from propagent.utils import utcnow

logger = logging.getLogger(__name__)

GOVERNOR_SCOPE_ID = "global"
GOVERNOR_KEY = "governor_state"
AUTO_PAUSE_DURATION = timedelta(hours=1)
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc).isoformat()


@dataclass(frozen=True)
class GovernorState:
    kill_switch: bool = False
    auto_pause_until: Optional[str] = None
    reason: Optional[str] = None
    failure_threshold_pct: int = 40
    critical_open_threshold: int = 5
    window_hours: int = 6
    updated_at: str = _EPOCH

    def to_dict(self) -> dict[str, Any]:
        return {
            "killSwitch": self.kill_switch,
            "autoPauseUntil": self.auto_pause_until,
            "reason": self.reason,
            "failureThresholdPct": self.failure_threshold_pct,
            "criticalOpenThreshold": self.critical_open_threshold,
            "windowHours": self.window_hours,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], defaults: Optional["GovernorState"] = None) -> "GovernorState":
        base = defaults or cls()
        return cls(
            kill_switch=bool(data.get("killSwitch", base.kill_switch)),
            auto_pause_until=data.get("autoPauseUntil", base.auto_pause_until),
            reason=data.get("reason", base.reason),
            failure_threshold_pct=int(data.get("failureThresholdPct", base.failure_threshold_pct)),
            critical_open_threshold=int(data.get("criticalOpenThreshold", base.critical_open_threshold)),
            window_hours=int(data.get("windowHours", base.window_hours)),
            updated_at=str(data.get("updatedAt", base.updated_at)),
        )


@dataclass(frozen=True)
class AutonomyCheck:
    ok: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class PauseEvaluation:
    paused: bool
    failure_pct: int
    critical_open: int
    reason: Optional[str] = None
    until: Optional[datetime] = None
    drift_detected: bool = False
    details: dict[str, Any] = field(default_factory=dict)


class SafetyGovernor:
    """
    Kill switch and auto-pause over the shared memory store.

    Args:
        store: Memory store holding the governor state
        ledger: Run ledger used for failure rate and open exceptions
        policy_store: Used to detect more than one active global policy
        clock: Returns the current UTC time
        defaults: Threshold defaults (overridable from configuration)
    """

    def __init__(
        self,
        store: MemoryStore,
        ledger: RunLedger,
        policy_store: PolicyStore,
        clock: Callable[[], datetime] = utcnow,
        defaults: Optional[GovernorState] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.policy_store = policy_store
        self._clock = clock
        self._defaults = defaults or GovernorState()

    # -- state ----------------------------------------------------------------

    def get_state(self) -> GovernorState:
        value = self.store.read(ScopeType.SYSTEM.value, GOVERNOR_SCOPE_ID, GOVERNOR_KEY)
        if not isinstance(value, dict):
            return self._defaults
        return GovernorState.from_dict(value, self._defaults)

    def set_state(self, **changes: Any) -> GovernorState:
        state = replace(self.get_state(), updated_at=self._clock().isoformat(), **changes)
        self.store.write(ScopeType.SYSTEM.value, GOVERNOR_SCOPE_ID, GOVERNOR_KEY, state.to_dict(), confidence=1.0)
        return state

    def set_kill_switch(self, enabled: bool, reason: Optional[str] = None) -> GovernorState:
        if enabled:
            reason = reason or "Global kill switch enabled"
            logger.warning(f"Kill switch enabled: {reason}", extra={"event": "governor.kill_switch"})
        else:
            logger.info("Kill switch disabled", extra={"event": "governor.kill_switch"})
        return self.set_state(kill_switch=enabled, reason=reason)

    # -- checks ---------------------------------------------------------------

    def can_execute_autonomy(self) -> AutonomyCheck:
        state = self.get_state()
        if state.kill_switch:
            return AutonomyCheck(False, state.reason or "Global kill switch enabled")
        if state.auto_pause_until:
            until = datetime.fromisoformat(state.auto_pause_until)
            if until > self._clock():
                return AutonomyCheck(False, state.reason or f"Auto-paused until {state.auto_pause_until}")
        return AutonomyCheck(True)

    def evaluate_and_auto_pause(self) -> PauseEvaluation:
        """
        Recompute the safety signals and pause autonomy if a threshold is met.

        Also raises a "Policy drift detected" exception when more than one
        global policy is active.
        """
        state = self.get_state()
        now = self._clock()

        recent = self.ledger.list_runs(since=now - timedelta(hours=state.window_hours))
        terminal = [r for r in recent if r.status.is_terminal]
        failed = sum(1 for r in terminal if r.status == RunStatus.FAILED)
        failure_pct = round(failed / len(terminal) * 100) if terminal else 0

        critical_open = self.ledger.count_open_exceptions(Severity.CRITICAL, include_acknowledged=True)

        active_global = self.policy_store.count_active_global()
        drift = active_global > 1
        if drift:
            self.ledger.create_exception(
                severity=Severity.HIGH,
                category=ExceptionCategory.SYSTEM,
                title="Policy drift detected",
                details=f"Detected {active_global} active global policies; expected exactly 1.",
                context={"activeGlobalPolicies": active_global},
            )

        if failure_pct >= state.failure_threshold_pct or critical_open >= state.critical_open_threshold:
            until = now + AUTO_PAUSE_DURATION
            reason = f"Auto-paused: failurePct={failure_pct} criticalOpen={critical_open}"
            self.set_state(auto_pause_until=until.isoformat(), reason=reason)
            self.ledger.create_exception(
                severity=Severity.CRITICAL,
                category=ExceptionCategory.SYSTEM,
                title="Autonomy auto-paused by safety governor",
                details=reason,
                context={
                    "failurePct": failure_pct,
                    "criticalOpen": critical_open,
                    "thresholdFailurePct": state.failure_threshold_pct,
                    "thresholdCriticalOpen": state.critical_open_threshold,
                },
            )
            logger.warning(reason, extra={"event": "governor.auto_pause"})
            return PauseEvaluation(True, failure_pct, critical_open, reason=reason, until=until, drift_detected=drift)

        return PauseEvaluation(False, failure_pct, critical_open, drift_detected=drift)
