"""
Agent action validation and execution.

- validator: ActionValidator (scope checks, auto-execution policy)
- executor: ActionExecutor (side effects, human approval path)
"""

from .executor import ActionExecutor, ActionResult
from .validator import ActionValidator, ScopeCheck

__all__ = [
    "ActionExecutor",
    "ActionResult",
    "ActionValidator",
    "ScopeCheck",
]
