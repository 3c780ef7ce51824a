"""
Policy evaluation and storage.

- engine: evaluate_action, is_in_quiet_hours, merge_policy (pure)
- store: PolicyStore and its in-memory / YAML implementations
"""

from .engine import evaluate_action, is_in_quiet_hours, merge_policy
from .store import InMemoryPolicyStore, PolicyStore, YamlPolicyStore

__all__ = [
    "evaluate_action",
    "is_in_quiet_hours",
    "merge_policy",
    "PolicyStore",
    "InMemoryPolicyStore",
    "YamlPolicyStore",
]
