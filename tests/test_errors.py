"""Tests for propagent error classes.

Tests cover:
- TransientError / PermanentError hierarchy
- Structured attributes on NotFoundError, PayloadValidationError and
  InvalidTransitionError
"""

import pytest

from propagent.config import ConfigError
from propagent.errors import (
    ActionStateError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    PayloadValidationError,
    PermanentError,
    PropagentError,
    ReasoningServiceError,
    StorageError,
    TransientError,
)


class TestHierarchy:
    """Transient vs permanent classification."""

    @pytest.mark.parametrize("error_cls", [ReasoningServiceError, StorageError])
    def test_transient(self, error_cls):
        assert issubclass(error_cls, TransientError)
        assert not issubclass(error_cls, PermanentError)

    @pytest.mark.parametrize(
        "error_cls",
        [NotFoundError, ForbiddenError, PayloadValidationError, InvalidTransitionError, ActionStateError],
    )
    def test_permanent(self, error_cls):
        assert issubclass(error_cls, PermanentError)
        assert not issubclass(error_cls, TransientError)

    def test_everything_is_a_propagent_error(self):
        assert issubclass(TransientError, PropagentError)
        assert issubclass(PermanentError, PropagentError)
        assert issubclass(ConfigError, PropagentError)

    def test_transient_caught_as_base(self):
        with pytest.raises(PropagentError):
            raise ReasoningServiceError("timeout")


class TestStructuredErrors:
    """Errors that carry the entity they are about."""

    def test_not_found_message(self):
        error = NotFoundError("WorkOrder", "wo-1")
        assert str(error) == "WorkOrder wo-1 not found"
        assert error.entity_type == "WorkOrder"
        assert error.entity_id == "wo-1"

    def test_payload_validation_is_value_error(self):
        error = PayloadValidationError("ASSIGN_VENDOR", "vendorId", "'vendorId' is required")
        assert isinstance(error, ValueError)
        assert error.field == "vendorId"
        assert str(error) == "ASSIGN_VENDOR: 'vendorId' is required"

    def test_invalid_transition_message(self):
        error = InvalidTransitionError("Run", "r-1", "COMPLETED", "RUNNING")
        assert error.current == "COMPLETED"
        assert error.target == "RUNNING"
        assert "cannot transition from COMPLETED to RUNNING" in str(error)
