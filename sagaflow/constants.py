"""Shared constants for sagaflow."""

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY = 1.0
DEFAULT_MAX_DELAY = 60.0
DEFAULT_MULTIPLIER = 2.0
DEFAULT_STEP_TIMEOUT = 300.0
DEFAULT_TICK_INTERVAL = 30.0
DEFAULT_MAX_CATCH_UP_FIRES = 100
DEFAULT_EVENT_HISTORY = 1000

LIFECYCLE_TOPIC = "lifecycle"

# error_type values produced by the engine itself
ERROR_TIMEOUT = "timeout"
ERROR_INTERRUPTED = "interrupted"
ERROR_CANCELLED = "cancelled"
ERROR_EXECUTION_TIMEOUT = "execution_timeout"
ERROR_APPROVAL_REJECTED = "approval_rejected"
ERROR_APPROVAL_TIMEOUT = "approval_timeout"
ERROR_INVALID_RESULT = "invalid_result"

# reasons recorded on skipped steps
SKIP_CONDITION_NOT_MET = "condition_not_met"
SKIP_ON_ERROR = "on_error"
