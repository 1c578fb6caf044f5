"""Exception hierarchy for stageflow.

All exceptions inherit from StageflowError, so callers can catch every
pipeline error with a single except clause.

Exception Hierarchy:
    StageflowError (base)
    ├── ConfigValidationError      # Pipeline definition rejected before execution
    ├── MaintenanceWindowError     # Automatic trigger outside every maintenance window
    ├── ExecutionNotFoundError     # Unknown execution id
    ├── InvalidTransitionError     # Execution status would regress
    ├── ApprovalError              # Resume called on an execution that is not paused
    │   └── ApprovalTimeoutError   # Approval arrived after the configured expiry
    ├── DeployerError              # Deployer failed to mutate an environment
    │   └── DeploymentCancelled    # Execution cancelled between deployment phases
    ├── HealthCheckError           # Base for health check outcomes raised by probes
    │   ├── HealthCheckTimeout     # Probe exceeded its timeout
    │   └── HealthCheckFailure     # Probe answered with the wrong result
    └── RollbackError              # Rollback deployment failed

Exit Codes:
    1 - General error (StageflowError)
    2 - Invalid pipeline configuration
    3 - Outside maintenance window
    4 - Execution not found
    5 - Invalid status transition
    6 - Approval rejected
    7 - Approval expired
    8 - Deployment failed
    9 - Deployment cancelled
    10-12 - Health check errors
    13 - Rollback failed

Example:
    >>> from stageflow.errors import ConfigValidationError
    >>> raise ConfigValidationError(["Pipeline name is required"])
    Traceback (most recent call last):
        ...
    ConfigValidationError: Invalid pipeline configuration: Pipeline name is required
"""

from __future__ import annotations


class StageflowError(Exception):
    """Base exception for all stageflow errors.

    Attributes:
        exit_code: Process exit code for this error type (default: 1).
    """

    exit_code: int = 1


class ConfigValidationError(StageflowError):
    """Raised when a pipeline definition fails validation.

    The configuration is rejected as a whole; nothing is executed or
    persisted for it.

    Attributes:
        errors: Every validation problem found, in a deterministic order.
        exit_code: Process exit code (2).
    """

    exit_code: int = 2

    def __init__(self, errors: list[str]) -> None:
        """Initialize ConfigValidationError.

        Args:
            errors: Validation messages.
        """
        self.errors = list(errors)
        super().__init__(f"Invalid pipeline configuration: {'; '.join(self.errors)}")


class MaintenanceWindowError(StageflowError):
    """Raised when a non-manual trigger fires outside every maintenance window."""

    exit_code: int = 3

    def __init__(self, pipeline: str, trigger: str) -> None:
        self.pipeline = pipeline
        self.trigger = trigger
        super().__init__(
            f"Pipeline {pipeline} cannot run on a {trigger} trigger outside its maintenance windows"
        )


class ExecutionNotFoundError(StageflowError):
    """Raised when an execution id is not known to the execution store."""

    exit_code: int = 4

    def __init__(self, execution_id: str) -> None:
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")


class InvalidTransitionError(StageflowError):
    """Raised when an execution status change is not allowed.

    Attributes:
        current: Status the execution is in.
        target: Status that was requested.
        exit_code: Process exit code (5).
    """

    exit_code: int = 5

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot transition execution from {current} to {target}")


class ApprovalError(StageflowError):
    """Raised when an approval cannot be applied to an execution."""

    exit_code: int = 6

    def __init__(self, execution_id: str, reason: str) -> None:
        self.execution_id = execution_id
        self.reason = reason
        super().__init__(f"Cannot approve execution {execution_id}: {reason}")


class ApprovalTimeoutError(ApprovalError):
    """Raised when an approval arrives after the configured expiry.

    The paused stage and its execution are marked failed before this is
    raised.
    """

    exit_code: int = 7

    def __init__(self, execution_id: str, environment: str, expiry_minutes: int) -> None:
        self.environment = environment
        self.expiry_minutes = expiry_minutes
        super().__init__(
            execution_id,
            f"approval for {environment} expired after {expiry_minutes} minutes",
        )


class DeployerError(StageflowError):
    """Raised by a Deployer when an environment could not be changed.

    Attributes:
        environment: Environment being deployed.
        reason: Description of the failure.
        exit_code: Process exit code (8).
    """

    exit_code: int = 8

    def __init__(self, environment: str, reason: str) -> None:
        self.environment = environment
        self.reason = reason
        super().__init__(f"Deployment to {environment} failed: {reason}")


class DeploymentCancelled(DeployerError):
    """Raised between deployment phases when the execution was cancelled."""

    exit_code: int = 9

    def __init__(self, environment: str) -> None:
        super().__init__(environment, "cancelled")


class HealthCheckError(StageflowError):
    """Base for errors a probe raises to describe a failed attempt."""

    exit_code: int = 10

    def __init__(self, check_name: str, reason: str) -> None:
        self.check_name = check_name
        self.reason = reason
        super().__init__(f"Health check {check_name}: {reason}")


class HealthCheckTimeout(HealthCheckError):
    """Raised when a probe does not answer within its timeout."""

    exit_code: int = 11

    def __init__(self, check_name: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(check_name, f"timed out after {timeout_seconds}s")


class HealthCheckFailure(HealthCheckError):
    """Raised when a probe answers with an unexpected result."""

    exit_code: int = 12


class RollbackError(StageflowError):
    """Raised when a rollback deployment cannot be performed.

    Attributes:
        environment: Environment being rolled back.
        reason: Description of the failure.
        exit_code: Process exit code (13).
    """

    exit_code: int = 13

    def __init__(self, environment: str, reason: str) -> None:
        self.environment = environment
        self.reason = reason
        super().__init__(f"Rollback of {environment} failed: {reason}")


__all__ = [
    "ApprovalError",
    "ApprovalTimeoutError",
    "ConfigValidationError",
    "DeployerError",
    "DeploymentCancelled",
    "ExecutionNotFoundError",
    "HealthCheckError",
    "HealthCheckFailure",
    "HealthCheckTimeout",
    "InvalidTransitionError",
    "MaintenanceWindowError",
    "RollbackError",
    "StageflowError",
]
