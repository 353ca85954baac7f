"""Exception hierarchy for the phaseflow engine."""

from __future__ import annotations

from typing import Optional


class PhaseflowError(Exception):
    """Base class for all phaseflow errors."""


# ----------------------------------------------------------------------
# Configuration errors: malformed graphs or expressions, never retried.
class ConfigurationError(PhaseflowError):
    """A workflow definition or expression is invalid."""


class CycleError(ConfigurationError):
    """The graph contains a cycle not formed solely of loop-back edges."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Cycle outside loop-back edges: {' -> '.join(cycle)}")


class UnreachablePhaseError(ConfigurationError):
    """Some phases cannot be reached from the start set."""

    def __init__(self, phase_ids: list[str]):
        self.phase_ids = phase_ids
        super().__init__(f"Unreachable phases: {', '.join(phase_ids)}")


class DanglingEdgeError(ConfigurationError):
    """An edge references a phase that does not exist."""

    def __init__(self, source: str, target: str, missing: str):
        self.source = source
        self.target = target
        self.missing = missing
        super().__init__(f"Edge {source} -> {target} references unknown phase '{missing}'")


class NoStartPhaseError(ConfigurationError):
    """The workflow has no phase without incoming edges."""


class DuplicatePhaseError(ConfigurationError):
    """Two phases share the same id."""


class InvalidExpressionError(ConfigurationError):
    """A condition expression could not be parsed."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid expression {expression!r}: {reason}")


class GateOutputError(ConfigurationError):
    """A gate runner returned output that cannot be scored."""


class MissingDependencyError(ConfigurationError):
    """A workflow references definitions that are not registered."""

    def __init__(self, workflow_id: str, missing: list[str]):
        self.workflow_id = workflow_id
        self.missing = missing
        super().__init__(
            f"Workflow {workflow_id} has missing sub-workflows: {', '.join(missing)}"
        )


# ----------------------------------------------------------------------
# Execution errors: fatal for the instance that raised them.
class ExecutionError(PhaseflowError):
    """A runtime routing or control failure inside an instance."""

    def __init__(
        self,
        message: str,
        instance_id: Optional[str] = None,
        phase_id: Optional[str] = None,
    ):
        self.instance_id = instance_id
        self.phase_id = phase_id
        super().__init__(message)


class DeadEndError(ExecutionError):
    """No outgoing edge of a phase could be followed."""


class UnhandledGateFailure(ExecutionError):
    """A gate verdict has no matching outgoing edge."""


class LoopExhaustedError(ExecutionError):
    """A loop hit its iteration cap without an exhaustion edge."""


class SubWorkflowFailedError(ExecutionError):
    """A nested instance failed; carries the parent's identity."""

    def __init__(
        self,
        message: str,
        instance_id: Optional[str] = None,
        phase_id: Optional[str] = None,
        child_instance_id: Optional[str] = None,
    ):
        self.child_instance_id = child_instance_id
        super().__init__(message, instance_id=instance_id, phase_id=phase_id)


class ApprovalRejectedError(ExecutionError):
    """A user-approval phase was rejected."""


class InvalidTransitionError(PhaseflowError):
    """An instance status change is not allowed by the state machine."""

    def __init__(self, from_status: str, to_status: str, instance_id: Optional[str] = None):
        self.from_status = from_status
        self.to_status = to_status
        self.instance_id = instance_id
        info = f" (instance_id={instance_id})" if instance_id else ""
        super().__init__(f"Invalid instance transition{info}: '{from_status}' -> '{to_status}'")


# ----------------------------------------------------------------------
class RunnerError(PhaseflowError):
    """Raised by a phase runner; ``retryable`` selects the retry path."""

    def __init__(self, message: str, retryable: bool = False):
        self.message = message
        self.retryable = retryable
        super().__init__(message)


# ----------------------------------------------------------------------
# State store errors.
class StateStoreError(PhaseflowError):
    """Base class for persistence failures."""


class VersionLockedError(StateStoreError):
    """A locked workflow version was about to be mutated."""

    def __init__(self, workflow_id: str, version: str, instance_ids: list[str]):
        self.workflow_id = workflow_id
        self.version = version
        self.instance_ids = instance_ids
        super().__init__(
            f"Workflow {workflow_id}@{version} is locked by instances: {', '.join(instance_ids)}"
        )


class ConcurrencyConflictError(StateStoreError):
    """A write raced with another write to the same instance."""

    def __init__(self, instance_id: str, expected: int, actual: int):
        self.instance_id = instance_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Instance {instance_id} revision conflict: expected {expected}, found {actual}"
        )


class InstanceNotFoundError(StateStoreError):
    """No instance with the given id exists."""


class DefinitionNotFoundError(StateStoreError):
    """No workflow definition with the given id/version exists."""
