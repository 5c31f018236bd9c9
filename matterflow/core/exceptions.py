"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
(see ``matterflow.blueprints.register_error_handlers``) and get consistent
HTTP status codes everywhere.

None of the workflow errors are retried by the caller: they are business-rule
violations, not transient faults.  The single retryable condition (a stage row
changed under us) is retried inside ``services.transaction`` and surfaces as
``ConcurrentUpdateError`` only when the retry also loses.

Usage:
    from matterflow.core.exceptions import NotFoundError, GateBlockedError

    raise NotFoundError(resource="Task", resource_id=42)
    raise GateBlockedError(stage_id=7, gate_type="hard", pending_task_ids=[3, 4])
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Task", "MatterStage").
        resource_id: The key that was looked up. Included in logs and message.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would violate a uniqueness rule.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


# ── Workflow taxonomy ────────────────────────────────────────────────────


class WorkflowError(Exception):
    """Base class for stage-gating engine errors.

    ``code`` is the machine-readable identifier returned in API envelopes;
    ``details`` is merged into the response body.
    """

    code = "WORKFLOW_ERROR"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class TemplateImmutableError(WorkflowError):
    """Attempted edit of a released workflow template or one of its children."""

    code = "TEMPLATE_IMMUTABLE"

    def __init__(self, template_key: str, version: str, target: str = "template") -> None:
        self.template_key = template_key
        self.version = version
        self.target = target
        super().__init__(
            f"Workflow template {template_key}@{version} is released; "
            f"{target} cannot be modified. Ship a new version instead.",
            details={"template_key": template_key, "version": version, "target": target},
        )


class DuplicateWorkflowError(WorkflowError):
    """The matter already has a MatterWorkflow (one per matter)."""

    code = "DUPLICATE_WORKFLOW"

    def __init__(self, matter_id: int, existing_workflow_id: int | None = None) -> None:
        self.matter_id = matter_id
        self.existing_workflow_id = existing_workflow_id
        super().__init__(
            f"Matter {matter_id} already has an active workflow",
            details={"matter_id": matter_id, "existing_workflow_id": existing_workflow_id},
        )


class GateUnsatisfiedError(WorkflowError):
    """Task completion attempted before its evidence/approval preconditions hold.

    ``missing`` lists every unmet precondition so the caller can guide the user.
    """

    code = "GATE_UNSATISFIED"

    def __init__(self, task_id: int, missing: list[str]) -> None:
        self.task_id = task_id
        self.missing = list(missing)
        super().__init__(
            f"Task {task_id} cannot be completed: " + "; ".join(self.missing),
            details={"task_id": task_id, "missing": self.missing},
        )


class GateBlockedError(WorkflowError):
    """Forced stage progression attempted without the required gate exception."""

    code = "GATE_BLOCKED"

    def __init__(
        self,
        stage_id: int,
        gate_type: str,
        pending_task_ids: list[int] | None = None,
        message: str | None = None,
    ) -> None:
        self.stage_id = stage_id
        self.gate_type = gate_type
        self.pending_task_ids = list(pending_task_ids or [])
        super().__init__(
            message or (
                f"Stage {stage_id} has a {gate_type} gate with "
                f"{len(self.pending_task_ids)} unresolved mandatory task(s)"
            ),
            details={
                "stage_id": stage_id,
                "gate_type": gate_type,
                "pending_task_ids": self.pending_task_ids,
            },
        )


class InvalidExceptionError(WorkflowError):
    """Exception payload rejected: missing reason, unknown target or unauthorised approver."""

    code = "INVALID_EXCEPTION"


class InvalidTransitionError(WorkflowError):
    """Requested status change is not in the transition table."""

    code = "INVALID_TRANSITION"

    def __init__(self, entity: str, entity_id: int, current: str, requested: str, reason: str | None = None) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.requested = requested
        msg = f"Cannot move {entity} {entity_id} from '{current}' to '{requested}'"
        if reason:
            msg += f": {reason}"
        super().__init__(
            msg,
            details={"current_status": current, "requested_status": requested},
        )


class ApplicabilityEvaluationError(WorkflowError):
    """A condition references an attribute that cannot be evaluated.

    Callers treat the condition as false and log a warning.
    """

    code = "APPLICABILITY_EVALUATION"

    def __init__(self, key: str, message: str) -> None:
        self.key = key
        super().__init__(message, details={"key": key})


class ConcurrentUpdateError(WorkflowError):
    """Stage evaluation lost a concurrent update twice in a row."""

    code = "CONCURRENT_UPDATE"
