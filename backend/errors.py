from __future__ import annotations

from typing import Any


class WorkflowError(Exception):
    """Base for every error the visit workflow reports to callers."""

    status_code = 400
    code = "workflow_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message, **self.context}


class NotFound(WorkflowError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, entity_id: int | None):
        super().__init__(f"{entity} #{entity_id} not found", entity=entity, entity_id=entity_id)


class InvalidTransition(WorkflowError):
    status_code = 422
    code = "invalid_transition"

    def __init__(self, transition: str, current_status: str, allowed: list[str]):
        super().__init__(
            f"Cannot {transition.replace('_', ' ')} a visit in status '{current_status}'. "
            f"Allowed from: {allowed}",
            transition=transition,
            current_status=current_status,
            allowed_statuses=allowed,
        )


class OwnershipViolation(WorkflowError):
    status_code = 403
    code = "ownership_violation"


class RoleViolation(OwnershipViolation):
    code = "role_violation"


class ValidationFailed(WorkflowError):
    status_code = 422
    code = "validation_failed"

    def __init__(self, message: str, missing_fields: list[str]):
        super().__init__(message, missing_fields=missing_fields)
        self.missing_fields = missing_fields


class ConflictError(WorkflowError):
    status_code = 409
    code = "conflict"

    def __init__(self, visit_id: int, expected_status: str):
        super().__init__(
            f"Visit #{visit_id} changed concurrently while in '{expected_status}'; reload and retry",
            visit_id=visit_id,
            expected_status=expected_status,
        )


class StoreUnavailable(WorkflowError):
    status_code = 503
    code = "store_unavailable"
