from __future__ import annotations


class DomainError(Exception):
    code = "internal_error"


class DomainValidationError(DomainError):
    code = "validation_rejected"


class CourseNotFoundError(DomainValidationError):
    def __init__(self, course_id: str) -> None:
        super().__init__(f"course is not found: {course_id}")
        self.course_id = course_id


class DomainInvariantError(DomainError):
    pass


class DomainDependencyError(DomainError):
    def __init__(self, message: str, *, code: str = "internal_error") -> None:
        super().__init__(message)
        self.code = code


class InvalidTransition(DomainInvariantError):
    """A course state move that is not declared in the transition table."""

    code = "invalid_transition"

    def __init__(self, *, course_id: str, from_state: str, to_state: str) -> None:
        super().__init__(f"invalid transition for {course_id}: {from_state} -> {to_state}")
        self.course_id = course_id
        self.from_state = from_state
        self.to_state = to_state


class GenerationFailure(DomainError):
    """External generator or judge call failed; handled by the retry policy."""

    def __init__(self, message: str, *, code: str = "llm_provider_unavailable") -> None:
        super().__init__(message)
        self.code = code


class ValidationFailure(DomainError):
    """Structured output rejected by strict validation."""

    code = "validation_rejected"

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class ResourceExhausted(DomainError):
    code = "retries_exhausted"

    def __init__(self, message: str, *, subject_id: str, attempts: int) -> None:
        super().__init__(message)
        self.subject_id = subject_id
        self.attempts = attempts


class InfrastructureError(DomainError):
    """Queue or state store unavailable after transport-level retries."""

    code = "store_unavailable"
