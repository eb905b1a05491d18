from __future__ import annotations

from collections.abc import Mapping
from typing import Literal

# Canonical error vocabulary for all stages.
ErrorCode = Literal[
    "invalid_transition",
    "llm_timeout",
    "llm_provider_unavailable",
    "generation_invalid_output",
    "validation_rejected",
    "retries_exhausted",
    "document_missing",
    "input_missing",
    "lease_expired",
    "store_unavailable",
    "internal_error",
]

RetryClassification = Literal["recoverable", "terminal"]

# Allowed persisted values for last_error_code / attempt error_code.
CANONICAL_ERROR_CODES: tuple[ErrorCode, ...] = (
    "invalid_transition",
    "llm_timeout",
    "llm_provider_unavailable",
    "generation_invalid_output",
    "validation_rejected",
    "retries_exhausted",
    "document_missing",
    "input_missing",
    "lease_expired",
    "store_unavailable",
    "internal_error",
)

# Errors that can be retried within the stage retry policy.
RECOVERABLE_ERROR_CODES: frozenset[ErrorCode] = frozenset(
    {
        "llm_timeout",
        "llm_provider_unavailable",
        "generation_invalid_output",
        "validation_rejected",
        "lease_expired",
        "store_unavailable",
        "internal_error",
    }
)

_GENERATION_CODES: frozenset[ErrorCode] = frozenset(
    {
        "llm_timeout",
        "llm_provider_unavailable",
        "generation_invalid_output",
        "validation_rejected",
        "retries_exhausted",
        "input_missing",
        "lease_expired",
        "store_unavailable",
        "internal_error",
    }
)

# Stage-specific allowlist. If a stage emits a code outside this map,
# it is normalized to internal_error by resolve_stage_error().
STAGE_ERROR_MAP: Mapping[str, frozenset[ErrorCode]] = {
    "orchestration": frozenset({"invalid_transition", "store_unavailable", "lease_expired", "internal_error"}),
    "document_processing": _GENERATION_CODES | {"document_missing"},
    "classification": _GENERATION_CODES | {"document_missing"},
    "analysis": _GENERATION_CODES,
    "structure": _GENERATION_CODES,
    "lesson_content": _GENERATION_CODES,
}


def is_canonical_error_code(code: str) -> bool:
    return code in CANONICAL_ERROR_CODES


def classify_error(code: str) -> RetryClassification:
    if code in RECOVERABLE_ERROR_CODES:
        return "recoverable"
    return "terminal"


def resolve_stage_error(*, stage: str, code: str) -> ErrorCode:
    allowed = STAGE_ERROR_MAP.get(stage, frozenset({"internal_error"}))
    if code in allowed and is_canonical_error_code(code):
        return code  # type: ignore[return-value]
    # Keep persistence stable even if upstream emitted unsupported code.
    return "internal_error"
