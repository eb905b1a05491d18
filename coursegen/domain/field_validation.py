from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
import difflib

from coursegen.domain.errors import ValidationFailure

# Values the next generation call accepts as guidance. Unknown values are
# passed through with a warning.
FIX_STRATEGIES: tuple[str, ...] = (
    "rewrite_section",
    "expand_content",
    "simplify_language",
    "add_examples",
    "add_exercises",
    "restructure",
    "fix_factual_error",
)

TONES: tuple[str, ...] = (
    "academic",
    "conversational",
    "encouraging",
    "formal",
    "neutral",
)


@dataclass(frozen=True)
class FieldCheck:
    value: str
    warning: str | None = None


def _normalize(value: str) -> str:
    return value.strip().lower().replace("-", "_").replace(" ", "_")


def validate_strict(value: object, *, field: str, allowed: Iterable[str]) -> str:
    """Persisted categorical field: anything outside `allowed` is rejected."""
    choices = tuple(allowed)
    if not isinstance(value, str):
        raise ValidationFailure(f"{field} must be a string, got {type(value).__name__}", field=field)
    normalized = _normalize(value)
    for choice in choices:
        if _normalize(choice) == normalized:
            return choice
    raise ValidationFailure(
        f"{field} '{value}' is not one of: {', '.join(choices)}",
        field=field,
    )


def validate_lenient(
    value: object,
    *,
    field: str,
    allowed: Iterable[str],
    cutoff: float = 0.7,
) -> FieldCheck:
    """Guidance field: near matches are coerced, unknown values only warn."""
    choices = tuple(allowed)
    if not isinstance(value, str) or not value.strip():
        return FieldCheck(value="", warning=f"{field} is empty or not a string; ignored")
    normalized = _normalize(value)
    by_normalized = {_normalize(choice): choice for choice in choices}
    if normalized in by_normalized:
        return FieldCheck(value=by_normalized[normalized])
    close = difflib.get_close_matches(normalized, list(by_normalized), n=1, cutoff=cutoff)
    if close:
        coerced = by_normalized[close[0]]
        return FieldCheck(value=coerced, warning=f"{field} '{value}' coerced to '{coerced}'")
    return FieldCheck(value=value.strip(), warning=f"{field} '{value}' is not a known value; kept as-is")
