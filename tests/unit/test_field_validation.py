import pytest

from coursegen.domain.errors import ValidationFailure
from coursegen.domain.field_validation import FIX_STRATEGIES, TONES, validate_lenient, validate_strict


@pytest.mark.unit
def test_strict_accepts_normalized_spelling() -> None:
    assert validate_strict("Targeted-Fix", field="recommendation", allowed=["ACCEPT", "TARGETED_FIX"]) == "TARGETED_FIX"
    assert validate_strict(" high ", field="confidence", allowed=["high", "low"]) == "high"


@pytest.mark.unit
def test_strict_rejects_unknown_value_and_non_string() -> None:
    with pytest.raises(ValidationFailure) as exc_info:
        validate_strict("maybe", field="confidence", allowed=["high", "low"])
    assert exc_info.value.field == "confidence"

    with pytest.raises(ValidationFailure):
        validate_strict(3, field="confidence", allowed=["high"])


@pytest.mark.unit
def test_lenient_coerces_near_match_with_warning() -> None:
    check = validate_lenient("add_example", field="fix_strategy", allowed=FIX_STRATEGIES)

    assert check.value == "add_examples"
    assert check.warning is not None
    assert "coerced" in check.warning


@pytest.mark.unit
def test_lenient_exact_match_has_no_warning() -> None:
    check = validate_lenient("Encouraging", field="tone", allowed=TONES)

    assert check.value == "encouraging"
    assert check.warning is None


@pytest.mark.unit
def test_lenient_keeps_unknown_value() -> None:
    check = validate_lenient("sarcastic", field="tone", allowed=TONES)

    assert check.value == "sarcastic"
    assert check.warning is not None


@pytest.mark.unit
def test_lenient_ignores_empty_value() -> None:
    check = validate_lenient(None, field="tone", allowed=TONES)

    assert check.value == ""
    assert check.warning is not None
