import copy
from pathlib import Path

import pytest
import yaml

from coursegen.domain.pipeline_spec import (
    DEFAULT_PIPELINE_SPEC_PATH,
    load_pipeline_spec,
    parse_pipeline_spec,
    render_template,
    stage_name,
)
from coursegen.services.settings import PipelineSettings, validate_pipeline_settings


def _raw() -> dict[str, object]:
    return yaml.safe_load(Path(DEFAULT_PIPELINE_SPEC_PATH).read_text(encoding="utf-8"))


@pytest.mark.unit
def test_default_spec_loads_every_stage() -> None:
    spec = load_pipeline_spec()

    assert spec.spec_version == "pipeline-spec/v1"
    assert sorted(spec.stages) == [2, 3, 4, 5, 6]
    assert spec.stage_policy(6).tolerate_partial_failure is True
    assert spec.stage_policy(2).tolerate_partial_failure is False
    assert spec.stage_policy(6).heuristics.min_examples == 1
    assert spec.stage_policy(4).heuristics.required_sections == ("overview", "key concepts")
    assert spec.stage_policy(2).retry.attempt_ceiling == 6
    assert spec.cascade.ambiguous_band.contains(0.4)
    assert spec.cascade.ambiguous_band.contains(0.6)
    assert not spec.cascade.ambiguous_band.contains(0.61)
    assert spec.cascade.consensus_panel == ("judge-a", "judge-b")
    assert abs(sum(item.weight for item in spec.cascade.rubric) - 1.0) < 1e-9


@pytest.mark.unit
def test_stage_policy_for_unknown_stage_raises() -> None:
    with pytest.raises(ValueError):
        load_pipeline_spec().stage_policy(7)


@pytest.mark.unit
def test_per_stage_retry_cap_overrides_default() -> None:
    raw = _raw()
    raw["stages"]["analysis"]["retry_cap"] = 1  # type: ignore[index]

    spec = parse_pipeline_spec(raw)

    assert spec.stage_policy(4).retry.attempt_ceiling == 3
    assert spec.stage_policy(5).retry.attempt_ceiling == 6


@pytest.mark.unit
@pytest.mark.parametrize(
    ("mutate", "message"),
    [
        (lambda raw: raw["stages"]["lesson_content"].update(requires_approval=True), "no approval gate"),
        (lambda raw: raw["stages"]["analysis"].update(tolerate_partial_failure=True), "cannot tolerate"),
        (lambda raw: raw["stages"].update(publishing={"heuristics": {}}), "unknown stage names"),
        (lambda raw: raw["stages"].pop("structure"), "structure"),
        (lambda raw: raw["cascade"]["ambiguous_band"].update(low=0.7, high=0.5), "ambiguous_band"),
        (lambda raw: raw["cascade"].update(consensus_panel=["judge-a"]), "consensus_panel"),
        (lambda raw: raw["cascade"]["recommendation_thresholds"].update(targeted_fix=0.95), "targeted_fix"),
        (lambda raw: raw["retry"].update(model_tiers=[]), "tier"),
        (lambda raw: raw["stages"]["lesson_content"]["heuristics"].update(max_words=10), "max_words"),
    ],
)
def test_invalid_spec_is_rejected(mutate, message: str) -> None:
    raw = copy.deepcopy(_raw())
    mutate(raw)

    with pytest.raises(ValueError, match=message):
        parse_pipeline_spec(raw)


@pytest.mark.unit
def test_render_template_supports_dot_paths_and_rejects_missing_values() -> None:
    assert render_template(template="{{ course.topic }} / {{stage}}", inputs={"course": {"topic": "Go"}, "stage": 3}) == (
        "Go / 3"
    )
    with pytest.raises(ValueError, match="missing placeholder value: topic"):
        render_template(template="{{topic}}", inputs={})


@pytest.mark.unit
def test_stage_names_follow_lifecycle() -> None:
    assert [stage_name(stage) for stage in range(2, 7)] == [
        "document_processing",
        "classification",
        "analysis",
        "structure",
        "lesson_content",
    ]


@pytest.mark.unit
def test_model_timeouts_must_fit_inside_lease() -> None:
    spec = load_pipeline_spec()

    validate_pipeline_settings(PipelineSettings(llm_timeout_seconds=20.0, claim_lease_seconds=30), spec)
    with pytest.raises(ValueError, match="LLM_TIMEOUT_SECONDS"):
        validate_pipeline_settings(PipelineSettings(llm_timeout_seconds=30.0, claim_lease_seconds=30), spec)
    with pytest.raises(ValueError, match="judge_timeout_seconds"):
        validate_pipeline_settings(PipelineSettings(llm_timeout_seconds=5.0, claim_lease_seconds=10), spec)
