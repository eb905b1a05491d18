from __future__ import annotations

from dataclasses import dataclass
import os

from coursegen.domain.pipeline_spec import DEFAULT_PIPELINE_SPEC_PATH, PipelineSpec


@dataclass(frozen=True)
class PipelineSettings:
    pipeline_spec_path: str = str(DEFAULT_PIPELINE_SPEC_PATH)
    llm_timeout_seconds: float = 20.0
    claim_lease_seconds: int = 30


def pipeline_settings_from_env() -> PipelineSettings:
    return PipelineSettings(
        pipeline_spec_path=os.getenv("PIPELINE_SPEC_PATH") or str(DEFAULT_PIPELINE_SPEC_PATH),
        llm_timeout_seconds=env_float("LLM_TIMEOUT_SECONDS", 20.0),
        claim_lease_seconds=env_int("WORKER_CLAIM_LEASE_SECONDS", 30),
    )


def validate_pipeline_settings(settings: PipelineSettings, spec: PipelineSpec) -> None:
    """A model call must give up before the work lease it runs under can expire."""
    lease = settings.claim_lease_seconds
    if settings.llm_timeout_seconds >= lease:
        raise ValueError(
            f"LLM_TIMEOUT_SECONDS ({settings.llm_timeout_seconds:g}) must be smaller than "
            f"WORKER_CLAIM_LEASE_SECONDS ({lease})"
        )
    if spec.cascade.judge_timeout_seconds >= lease:
        raise ValueError(
            f"cascade.judge_timeout_seconds ({spec.cascade.judge_timeout_seconds:g}) must be smaller than "
            f"WORKER_CLAIM_LEASE_SECONDS ({lease})"
        )


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = int(value)
    except ValueError:
        return default

    return parsed if parsed > 0 else default


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = float(value)
    except ValueError:
        return default

    return parsed if parsed > 0 else default
