"""Pure retry/escalation decision for one artifact.

`next_action` looks only at the attempt history; it performs no I/O so the
bounded-retry behaviour can be checked exhaustively in unit tests.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum

from coursegen.domain.error_taxonomy import classify_error
from coursegen.domain.errors import DomainInvariantError, DomainValidationError
from coursegen.domain.verdicts import Recommendation


class ActionKind(StrEnum):
    ACCEPT = "accept"
    RETRY = "retry"
    TARGETED_FIX = "targeted_fix"
    ESCALATE = "escalate"
    GIVE_UP = "give_up"


@dataclass(frozen=True)
class RetryPolicy:
    retry_cap: int
    tiers: tuple[str, ...]
    max_attempts: int | None = None

    def __post_init__(self) -> None:
        if self.retry_cap < 1:
            raise ValueError("retry_cap must be >= 1")
        if not self.tiers:
            raise ValueError("at least one model tier is required")
        if len(set(self.tiers)) != len(self.tiers):
            raise ValueError("model tiers must be unique")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @property
    def attempt_ceiling(self) -> int:
        ceiling = self.retry_cap * len(self.tiers)
        if self.max_attempts is not None:
            return min(ceiling, self.max_attempts)
        return ceiling

    @property
    def initial_tier(self) -> str:
        return self.tiers[0]


@dataclass(frozen=True)
class AttemptOutcome:
    attempt_number: int
    model_tier: str
    verdict: Recommendation | None
    error_code: str | None = None
    flagged_sections: tuple[str, ...] = ()


@dataclass(frozen=True)
class NextAction:
    kind: ActionKind
    model_tier: str | None = None
    needs_human_review: bool = False
    reason: str = ""
    sections: tuple[str, ...] = ()

    @property
    def is_final(self) -> bool:
        return self.kind in (ActionKind.ACCEPT, ActionKind.GIVE_UP)


def next_action(
    history: Sequence[AttemptOutcome],
    policy: RetryPolicy,
    *,
    supports_targeted_fix: bool = False,
) -> NextAction:
    if not history:
        raise DomainValidationError("next_action needs at least one completed attempt")
    for previous, current in zip(history, history[1:]):
        if current.attempt_number <= previous.attempt_number:
            raise DomainInvariantError("attempt history must be strictly ordered by attempt number")

    latest = history[-1]
    if latest.model_tier not in policy.tiers:
        raise DomainValidationError(f"unknown model tier: {latest.model_tier}")

    if latest.error_code is None and latest.verdict == Recommendation.ACCEPT:
        return NextAction(kind=ActionKind.ACCEPT, model_tier=latest.model_tier, reason="accepted")

    if latest.error_code is not None and classify_error(latest.error_code) == "terminal":
        return NextAction(
            kind=ActionKind.GIVE_UP,
            needs_human_review=True,
            reason=f"terminal error: {latest.error_code}",
        )

    if latest.verdict == Recommendation.ESCALATE_HUMAN:
        return NextAction(kind=ActionKind.GIVE_UP, needs_human_review=True, reason="judge requested human review")

    if len(history) >= policy.attempt_ceiling:
        return NextAction(
            kind=ActionKind.GIVE_UP,
            needs_human_review=True,
            reason=f"retries_exhausted after {len(history)} attempts",
        )

    tier_index = policy.tiers.index(latest.model_tier)
    on_tier = 0
    for outcome in reversed(history):
        if outcome.model_tier != latest.model_tier:
            break
        on_tier += 1

    if on_tier < policy.retry_cap:
        if (
            latest.error_code is None
            and latest.verdict == Recommendation.TARGETED_FIX
            and supports_targeted_fix
            and latest.flagged_sections
        ):
            return NextAction(
                kind=ActionKind.TARGETED_FIX,
                model_tier=latest.model_tier,
                reason="targeted fix of flagged sections",
                sections=latest.flagged_sections,
            )
        return NextAction(
            kind=ActionKind.RETRY,
            model_tier=latest.model_tier,
            reason=f"retry {on_tier + 1}/{policy.retry_cap} on tier {latest.model_tier}",
        )

    if tier_index + 1 < len(policy.tiers):
        next_tier = policy.tiers[tier_index + 1]
        return NextAction(
            kind=ActionKind.ESCALATE,
            model_tier=next_tier,
            reason=f"escalate {latest.model_tier} -> {next_tier}",
        )

    return NextAction(
        kind=ActionKind.GIVE_UP,
        needs_human_review=True,
        reason=f"retries_exhausted on all {len(policy.tiers)} tiers",
    )
