from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
import json

from coursegen.domain.dto import GeneratedArtifact, GenerationRequest, LLMRequest, LLMResult, TraceEntry
from coursegen.domain.errors import DomainDependencyError

DEFAULT_CRITERIA = ("accuracy", "clarity", "completeness", "engagement")


def judge_response(
    *,
    score: float,
    recommendation: str | None = "ACCEPT",
    confidence: str = "high",
    issues: Sequence[dict[str, object]] = (),
    criteria: Sequence[str] = DEFAULT_CRITERIA,
    **extra: object,
) -> str:
    """Renders a judge reply in the JSON shape the cascade parses."""
    payload: dict[str, object] = {
        "criteria": [{"criterion": name, "score": score, "reason": f"{name} scored {score:.2f}"} for name in criteria],
        "confidence": confidence,
        "issues": list(issues),
        "strengths": ["Clear structure"],
    }
    if recommendation is not None:
        payload["recommendation"] = recommendation
    payload.update(extra)
    return json.dumps(payload)


@dataclass
class StubLLMProvider:
    """Judge endpoint with per-model scripted replies.

    Each entry of ``scripted[model]`` is consumed once; a string is returned
    as the reply, an exception is raised. Unscripted calls get ``default``.
    """

    scripted: dict[str, list[str | Exception]] = field(default_factory=dict)
    default: str = field(default_factory=lambda: judge_response(score=0.95))
    delay_seconds: float = 0.0
    tokens_per_call: int = 120
    calls: list[LLMRequest] = field(default_factory=list)

    async def invoke(self, request: LLMRequest) -> LLMResult:
        self.calls.append(request)
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        queue = self.scripted.get(request.model_tier)
        reply: str | Exception = queue.pop(0) if queue else self.default
        if isinstance(reply, Exception):
            raise reply
        return LLMResult(content=reply, tokens_used=self.tokens_per_call, duration_ms=5)

    def calls_for(self, model_id: str) -> list[LLMRequest]:
        return [call for call in self.calls if call.model_tier == model_id]


@dataclass
class StubArtifactGenerator:
    """Deterministic generator producing artifacts that pass the default heuristics.

    ``scripted[stage]`` entries are consumed once per call for that stage: a
    dict replaces the payload, an exception is raised.
    """

    scripted: dict[int, list[dict[str, object] | Exception]] = field(default_factory=dict)
    lessons_per_module: int = 2
    targeted_fix_stages: frozenset[int] = frozenset({6})
    delay_seconds: float = 0.0
    calls: list[GenerationRequest] = field(default_factory=list)

    async def generate(self, request: GenerationRequest) -> GeneratedArtifact:
        self.calls.append(request)
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        queue = self.scripted.get(request.stage)
        scripted = queue.pop(0) if queue else None
        if isinstance(scripted, Exception):
            raise scripted
        payload = dict(scripted) if scripted is not None else self._payload(request)
        return GeneratedArtifact(payload=payload, tokens_used=400, cost_usd=0.002, duration_ms=10)

    def supports_targeted_fix(self, *, stage: int) -> bool:
        return stage in self.targeted_fix_stages

    def calls_for(self, stage: int) -> list[GenerationRequest]:
        return [call for call in self.calls if call.stage == stage]

    def _payload(self, request: GenerationRequest) -> dict[str, object]:
        topic = request.topic
        if request.stage == 2:
            document_id = str(request.inputs.get("document_id") or request.unit_ref)
            return {
                "title": f"Summary of {document_id}",
                "document_id": document_id,
                "sections": [
                    {
                        "name": "summary",
                        "body": (
                            f"This document introduces core ideas about {topic}. It explains the main terms, "
                            "gives background context, and lists the practical steps a learner needs to apply "
                            "the material in everyday work."
                        ),
                    }
                ],
            }
        if request.stage == 3:
            document_id = str(request.inputs.get("document_id") or request.unit_ref)
            return {
                "title": f"Classification of {document_id}",
                "document_id": document_id,
                "category": "core",
                "sections": [
                    {
                        "name": "classification",
                        "body": f"The document is core material for {topic} and covers foundational concepts.",
                    }
                ],
            }
        if request.stage == 4:
            concepts = [topic.lower(), "fundamentals", "practice"]
            return {
                "title": f"Analysis of {topic}",
                "key_concepts": concepts,
                "sections": [
                    {
                        "name": "overview",
                        "body": (
                            f"The source material gives a broad view of {topic}. Learners start with the "
                            "fundamentals and move towards independent practice with guided feedback. "
                            "Each concept is revisited in later lessons."
                        ),
                    },
                    {"name": "key concepts", "body": ", ".join(concepts)},
                ],
            }
        if request.stage == 5:
            analysis = request.inputs.get("analysis")
            concepts = analysis.get("key_concepts", []) if isinstance(analysis, dict) else []
            lessons = [
                {
                    "id": f"lesson-{index}",
                    "title": f"{topic} part {index}",
                    "keywords": ["fundamentals", "practice"],
                }
                for index in range(1, self.lessons_per_module + 1)
            ]
            return {
                "title": f"Course on {topic}",
                "modules": [{"id": "module-1", "title": f"Getting started with {topic}", "lessons": lessons}],
                "sections": [
                    {
                        "name": "outline",
                        "body": (
                            f"One module with {len(lessons)} lessons. The course covers "
                            f"{', '.join(str(item) for item in concepts)} in a steady progression from theory "
                            "to hands-on exercises."
                        ),
                    }
                ],
            }
        lesson = request.inputs.get("lesson")
        lesson_title = str(lesson.get("title")) if isinstance(lesson, dict) else str(request.unit_ref)
        keywords = lesson.get("keywords", []) if isinstance(lesson, dict) else []
        return {
            "title": lesson_title,
            "lesson_id": request.unit_ref,
            "sections": [
                {
                    "name": "introduction",
                    "body": f"This lesson is part of a course on {topic}. It sets out what you will learn today.",
                },
                {
                    "name": "explanation",
                    "body": (
                        f"We start with the {' and '.join(str(item) for item in keywords)} of the subject. "
                        "Each idea is shown with a short example. Then you try it yourself and compare "
                        "your answer with the model solution."
                    ),
                },
                {
                    "name": "summary",
                    "body": "You reviewed the main ideas and practiced them. Next time we build on this base.",
                },
            ],
            "examples": [f"A worked example about {topic}."],
            "exercises": ["Explain the main idea in your own words."],
            "language": "en",
        }


@dataclass
class StubDocumentStorage:
    documents: dict[str, bytes] = field(default_factory=dict)
    reads: list[str] = field(default_factory=list)

    async def fetch(self, *, document_id: str) -> bytes:
        self.reads.append(document_id)
        payload = self.documents.get(document_id)
        if payload is None:
            raise DomainDependencyError(f"document is not found: {document_id}", code="document_missing")
        return payload


@dataclass
class InMemoryTraceRecorder:
    entries: list[TraceEntry] = field(default_factory=list)
    fail_with: Exception | None = None

    async def append(self, entry: TraceEntry) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.entries.append(entry)

    def steps_for(self, course_id: str) -> list[str]:
        return [entry.step_name for entry in self.entries if entry.course_id == course_id]
