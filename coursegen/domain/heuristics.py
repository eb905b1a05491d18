"""Deterministic artifact checks run before any judge is paid for."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
import re

from coursegen.domain.verdicts import HeuristicReport

WORD_RE = re.compile(r"[A-Za-zÀ-ɏЀ-ӿ0-9']+")
SENTENCE_RE = re.compile(r"[.!?]+(?:\s|$)")
VOWEL_GROUP_RE = re.compile(r"[aeiouy]+")

DEFAULT_PLACEHOLDER_PATTERNS: tuple[str, ...] = (
    r"\bTODO\b",
    r"\bTBD\b",
    r"\bFIXME\b",
    r"lorem ipsum",
    r"\[insert[^\]]*\]",
    r"\{\{[^}]*\}\}",
    r"<placeholder>",
)


@dataclass(frozen=True)
class ReadabilityRange:
    min_grade: float
    max_grade: float


@dataclass(frozen=True)
class HeuristicThresholds:
    min_words: int = 0
    max_words: int | None = None
    required_sections: tuple[str, ...] = ()
    min_examples: int = 0
    min_exercises: int = 0
    min_keyword_coverage: float = 0.5
    placeholder_patterns: tuple[str, ...] = DEFAULT_PLACEHOLDER_PATTERNS
    readability: ReadabilityRange | None = None


@dataclass(frozen=True)
class ArtifactSection:
    name: str
    body: str


@dataclass(frozen=True)
class ArtifactContent:
    title: str
    sections: tuple[ArtifactSection, ...]
    examples: tuple[str, ...] = ()
    exercises: tuple[str, ...] = ()
    language: str = "en"
    extra: dict[str, object] = field(default_factory=dict)

    def full_text(self) -> str:
        parts = [self.title]
        for section in self.sections:
            parts.append(section.name)
            parts.append(section.body)
        parts.extend(self.examples)
        parts.extend(self.exercises)
        return "\n".join(part for part in parts if part)

    def section(self, name: str) -> ArtifactSection | None:
        wanted = name.strip().lower()
        for section in self.sections:
            if section.name.strip().lower() == wanted:
                return section
        return None


def content_from_payload(payload: Mapping[str, object]) -> ArtifactContent:
    """Builds the checked view of a generator payload.

    Expected keys: title, sections [{name, body}], examples, exercises,
    language. Missing keys read as empty so the checks report them.
    """
    sections_raw = payload.get("sections")
    sections: list[ArtifactSection] = []
    if isinstance(sections_raw, list):
        for item in sections_raw:
            if isinstance(item, Mapping):
                sections.append(
                    ArtifactSection(
                        name=str(item.get("name") or ""),
                        body=str(item.get("body") or ""),
                    )
                )
    known = {"title", "sections", "examples", "exercises", "language"}
    return ArtifactContent(
        title=str(payload.get("title") or ""),
        sections=tuple(sections),
        examples=_strings(payload.get("examples")),
        exercises=_strings(payload.get("exercises")),
        language=str(payload.get("language") or "en"),
        extra={key: value for key, value in payload.items() if key not in known},
    )


def run_heuristics(
    *,
    content: ArtifactContent,
    thresholds: HeuristicThresholds,
    keywords: Sequence[str] = (),
) -> HeuristicReport:
    failures: list[str] = []
    warnings: list[str] = []
    text = content.full_text()
    words = WORD_RE.findall(text)
    word_count = len(words)
    metrics: dict[str, float] = {"word_count": float(word_count)}

    if word_count < thresholds.min_words:
        failures.append(f"Word count ({word_count}) below minimum ({thresholds.min_words})")
    if thresholds.max_words is not None and word_count > thresholds.max_words:
        failures.append(f"Word count ({word_count}) above maximum ({thresholds.max_words})")

    missing = [name for name in thresholds.required_sections if content.section(name) is None]
    if missing:
        failures.append(f"Missing required sections: {', '.join(missing)}")

    empty = [section.name or "<unnamed>" for section in content.sections if not section.body.strip()]
    if not content.sections:
        failures.append("Artifact has no sections")
    elif empty:
        failures.append(f"Empty sections: {', '.join(empty)}")

    if keywords:
        coverage = keyword_coverage(text=text, keywords=keywords)
        metrics["keyword_coverage"] = coverage
        if coverage < thresholds.min_keyword_coverage:
            failures.append(
                f"Keyword coverage ({coverage:.0%}) below {thresholds.min_keyword_coverage:.0%} threshold"
            )

    metrics["examples_count"] = float(len(content.examples))
    if len(content.examples) < thresholds.min_examples:
        failures.append(f"Examples count ({len(content.examples)}) below minimum ({thresholds.min_examples})")

    metrics["exercises_count"] = float(len(content.exercises))
    if len(content.exercises) < thresholds.min_exercises:
        failures.append(f"Exercises count ({len(content.exercises)}) below minimum ({thresholds.min_exercises})")

    placeholders = find_placeholders(text=text, patterns=thresholds.placeholder_patterns)
    if placeholders:
        failures.append(f"Placeholder text detected: {', '.join(placeholders)}")

    if thresholds.readability is not None and content.language.lower().startswith("en") and words:
        grade = flesch_kincaid_grade(text)
        metrics["flesch_kincaid_grade"] = grade
        low, high = thresholds.readability.min_grade, thresholds.readability.max_grade
        if not low <= grade <= high:
            # Readability drifts with topic; it informs the judge but never blocks.
            warnings.append(f"Flesch-Kincaid grade ({grade:.1f}) outside target range ({low:g}-{high:g})")

    return HeuristicReport(
        passed=not failures,
        failures=tuple(failures),
        warnings=tuple(warnings),
        metrics=metrics,
    )


def keyword_coverage(*, text: str, keywords: Sequence[str]) -> float:
    wanted = [keyword.strip().lower() for keyword in keywords if keyword.strip()]
    if not wanted:
        return 1.0
    haystack = text.lower()
    found = sum(1 for keyword in wanted if keyword in haystack)
    return found / len(wanted)


def find_placeholders(*, text: str, patterns: Sequence[str]) -> list[str]:
    found: list[str] = []
    for pattern in patterns:
        match = re.search(pattern, text, flags=re.IGNORECASE)
        if match is not None and match.group(0) not in found:
            found.append(match.group(0))
    return found


def flesch_kincaid_grade(text: str) -> float:
    words = WORD_RE.findall(text)
    if not words:
        return 0.0
    sentences = max(1, len(SENTENCE_RE.findall(text)))
    syllables = sum(_syllables(word) for word in words)
    grade = 0.39 * (len(words) / sentences) + 11.8 * (syllables / len(words)) - 15.59
    return round(grade, 2)


def _syllables(word: str) -> int:
    lowered = word.lower()
    groups = VOWEL_GROUP_RE.findall(lowered)
    count = len(groups)
    if lowered.endswith("e") and count > 1 and not lowered.endswith("le"):
        count -= 1
    return max(1, count)


def _strings(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(item) for item in value if str(item).strip())
