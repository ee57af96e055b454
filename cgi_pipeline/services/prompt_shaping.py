"""Deterministic prompt shortening for provider request limits.

Kling rejects prompts over 2500 characters. Oversized instructions are
shortened by importance rather than cut at an arbitrary offset:

    1. Split into non-empty lines and classify each one:
       core (camera/motion/subject), technical (quality/lighting),
       context (non-Latin text), generic (everything else).
    2. Score lines; Latin-only lines get a boost since the model follows
       English best.
    3. Fill budgets in order: 60% core, 25% technical, remainder for
       context and generic lines. Within a bucket, higher score wins and
       ties go to the earlier line.
    4. Emit the chosen lines in their original order, space-joined.
    5. If less than 30% of the limit survived, fall back to a plain cut
       of the original text ending in "...".

shorten_prompt() is a pure function of (text, limit): the same input always
produces byte-identical output.
"""

import re
from dataclasses import dataclass

from cgi_pipeline.constants import KLING_PROMPT_MAX_LENGTH

CORE_PATTERN = re.compile(
    r"\b(camera|movement|motion|zoom|rotat\w*|dolly|pan|tilt|orbit\w*|smooth|slow\w*"
    r"|gradual\w*|animat\w*|cinematic)\b",
    re.IGNORECASE,
)
TECHNICAL_PATTERN = re.compile(
    r"\b(cgi|quality|resolution|lighting|professional|commercial|ultra.*realistic"
    r"|photorealistic|aspect|duration)\b",
    re.IGNORECASE,
)
SUBJECT_PATTERN = re.compile(
    r"\b(product|scene|object|background|environment|showcase|display|highlight)\b",
    re.IGNORECASE,
)
LATIN_ONLY_PATTERN = re.compile(r"^[A-Za-z0-9\s.,!?():;'\"/+%&_-]+$")

CORE_BUDGET_RATIO = 0.6
TECHNICAL_BUDGET_RATIO = 0.25
MIN_KEPT_RATIO = 0.3
ELLIPSIS = "..."


@dataclass(frozen=True)
class PromptLine:
    index: int
    text: str
    category: str
    score: int


def classify_line(index: int, text: str) -> PromptLine:
    """Score one stripped line and put it in a bucket."""
    score = 0
    category = "generic"

    if CORE_PATTERN.search(text):
        score += 10
        category = "core"
    if TECHNICAL_PATTERN.search(text):
        score += 8
        if category == "generic":
            category = "technical"
    if SUBJECT_PATTERN.search(text):
        score += 6
        if category == "generic":
            category = "core"

    latin_only = bool(LATIN_ONLY_PATTERN.match(text))
    if latin_only:
        score += 5

    if category == "generic":
        if latin_only and score >= 6:
            category = "core"
        elif not latin_only:
            category = "context"

    return PromptLine(index=index, text=text, category=category, score=score)


def _select(lines: list[PromptLine], budget: int) -> list[PromptLine]:
    chosen: list[PromptLine] = []
    used = 0
    for line in sorted(lines, key=lambda item: (-item.score, item.index)):
        cost = len(line.text) + 1  # joining space
        if used + cost <= budget:
            chosen.append(line)
            used += cost
    return chosen


def _hard_cut(text: str, limit: int) -> str:
    if limit <= len(ELLIPSIS):
        return text[:limit]
    return text[: limit - len(ELLIPSIS)].rstrip() + ELLIPSIS


def shorten_prompt(text: str, limit: int = KLING_PROMPT_MAX_LENGTH) -> str:
    """Shorten text to at most limit characters, keeping the most important lines.

    Args:
        text: Instruction text sent to the provider.
        limit: Maximum length accepted by the provider.

    Returns:
        text unchanged if it already fits, otherwise the shortened text.
    """
    if len(text) <= limit:
        return text

    lines = [
        classify_line(index, stripped)
        for index, stripped in enumerate(line.strip() for line in text.splitlines())
        if stripped
    ]
    buckets: dict[str, list[PromptLine]] = {"core": [], "technical": [], "context": [], "generic": []}
    for line in lines:
        buckets[line.category].append(line)

    core_budget = int(limit * CORE_BUDGET_RATIO)
    technical_budget = int(limit * TECHNICAL_BUDGET_RATIO)

    chosen = _select(buckets["core"], core_budget)
    chosen += _select(buckets["technical"], technical_budget)

    remaining = limit - sum(len(line.text) + 1 for line in chosen)
    chosen += _select(buckets["context"] + buckets["generic"], remaining)

    shortened = " ".join(line.text for line in sorted(chosen, key=lambda item: item.index))

    if len(shortened) < limit * MIN_KEPT_RATIO:
        return _hard_cut(text, limit)
    if len(shortened) > limit:
        return _hard_cut(shortened, limit)
    return shortened
