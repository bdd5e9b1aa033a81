"""Scope gate deciding whether a request belongs in the proof pipeline.

A keyword heuristic settles clear cases. Ambiguous requests may be passed to a
model classifier whose verdict is only honoured above a confidence bar;
classifier failures fall back to the heuristic (REVIEW), never to BLOCK.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Awaitable, Callable

from proofsmith.models import ScopeResult

logger = logging.getLogger(__name__)

ScopeClassifier = Callable[[str, str | None], Awaitable[ScopeResult]]

MATH_PATTERNS = [
    re.compile(pattern)
    for pattern in (
        r"\bprove\b",
        r"\bproof\b",
        r"\bshow that\b",
        r"\btheorem\b",
        r"\blemma\b",
        r"\bcorollary\b",
        r"\binduction\b",
        r"\bcontradiction\b",
        r"\binvariant\b",
        r"\bgraph\b",
        r"\bdijkstra\b",
        r"\bshortest path\b",
        r"\bcombinatorics\b",
        r"\bprobability\b",
        r"\bnumber theory\b",
        r"\birrational\b",
        r"\bsqrt\b",
        r"\bmod\b",
        r"\binteger\b",
        r"\bderivative\b",
        r"\bintegral\b",
        r"\blimit\b",
        r"\bmatrix\b",
        r"\bcomplexity\b",
        r"\bbig[\s-]?o\b",
        r"\\(frac|sqrt|sum|prod|int|forall|exists)",
        r"[∀∃∑∫√]",
    )
]

NON_MATH_PATTERNS = [
    re.compile(pattern)
    for pattern in (
        r"\bpoem\b",
        r"\bstory\b",
        r"\bnovel\b",
        r"\blyrics?\b",
        r"\bmarketing\b",
        r"\bad copy\b",
        r"\bemail\b",
        r"\bresume\b",
        r"\bcover letter\b",
        r"\btravel itinerary\b",
        r"\brecipe\b",
        r"\bhoroscope\b",
        r"\bmovie script\b",
        r"\bsocial media\b",
        r"\binstagram\b",
        r"\btweet\b",
        r"\btranslation\b",
        r"\btranslate\b",
        r"\bstartup pitch\b",
        r"\bbusiness plan\b",
    )
]

EQUATION_PATTERNS = [
    re.compile(r"[=<>+\-*/^]"),
    re.compile(r"\b\d+\b"),
    re.compile(r"\$\$?.+\$\$?"),
    re.compile(r"\bO\([^)]*\)"),
]

BLOCK_CONFIDENCE_BAR = 0.75
ALLOW_CONFIDENCE_BAR = 0.6


def _count_hits(text: str, patterns: list[re.Pattern[str]]) -> int:
    return sum(1 for pattern in patterns if pattern.search(text))


def has_equation_signals(text: str) -> bool:
    return any(pattern.search(text) for pattern in EQUATION_PATTERNS)


def heuristic_assess(problem: str, attempt: str | None = None) -> ScopeResult:
    combined = f"{problem}\n{attempt or ''}".lower()
    math_hits = _count_hits(combined, MATH_PATTERNS)
    non_math_hits = _count_hits(combined, NON_MATH_PATTERNS)
    score = math_hits + (1 if has_equation_signals(combined) else 0)

    if non_math_hits >= 2 and score <= 1:
        return ScopeResult(
            verdict="BLOCK",
            confidence=0.92,
            reason="The request appears non-mathematical and outside proof scope.",
            suggestion="Ask for a theorem/proof, derivation, or algorithm-correctness claim.",
        )

    if score >= 3 and non_math_hits == 0:
        return ScopeResult(
            verdict="ALLOW",
            confidence=min(0.99, 0.72 + score * 0.05),
            reason="Detected clear mathematics/proof intent.",
            suggestion="Proceed with structured plan, proof, and audit.",
        )

    if score >= 2 and non_math_hits <= 1:
        return ScopeResult(
            verdict="ALLOW",
            confidence=0.74,
            reason="Likely mathematical request with moderate certainty.",
            suggestion="Proceed and let the planner infer formal structure.",
        )

    return ScopeResult(
        verdict="REVIEW",
        confidence=0.5,
        reason="Prompt is ambiguous about whether it is a math-proof request.",
        suggestion="Clarify the claim, theorem, or equation to prove.",
    )


def _normalize_classifier_result(result: ScopeResult) -> ScopeResult:
    confidence = result.confidence
    if not math.isfinite(confidence):
        confidence = 0.5
    return ScopeResult(
        verdict=result.verdict,
        confidence=max(0.0, min(1.0, confidence)),
        reason=result.reason.strip() or "Scope classifier provided no reason.",
        suggestion=result.suggestion.strip() or "Please restate as a math proof request.",
    )


async def assess_scope(
    problem: str,
    attempt: str | None = None,
    *,
    classifier: ScopeClassifier | None = None,
) -> ScopeResult:
    heuristic = heuristic_assess(problem, attempt)
    if heuristic.verdict != "REVIEW" or classifier is None:
        return heuristic

    try:
        verdict = _normalize_classifier_result(await classifier(problem, attempt))
    except Exception as exc:
        logger.warning("Scope classifier failed, keeping heuristic verdict: %s", exc)
        return heuristic

    if verdict.verdict == "BLOCK" and verdict.confidence >= BLOCK_CONFIDENCE_BAR:
        return verdict
    if verdict.verdict == "ALLOW" and verdict.confidence >= ALLOW_CONFIDENCE_BAR:
        return verdict

    return ScopeResult(
        verdict="REVIEW",
        confidence=max(heuristic.confidence, verdict.confidence),
        reason=verdict.reason,
        suggestion=verdict.suggestion,
    )


def is_admitted(result: ScopeResult, *, override_review: bool = False) -> bool:
    if result.verdict == "ALLOW":
        return True
    if result.verdict == "REVIEW":
        return override_review
    return False
