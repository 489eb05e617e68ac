"""
Quality gate: a fast, cheap scoring pass over the synthesized answer.

The verdict decides whether the state machine spends one revision call on
the synthesis. Any failure here (timeout, unparseable verdict, short input)
yields None and the gate is simply skipped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import jsonschema

from .failover import FailoverRegistry
from .invoker import CancelScope, InvocationRequest, ModelInvoker, invoke_reported
from .models import QUALITY_MODEL
from .plan_parser import extract_json

logger = logging.getLogger("commander.quality_gate")

MIN_CHECK_LENGTH = 200
PASS_SCORE = 7
QUALITY_TIMEOUT = 15.0
MAX_QUERY_CHARS = 500
MAX_RESPONSE_CHARS = 4000
MAX_PREVIOUS_SYNTHESIS_CHARS = 3000

QUALITY_CHECK_PROMPT = """You are a quality reviewer. Score the response to the user's question on three dimensions:

1. COMPLETENESS: does it address ALL parts of the question?
2. DEPTH: is it substantive rather than vague?
3. ORGANIZATION: is it clear, structured and easy to follow?

Output ONLY valid JSON:
{"score": 7, "issues": null}

- score: integer 1-10, the average of the three dimensions
- issues: null if score >= 7, otherwise 1-2 sentences naming what is missing or weak

Be calibrated: most good responses score 7-8, 9-10 is exceptional, below 6 means significant gaps."""

QUALITY_VERDICT_SCHEMA = {
    "type": "object",
    "required": ["score"],
    "properties": {
        "score": {"type": "number", "minimum": 1, "maximum": 10},
    },
}


@dataclass(frozen=True)
class QualityVerdict:
    score: int
    passed: bool
    issues: Optional[str] = None
    cost: Optional[float] = None

    @property
    def feedback(self) -> str:
        if self.issues:
            return self.issues
        return (
            f"Scored {self.score}/10. Improve completeness, depth and organization."
        )


def parse_quality_verdict(raw: str) -> Optional[QualityVerdict]:
    parsed = extract_json(raw)
    try:
        jsonschema.validate(instance=parsed, schema=QUALITY_VERDICT_SCHEMA)
    except jsonschema.ValidationError as exc:
        logger.warning(f"Quality verdict rejected: {exc.message}")
        return None
    score = parsed["score"]
    issues = parsed.get("issues")
    return QualityVerdict(
        score=int(round(score)),
        passed=score >= PASS_SCORE,
        issues=issues if isinstance(issues, str) and issues.strip() else None,
    )


async def check_quality(
    user_query: str,
    synthesis: str,
    invoker: ModelInvoker,
    registry: FailoverRegistry,
    scope: CancelScope,
    timeout: float = QUALITY_TIMEOUT,
) -> Optional[QualityVerdict]:
    """Score a synthesis 1-10; None when skipped or the check itself failed."""
    if len(synthesis) < MIN_CHECK_LENGTH or scope.aborted:
        return None

    message = "\n".join([
        f"USER QUESTION: {user_query[:MAX_QUERY_CHARS]}",
        "",
        "RESPONSE TO EVALUATE:",
        synthesis[:MAX_RESPONSE_CHARS],
    ])
    request = InvocationRequest(
        prompt=message,
        model=registry.resolve(QUALITY_MODEL),
        system_prompt=QUALITY_CHECK_PROMPT,
        tools_enabled=False,
        max_turns=1,
        timeout=timeout,
    )
    result = await invoke_reported(invoker, registry, request, scope)
    if result is None or not result.content:
        return None
    verdict = parse_quality_verdict(result.content)
    if verdict is None:
        return None
    return QualityVerdict(verdict.score, verdict.passed, verdict.issues, result.cost)


def build_revision_context(
    original_synthesis_message: str,
    previous_synthesis: str,
    feedback: str,
) -> str:
    return (
        f"{original_synthesis_message}\n\n---\n\n"
        "REVISION REQUEST: A quality review found these issues with the previous attempt:\n"
        f"{feedback}\n\n"
        "Previous synthesis for reference:\n"
        f"{previous_synthesis[:MAX_PREVIOUS_SYNTHESIS_CHARS]}\n\n"
        "Produce a revised synthesis that addresses the quality feedback. Keep all "
        "correct content from the previous attempt while fixing the identified issues."
    )
