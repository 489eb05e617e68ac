"""
Plan Parser & Recovery
======================
Turns raw planning-model output into a validated Plan.

Planning output is unreliable under token limits and formatting drift, so the
parser aims for maximum salvage rather than strict schema enforcement:

  1. strip one optional markdown code fence
  2. direct json.loads (then with trailing commas / control chars removed)
  3. substring between the first '{' and the last '}'
  4. truncation recovery: keep every fully closed task object and close the
     document with a synthetic synthesisHint

Field-level problems (missing id/prompt, unknown model names, dangling
dependsOn references) drop or repair the offending field, never the plan.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable, Optional

import jsonschema

from .models import (
    COMMANDER_WORKER_MODELS,
    DEFAULT_WORKER_MODEL,
    GapAnalysis,
    Model,
    Plan,
    Priority,
    Task,
)
from .prompts import build_research_question_prompt

logger = logging.getLogger("commander.plan_parser")

MAX_TASKS = 7
MAX_FOLLOW_UPS = 3
DEFAULT_SYNTHESIS_HINT = "Merge all results into a coherent response."

_WRAPPING_FENCE_RE = re.compile(r"```[\w+-]*[ \t]*\n?(.*)\n?\s*```$", re.DOTALL)
_TASK_LIST_KEYS = ("tasks", "questions")


# ─────────────────────────────────────────────────────────────────────────────
# JSON extraction
# ─────────────────────────────────────────────────────────────────────────────

def _try_parse(s: str) -> Any:
    """json.loads with progressively more aggressive cleanup; None on failure."""
    try:
        return json.loads(s)
    except json.JSONDecodeError:
        pass
    # trailing commas before ] or }
    cleaned = re.sub(r",\s*([}\]])", r"\1", s)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass
    # control characters other than \n \r \t
    cleaned = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", cleaned)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        return None


def strip_code_fence(raw: str) -> str:
    """Unwrap a fence that encloses the whole output; inner fences are content."""
    text = raw.strip()
    match = _WRAPPING_FENCE_RE.match(text)
    if match:
        return match.group(1).strip()
    return text


def extract_json(raw: str) -> Any:
    """Best-effort JSON extraction from model output. Returns None if hopeless."""
    if not raw:
        return None
    parsed = _try_parse(raw.strip())
    if parsed is not None:
        return parsed

    text = strip_code_fence(raw)
    parsed = _try_parse(text)
    if parsed is not None:
        return parsed

    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        parsed = _try_parse(text[start:end + 1])
        if parsed is not None:
            return parsed

    if start != -1:
        return recover_truncated_plan_json(text[start:])
    return None


def recover_truncated_plan_json(truncated: str) -> Optional[dict]:
    """
    Salvage a plan cut off mid-stream: keep every task object that closed
    before the cut and append a synthetic closer. None if no task closed.
    """
    key_idx = -1
    for key in _TASK_LIST_KEYS:
        key_idx = truncated.find(f'"{key}"')
        if key_idx != -1:
            break
    if key_idx == -1:
        return None

    array_start = truncated.find("[", key_idx)
    if array_start == -1:
        return None

    last_complete_end = -1
    depth = 0
    in_string = False
    escape = False
    for i in range(array_start + 1, len(truncated)):
        ch = truncated[i]
        if escape:
            escape = False
            continue
        if in_string:
            if ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                last_complete_end = i
        elif ch == "]" and depth == 0:
            break

    if last_complete_end == -1:
        return None

    repaired = (
        truncated[:last_complete_end + 1]
        + f'], "synthesisHint": "{DEFAULT_SYNTHESIS_HINT}" }}'
    )
    parsed = _try_parse(repaired)
    if not isinstance(parsed, dict):
        return None
    logger.warning("Recovered truncated plan JSON")
    return parsed


# ─────────────────────────────────────────────────────────────────────────────
# Model name correction
# ─────────────────────────────────────────────────────────────────────────────

def resolve_model(
    name: Optional[str],
    valid: Iterable[Model] = COMMANDER_WORKER_MODELS,
) -> Optional[Model]:
    """Map a model name (possibly legacy or misspelled) onto the canonical table."""
    if not name or not isinstance(name, str):
        return None
    allowed = set(valid)
    normalized = name.lower().strip()
    for model in allowed:
        if model.value == normalized:
            return model

    if "sonnet" in normalized:
        return Model.CLAUDE_SONNET
    if "opus" in normalized:
        return Model.CLAUDE_OPUS
    if "haiku" in normalized:
        return Model.CLAUDE_HAIKU

    if "gemini-3.1" in normalized:
        # 3.1 is only routable where the table allows it
        return Model.GEMINI_31_PRO if Model.GEMINI_31_PRO in allowed else Model.GEMINI_3_PRO
    if "gemini-3-pro" in normalized or "gemini-3.0-pro" in normalized:
        return Model.GEMINI_3_PRO
    if "gemini-3-flash" in normalized or "gemini-3.0-flash" in normalized:
        return Model.GEMINI_3_FLASH
    if "gemini-2.5-pro" in normalized:
        return Model.GEMINI_PRO
    if "gemini-2.5" in normalized:
        return Model.GEMINI_FLASH
    return None


# ─────────────────────────────────────────────────────────────────────────────
# Validation
# ─────────────────────────────────────────────────────────────────────────────

def _task_items(obj: dict) -> Optional[list]:
    for key in _TASK_LIST_KEYS:
        items = obj.get(key)
        if isinstance(items, list) and items:
            return items
    return None


def _item_prompt(item: dict) -> str:
    prompt = item.get("prompt")
    if isinstance(prompt, str) and prompt.strip():
        return prompt
    question = item.get("question")
    if isinstance(question, str) and question.strip():
        return build_research_question_prompt(question, item.get("searchQuery") or "")
    return ""


def _normalize_item(
    item: Any,
    valid_models: Iterable[Model],
    default_model: Model,
) -> Optional[dict]:
    """Field-level repair of one raw task object. None if it lacks id or prompt."""
    if not isinstance(item, dict):
        logger.warning(f"Skipping non-object task entry: {str(item)[:100]!r}")
        return None
    raw_id = item.get("id")
    prompt = _item_prompt(item)
    if raw_id in (None, "") or not prompt:
        logger.warning(f"Task missing id or prompt: {json.dumps(item)[:100]}")
        return None

    raw_model = item.get("model")
    model = resolve_model(raw_model, valid_models) if raw_model else None
    if model is None:
        if raw_model:
            logger.warning(f"Unknown model {raw_model!r}, defaulting to {default_model.value}")
        model = default_model
    elif raw_model != model.value:
        logger.info(f"Auto-corrected model {raw_model!r} → {model.value}")

    description = item.get("description") or item.get("question") or prompt[:80]
    deps = item.get("dependsOn")
    return {
        "id": str(raw_id),
        "prompt": prompt,
        "model": model,
        "description": str(description),
        "priority": Priority.CRITICAL if item.get("priority") == "critical" else Priority.STANDARD,
        "dependsOn": [str(d) for d in deps] if isinstance(deps, list) else [],
    }


def _trim(items: list[dict], max_tasks: int) -> list[dict]:
    """Keep critical tasks first, then earliest; restore original order."""
    if len(items) <= max_tasks:
        return items
    logger.warning(f"Plan has {len(items)} tasks, trimming to {max_tasks}")
    ranked = sorted(
        enumerate(items),
        key=lambda pair: (pair[1]["priority"] != Priority.CRITICAL, pair[0]),
    )
    kept = sorted(ranked[:max_tasks], key=lambda pair: pair[0])
    return [item for _, item in kept]


def validate_plan(
    parsed: Any,
    max_tasks: int = MAX_TASKS,
    valid_models: Iterable[Model] = COMMANDER_WORKER_MODELS,
    default_model: Model = DEFAULT_WORKER_MODEL,
) -> Optional[Plan]:
    if not isinstance(parsed, dict):
        logger.warning("Plan validation: not an object")
        return None
    items = _task_items(parsed)
    if items is None:
        logger.warning("Plan validation: missing or empty tasks array")
        return None

    valid_models = tuple(valid_models)
    normalized = []
    seen: set[str] = set()
    for raw in items:
        item = _normalize_item(raw, valid_models, default_model)
        if item is None:
            continue
        if item["id"] in seen:
            logger.warning(f"Dropping duplicate task id {item['id']!r}")
            continue
        seen.add(item["id"])
        normalized.append(item)

    normalized = _trim(normalized, max_tasks)
    if not normalized:
        logger.warning("Plan validation: no valid tasks after filtering")
        return None

    task_ids = {item["id"] for item in normalized}
    tasks = tuple(
        Task(
            id=item["id"],
            prompt=item["prompt"],
            assigned_model=item["model"],
            description=item["description"],
            priority=item["priority"],
            depends_on=tuple(
                d for d in item["dependsOn"] if d in task_ids and d != item["id"]
            ),
        )
        for item in normalized
    )
    reasoning = parsed.get("reasoning")
    hint = parsed.get("synthesisHint")
    return Plan(
        reasoning=reasoning if isinstance(reasoning, str) else "",
        tasks=tasks,
        synthesis_hint=hint if isinstance(hint, str) and hint else DEFAULT_SYNTHESIS_HINT,
    )


def parse_plan(
    raw: str,
    max_tasks: int = MAX_TASKS,
    valid_models: Iterable[Model] = COMMANDER_WORKER_MODELS,
    default_model: Model = DEFAULT_WORKER_MODEL,
) -> Optional[Plan]:
    """Parse planning output into a Plan, or None when nothing is salvageable."""
    parsed = extract_json(raw)
    if parsed is None:
        logger.warning(f"Could not extract plan JSON. Raw (first 300 chars): {raw[:300]!r}")
        return None
    return validate_plan(parsed, max_tasks, valid_models, default_model)


# ─────────────────────────────────────────────────────────────────────────────
# Gap analysis
# ─────────────────────────────────────────────────────────────────────────────

GAP_ANALYSIS_SCHEMA = {
    "type": "object",
    "required": ["status"],
    "properties": {
        "status": {"enum": ["complete", "gaps_found"]},
        "reasoning": {"type": "string"},
        "followUpQuestions": {"type": "array"},
    },
}


def parse_gap_analysis(
    raw: str,
    existing_ids: Iterable[str] = (),
    valid_models: Iterable[Model] = COMMANDER_WORKER_MODELS,
    default_model: Model = DEFAULT_WORKER_MODEL,
) -> Optional[GapAnalysis]:
    """
    Parse the reflection pass verdict. Follow-ups get no dependencies, are
    capped at MAX_FOLLOW_UPS and never reuse an id from the main plan.
    """
    parsed = extract_json(raw)
    try:
        jsonschema.validate(instance=parsed, schema=GAP_ANALYSIS_SCHEMA)
    except jsonschema.ValidationError as exc:
        logger.warning(f"Gap analysis rejected: {exc.message}")
        return None

    reasoning = parsed.get("reasoning") or ""
    if parsed["status"] == "complete":
        return GapAnalysis(complete=True, reasoning=reasoning)

    items = parsed.get("followUpQuestions") or parsed.get("tasks") or []
    taken = set(existing_ids)
    valid_models = tuple(valid_models)
    follow_ups: list[Task] = []
    for raw_item in items:
        item = _normalize_item(raw_item, valid_models, default_model)
        if item is None:
            continue
        task_id = item["id"]
        if task_id in taken:
            task_id = f"followup-{task_id}"
        taken.add(task_id)
        follow_ups.append(Task(
            id=task_id,
            prompt=item["prompt"],
            assigned_model=item["model"],
            description=item["description"],
            priority=item["priority"],
        ))
        if len(follow_ups) >= MAX_FOLLOW_UPS:
            break

    if not follow_ups:
        return GapAnalysis(complete=True, reasoning="No valid follow-up questions")
    return GapAnalysis(complete=False, reasoning=reasoning, follow_ups=follow_ups)
