"""
Tests for the plan parser: JSON salvage, truncation recovery, field-level
repair, trimming and gap-analysis parsing.
"""
from __future__ import annotations

import json

import pytest

from commander.models import RESEARCH_WORKER_MODELS, Model, Priority
from commander.plan_parser import (
    DEFAULT_SYNTHESIS_HINT,
    MAX_FOLLOW_UPS,
    extract_json,
    parse_gap_analysis,
    parse_plan,
    recover_truncated_plan_json,
    resolve_model,
    strip_code_fence,
    validate_plan,
)


def _task(id, prompt="do it", model="claude-sonnet-4-6", priority="standard", deps=()):
    return {"id": id, "description": f"task {id}", "prompt": prompt,
            "model": model, "priority": priority, "dependsOn": list(deps)}


def _plan(*tasks, **extra):
    return json.dumps({"reasoning": "because", "tasks": list(tasks), **extra})


# ─────────────────────────────────────────────────────────────────────────────
# Extraction
# ─────────────────────────────────────────────────────────────────────────────

def test_strip_code_fence_ignores_language_tag():
    assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fence('{"a": 1}') == '{"a": 1}'


def test_strip_code_fence_leaves_inner_fences_alone():
    text = '{"prompt": "Example:\\n```python\\nprint(1)\\n```"}'
    assert strip_code_fence(text) == text
    wrapped = '```json\n{"prompt": "```sh\\nls\\n```"}\n```'
    assert strip_code_fence(wrapped) == '{"prompt": "```sh\\nls\\n```"}'


def test_plan_with_code_example_in_prompt_keeps_every_task():
    prompt = "Write a helper. Example:\n```python\nprint(1)\n```\nthen test it"
    raw = _plan(_task("t1", prompt=prompt), _task("t2", prompt="Review it"))
    plan = parse_plan(raw)
    assert plan is not None
    assert [t.id for t in plan.tasks] == ["t1", "t2"]
    assert plan.tasks[0].prompt == prompt


def test_fenced_plan_after_prose():
    raw = "Here you go:\n```json\n" + _plan(_task("t1")) + "\n```\nLet me know."
    assert [t.id for t in parse_plan(raw).tasks] == ["t1"]


def test_extract_json_from_prose():
    raw = 'Here is the plan:\n{"tasks": [{"id": "t1"}]}\nHope that helps!'
    assert extract_json(raw) == {"tasks": [{"id": "t1"}]}


def test_extract_json_tolerates_trailing_commas():
    assert extract_json('{"tasks": [1, 2,],}') == {"tasks": [1, 2]}


def test_extract_json_hopeless():
    assert extract_json("") is None
    assert extract_json("no braces here") is None


# ─────────────────────────────────────────────────────────────────────────────
# Truncation recovery
# ─────────────────────────────────────────────────────────────────────────────

def test_recovers_tasks_closed_before_the_cut():
    full = _plan(_task("t1", prompt="first {braces} inside"), _task("t2", prompt="second " * 20))
    truncated = full[: full.index("second") + 30]
    plan = parse_plan(truncated)
    assert plan is not None
    assert [t.id for t in plan.tasks] == ["t1"]
    assert plan.tasks[0].prompt == "first {braces} inside"
    assert plan.synthesis_hint == DEFAULT_SYNTHESIS_HINT


def test_truncation_before_any_task_closes_returns_none():
    full = _plan(_task("t1", prompt="a long prompt " * 10))
    truncated = full[: full.index("a long prompt") + 20]
    assert recover_truncated_plan_json(truncated) is None
    assert parse_plan(truncated) is None


def test_recovers_questions_key():
    raw = '{"questions": [{"id": "q1", "question": "What?"}, {"id": "q2", "question": "Wh'
    recovered = recover_truncated_plan_json(raw)
    assert recovered["questions"] == [{"id": "q1", "question": "What?"}]


# ─────────────────────────────────────────────────────────────────────────────
# Validation
# ─────────────────────────────────────────────────────────────────────────────

def test_valid_plan_keeps_every_task():
    plan = parse_plan(_plan(_task("t1"), _task("t2", deps=["t1"]), synthesisHint="Compare"))
    assert [t.id for t in plan.tasks] == ["t1", "t2"]
    assert plan.tasks[1].depends_on == ("t1",)
    assert plan.synthesis_hint == "Compare"
    assert plan.reasoning == "because"


def test_nine_tasks_trimmed_to_seven_keeping_critical():
    tasks = [_task(f"t{i}") for i in range(9)]
    tasks[8] = _task("t8", priority="critical")
    plan = parse_plan(_plan(*tasks))
    ids = [t.id for t in plan.tasks]
    assert len(ids) == 7
    assert "t8" in ids
    assert ids == ["t0", "t1", "t2", "t3", "t4", "t5", "t8"]


def test_trim_strips_deps_on_dropped_tasks():
    tasks = [_task(f"t{i}") for i in range(8)] + [_task("c", priority="critical", deps=["t7"])]
    plan = parse_plan(_plan(*tasks))
    assert plan.task("c").depends_on == ()


def test_invalid_and_duplicate_tasks_dropped():
    plan = validate_plan({"tasks": [
        {"id": "t1", "prompt": "ok"},
        {"id": "t1", "prompt": "duplicate"},
        {"prompt": "no id"},
        {"id": "t3"},
        "not an object",
        {"id": 4, "prompt": "numeric id"},
    ]})
    assert [t.id for t in plan.tasks] == ["t1", "4"]
    assert plan.tasks[0].prompt == "ok"


def test_missing_or_empty_tasks():
    assert validate_plan({"tasks": []}) is None
    assert validate_plan({"reasoning": "x"}) is None
    assert validate_plan([1, 2]) is None
    assert validate_plan({"tasks": [{"id": "t1"}]}) is None


def test_self_and_dangling_dependencies_removed():
    plan = parse_plan(_plan(_task("t1", deps=["t1", "ghost"]), _task("t2", deps=["t1"])))
    assert plan.task("t1").depends_on == ()
    assert plan.task("t2").depends_on == ("t1",)


def test_unknown_model_falls_back_to_default():
    plan = parse_plan(_plan(_task("t1", model="gpt-4o")), default_model=Model.GEMINI_FLASH)
    assert plan.tasks[0].assigned_model == Model.GEMINI_FLASH


def test_priority_parsing():
    plan = parse_plan(_plan(_task("a", priority="critical"), _task("b", priority="urgent")))
    assert plan.task("a").priority == Priority.CRITICAL
    assert plan.task("b").priority == Priority.STANDARD


def test_research_question_items_build_a_prompt():
    raw = json.dumps({"questions": [
        {"id": "q1", "question": "Who invented X?", "searchQuery": "x inventor",
         "model": "gemini-3.1-pro-preview"},
    ]})
    plan = parse_plan(raw, 15, RESEARCH_WORKER_MODELS)
    q1 = plan.tasks[0]
    assert "Who invented X?" in q1.prompt
    assert "x inventor" in q1.prompt
    assert q1.description == "Who invented X?"
    assert q1.assigned_model == Model.GEMINI_31_PRO


# ─────────────────────────────────────────────────────────────────────────────
# Model name correction
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("name, expected", [
    ("claude-sonnet-4-6", Model.CLAUDE_SONNET),
    ("Claude-Sonnet-4-5", Model.CLAUDE_SONNET),
    ("opus", Model.CLAUDE_OPUS),
    ("claude-3-haiku", Model.CLAUDE_HAIKU),
    ("gemini-3.0-flash", Model.GEMINI_3_FLASH),
    ("gemini-2.5-pro-exp", Model.GEMINI_PRO),
    ("gemini-2.5-flash-lite", Model.GEMINI_FLASH),
    ("gemini-3.1-pro", Model.GEMINI_3_PRO),
    ("llama-3", None),
    (None, None),
])
def test_resolve_model(name, expected):
    assert resolve_model(name) == expected


def test_resolve_model_allows_31_in_research_table():
    assert resolve_model("gemini-3.1-pro", RESEARCH_WORKER_MODELS) == Model.GEMINI_31_PRO
    assert resolve_model("claude-sonnet-4-5-20250929", RESEARCH_WORKER_MODELS) == Model.CLAUDE_SONNET_45


# ─────────────────────────────────────────────────────────────────────────────
# Gap analysis
# ─────────────────────────────────────────────────────────────────────────────

def test_gap_analysis_complete():
    gap = parse_gap_analysis('{"status": "complete", "reasoning": "all covered"}')
    assert gap.complete and gap.reasoning == "all covered"


def test_gap_analysis_follow_ups_capped_and_renamed():
    raw = json.dumps({
        "status": "gaps_found",
        "reasoning": "missing angles",
        "followUpQuestions": [
            {"id": f"q{i}", "question": f"Follow {i}?", "dependsOn": ["q0"]} for i in range(5)
        ],
    })
    gap = parse_gap_analysis(raw, existing_ids={"q0", "q1"})
    assert not gap.complete
    assert len(gap.follow_ups) == MAX_FOLLOW_UPS
    assert [t.id for t in gap.follow_ups] == ["followup-q0", "followup-q1", "q2"]
    assert all(t.depends_on == () for t in gap.follow_ups)


def test_gap_analysis_without_valid_follow_ups_is_complete():
    raw = '{"status": "gaps_found", "followUpQuestions": [{"id": "x"}]}'
    assert parse_gap_analysis(raw).complete


def test_gap_analysis_rejects_bad_shape():
    assert parse_gap_analysis("nonsense") is None
    assert parse_gap_analysis('{"status": "maybe"}') is None
