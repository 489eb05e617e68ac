"""
System prompts and message builders for every orchestration phase.

Prompts are plain module constants; builders assemble the per-run user
message from the request, conversation context and worker results.
"""
from __future__ import annotations

import re
from typing import Iterable, Mapping, Optional, Sequence

from .models import ChatMessage, Plan, WorkerResult, WorkerStatus

MAX_CONTEXT_MSG_CHARS = 800
MAX_CONTEXT_MESSAGES = 6

_MODEL_CATALOGUE = """\
Available worker models (strongest first):
- claude-opus-4-6: strongest Claude. Hardest coding problems, architecture, critical work.
- claude-sonnet-4-6: best speed/quality balance. Coding, analysis, general work. Default workhorse.
- claude-haiku-4-5-20251001: fastest Claude. Lookups, formatting, classification.
- gemini-3-pro-preview: strongest Gemini, extended thinking. Deep analysis, nuanced reasoning, coding.
- gemini-3-flash-preview: fast thinking model. Good reasoning at low latency.
- gemini-2.5-pro: research, long-context analysis, technical documentation.
- gemini-2.5-flash: fastest Gemini. Summaries, translation, simple tasks."""

_PLAN_SCHEMA = """\
{
  "reasoning": "1-2 sentences",
  "tasks": [
    {
      "id": "task-1",
      "description": "Short human-readable description",
      "model": "claude-sonnet-4-6",
      "prompt": "The exact, self-contained prompt for this worker",
      "priority": "critical",
      "dependsOn": []
    }
  ],
  "synthesisHint": "How to merge the results"
}"""

COMMANDER_PLANNING_PROMPT = f"""You are a planning agent that coordinates several language models working in parallel. Read the intent behind the request, decide how much depth it needs and split it into focused sub-tasks, each handed to the model best suited for it.

{_MODEL_CATALOGUE}

Model selection:
- Creation (code, features, architecture, hard problems): premium models only.
- Analysis (deep review, careful evaluation): claude-sonnet-4-6 or gemini-3-pro-preview.
- Research (web search, documentation lookup): gemini-2.5-pro or gemini-3-flash-preview.
- Auxiliary (formatting, classification, short summaries): claude-haiku-4-5-20251001 or gemini-2.5-flash.

Rules:
1. Output ONLY valid JSON matching the schema below. No markdown fences, no prose outside the JSON.
2. Create 1-7 tasks. A simple question that gains nothing from parallel work gets a single task.
3. Every prompt must be self-contained. Workers see nothing from other tasks unless linked with "dependsOn", in which case they receive the parent task's output as context.
4. Use "dependsOn" only when a task genuinely needs another task's result. Independent tasks run in parallel.
5. Mark a task "critical" when the final answer cannot be produced without it.
6. Keep it short: reasoning in 1-2 sentences, each prompt 2-5 sentences, whole document under 4000 characters.
7. Scope each task to something one worker can finish in a single response.

Schema:
{_PLAN_SCHEMA}"""

COMMANDER_BUILD_PLANNING_PROMPT = f"""You are a planning agent in BUILD MODE. Split the build into exactly two parallel workers, one Claude and one Gemini, with strictly separate file ownership. No file may be assigned to both.

Workers:
- claude-sonnet-4-6: coding, UI components, complex logic, architecture.
- gemini-3-pro-preview: coding, algorithms, data processing, system design.

Rules:
1. Output ONLY valid JSON matching the schema below. No markdown fences.
2. Create EXACTLY 2 tasks, one per worker. A trivial build (1-2 files) may use a single task.
3. Each prompt must list the exact files to create or modify. Zero overlap between tasks.
4. Each prompt is self-contained; workers do not see each other's tasks.
5. Mark every task "critical".
6. Prompts are 3-6 sentences. Workers run in the project directory with full file access.
7. The synthesisHint should ask for a report of what was built and which files changed.

Schema:
{_PLAN_SCHEMA}"""

COMMANDER_SYNTHESIS_PROMPT = """You are merging the work of several models that each tackled part of one request. Produce a single answer in which their perspectives inform each other, not a patchwork of outputs.

Rules:
1. Write one unified, natural response as if a single expert had answered.
2. Never mention multiple models, workers or tasks.
3. Resolve contradictions in favour of the more detailed and accurate perspective.
4. If a part failed, work around it gracefully with what is available.
5. Be direct and specific. Avoid generic filler.
6. If every part failed, say plainly that the request could not be completed."""

RESEARCH_WORKER_PROMPT = """You are a research worker. Investigate one specific question thoroughly using web search and page reading.

Method:
1. Run 2-3 searches from different angles.
2. Read the 2-3 most authoritative pages in full.
3. Extract key facts, figures and expert statements with attribution.
4. If results are thin, refine the query or follow links from good sources.

Output:
- Dense findings, roughly 500-800 words, bullets and short paragraphs.
- Inline citations as [Source: full-url] using complete URLs, not bare domains.
- Prefer recent, authoritative sources and concrete numbers and dates.
- When sources disagree, report both positions with their sources.
- Do not pad."""

RESEARCH_GAP_PROMPT = """You are a research quality analyst. Review the findings from several research workers and decide whether critical gaps remain.

Output ONLY valid JSON:
{
  "status": "complete" | "gaps_found",
  "reasoning": "Short assessment",
  "followUpQuestions": [
    {
      "id": "f1",
      "question": "The specific gap to research",
      "searchQuery": "Search query for this gap",
      "model": "gemini-2.5-pro",
      "priority": "critical"
    }
  ]
}

Rules:
1. Answer "complete" when the findings cover the topic adequately. Do not invent follow-ups.
2. Only raise genuine gaps: missing perspectives, unresolved contradictions, uncovered aspects.
3. At most 3 follow-up questions.
4. Do not revisit topics that are already well covered."""

RESEARCH_SYNTHESIS_PROMPT = """You are a research synthesis expert. Compile the findings into a clean, well-structured report.

Structure:
## Executive Summary
3-5 sentences with the most important takeaways.

## <Thematic sections>
Organised by theme, not by source. Short paragraphs separated by blank lines.

## Key Findings
5-10 actionable bullet points.

## Sources
Numbered list: [Domain](https://full-url) with a brief description.

Rules:
1. Merge overlapping findings into themes. Do not concatenate.
2. Cite inline as [1], [2] matching the Sources list.
3. Note both sides of contradictions and flag weak evidence.
4. Keep specific numbers, dates and statistics.
5. Never mention workers, sub-questions or the research process.
6. Professional, objective tone. Thorough but readable."""

_RESEARCH_PLAN_SCHEMA = """\
{
  "reasoning": "Why these questions cover the topic",
  "questions": [
    {
      "id": "q1",
      "question": "The specific sub-question",
      "searchQuery": "concise search-engine query",
      "model": "gemini-2.5-pro",
      "priority": "critical",
      "dependsOn": []
    }
  ]
}"""


def build_research_planning_prompt(question_range: Optional[str], max_questions: int) -> str:
    if question_range:
        count = f"Create exactly {question_range} sub-questions."
    else:
        count = (
            "Create as many sub-questions as the topic needs: simple topics 4-5, "
            f"complex multi-faceted topics 8-12. Maximum {max_questions}."
        )
    return f"""You are a research planning agent. Decompose the user's query into focused sub-questions that together give a comprehensive answer.

Available worker models (all can search the web):
- gemini-2.5-flash: fast fact-finding. Use for most questions.
- gemini-2.5-pro: deep research on complex or technical topics. Lower rate limits.
- gemini-3-flash-preview: fast model with extended thinking.
- gemini-3-pro-preview: deepest Gemini reasoning. Strict rate limits, at most 2 questions.
- gemini-3.1-pro-preview: newest Gemini preview. Critical questions only.
- claude-sonnet-4-6: strong all-rounder for analysis and nuanced writing.
- claude-haiku-4-5-20251001: fastest, for simple lookups.

Output ONLY valid JSON matching this schema. No markdown fences.

{_RESEARCH_PLAN_SCHEMA}

Rules:
1. {count} Each must be self-contained and specific.
2. Search queries are short keyword queries, not sentences.
3. Mark a question "critical" when the report cannot be complete without it.
4. Cover different angles: facts, comparisons, expert opinion, recent developments, practical implications.
5. Spread load: no more than 2-3 questions on any single Pro model.
6. Use "dependsOn" only when a question needs another's findings; dependent questions receive them as context."""


# ─────────────────────────────────────────────────────────────────────────────
# Intent detection
# ─────────────────────────────────────────────────────────────────────────────

_BUILD_VERB_RE = re.compile(
    r"\b(build|create|implement|scaffold|generate|develop|make|set\s*up|write)\b"
)
_CODE_ARTIFACT_RE = re.compile(
    r"\b(app|application|component|page|feature|project|website|site|dashboard|api|"
    r"service|module|game|tool|system|engine|ui|interface|function|class|library|"
    r"endpoint|route|hook|form|modal|dialog|panel|widget|layout|theme|plugin|server|"
    r"client|database|schema|migration|test|spec)\b"
)


def is_build_intent(message: str) -> bool:
    """A build verb together with a code artifact ("write a poem" does not count)."""
    lower = message.lower()
    return bool(_BUILD_VERB_RE.search(lower) and _CODE_ARTIFACT_RE.search(lower))


# ─────────────────────────────────────────────────────────────────────────────
# Message builders
# ─────────────────────────────────────────────────────────────────────────────

def truncate_context_messages(
    messages: Iterable[ChatMessage],
    max_chars: int = MAX_CONTEXT_MSG_CHARS,
    max_messages: int = MAX_CONTEXT_MESSAGES,
) -> str:
    turns = [m for m in messages if m.role in ("user", "assistant")][-max_messages:]
    lines = []
    for m in turns:
        prefix = "User" if m.role == "user" else "Assistant"
        content = m.content
        if len(content) > max_chars:
            content = content[:max_chars] + "... [truncated]"
        lines.append(f"{prefix}: {content}")
    return "\n".join(lines)


def build_planning_message(user_message: str, context: str = "", label: str = "User's current message") -> str:
    parts = []
    if context:
        parts.append(f"[Conversation context]\n{context}\n\n")
    parts.append(f"[{label}]\n{user_message}")
    return "".join(parts)


def build_research_question_prompt(question: str, search_query: str = "") -> str:
    lines = [
        "Research the following question thoroughly:",
        "",
        f"**Question:** {question}",
    ]
    if search_query:
        lines += ["", f"**Suggested search query:** {search_query}"]
    lines += [
        "",
        "Search the web for authoritative sources and read them in full. "
        "Return detailed findings with [Source: full-url] citations.",
    ]
    return "\n".join(lines)


def _format_result(result: WorkerResult, label: str, clean=None) -> str:
    if result.status == WorkerStatus.ERROR:
        return f"## {label} ({result.model.value}): FAILED\nError: {result.error or 'Unknown error'}"
    tag = " (partial, worker timed out)" if result.status == WorkerStatus.PARTIAL else ""
    content = clean(result.content) if clean else result.content
    return f"## {label} ({result.model.value}){tag}\n{content}"


def build_synthesis_message(
    user_message: str,
    plan: Plan,
    results: Sequence[WorkerResult],
    clean=None,
) -> str:
    """Usable outputs and failures alike; failures are marked so synthesis can work around them."""
    blocks = []
    for r in results:
        task = plan.task(r.task_id)
        label = f"Task {r.task_id}: {task.description}" if task else f"Task {r.task_id}"
        blocks.append(_format_result(r, label, clean))
    formatted = "\n\n---\n\n".join(blocks)
    return (
        f"Original user message: {user_message}\n\n"
        f"Plan reasoning: {plan.reasoning}\n"
        f"Synthesis instructions: {plan.synthesis_hint}\n\n"
        f"Worker results:\n{formatted}\n\n"
        "Synthesize these into a single coherent response."
    )


def build_gap_analysis_message(
    original_query: str,
    plan: Plan,
    results: Sequence[WorkerResult],
    clean=None,
) -> str:
    findings = []
    for r in results:
        if r.has_usable_content:
            content = clean(r.content) if clean else r.content
            findings.append(f"## {r.task_id}\n{content}")
        else:
            findings.append(f"## {r.task_id}: FAILED\n{r.error or 'No output'}")
    questions = "\n".join(f"- {t.id}: {t.description}" for t in plan.tasks)
    return (
        f"Original research query: {original_query}\n\n"
        f"Research plan: {plan.reasoning}\n\n"
        f"Sub-questions researched:\n{questions}\n\n"
        "Findings:\n" + "\n\n---\n\n".join(findings) + "\n\n"
        "Evaluate whether these findings comprehensively answer the original "
        "query, or if critical gaps remain."
    )


def format_results_for_log(results: Mapping[str, WorkerResult]) -> str:
    return ", ".join(f"{tid}={r.status.value}" for tid, r in results.items())
