"""
prompts/assembly.py — Prompt Assembly Engine

Renders the fixed ten-section specialist prompt:

    0  previous thoughts           5  chapter template
    1  specialist instructions     6  dynamic context + history
    2  current task                7  tool usage guidelines
    3  latest user response        8  tool schema
    4  document table of contents  9  final instruction (one JSON object)

Either the whole prompt renders or PromptAssemblyError is raised; no
partial prompt ever reaches the model.
"""

from __future__ import annotations

import json
from typing import Iterable, Optional

from agent.action_parser import RESERVED_TOOL_SCHEMAS
from agent.specialist_registry import SpecialistCategory, SpecialistDefinition
from agent.types import HistoryEntry, SpecialistContext, ThoughtRecord
from exceptions import PromptAssemblyError
from observability.logger import get_logger
from prompts.history import HistoryCompressor
from prompts.templates import TemplateLoader, substitute
from prompts.thoughts import format_thoughts, separate_thoughts, sort_newest_first
from tools.types import ToolSchema

log = get_logger(__name__)

SECTION_TITLES = (
    "PREVIOUS THOUGHTS",
    "SPECIALIST INSTRUCTIONS",
    "CURRENT TASK",
    "LATEST USER RESPONSE",
    "CURRENT DOCUMENT TABLE OF CONTENTS",
    "CHAPTER TEMPLATE",
    "DYNAMIC CONTEXT",
    "TOOL USAGE GUIDELINES",
    "TOOL SCHEMA",
    "FINAL INSTRUCTION",
)

_TOOL_GUIDELINES = """\
- Call exactly one tool per reply. Read before you write.
- A failed tool result is feedback: adjust the arguments or approach, do not repeat it blindly.
- Use askQuestion only when the task cannot proceed without the user's input.
- Use taskComplete to end your turn:
  CONTINUE_SAME_SPECIALIST to keep working next round,
  HANDOFF_TO_SPECIALIST when your part is done,
  TASK_FINISHED when the whole task is done.
- Put working notes in the optional "thought" field, never inside file content."""

_FINAL_INSTRUCTION = """\
Reply with exactly ONE JSON object and nothing else (no prose, no markdown fences):
{
  "thought": {"thinking_type": "planning|analysis|synthesis|reflection|derivation",
              "context": "...", "content": {...}, "next_steps": ["..."]},
  "tool_call": {"name": "<tool name>", "args": {...}}
}
"thought" is optional. "tool_call" is required and selects exactly one tool."""


def _or_placeholder(text: str, placeholder: str) -> str:
    return text.strip() if text and text.strip() else placeholder


class PromptAssemblyEngine:
    """
    Usage:
        engine = PromptAssemblyEngine.from_settings(settings)
        prompt = engine.assemble(definition, context, history, thoughts, tool_schemas)
    """

    def __init__(self, loader: TemplateLoader, compressor: HistoryCompressor):
        self.loader = loader
        self.compressor = compressor

    @classmethod
    def from_settings(cls, settings) -> "PromptAssemblyEngine":
        return cls(
            loader=TemplateLoader(settings.prompts.templates_dir),
            compressor=HistoryCompressor.from_config(settings.history),
        )

    def assemble(
        self,
        definition: SpecialistDefinition,
        context: SpecialistContext,
        history: Iterable[HistoryEntry] = (),
        thoughts: Iterable[ThoughtRecord] = (),
        tool_schemas: Iterable[ToolSchema] = (),
    ) -> str:
        try:
            base_fragments = self.loader.load_base(definition)
            specialist_template = self.loader.load_specialist(definition)
        except OSError as e:
            log.error(
                "prompt.assembly_failed",
                specialist=definition.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise PromptAssemblyError(f"prompt assembly failed: {e}") from e

        variables = self._variables(definition, context)

        inline_thoughts, tool_history = separate_thoughts(history)
        all_thoughts = _dedupe(list(thoughts) + inline_thoughts)

        instructions = "\n\n".join(
            [substitute(text, variables) for _, text in base_fragments]
            + [substitute(specialist_template, variables)]
        )

        task = context.user_task.strip()
        if context.previous_step_context:
            task += "\n\nContext from the previous step:\n" + json.dumps(
                context.previous_step_context, ensure_ascii=False, indent=2
            )

        env_lines = [f"- {k}: {v}" for k, v in sorted(context.environment.items())]
        history_text = self.compressor.render(tool_history)
        dynamic = "\n".join(
            [
                "## Environment",
                "\n".join(env_lines) if env_lines else "(none)",
                "",
                "## Iterative History (newest first)",
                _or_placeholder(history_text, "(no history yet)"),
            ]
        )

        schemas = list(tool_schemas) + list(RESERVED_TOOL_SCHEMAS)
        schema_text = json.dumps(
            [s.to_prompt_schema() for s in schemas], ensure_ascii=False, indent=2
        )

        sections = [
            _or_placeholder(format_thoughts(all_thoughts), "(no previous thoughts)"),
            instructions,
            task,
            _or_placeholder(context.latest_user_response, "(no user response)"),
            _or_placeholder(context.document_toc, "(document not created yet)"),
            _or_placeholder(substitute(context.chapter_template, variables), "(no chapter template)"),
            dynamic,
            _TOOL_GUIDELINES,
            schema_text,
            _FINAL_INSTRUCTION,
        ]

        prompt = "\n\n".join(
            f"# {i}. {title}\n\n{body}" for i, (title, body) in enumerate(zip(SECTION_TITLES, sections))
        )
        log.debug(
            "prompt.assembled",
            specialist=definition.id,
            chars=len(prompt),
            thoughts=len(all_thoughts),
            history_entries=len(tool_history),
        )
        return prompt

    @staticmethod
    def _variables(definition: SpecialistDefinition, context: SpecialistContext) -> dict[str, str]:
        variables = {
            "SPECIALIST_ID": definition.id,
            "SPECIALIST_CATEGORY": SpecialistCategory(definition.category).value,
            "USER_TASK": context.user_task,
            "PROJECT_NAME": context.project_name,
            "WORKSPACE": context.workspace,
            "SESSION_ID": context.session_id,
        }
        variables.update({k: str(v) for k, v in context.environment.items()})
        variables.update(context.variables)
        return variables


def _dedupe(thoughts: list[ThoughtRecord]) -> list[ThoughtRecord]:
    seen: set[str] = set()
    unique: list[ThoughtRecord] = []
    for t in thoughts:
        key = t.model_dump_json()
        if key in seen:
            continue
        seen.add(key)
        unique.append(t)
    return sort_newest_first(unique)


def section_of(prompt: str, index: int) -> Optional[str]:
    """Body of section `index` in a rendered prompt, for diagnostics and tests."""
    header = f"# {index}. {SECTION_TITLES[index]}\n\n"
    start = prompt.find(header)
    if start == -1:
        return None
    start += len(header)
    if index + 1 < len(SECTION_TITLES):
        end = prompt.find(f"\n\n# {index + 1}. {SECTION_TITLES[index + 1]}", start)
    else:
        end = len(prompt)
    return prompt[start:end if end != -1 else len(prompt)]
