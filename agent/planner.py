"""
agent/planner.py — Plan Generator

Triage step in front of every user turn. One model call decides how to
answer:

    PLAN_EXECUTION   ordered list of specialist steps for the Engine to run
    KNOWLEDGE_QA     direct answer about requirements engineering / the project
    GENERAL_CHAT     direct conversational reply

Any reply that cannot be turned into a valid decision (bad JSON, empty
plan, unknown or disabled specialist, transport failure) becomes a
GENERAL_CHAT apology, so planning never raises.
"""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from agent.specialist_registry import SpecialistCategory, SpecialistRegistry
from agent.types import Plan, PlanStep
from brain.error_classifier import classify
from brain.llm_client import LanguageModel, collect_text
from brain.types import Message, ModelOptions
from exceptions import PlanError
from observability.logger import get_logger

log = get_logger(__name__)

FALLBACK_APOLOGY = (
    "Sorry, I could not work out how to handle that request. "
    "Could you rephrase it or describe the change you want in the document?"
)

_PLAN_SYSTEM = """\
You are the orchestrator of a requirements-engineering assistant that writes
Software Requirements Specifications with a team of specialists.
Decide how to answer the user's latest message.

Response modes:
- PLAN_EXECUTION: the request needs documents created or changed. Return an
  ordered plan of specialist steps.
- KNOWLEDGE_QA: a question about requirements engineering or the current project
  that you can answer directly.
- GENERAL_CHAT: greetings and small talk.

Available specialists:
{specialists}

Return ONLY valid JSON — no markdown fences, no explanation.

Required format:
{{"thought": "...",
  "response_mode": "PLAN_EXECUTION | KNOWLEDGE_QA | GENERAL_CHAT",
  "direct_response": "answer text, or null for PLAN_EXECUTION",
  "execution_plan": {{"plan_id": "...", "description": "...",
                      "steps": [{{"step": 1, "specialist": "<id>", "description": "...",
                                  "relevant_context": "..."}}]}} or null}}"""


class ResponseMode(str, Enum):
    PLAN_EXECUTION = "PLAN_EXECUTION"
    KNOWLEDGE_QA = "KNOWLEDGE_QA"
    GENERAL_CHAT = "GENERAL_CHAT"


@dataclass
class PlanDecision:
    response_mode: ResponseMode
    thought: str = ""
    direct_response: Optional[str] = None
    plan: Optional[Plan] = None
    fallback: bool = False
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def apology(cls, message: str = FALLBACK_APOLOGY) -> "PlanDecision":
        return cls(response_mode=ResponseMode.GENERAL_CHAT, direct_response=message, fallback=True)

    def __repr__(self) -> str:
        steps = len(self.plan.steps) if self.plan else 0
        return f"<PlanDecision mode={self.response_mode.value} steps={steps} fallback={self.fallback}>"


class PlanGenerator:
    """Uses the LLM to route a user message and, when needed, plan it."""

    def __init__(self, registry: SpecialistRegistry, options: Optional[ModelOptions] = None):
        self.registry = registry
        base = options or ModelOptions()
        # Low temperature for deterministic plans
        self._options = base.model_copy(update={"temperature": 0.2, "stream": False})

    async def generate(
        self,
        model: LanguageModel,
        user_message: str,
        *,
        project_name: str = "",
        active_files: Optional[list[str]] = None,
        recent_turns: Optional[list[str]] = None,
    ) -> PlanDecision:
        system = _PLAN_SYSTEM.format(specialists=self._specialist_list())

        user_content = f"User message: {user_message}"
        if project_name:
            user_content += f"\n\nCurrent project: {project_name}"
        if active_files:
            user_content += "\nActive files: " + ", ".join(active_files[:20])
        if recent_turns:
            user_content += "\n\nRecent conversation:\n" + "\n".join(recent_turns[-6:])

        log.info("planner.generate", message=user_message[:80], project=project_name)
        try:
            reply = await model.send_request(
                [Message.system(system), Message.user(user_content)], self._options
            )
            content = await collect_text(reply)
        except Exception as e:
            classification = classify(e)
            log.warning(
                "planner.generate_failed",
                error=str(e),
                error_type=type(e).__name__,
                category=classification.category.value,
            )
            return PlanDecision.apology(classification.user_message)

        try:
            decision = self.parse(content)
        except PlanError as e:
            log.warning("planner.parse_failed", error=str(e), raw=content[:200])
            return PlanDecision.apology()

        log.info("planner.decided", mode=decision.response_mode.value,
                 steps=len(decision.plan.steps) if decision.plan else 0)
        return decision

    # ── Parsers ───────────────────────────────────────────────────────────────

    def parse(self, content: str) -> PlanDecision:
        """Validate a raw planner reply. Raises PlanError."""
        text = _strip_fences(content)
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            match = re.search(r"\{.*\}", text, re.DOTALL)
            if not match:
                raise PlanError("planner reply contains no JSON object")
            try:
                data = json.loads(match.group(0))
            except json.JSONDecodeError as e:
                raise PlanError(f"planner reply is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise PlanError("planner reply must be a JSON object")

        try:
            mode = ResponseMode(str(data.get("response_mode", "")).upper())
        except ValueError:
            raise PlanError(f"unknown response_mode: {data.get('response_mode')!r}")

        thought = str(data.get("thought") or "")
        if mode != ResponseMode.PLAN_EXECUTION:
            direct = data.get("direct_response")
            if not isinstance(direct, str) or not direct.strip():
                raise PlanError(f"{mode.value} reply has no direct_response")
            return PlanDecision(response_mode=mode, thought=thought,
                                direct_response=direct.strip(), raw=data)

        return PlanDecision(
            response_mode=mode,
            thought=thought,
            direct_response=data.get("direct_response") or None,
            plan=self._parse_plan(data.get("execution_plan")),
            raw=data,
        )

    def _parse_plan(self, raw: Any) -> Plan:
        if not isinstance(raw, dict):
            raise PlanError("PLAN_EXECUTION reply has no execution_plan")
        raw_steps = raw.get("steps")
        if not isinstance(raw_steps, list) or not raw_steps:
            raise PlanError("execution_plan has no steps")

        steps: list[PlanStep] = []
        for i, item in enumerate(raw_steps, start=1):
            if not isinstance(item, dict):
                raise PlanError(f"plan step {i} is not an object")
            specialist_id = str(item.get("specialist") or item.get("specialist_id") or "")
            definition = self.registry.get_specialist(specialist_id)
            if definition is None or not definition.enabled:
                raise PlanError(f"plan step {i} names unknown or disabled specialist {specialist_id!r}")
            steps.append(PlanStep(
                step_number=i,
                specialist_id=specialist_id,
                description=str(item.get("description") or specialist_id),
                relevant_context=str(item.get("relevant_context") or ""),
            ))

        return Plan(
            plan_id=str(raw.get("plan_id") or raw.get("planId") or uuid.uuid4().hex[:12]),
            description=str(raw.get("description") or ""),
            steps=steps,
        )

    def _specialist_list(self) -> str:
        lines = []
        for d in self.registry.list_specialists():
            if not d.enabled:
                continue
            desc = f": {d.description}" if d.description else ""
            lines.append(f"- {d.id} ({SpecialistCategory(d.category).value}){desc}")
        return "\n".join(lines) if lines else "(none)"


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        lines = text.splitlines()
        end = len(lines) - 1 if lines[-1].strip() == "```" else len(lines)
        text = "\n".join(lines[1:end])
    return text.strip()
