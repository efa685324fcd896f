"""
agent/types.py — Specialist Loop Data Models

Records exchanged between the specialist loop, the prompt engine and
the persistent engine. Persisted/serialised records are pydantic models;
the cancellation token is runtime-only.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from exceptions import CancelledByUserError


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ─────────────────────────────────────────────────────────────────────────────
# Thought records
# ─────────────────────────────────────────────────────────────────────────────


class ThinkingType(str, Enum):
    PLANNING = "planning"
    ANALYSIS = "analysis"
    SYNTHESIS = "synthesis"
    REFLECTION = "reflection"
    DERIVATION = "derivation"


class ThoughtRecord(BaseModel):
    """A specialist's explicit working-memory artifact."""
    thinking_type: ThinkingType
    context: str = ""
    content: dict[str, Any] = Field(default_factory=dict)
    next_steps: list[str] = Field(default_factory=list)
    timestamp: str = Field(default_factory=utc_now_iso)


# ─────────────────────────────────────────────────────────────────────────────
# Completion signal
# ─────────────────────────────────────────────────────────────────────────────


class NextStepType(str, Enum):
    CONTINUE_SAME_SPECIALIST = "CONTINUE_SAME_SPECIALIST"
    HANDOFF_TO_SPECIALIST = "HANDOFF_TO_SPECIALIST"
    TASK_FINISHED = "TASK_FINISHED"


class TaskCompletionSignal(BaseModel):
    """The only valid way a specialist ends a turn."""
    next_step_type: NextStepType
    summary: str = ""
    context_for_next: dict[str, Any] = Field(default_factory=dict)

    @property
    def ends_specialist(self) -> bool:
        return self.next_step_type != NextStepType.CONTINUE_SAME_SPECIALIST


# ─────────────────────────────────────────────────────────────────────────────
# Specialist history
# ─────────────────────────────────────────────────────────────────────────────


class HistoryKind(str, Enum):
    TOOL_RESULT = "tool_result"
    USER_RESPONSE = "user_response"
    FEEDBACK = "feedback"       # malformed action, continue-same summary
    STEERING = "steering"       # corrective hint after output_limit / config


class HistoryEntry(BaseModel):
    iteration: int
    kind: HistoryKind = HistoryKind.TOOL_RESULT
    content: str = ""
    tool_name: Optional[str] = None
    success: Optional[bool] = None
    thought: Optional[ThoughtRecord] = None


# ─────────────────────────────────────────────────────────────────────────────
# Specialist execution context + result
# ─────────────────────────────────────────────────────────────────────────────


class SpecialistContext(BaseModel):
    """Everything a specialist run needs besides the model and the tools."""
    user_task: str
    session_id: str = ""
    workspace: str = ""
    project_name: str = ""
    latest_user_response: str = ""
    document_toc: str = ""
    chapter_template: str = ""
    environment: dict[str, Any] = Field(default_factory=dict)
    variables: dict[str, str] = Field(default_factory=dict)
    previous_step_context: dict[str, Any] = Field(default_factory=dict)


class ResumeState(BaseModel):
    """Snapshot a suspended specialist resumes from after the user replies."""
    specialist_id: str
    iteration_count: int
    history: list[HistoryEntry] = Field(default_factory=list)
    thoughts: list[ThoughtRecord] = Field(default_factory=list)
    question: str = ""


class SpecialistOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    AWAITING_USER = "awaiting_user"


class SpecialistResult(BaseModel):
    success: bool
    content: str = ""
    structured_data: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_category: Optional[str] = None
    user_message: Optional[str] = None
    iteration_count: int = 0
    outcome: SpecialistOutcome = SpecialistOutcome.COMPLETED
    completion: Optional[TaskCompletionSignal] = None
    question: Optional[str] = None
    resume_state: Optional[ResumeState] = None


# ─────────────────────────────────────────────────────────────────────────────
# Plans
# ─────────────────────────────────────────────────────────────────────────────


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    AWAITING_USER = "awaiting_user"


class PlanStep(BaseModel):
    step_number: int
    specialist_id: str
    description: str
    status: StepStatus = StepStatus.PENDING
    relevant_context: str = ""


class Plan(BaseModel):
    plan_id: str
    description: str = ""
    steps: list[PlanStep] = Field(default_factory=list)

    def next_pending(self) -> Optional[PlanStep]:
        for step in self.steps:
            if step.status == StepStatus.PENDING:
                return step
        return None

    @property
    def is_complete(self) -> bool:
        return all(s.status == StepStatus.COMPLETED for s in self.steps)


# ─────────────────────────────────────────────────────────────────────────────
# Cooperative cancellation
# ─────────────────────────────────────────────────────────────────────────────


class CancellationToken:
    """
    Cooperative cancel flag. Checked between iterations and around tool
    execution; in-flight model/tool calls always run to completion.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.requested_at: Optional[float] = None

    def cancel(self) -> None:
        if not self._event.is_set():
            self.requested_at = time.monotonic()
        self._event.set()

    def reset(self) -> None:
        self._event.clear()
        self.requested_at = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise CancelledByUserError("cancelled by user")
