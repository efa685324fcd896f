"""
agent/engine.py — Persistent Per-Session Engine

One Engine per session id keeps the state that outlives a single user
message: the active plan, the specialist suspended on a question, and the
cancellation token.

    IDLE ──handle_task──► PLANNING ──direct answer──► IDLE
                              │
                              └─plan──► EXECUTING_STEP ──all steps──► TASK_FINISHED
                                          │      ▲
                               askQuestion│      │handle_user_response
                                          ▼      │
                                        AWAITING_USER

A failed or cancelled step returns the engine to IDLE. A failed step whose
failure is recoverable keeps the plan so retry() can run it again.

Every step outcome is written through SessionManager.update_session_with_log
before the turn returns.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from agent.planner import PlanDecision, PlanGenerator, ResponseMode
from agent.recovery import FailureKind, NON_RECOVERABLE, result_failure_kind
from agent.specialist_executor import SpecialistExecutor
from agent.types import (
    CancellationToken,
    NextStepType,
    Plan,
    PlanStep,
    ResumeState,
    SpecialistContext,
    SpecialistOutcome,
    SpecialistResult,
    StepStatus,
)
from brain.llm_client import LanguageModel
from exceptions import ProgrammerError
from observability.logger import get_logger
from session.manager import SessionManager
from session.models import OperationLogEntry, OperationType

log = get_logger(__name__)

TOC_SOURCE_FILE = "SRS.md"
_TOC_MAX_LINES = 80


class EngineState(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    EXECUTING_STEP = "executing_step"
    AWAITING_USER = "awaiting_user"
    TASK_FINISHED = "task_finished"


@dataclass
class StepReport:
    step_number: int
    specialist_id: str
    status: StepStatus
    message: str = ""
    iteration_count: int = 0


@dataclass
class TurnResult:
    """What one user message produced, ready for an interface to render."""
    session_id: str
    state: EngineState
    message: str
    success: bool = True
    response_mode: Optional[ResponseMode] = None
    question: Optional[str] = None
    plan: Optional[Plan] = None
    steps: list[StepReport] = field(default_factory=list)
    recoverable: Optional[bool] = None


class Engine:
    """
    Usage:
        engine = Engine(session_id, workspace, executor, planner, session_manager, model)
        turn = await engine.handle_task("Write the functional requirements")
        if turn.state == EngineState.AWAITING_USER:
            turn = await engine.handle_user_response("Yes, include offline mode")
    """

    def __init__(
        self,
        session_id: str,
        workspace: str | Path,
        executor: SpecialistExecutor,
        planner: PlanGenerator,
        session_manager: SessionManager,
        model: LanguageModel,
    ):
        self.session_id = session_id
        self.workspace = Path(workspace)
        self.executor = executor
        self.planner = planner
        self.session_manager = session_manager
        self.model = model

        self.state = EngineState.IDLE
        self.lock = asyncio.Lock()
        self.cancel_token = CancellationToken()

        self._plan: Optional[Plan] = None
        self._task: str = ""
        self._resume: Optional[ResumeState] = None
        self._previous_context: dict[str, Any] = {}
        self._last_failure: Optional[FailureKind] = None
        self._recent_turns: list[str] = []
        self._disposed = False

    # ── Public API ────────────────────────────────────────────────────────────

    async def handle_task(self, text: str) -> TurnResult:
        """Plan a new user task and run it, or answer it directly."""
        async with self._turn_scope():
            if self.state == EngineState.AWAITING_USER:
                return await self._resume_with(text)

            self.cancel_token.reset()
            self._remember("user", text)
            self._set_state(EngineState.PLANNING)
            session = await self.session_manager.get_current_session()
            decision: PlanDecision = await self.planner.generate(
                self.model,
                text,
                project_name=(session.project_name or "") if session else "",
                active_files=session.active_files if session else None,
                recent_turns=self._recent_turns[:-1],
            )

            if self.cancel_token.is_cancelled:
                self._set_state(EngineState.IDLE)
                return self._turn("Cancelled before any step ran.", success=False)

            if decision.response_mode != ResponseMode.PLAN_EXECUTION or decision.plan is None:
                self._set_state(EngineState.IDLE)
                message = decision.direct_response or ""
                self._remember("assistant", message)
                return self._turn(message, success=not decision.fallback,
                                  response_mode=decision.response_mode)

            self._plan = decision.plan
            self._task = text
            self._previous_context = {}
            self._resume = None
            await self._log(
                OperationType.AI_PLAN_GENERATED,
                f"Plan {decision.plan.plan_id} with {len(decision.plan.steps)} step(s)",
                structured_detail={
                    "plan_id": decision.plan.plan_id,
                    "description": decision.plan.description,
                    "steps": [s.specialist_id for s in decision.plan.steps],
                },
            )
            return await self._run_plan(ResponseMode.PLAN_EXECUTION)

    async def handle_user_response(self, text: str) -> TurnResult:
        """Answer the pending specialist question and continue the plan."""
        async with self._turn_scope():
            if self.state != EngineState.AWAITING_USER:
                return self._turn("There is no pending question to answer.", success=False)
            return await self._resume_with(text)

    async def retry(self) -> TurnResult:
        """Re-run the last failed step if its failure was recoverable."""
        async with self._turn_scope():
            step = self._failed_step()
            if step is None:
                return self._turn("There is no failed step to retry.", success=False)
            if self._last_failure in NON_RECOVERABLE:
                return self._turn(
                    f"Step {step.step_number} failed in a way retrying cannot fix.",
                    success=False, recoverable=False,
                )
            self.cancel_token.reset()
            step.status = StepStatus.PENDING
            await self._log(OperationType.PLAN_RESUMED, f"Retrying step {step.step_number}")
            return await self._run_plan(ResponseMode.PLAN_EXECUTION)

    def cancel(self) -> None:
        """Request cooperative cancellation of the running turn."""
        self.cancel_token.cancel()
        log.info("engine.cancel_requested", session_id=self.session_id, state=self.state.value)
        if self.state == EngineState.AWAITING_USER:
            # Nothing is running; abandon the pending question
            step = self._awaiting_step()
            if step is not None:
                step.status = StepStatus.CANCELLED
            self._resume = None
            self._plan = None
            self._set_state(EngineState.IDLE)

    def dispose(self) -> None:
        """Cancel any running work and drop all per-session state."""
        self.cancel_token.cancel()
        self._plan = None
        self._resume = None
        self._recent_turns.clear()
        self._disposed = True
        self._set_state(EngineState.IDLE)
        log.info("engine.disposed", session_id=self.session_id)

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def pending_question(self) -> Optional[str]:
        return self._resume.question if self._resume else None

    def snapshot(self) -> dict[str, Any]:
        running = self._plan.next_pending() if self._plan else None
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "task": self._task,
            "plan": self._plan.model_dump(mode="json") if self._plan else None,
            "next_step": running.step_number if running else None,
            "pending_question": self.pending_question,
            "last_failure": self._last_failure.value if self._last_failure else None,
            "disposed": self._disposed,
        }

    # ── Plan execution ────────────────────────────────────────────────────────

    async def _resume_with(self, text: str) -> TurnResult:
        self.cancel_token.reset()
        self._remember("user", text)
        await self._log(
            OperationType.USER_RESPONSE_RECEIVED,
            f"User answered: {text[:120]}",
            structured_detail={"question": self.pending_question},
        )
        return await self._run_plan(ResponseMode.PLAN_EXECUTION, user_response=text)

    async def _run_plan(self, mode: ResponseMode, user_response: Optional[str] = None) -> TurnResult:
        plan = self._plan
        reports: list[StepReport] = []

        if user_response is not None:
            step = self._awaiting_step()
            if step is None or self._resume is None:
                self._resume = None
                self._set_state(EngineState.IDLE)
                return self._turn("The question being answered is no longer pending.", success=False)
        else:
            step = plan.next_pending()

        while step is not None:
            self._set_state(EngineState.EXECUTING_STEP)
            step.status = StepStatus.RUNNING
            resume = None
            if user_response is not None:
                resume, self._resume = self._resume, None

            result, elapsed = await self._execute_step(step, resume, user_response)
            user_response = None
            report = StepReport(
                step_number=step.step_number,
                specialist_id=step.specialist_id,
                status=step.status,
                iteration_count=result.iteration_count,
            )
            reports.append(report)

            if result.outcome == SpecialistOutcome.AWAITING_USER:
                step.status = StepStatus.AWAITING_USER
                report.status = step.status
                report.message = result.question or ""
                self._resume = result.resume_state
                await self._log(
                    OperationType.USER_QUESTION_ASKED,
                    f"{step.specialist_id} asked: {(result.question or '')[:120]}",
                    structured_detail={"step": step.step_number, "specialist": step.specialist_id},
                )
                self._set_state(EngineState.AWAITING_USER)
                self._remember("assistant", result.question or "")
                return self._turn(result.question or "", question=result.question,
                                  response_mode=mode, steps=reports)

            if result.outcome == SpecialistOutcome.CANCELLED:
                step.status = StepStatus.CANCELLED
                report.status = step.status
                report.message = "cancelled"
                await self._log(
                    OperationType.PLAN_INTERRUPTED,
                    f"Step {step.step_number} ({step.specialist_id}) cancelled",
                    success=False,
                    structured_detail={"step": step.step_number, "plan_id": plan.plan_id},
                )
                self._plan = None
                self._set_state(EngineState.IDLE)
                return self._turn("Cancelled.", success=False, response_mode=mode,
                                  steps=reports, recoverable=False)

            if not result.success:
                step.status = StepStatus.FAILED
                report.status = step.status
                report.message = result.user_message or result.error or "step failed"
                self._last_failure = result_failure_kind(result)
                recoverable = self._last_failure not in NON_RECOVERABLE
                await self._log(
                    OperationType.SPECIALIST_INVOKED,
                    f"{step.specialist_id} failed: {result.error}",
                    success=False,
                    error=result.error,
                    execution_time=elapsed,
                    structured_detail={
                        "step": step.step_number,
                        "iteration_count": result.iteration_count,
                        "error_category": result.error_category,
                        "failure_kind": self._last_failure.value if self._last_failure else None,
                    },
                )
                if not recoverable:
                    self._plan = None
                self._set_state(EngineState.IDLE)
                message = f"Step {step.step_number} ({step.specialist_id}) failed: {report.message}"
                self._remember("assistant", message)
                return self._turn(message, success=False, response_mode=mode,
                                  steps=reports, recoverable=recoverable)

            step.status = StepStatus.COMPLETED
            report.status = step.status
            report.message = result.content
            self._last_failure = None
            if result.completion is not None:
                self._previous_context = dict(result.completion.context_for_next)
                self._previous_context.setdefault("previous_summary", result.completion.summary)
            await self._log(
                OperationType.SPECIALIST_INVOKED,
                f"{step.specialist_id} completed step {step.step_number}",
                execution_time=elapsed,
                structured_detail={
                    "step": step.step_number,
                    "iteration_count": result.iteration_count,
                    "next_step_type": result.structured_data.get("next_step_type")
                    if result.structured_data else None,
                },
            )

            if result.completion is not None and result.completion.next_step_type == NextStepType.TASK_FINISHED:
                break
            step = plan.next_pending()

        self._set_state(EngineState.TASK_FINISHED)
        summary = "\n".join(
            f"{r.step_number}. {r.specialist_id}: {r.message}" for r in reports if r.message
        ) or "Done."
        self._remember("assistant", summary)
        log.info("engine.plan_finished", session_id=self.session_id, plan_id=plan.plan_id,
                 steps=len(reports))
        return self._turn(summary, response_mode=mode, steps=reports)

    async def _execute_step(
        self,
        step: PlanStep,
        resume: Optional[ResumeState],
        user_response: Optional[str],
    ) -> tuple[SpecialistResult, float]:
        context = await self._step_context(step)
        if resume is None:
            log.info("engine.step_start", session_id=self.session_id,
                     step=step.step_number, specialist=step.specialist_id)
        t0 = time.monotonic()
        try:
            result = await self.executor.execute(
                step.specialist_id,
                context,
                self.model,
                cancel_token=self.cancel_token,
                resume=resume,
                user_response=user_response,
            )
        except ProgrammerError:
            step.status = StepStatus.FAILED
            self._set_state(EngineState.IDLE)
            raise
        return result, round(time.monotonic() - t0, 3)

    async def _step_context(self, step: PlanStep) -> SpecialistContext:
        session = await self.session_manager.get_current_session()
        project = (session.project_name or "") if session else ""
        base_dir = Path(session.base_dir) if session and session.base_dir else self.workspace
        base_dir.mkdir(parents=True, exist_ok=True)

        total = len(self._plan.steps) if self._plan else 1
        task = self._task
        if step.description and step.description != self._task:
            task += f"\n\nYour step ({step.step_number}/{total}): {step.description}"
        if step.relevant_context:
            task += f"\n\nRelevant context: {step.relevant_context}"

        return SpecialistContext(
            user_task=task,
            session_id=self.session_id,
            workspace=str(base_dir),
            project_name=project,
            document_toc=_document_toc(base_dir / TOC_SOURCE_FILE),
            environment={
                "workspace": str(self.workspace),
                "project_dir": str(base_dir),
                "step": f"{step.step_number}/{total}",
                "active_files": ", ".join(session.active_files) if session else "",
            },
            previous_step_context=dict(self._previous_context),
        )

    # ── Helpers ───────────────────────────────────────────────────────────────

    @asynccontextmanager
    async def _turn_scope(self):
        """One turn at a time; a turn that raises never leaves the engine mid-step."""
        async with self.lock:
            self._check_alive()
            try:
                yield
            except (Exception, asyncio.CancelledError):
                if self.state in (EngineState.PLANNING, EngineState.EXECUTING_STEP):
                    self._set_state(EngineState.IDLE)
                raise

    def _awaiting_step(self) -> Optional[PlanStep]:
        if not self._plan:
            return None
        for step in self._plan.steps:
            if step.status == StepStatus.AWAITING_USER:
                return step
        return None

    def _failed_step(self) -> Optional[PlanStep]:
        if not self._plan:
            return None
        for step in self._plan.steps:
            if step.status == StepStatus.FAILED:
                return step
        return None

    async def _log(self, op_type: OperationType, operation: str, **fields: Any) -> None:
        await self.session_manager.update_session_with_log(
            OperationLogEntry(type=op_type, operation=operation, **fields)
        )

    def _set_state(self, state: EngineState) -> None:
        if state != self.state:
            log.info("engine.state_changed", session_id=self.session_id,
                     from_state=self.state.value, to_state=state.value)
            self.state = state

    def _remember(self, role: str, text: str) -> None:
        if text:
            self._recent_turns.append(f"{role}: {text[:300]}")
            del self._recent_turns[:-12]

    def _check_alive(self) -> None:
        if self._disposed:
            raise ProgrammerError(f"Engine for session '{self.session_id}' has been disposed")

    def _turn(self, message: str, **kwargs: Any) -> TurnResult:
        return TurnResult(
            session_id=self.session_id,
            state=self.state,
            message=message,
            plan=self._plan.model_copy(deep=True) if self._plan else None,
            **kwargs,
        )


def _document_toc(path: Path) -> str:
    """Markdown headings of the main document, indented by level."""
    if not path.is_file():
        return ""
    lines = []
    in_fence = False
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        if line.startswith("```"):
            in_fence = not in_fence
            continue
        if in_fence or not line.startswith("#"):
            continue
        level = len(line) - len(line.lstrip("#"))
        title = line[level:].strip()
        if title:
            lines.append("  " * (level - 1) + f"- {title}")
        if len(lines) >= _TOC_MAX_LINES:
            break
    return "\n".join(lines)
