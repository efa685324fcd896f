"""
agent/specialist_executor.py — Specialist Executor

Runs one specialist's bounded loop:

    assemble prompt → call model → parse one action → run tool → record
        └─ until taskComplete (≠ CONTINUE_SAME_SPECIALIST), askQuestion,
           cancellation, a terminal model failure, or the iteration budget
           runs out ("max iterations reached").

Model failures are classified by brain.error_classifier and retried
in place with backoff base * 2^(retry-1); a retry re-sends the same
logical iteration and never takes a new iteration slot. Empty replies are
their own failure class with their own small retry limit. output_limit
and config failures put one steering hint at the top of the history.

Tool calls pass through a LoopDetector. An exact repeat of the call that
just succeeded is not run again; `loop_strikes` repeats in a row end the
run as a "loop_detected" failure. Each specialist only sees, and may only
call, the tools on its `allowed_tools` list when it has one.

execute() returns a SpecialistResult for every runtime failure. It only
raises for caller mistakes (unknown or disabled specialist id).
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

from agent.action_parser import RECORD_THOUGHT, parse_action
from agent.specialist_registry import (
    IterationBudgets,
    SpecialistDefinition,
    SpecialistRegistry,
    require_specialist,
)
from agent.loop_detector import LoopDetector
from agent.types import (
    CancellationToken,
    HistoryEntry,
    HistoryKind,
    ResumeState,
    SpecialistContext,
    SpecialistOutcome,
    SpecialistResult,
)
from brain.error_classifier import ErrorCategory, classify
from brain.llm_client import LanguageModel, collect_text
from brain.types import Message, ModelOptions
from exceptions import (
    ActionParseError,
    CancelledByUserError,
    EmptyResponseError,
    PromptAssemblyError,
    ToolExecutionError,
)
from observability.logger import get_logger
from prompts.assembly import PromptAssemblyEngine
from prompts.thoughts import ThoughtLog
from tools.types import CallerContext, ToolExecutor, ToolResult

log = get_logger(__name__)

MAX_ITERATIONS_ERROR = "max iterations reached"
EMPTY_RESPONSE_CATEGORY = "empty_response"
LOOP_CATEGORY = "loop_detected"

_STEERING_HINTS = {
    ErrorCategory.OUTPUT_LIMIT: (
        "Your previous reply was too long. Plan the structure first, then fill "
        "sections incrementally: one small edit per reply."
    ),
    ErrorCategory.CONFIG: (
        "The previous request exceeded the model's context or token limit. Work on a "
        "smaller piece: plan the structure first, then fill sections incrementally."
    ),
}

_RESULT_PREVIEW_CHARS = 2_000


class _Failure:
    """Terminal outcome of one model call, retries included."""

    def __init__(self, error: str, category: str, user_message: str):
        self.error = error
        self.category = category
        self.user_message = user_message


class SpecialistExecutor:
    """
    Usage:
        executor = SpecialistExecutor(registry, budgets, prompt_engine, tool_bus)
        result = await executor.execute("fr_writer", context, model)
    """

    def __init__(
        self,
        registry: SpecialistRegistry,
        budgets: IterationBudgets,
        prompt_engine: PromptAssemblyEngine,
        tool_executor: ToolExecutor,
        *,
        model_options: Optional[ModelOptions] = None,
        backoff_base_seconds: float = 1.0,
        empty_response_retries: int = 3,
        loop_strikes: int = 3,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.registry = registry
        self.budgets = budgets
        self.prompt_engine = prompt_engine
        self.tool_executor = tool_executor
        self.model_options = model_options or ModelOptions()
        self.backoff_base_seconds = backoff_base_seconds
        self.empty_response_retries = empty_response_retries
        self.loop_strikes = loop_strikes
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings,
        registry: SpecialistRegistry,
        tool_executor: ToolExecutor,
        prompt_engine: Optional[PromptAssemblyEngine] = None,
    ) -> "SpecialistExecutor":
        return cls(
            registry=registry,
            budgets=IterationBudgets(settings.iterations),
            prompt_engine=prompt_engine or PromptAssemblyEngine.from_settings(settings),
            tool_executor=tool_executor,
            model_options=ModelOptions(
                model=settings.llm.default_model,
                temperature=settings.llm.temperature,
                max_tokens=settings.llm.max_tokens,
                stream=settings.llm.stream,
            ),
            backoff_base_seconds=settings.retry.backoff_base_seconds,
            empty_response_retries=settings.retry.empty_response_retries,
        )

    # ── Public API ────────────────────────────────────────────────────────────

    async def execute(
        self,
        specialist_id: str,
        context: SpecialistContext,
        model: LanguageModel,
        *,
        cancel_token: Optional[CancellationToken] = None,
        resume: Optional[ResumeState] = None,
        user_response: Optional[str] = None,
    ) -> SpecialistResult:
        definition = require_specialist(self.registry, specialist_id)
        max_iterations = self.budgets.max_iterations(definition)
        cancel_token = cancel_token or CancellationToken()

        history: list[HistoryEntry] = list(resume.history) if resume else []
        thoughts = ThoughtLog(resume.thoughts if resume else None)
        iteration = resume.iteration_count if resume else 0
        loops = LoopDetector(self.loop_strikes)

        if user_response is not None:
            history.append(HistoryEntry(
                iteration=iteration,
                kind=HistoryKind.USER_RESPONSE,
                content=user_response,
            ))
            context = context.model_copy(update={"latest_user_response": user_response})

        log.info(
            "specialist.start",
            specialist=specialist_id,
            max_iterations=max_iterations,
            resumed=resume is not None,
            start_iteration=iteration,
            allowed_tools=definition.allowed_tools,
        )

        try:
            while iteration < max_iterations:
                cancel_token.raise_if_cancelled()

                iteration += 1
                log.info("specialist.iteration_start", specialist=specialist_id, iteration=iteration)

                outcome = await self._call_model(definition, context, model, history, thoughts, cancel_token)
                if isinstance(outcome, _Failure):
                    log.error(
                        "specialist.failed",
                        specialist=specialist_id,
                        iteration=iteration,
                        category=outcome.category,
                        error=outcome.error,
                    )
                    return SpecialistResult(
                        success=False,
                        error=outcome.error,
                        error_category=outcome.category,
                        user_message=outcome.user_message,
                        iteration_count=iteration,
                        outcome=SpecialistOutcome.FAILED,
                    )
                text = outcome

                # ── Parse exactly one action ──────────────────────────────────
                try:
                    action = parse_action(text)
                except ActionParseError as e:
                    log.warning("specialist.malformed_action", specialist=specialist_id,
                                iteration=iteration, error=str(e))
                    history.append(HistoryEntry(
                        iteration=iteration,
                        kind=HistoryKind.FEEDBACK,
                        content=(
                            f"Your reply could not be used: {e}. Reply with exactly one JSON "
                            f"object containing one tool_call."
                        ),
                    ))
                    continue

                if action.thought is not None:
                    thoughts.add(action.thought)

                # ── Completion ────────────────────────────────────────────────
                if action.is_completion:
                    signal = action.completion
                    history.append(HistoryEntry(
                        iteration=iteration,
                        tool_name="taskComplete",
                        success=True,
                        content=f"{signal.next_step_type.value}: {signal.summary}",
                    ))
                    if signal.ends_specialist:
                        log.info(
                            "specialist.completed",
                            specialist=specialist_id,
                            iteration_count=iteration,
                            next_step_type=signal.next_step_type.value,
                        )
                        return SpecialistResult(
                            success=True,
                            content=signal.summary,
                            structured_data={
                                "next_step_type": signal.next_step_type.value,
                                "summary": signal.summary,
                                "context_for_next": signal.context_for_next,
                            },
                            iteration_count=iteration,
                            outcome=SpecialistOutcome.COMPLETED,
                            completion=signal,
                        )
                    continue

                # ── Clarification ─────────────────────────────────────────────
                if action.is_question:
                    question = str(action.args["question"]).strip()
                    log.info("specialist.awaiting_user", specialist=specialist_id, iteration=iteration)
                    return SpecialistResult(
                        success=False,
                        content=question,
                        iteration_count=iteration,
                        outcome=SpecialistOutcome.AWAITING_USER,
                        question=question,
                        resume_state=ResumeState(
                            specialist_id=specialist_id,
                            iteration_count=iteration,
                            history=history,
                            thoughts=thoughts.records(),
                            question=question,
                        ),
                    )

                if action.tool_name == RECORD_THOUGHT:
                    history.append(HistoryEntry(
                        iteration=iteration,
                        tool_name=RECORD_THOUGHT,
                        success=True,
                        content="thought recorded",
                    ))
                    continue

                # ── Loop detection ────────────────────────────────────────────
                loop = loops.check(action.tool_name, action.args)
                if loop is not None:
                    log.warning(
                        "specialist.loop_detected",
                        specialist=specialist_id,
                        iteration=iteration,
                        kind=loop.kind.value,
                        tool=loop.tool_name,
                        strikes=loops.strikes,
                    )
                    if loop.blocks_call:
                        if loops.exhausted:
                            return SpecialistResult(
                                success=False,
                                error=f"loop detected: {loop.detail}",
                                error_category=LOOP_CATEGORY,
                                user_message=(
                                    f"Specialist '{specialist_id}' kept repeating the same "
                                    f"'{loop.tool_name}' call and was stopped."
                                ),
                                iteration_count=iteration,
                                outcome=SpecialistOutcome.FAILED,
                            )
                        history.append(HistoryEntry(
                            iteration=iteration,
                            kind=HistoryKind.FEEDBACK,
                            content=(
                                f"{loop.detail} It was not run again; its result is already "
                                f"above. Use it, take a different action, or call taskComplete."
                            ),
                        ))
                        continue

                # ── Tool execution ────────────────────────────────────────────
                cancel_token.raise_if_cancelled()

                result = await self._run_tool(action.tool_name, action.args, CallerContext(
                    specialist_id=specialist_id,
                    session_id=context.session_id,
                    iteration=iteration,
                    workspace=context.workspace,
                    allowed_tools=definition.allowed_tools,
                ))
                loops.record(action.tool_name, action.args, result.success)
                history.append(HistoryEntry(
                    iteration=iteration,
                    tool_name=action.tool_name,
                    success=result.success,
                    content=_render_tool_result(result),
                ))
                if loop is not None:
                    history.append(HistoryEntry(
                        iteration=iteration,
                        kind=HistoryKind.FEEDBACK,
                        content=f"{loop.detail} If you are stuck, change approach or call taskComplete.",
                    ))

                cancel_token.raise_if_cancelled()

        except CancelledByUserError as e:
            return self._cancelled(specialist_id, iteration, str(e))

        log.warning("specialist.budget_exhausted", specialist=specialist_id, iteration_count=iteration)
        return SpecialistResult(
            success=False,
            error=MAX_ITERATIONS_ERROR,
            error_category="iteration_limit",
            user_message=(
                f"Specialist '{specialist_id}' used all {max_iterations} iterations "
                f"without finishing."
            ),
            iteration_count=iteration,
            outcome=SpecialistOutcome.FAILED,
        )

    # ── Model call with classified retry ──────────────────────────────────────

    async def _call_model(
        self,
        definition: SpecialistDefinition,
        context: SpecialistContext,
        model: LanguageModel,
        history: list[HistoryEntry],
        thoughts: ThoughtLog,
        cancel_token: CancellationToken,
    ):
        """
        Returns the reply text or a _Failure. Raises CancelledByUserError when
        cancelled while waiting to retry. Every attempt belongs to the same
        iteration.
        """
        retry_count = 0
        empty_count = 0

        while True:
            try:
                prompt = self.prompt_engine.assemble(
                    definition,
                    context,
                    history=history,
                    thoughts=thoughts.newest_first(),
                    tool_schemas=self.tool_executor.list_schemas(allowed=definition.allowed_tools),
                )
            except PromptAssemblyError as e:
                return _Failure(str(e), "prompt_assembly", "The specialist prompt could not be built.")

            try:
                reply = await model.send_request([Message.user(prompt)], self.model_options)
                text = await collect_text(reply)
                if not text.strip():
                    raise EmptyResponseError(EMPTY_RESPONSE_CATEGORY)
                return text

            except EmptyResponseError:
                empty_count += 1
                if empty_count > self.empty_response_retries:
                    return _Failure(
                        f"{EMPTY_RESPONSE_CATEGORY}: model returned no text "
                        f"{empty_count} time(s)",
                        EMPTY_RESPONSE_CATEGORY,
                        "The model kept returning empty replies. Please try again.",
                    )
                delay = self._backoff(empty_count)
                log.warning(
                    "specialist.retrying",
                    specialist=definition.id,
                    category=EMPTY_RESPONSE_CATEGORY,
                    attempt=empty_count,
                    max_attempts=self.empty_response_retries,
                    delay_s=delay,
                )

            except Exception as e:
                classification = classify(e)
                hint = _STEERING_HINTS.get(classification.category)
                if hint:
                    _inject_steering(history, hint, iteration=0)
                if not classification.retryable or retry_count >= classification.max_retries:
                    return _Failure(
                        str(e) or type(e).__name__,
                        classification.category.value,
                        classification.user_message,
                    )
                retry_count += 1
                delay = self._backoff(retry_count)
                log.warning(
                    "specialist.retrying",
                    specialist=definition.id,
                    category=classification.category.value,
                    attempt=retry_count,
                    max_attempts=classification.max_retries,
                    delay_s=delay,
                    error=str(e),
                    error_type=type(e).__name__,
                )

            cancel_token.raise_if_cancelled()
            await self._sleep(delay)

    def _backoff(self, retry_count: int) -> float:
        return self.backoff_base_seconds * (2 ** (retry_count - 1))

    # ── Tools ─────────────────────────────────────────────────────────────────

    async def _run_tool(self, name: str, args: dict[str, Any], caller: CallerContext) -> ToolResult:
        try:
            return await self.tool_executor.execute(name, args, caller)
        except Exception as e:
            err = ToolExecutionError(name, f"{type(e).__name__}: {e}")
            log.warning("specialist.tool_raised", tool=name, error=str(err))
            return ToolResult.fail(str(err))

    def _cancelled(self, specialist_id: str, iteration: int, reason: str) -> SpecialistResult:
        log.info("specialist.cancelled", specialist=specialist_id, iteration=iteration)
        return SpecialistResult(
            success=False,
            error=reason,
            iteration_count=iteration,
            outcome=SpecialistOutcome.CANCELLED,
        )


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


def _inject_steering(history: list[HistoryEntry], hint: str, iteration: int) -> None:
    """Keep at most one steering entry, always first in the history."""
    history[:] = [e for e in history if e.kind != HistoryKind.STEERING]
    history.insert(0, HistoryEntry(iteration=iteration, kind=HistoryKind.STEERING, content=hint))


def _render_tool_result(result: ToolResult) -> str:
    if not result.success:
        return f"ERROR: {result.error}"
    body = result.result
    if not isinstance(body, str):
        body = json.dumps(body, ensure_ascii=False, default=str)
    if len(body) > _RESULT_PREVIEW_CHARS:
        body = body[:_RESULT_PREVIEW_CHARS] + "…"
    return body
