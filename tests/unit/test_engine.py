"""
tests/unit/test_engine.py — Persistent Per-Session Engine Tests

Engine runs against a real SessionManager in tmp_path with a mocked
planner and specialist executor.

Test groups:
  - direct answers (KNOWLEDGE_QA / GENERAL_CHAT) never touch the executor
  - plan execution: every step logged, TASK_FINISHED ends early,
    context_for_next flows into the next step
  - askQuestion → AWAITING_USER → handle_user_response resumes the same step
  - failures: recoverable ones keep the plan for retry()
  - cancellation of a running step and of a pending question
  - caller mistakes propagate and never leave the engine mid-step
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from agent.engine import Engine, EngineState, _document_toc
from agent.planner import PlanDecision, ResponseMode
from agent.types import (
    NextStepType,
    Plan,
    PlanStep,
    ResumeState,
    SpecialistOutcome,
    SpecialistResult,
    StepStatus,
    TaskCompletionSignal,
)
from exceptions import ProgrammerError, UnknownSpecialistError
from session.manager import SessionManager
from session.models import OperationType


# ─────────────────────────────────────────────────────────────────────────────
# Shared test helpers
# ─────────────────────────────────────────────────────────────────────────────


def _done(summary="done", kind=NextStepType.HANDOFF_TO_SPECIALIST, **context_for_next) -> SpecialistResult:
    signal = TaskCompletionSignal(next_step_type=kind, summary=summary, context_for_next=context_for_next)
    return SpecialistResult(
        success=True,
        content=summary,
        structured_data={"next_step_type": kind.value, "summary": summary,
                         "context_for_next": context_for_next},
        iteration_count=2,
        completion=signal,
    )


def _question(text="Support offline mode?", specialist="fr_writer") -> SpecialistResult:
    return SpecialistResult(
        success=False,
        content=text,
        iteration_count=1,
        outcome=SpecialistOutcome.AWAITING_USER,
        question=text,
        resume_state=ResumeState(specialist_id=specialist, iteration_count=1, question=text),
    )


def _failed(error="socket hang up", category="network") -> SpecialistResult:
    return SpecialistResult(
        success=False,
        error=error,
        error_category=category,
        user_message="Network connection problem.",
        iteration_count=1,
        outcome=SpecialistOutcome.FAILED,
    )


def _cancelled() -> SpecialistResult:
    return SpecialistResult(success=False, error="cancelled", outcome=SpecialistOutcome.CANCELLED)


def _plan_decision(*specialists: str) -> PlanDecision:
    return PlanDecision(
        response_mode=ResponseMode.PLAN_EXECUTION,
        plan=Plan(
            plan_id="plan-1",
            description="Write the SRS",
            steps=[
                PlanStep(step_number=i, specialist_id=s, description=f"{s} step")
                for i, s in enumerate(specialists, start=1)
            ],
        ),
    )


async def _make_engine(tmp_path, decision=None, results=()):
    manager = SessionManager(tmp_path)
    await manager.create_new_session("Shop")
    planner = MagicMock()
    planner.generate = AsyncMock(return_value=decision or _plan_decision("fr_writer"))
    executor = MagicMock()
    executor.execute = AsyncMock(side_effect=list(results))
    engine = Engine(
        session_id="sess-1",
        workspace=tmp_path,
        executor=executor,
        planner=planner,
        session_manager=manager,
        model=MagicMock(),
    )
    return engine, manager, executor


async def _op_types(manager: SessionManager) -> list[OperationType]:
    return [o.type for o in await manager.get_operations()]


# ─────────────────────────────────────────────────────────────────────────────
# Direct answers
# ─────────────────────────────────────────────────────────────────────────────


class TestDirectAnswers:
    @pytest.mark.asyncio
    async def test_knowledge_qa(self, tmp_path):
        decision = PlanDecision(response_mode=ResponseMode.KNOWLEDGE_QA, direct_response="An NFR is ...")
        engine, _, executor = await _make_engine(tmp_path, decision)

        turn = await engine.handle_task("What is an NFR?")

        assert turn.success
        assert turn.message == "An NFR is ..."
        assert turn.response_mode == ResponseMode.KNOWLEDGE_QA
        assert engine.state == EngineState.IDLE
        executor.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_planner_apology_is_unsuccessful(self, tmp_path):
        engine, _, _ = await _make_engine(tmp_path, PlanDecision.apology())
        turn = await engine.handle_task("???")
        assert not turn.success
        assert engine.state == EngineState.IDLE

    @pytest.mark.asyncio
    async def test_planner_sees_project_and_history(self, tmp_path):
        decision = PlanDecision(response_mode=ResponseMode.GENERAL_CHAT, direct_response="Hi!")
        engine, _, _ = await _make_engine(tmp_path, decision)

        await engine.handle_task("hello")
        await engine.handle_task("and again")

        kwargs = engine.planner.generate.await_args.kwargs
        assert kwargs["project_name"] == "Shop"
        assert kwargs["recent_turns"] == ["user: hello", "assistant: Hi!"]


# ─────────────────────────────────────────────────────────────────────────────
# Plan execution
# ─────────────────────────────────────────────────────────────────────────────


class TestPlanExecution:
    @pytest.mark.asyncio
    async def test_all_steps_run_and_are_logged(self, tmp_path):
        engine, manager, executor = await _make_engine(
            tmp_path, _plan_decision("fr_writer", "nfr_writer"), [_done("FRs"), _done("NFRs")]
        )

        turn = await engine.handle_task("Write the requirements")

        assert turn.success
        assert engine.state == EngineState.TASK_FINISHED
        assert [s.status for s in turn.steps] == [StepStatus.COMPLETED, StepStatus.COMPLETED]
        assert "FRs" in turn.message and "NFRs" in turn.message
        assert executor.execute.await_count == 2
        assert await _op_types(manager) == [
            OperationType.SESSION_CREATED,
            OperationType.AI_PLAN_GENERATED,
            OperationType.SPECIALIST_INVOKED,
            OperationType.SPECIALIST_INVOKED,
        ]
        ops = await manager.get_operations()
        assert ops[-1].execution_time is not None

    @pytest.mark.asyncio
    async def test_step_context(self, tmp_path):
        engine, _, executor = await _make_engine(
            tmp_path, _plan_decision("overall_description_writer", "fr_writer"),
            [_done("overview", chapters=["2"]), _done("FRs")],
        )
        (tmp_path / "Shop").mkdir(exist_ok=True)
        (tmp_path / "Shop" / "SRS.md").write_text("# SRS\n## 1 Introduction\n```\n# not a heading\n```\n",
                                                 encoding="utf-8")

        await engine.handle_task("Write the SRS")

        first_ctx = executor.execute.await_args_list[0].args[1]
        second_ctx = executor.execute.await_args_list[1].args[1]
        assert first_ctx.workspace == str(tmp_path / "Shop")
        assert first_ctx.project_name == "Shop"
        assert "Your step (1/2)" in first_ctx.user_task
        assert first_ctx.document_toc == "- SRS\n  - 1 Introduction"
        assert second_ctx.previous_step_context == {"chapters": ["2"], "previous_summary": "overview"}

    @pytest.mark.asyncio
    async def test_task_finished_ends_plan_early(self, tmp_path):
        engine, _, executor = await _make_engine(
            tmp_path, _plan_decision("fr_writer", "nfr_writer"),
            [_done("all done", kind=NextStepType.TASK_FINISHED)],
        )

        turn = await engine.handle_task("Write the requirements")

        assert engine.state == EngineState.TASK_FINISHED
        assert executor.execute.await_count == 1
        assert [s.status for s in turn.plan.steps] == [StepStatus.COMPLETED, StepStatus.PENDING]


# ─────────────────────────────────────────────────────────────────────────────
# Questions
# ─────────────────────────────────────────────────────────────────────────────


class TestQuestions:
    @pytest.mark.asyncio
    async def test_question_then_resume(self, tmp_path):
        engine, manager, executor = await _make_engine(
            tmp_path, _plan_decision("fr_writer", "nfr_writer"),
            [_question(), _done("FRs"), _done("NFRs")],
        )

        turn = await engine.handle_task("Write the requirements")
        assert turn.state == EngineState.AWAITING_USER
        assert turn.question == "Support offline mode?"
        assert engine.pending_question == "Support offline mode?"

        turn = await engine.handle_user_response("Yes, offline first")

        assert engine.state == EngineState.TASK_FINISHED
        resumed = executor.execute.await_args_list[1]
        assert resumed.args[0] == "fr_writer"
        assert resumed.kwargs["user_response"] == "Yes, offline first"
        assert resumed.kwargs["resume"].question == "Support offline mode?"
        assert executor.execute.await_args_list[2].kwargs["resume"] is None
        assert engine.pending_question is None

        types = await _op_types(manager)
        assert OperationType.USER_QUESTION_ASKED in types
        assert OperationType.USER_RESPONSE_RECEIVED in types

    @pytest.mark.asyncio
    async def test_handle_task_while_waiting_answers_question(self, tmp_path):
        engine, _, executor = await _make_engine(tmp_path, results=[_question(), _done()])
        await engine.handle_task("Write FRs")

        await engine.handle_task("No offline mode")

        assert engine.planner.generate.await_count == 1
        assert executor.execute.await_args_list[1].kwargs["user_response"] == "No offline mode"

    @pytest.mark.asyncio
    async def test_response_without_question(self, tmp_path):
        engine, _, _ = await _make_engine(tmp_path)
        turn = await engine.handle_user_response("hello?")
        assert not turn.success
        assert engine.state == EngineState.IDLE


# ─────────────────────────────────────────────────────────────────────────────
# Failures and retry
# ─────────────────────────────────────────────────────────────────────────────


class TestFailures:
    @pytest.mark.asyncio
    async def test_recoverable_failure_then_retry(self, tmp_path):
        engine, manager, executor = await _make_engine(
            tmp_path, _plan_decision("fr_writer", "nfr_writer"),
            [_failed(), _done("FRs"), _done("NFRs")],
        )

        turn = await engine.handle_task("Write the requirements")
        assert not turn.success
        assert turn.recoverable is True
        assert engine.state == EngineState.IDLE
        assert engine.snapshot()["last_failure"] == "transport"

        turn = await engine.retry()

        assert turn.success
        assert engine.state == EngineState.TASK_FINISHED
        assert executor.execute.await_args_list[1].args[0] == "fr_writer"
        assert OperationType.PLAN_RESUMED in await _op_types(manager)
        failed = [o for o in await manager.get_operations() if not o.success]
        assert failed[0].error == "socket hang up"

    @pytest.mark.asyncio
    async def test_non_recoverable_failure_drops_plan(self, tmp_path):
        engine, _, _ = await _make_engine(
            tmp_path, results=[_failed("Permission denied: SRS.md", category="unknown")]
        )

        turn = await engine.handle_task("Write FRs")
        assert turn.recoverable is False

        retry = await engine.retry()
        assert not retry.success

    @pytest.mark.asyncio
    async def test_retry_without_failure(self, tmp_path):
        engine, _, _ = await _make_engine(tmp_path)
        turn = await engine.retry()
        assert not turn.success

    @pytest.mark.asyncio
    async def test_programmer_error_propagates(self, tmp_path):
        engine, _, executor = await _make_engine(tmp_path)
        executor.execute.side_effect = UnknownSpecialistError("fr_writer")

        with pytest.raises(UnknownSpecialistError):
            await engine.handle_task("Write FRs")
        assert engine.state == EngineState.IDLE

    @pytest.mark.asyncio
    async def test_unexpected_error_resets_state(self, tmp_path):
        engine, _, _ = await _make_engine(tmp_path)
        engine.planner.generate.side_effect = RuntimeError("planner crashed")

        with pytest.raises(RuntimeError):
            await engine.handle_task("Write FRs")
        assert engine.state == EngineState.IDLE
        assert not engine.lock.locked()


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation / disposal
# ─────────────────────────────────────────────────────────────────────────────


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_step(self, tmp_path):
        engine, manager, _ = await _make_engine(tmp_path, results=[_cancelled()])

        turn = await engine.handle_task("Write FRs")

        assert not turn.success
        assert engine.state == EngineState.IDLE
        assert turn.steps[0].status == StepStatus.CANCELLED
        assert OperationType.PLAN_INTERRUPTED in await _op_types(manager)

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_abandons_question(self, tmp_path):
        engine, _, _ = await _make_engine(tmp_path, results=[_question()])
        await engine.handle_task("Write FRs")

        engine.cancel()

        assert engine.state == EngineState.IDLE
        assert engine.pending_question is None
        turn = await engine.handle_user_response("too late")
        assert not turn.success

    @pytest.mark.asyncio
    async def test_new_task_resets_cancellation(self, tmp_path):
        decision = PlanDecision(response_mode=ResponseMode.GENERAL_CHAT, direct_response="Hi!")
        engine, _, _ = await _make_engine(tmp_path, decision)
        engine.cancel()

        turn = await engine.handle_task("hello")

        assert turn.success
        assert not engine.cancel_token.is_cancelled

    @pytest.mark.asyncio
    async def test_disposed_engine_refuses_work(self, tmp_path):
        engine, _, _ = await _make_engine(tmp_path)
        engine.dispose()
        assert engine.disposed
        with pytest.raises(ProgrammerError):
            await engine.handle_task("Write FRs")


class TestDocumentToc:
    def test_missing_file(self, tmp_path):
        assert _document_toc(tmp_path / "SRS.md") == ""

    def test_levels(self, tmp_path):
        path = tmp_path / "SRS.md"
        path.write_text("# Title\nbody\n## Scope\n### 1.1 Purpose\n#\n", encoding="utf-8")
        assert _document_toc(path) == "- Title\n  - Scope\n    - 1.1 Purpose"
