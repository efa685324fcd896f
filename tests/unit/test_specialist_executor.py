"""
tests/unit/test_specialist_executor.py — Specialist Loop Unit Tests

Drives SpecialistExecutor with a scripted model, a mock prompt engine and
a mock tool executor. Backoff sleeps are captured instead of awaited.

Test groups:
  - iteration budget: completes within / exhausts "max iterations reached"
  - classified retries never consume an iteration slot
  - empty replies are their own retry class
  - output_limit / config failures put one steering hint first in history
  - per-specialist tool allow-lists reach the prompt and the tool bus
  - repeated identical calls are skipped, then stop the run
  - cancellation before, between and around tool calls
  - askQuestion suspends and resumes with the user's answer
  - caller mistakes (unknown / disabled specialist) raise
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent.recovery import FailureKind, failure_kind, result_failure_kind
from agent.specialist_executor import LOOP_CATEGORY, MAX_ITERATIONS_ERROR, SpecialistExecutor
from agent.specialist_registry import IterationBudgets, SpecialistDefinition, StaticSpecialistRegistry
from agent.types import (
    CancellationToken,
    HistoryKind,
    NextStepType,
    SpecialistContext,
    SpecialistOutcome,
)
from config.settings import IterationConfig
from exceptions import CancelledByUserError, ModelTransportError, UnknownSpecialistError
from tools import setup_tools
from tools.tool_bus import ToolBus
from tools.types import ToolResult


# ─────────────────────────────────────────────────────────────────────────────
# Shared test helpers
# ─────────────────────────────────────────────────────────────────────────────


class ScriptedModel:
    """Replays canned replies; exceptions in the script are raised."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = 0

    async def send_request(self, messages, options):
        self.calls += 1
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply


def _tool(name: str, **args) -> str:
    return json.dumps({"tool_call": {"name": name, "args": args}})


def _complete(kind: str = "HANDOFF_TO_SPECIALIST", summary: str = "done", **context) -> str:
    return _tool("taskComplete", next_step_type=kind, summary=summary, context_for_next=context)


def _ask(question: str) -> str:
    return _tool("askQuestion", question=question)


class _CopyingMock(MagicMock):
    """Records list arguments as they were at call time (the executor keeps
    appending to its live history list after the prompt is built)."""

    def __call__(self, *args, **kwargs):
        args = tuple(list(a) if isinstance(a, list) else a for a in args)
        kwargs = {k: list(v) if isinstance(v, list) else v for k, v in kwargs.items()}
        return super().__call__(*args, **kwargs)


def _make_executor(iteration_override=3, tool_result=None, enabled=True, empty_retries=3):
    registry = StaticSpecialistRegistry([
        SpecialistDefinition(id="tester", iteration_override=iteration_override, enabled=enabled),
    ])
    prompt_engine = MagicMock()
    prompt_engine.assemble = _CopyingMock(return_value="PROMPT")
    tools = MagicMock()
    tools.list_schemas = MagicMock(return_value=[])
    tools.execute = AsyncMock(return_value=tool_result or ToolResult.ok("file contents"))
    sleep = AsyncMock()
    executor = SpecialistExecutor(
        registry,
        IterationBudgets(IterationConfig(overrides={})),
        prompt_engine,
        tools,
        backoff_base_seconds=1.0,
        empty_response_retries=empty_retries,
        sleep=sleep,
    )
    return executor, prompt_engine, tools, sleep


def _context(workspace: str = "/work/shop") -> SpecialistContext:
    return SpecialistContext(user_task="Write FRs", session_id="s1", workspace=workspace)


# ─────────────────────────────────────────────────────────────────────────────
# Iteration budget
# ─────────────────────────────────────────────────────────────────────────────


class TestIterationBudget:
    @pytest.mark.asyncio
    async def test_completes_on_last_allowed_iteration(self):
        executor, _, tools, _ = _make_executor(iteration_override=3)
        model = ScriptedModel(_tool("readFile", path="SRS.md"), _tool("readFile", path="a"), _complete())

        result = await executor.execute("tester", _context(), model)

        assert result.success
        assert result.iteration_count == 3
        assert result.outcome == SpecialistOutcome.COMPLETED
        assert result.completion.next_step_type == NextStepType.HANDOFF_TO_SPECIALIST
        assert tools.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_budget(self):
        executor, _, _, _ = _make_executor(iteration_override=3)
        model = ScriptedModel(*[_tool("readFile", path="SRS.md")] * 3)

        result = await executor.execute("tester", _context(), model)

        assert not result.success
        assert result.error == MAX_ITERATIONS_ERROR
        assert result.iteration_count == 3
        assert model.calls == 3

    @pytest.mark.asyncio
    async def test_continue_same_specialist_keeps_going(self):
        executor, _, _, _ = _make_executor(iteration_override=3)
        model = ScriptedModel(_complete("CONTINUE_SAME_SPECIALIST", "half"), _complete("TASK_FINISHED", "all"))

        result = await executor.execute("tester", _context(), model)

        assert result.success
        assert result.iteration_count == 2
        assert result.structured_data["next_step_type"] == "TASK_FINISHED"

    @pytest.mark.asyncio
    async def test_malformed_reply_costs_an_iteration(self):
        executor, prompt_engine, _, _ = _make_executor(iteration_override=3)
        model = ScriptedModel("I will write it now.", _complete())

        result = await executor.execute("tester", _context(), model)

        assert result.success
        assert result.iteration_count == 2
        history = prompt_engine.assemble.call_args_list[1].kwargs["history"]
        assert history[0].kind == HistoryKind.FEEDBACK

    def test_budget_priority(self):
        budgets = IterationBudgets(IterationConfig(overrides={"fr_writer": 10}, global_default=7))
        assert budgets.max_iterations(SpecialistDefinition(id="fr_writer", iteration_override=2)) == 10
        assert budgets.max_iterations(SpecialistDefinition(id="x", iteration_override=2)) == 2
        assert budgets.max_iterations(SpecialistDefinition(id="x", category="process")) == 8
        assert budgets.max_iterations(SpecialistDefinition(id="x", category="content")) == 15


# ─────────────────────────────────────────────────────────────────────────────
# Model failures
# ─────────────────────────────────────────────────────────────────────────────


class TestRetries:
    @pytest.mark.asyncio
    async def test_retries_do_not_consume_iterations(self):
        executor, _, _, sleep = _make_executor(iteration_override=1)
        model = ScriptedModel(
            ModelTransportError("socket hang up"),
            ModelTransportError("net::ERR_NETWORK_CHANGED"),
            _complete(),
        )

        result = await executor.execute("tester", _context(), model)

        assert result.success
        assert result.iteration_count == 1
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_network_gives_up_after_three_retries(self):
        executor, _, _, sleep = _make_executor()
        model = ScriptedModel(*[ModelTransportError("connection refused")] * 4)

        result = await executor.execute("tester", _context(), model)

        assert not result.success
        assert result.error_category == "network"
        assert result.iteration_count == 1
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_server_error_retried_once(self):
        executor, _, _, sleep = _make_executor()
        model = ScriptedModel(*[ModelTransportError("Internal", code="500")] * 2)

        result = await executor.execute("tester", _context(), model)

        assert result.error_category == "server"
        assert sleep.await_count == 1

    @pytest.mark.asyncio
    async def test_auth_fails_immediately(self):
        executor, _, _, sleep = _make_executor()
        model = ScriptedModel(ModelTransportError("Unauthorized", code="401"))

        result = await executor.execute("tester", _context(), model)

        assert not result.success
        assert result.error_category == "auth"
        assert result.outcome == SpecialistOutcome.FAILED
        assert result.user_message
        sleep.assert_not_awaited()


class TestEmptyResponses:
    @pytest.mark.asyncio
    async def test_recovers_after_empty_replies(self):
        executor, _, _, sleep = _make_executor()
        model = ScriptedModel("", "   ", _complete())

        result = await executor.execute("tester", _context(), model)

        assert result.success
        assert result.iteration_count == 1
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_limit(self):
        executor, _, _, _ = _make_executor(empty_retries=3)
        model = ScriptedModel(*[""] * 4)

        result = await executor.execute("tester", _context(), model)

        assert not result.success
        assert result.error_category == "empty_response"
        assert model.calls == 4

    @pytest.mark.asyncio
    async def test_empty_stream_is_empty(self):
        async def empty_stream():
            for part in ("", " "):
                yield part

        executor, _, _, _ = _make_executor(empty_retries=0)
        model = ScriptedModel(empty_stream())

        result = await executor.execute("tester", _context(), model)

        assert result.error_category == "empty_response"


class TestSteering:
    @pytest.mark.asyncio
    async def test_output_limit_injects_one_steering_hint(self):
        executor, prompt_engine, _, _ = _make_executor(iteration_override=5)
        model = ScriptedModel(
            _tool("readFile", path="SRS.md"),
            ModelTransportError("Response too long"),
            ModelTransportError("Response too long"),
            _complete(),
        )

        result = await executor.execute("tester", _context(), model)

        assert result.success
        history = prompt_engine.assemble.call_args_list[-1].kwargs["history"]
        steering = [e for e in history if e.kind == HistoryKind.STEERING]
        assert len(steering) == 1
        assert history[0].kind == HistoryKind.STEERING
        assert "smaller" in history[0].content or "incrementally" in history[0].content

    @pytest.mark.asyncio
    async def test_config_error_steers_and_fails(self):
        executor, prompt_engine, _, _ = _make_executor()
        model = ScriptedModel(ModelTransportError("This model's maximum context length is 8192 tokens"))

        result = await executor.execute("tester", _context(), model)

        assert not result.success
        assert result.error_category == "config"


# ─────────────────────────────────────────────────────────────────────────────
# Tools
# ─────────────────────────────────────────────────────────────────────────────


class TestTools:
    @pytest.mark.asyncio
    async def test_failed_tool_fed_back(self):
        executor, prompt_engine, tools, _ = _make_executor(tool_result=ToolResult.fail("File not found"))
        model = ScriptedModel(_tool("readFile", path="missing.md"), _complete())

        result = await executor.execute("tester", _context(), model)

        assert result.success
        history = prompt_engine.assemble.call_args_list[1].kwargs["history"]
        assert history[0].success is False
        assert "File not found" in history[0].content
        caller = tools.execute.await_args.args[2]
        assert caller.specialist_id == "tester"
        assert caller.workspace == "/work/shop"
        assert caller.iteration == 1

    @pytest.mark.asyncio
    async def test_raising_tool_executor_contained(self):
        executor, prompt_engine, tools, _ = _make_executor()
        tools.execute.side_effect = RuntimeError("bus exploded")
        model = ScriptedModel(_tool("readFile", path="SRS.md"), _complete())

        result = await executor.execute("tester", _context(), model)

        assert result.success
        history = prompt_engine.assemble.call_args_list[1].kwargs["history"]
        assert "bus exploded" in history[0].content

    @pytest.mark.asyncio
    async def test_thought_recorded(self):
        executor, prompt_engine, _, _ = _make_executor()
        reply = json.dumps({
            "thought": {"thinking_type": "planning", "content": {"outline": ["3.1"]}},
            "tool_call": {"name": "readFile", "args": {"path": "SRS.md"}},
        })
        model = ScriptedModel(reply, _complete())

        await executor.execute("tester", _context(), model)

        thoughts = prompt_engine.assemble.call_args_list[1].kwargs["thoughts"]
        assert thoughts[0].content == {"outline": ["3.1"]}


    @pytest.mark.asyncio
    async def test_schemas_and_caller_follow_allow_list(self):
        registry = StaticSpecialistRegistry([
            SpecialistDefinition(id="helper", iteration_override=3, allowed_tools=["readFile"]),
        ])
        executor, prompt_engine, tools, _ = _make_executor()
        executor.registry = registry
        model = ScriptedModel(_tool("readFile", path="SRS.md"), _complete())

        await executor.execute("helper", _context(), model)

        tools.list_schemas.assert_called_with(allowed=["readFile"])
        assert tools.execute.await_args.args[2].allowed_tools == ["readFile"]

    @pytest.mark.asyncio
    async def test_disallowed_tool_refused_by_bus(self, tmp_path):
        registry = StaticSpecialistRegistry([
            SpecialistDefinition(id="helper", iteration_override=3, allowed_tools=["readFile", "listFiles"]),
        ])
        executor, prompt_engine, _, _ = _make_executor()
        executor.registry = registry
        executor.tool_executor = ToolBus(setup_tools())
        model = ScriptedModel(_tool("writeFile", path="SRS.md", content="# SRS"), _complete())

        result = await executor.execute("helper", _context(str(tmp_path)), model)

        assert result.success
        assert not (tmp_path / "SRS.md").exists()
        history = prompt_engine.assemble.call_args_list[1].kwargs["history"]
        assert history[0].success is False
        assert "not available to specialist 'helper'" in history[0].content
        schemas = prompt_engine.assemble.call_args_list[0].kwargs["tool_schemas"]
        assert sorted(s.name for s in schemas) == ["listFiles", "readFile"]


# ─────────────────────────────────────────────────────────────────────────────
# Loop detection
# ─────────────────────────────────────────────────────────────────────────────


class TestLoopDetection:
    @pytest.mark.asyncio
    async def test_identical_call_not_run_twice(self):
        executor, prompt_engine, tools, _ = _make_executor(iteration_override=5)
        model = ScriptedModel(
            _tool("readFile", path="SRS.md"),
            _tool("readFile", path="SRS.md"),
            _complete(),
        )

        result = await executor.execute("tester", _context(), model)

        assert result.success
        assert tools.execute.await_count == 1
        history = prompt_engine.assemble.call_args_list[2].kwargs["history"]
        assert history[-1].kind == HistoryKind.FEEDBACK
        assert "not run again" in history[-1].content

    @pytest.mark.asyncio
    async def test_repeated_duplicates_stop_the_run(self):
        executor, _, tools, _ = _make_executor(iteration_override=10)
        model = ScriptedModel(*[_tool("listFiles")] * 5)

        result = await executor.execute("tester", _context(), model)

        assert not result.success
        assert result.error_category == LOOP_CATEGORY
        assert result.error.startswith("loop detected")
        assert result.outcome == SpecialistOutcome.FAILED
        assert result.iteration_count == 4
        assert tools.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_call_may_be_retried(self):
        executor, _, tools, _ = _make_executor(tool_result=ToolResult.fail("locked"), iteration_override=5)
        model = ScriptedModel(*[_tool("writeFile", path="SRS.md", content="x")] * 2, _complete())

        await executor.execute("tester", _context(), model)

        assert tools.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_same_tool_three_times_gets_a_nudge(self):
        executor, prompt_engine, tools, _ = _make_executor(iteration_override=5)
        model = ScriptedModel(
            _tool("readFile", path="a.md"),
            _tool("readFile", path="b.md"),
            _tool("readFile", path="c.md"),
            _complete(),
        )

        result = await executor.execute("tester", _context(), model)

        assert result.success
        assert tools.execute.await_count == 3
        history = prompt_engine.assemble.call_args_list[3].kwargs["history"]
        assert [e.kind for e in history[-2:]] == [HistoryKind.TOOL_RESULT, HistoryKind.FEEDBACK]
        assert "3 times in a row" in history[-1].content

    @pytest.mark.asyncio
    async def test_ping_pong_gets_a_nudge(self):
        executor, prompt_engine, _, _ = _make_executor(iteration_override=6)
        model = ScriptedModel(
            _tool("readFile", path="SRS.md"),
            _tool("listFiles"),
            _tool("readFile", path="use-cases.md"),
            _tool("listFiles", path="docs"),
            _complete(),
        )

        await executor.execute("tester", _context(), model)

        history = prompt_engine.assemble.call_args_list[4].kwargs["history"]
        assert history[-1].kind == HistoryKind.FEEDBACK
        assert "alternating" in history[-1].content


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation
# ─────────────────────────────────────────────────────────────────────────────


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_before_start(self):
        executor, _, _, _ = _make_executor()
        token = CancellationToken()
        token.cancel()
        model = ScriptedModel()

        result = await executor.execute("tester", _context(), model, cancel_token=token)

        assert result.outcome == SpecialistOutcome.CANCELLED
        assert model.calls == 0
        assert result.error == "cancelled by user"
        assert result_failure_kind(result) == FailureKind.USER_CANCELLED

    def test_token_raises_typed_error(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel()
        with pytest.raises(CancelledByUserError):
            token.raise_if_cancelled()
        assert failure_kind(CancelledByUserError("cancelled by user")) == FailureKind.USER_CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_during_tool_stops_after_it(self):
        executor, _, tools, _ = _make_executor()
        token = CancellationToken()

        async def cancelling_tool(name, args, caller):
            token.cancel()
            return ToolResult.ok("written")

        tools.execute.side_effect = cancelling_tool
        model = ScriptedModel(_tool("writeFile", path="SRS.md", content="x"), _complete())

        result = await executor.execute("tester", _context(), model, cancel_token=token)

        assert result.outcome == SpecialistOutcome.CANCELLED
        assert tools.execute.await_count == 1
        assert model.calls == 1

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_to_retry(self):
        executor, _, _, sleep = _make_executor()
        token = CancellationToken()

        async def failing_then_cancel(messages, options):
            token.cancel()
            raise ModelTransportError("socket hang up")

        model = MagicMock()
        model.send_request = failing_then_cancel

        result = await executor.execute("tester", _context(), model, cancel_token=token)

        assert result.outcome == SpecialistOutcome.CANCELLED
        sleep.assert_not_awaited()


# ─────────────────────────────────────────────────────────────────────────────
# Clarification
# ─────────────────────────────────────────────────────────────────────────────


class TestAskQuestion:
    @pytest.mark.asyncio
    async def test_suspend_and_resume(self):
        executor, prompt_engine, _, _ = _make_executor(iteration_override=5)
        model = ScriptedModel(_tool("readFile", path="SRS.md"), _ask("Support offline mode?"))

        first = await executor.execute("tester", _context(), model)

        assert first.outcome == SpecialistOutcome.AWAITING_USER
        assert first.question == "Support offline mode?"
        assert first.resume_state.iteration_count == 2
        assert len(first.resume_state.history) == 1

        model = ScriptedModel(_complete(summary="FRs written"))
        second = await executor.execute(
            "tester", _context(), model,
            resume=first.resume_state, user_response="Yes, offline first",
        )

        assert second.success
        assert second.iteration_count == 3
        args = prompt_engine.assemble.call_args_list[-1]
        assert args.args[1].latest_user_response == "Yes, offline first"
        kinds = [e.kind for e in args.kwargs["history"]]
        assert HistoryKind.USER_RESPONSE in kinds

    @pytest.mark.asyncio
    async def test_resume_respects_remaining_budget(self):
        executor, _, _, _ = _make_executor(iteration_override=2)
        first = await executor.execute("tester", _context(), ScriptedModel(_tool("readFile", path="a"), _ask("Q?")))
        assert first.resume_state.iteration_count == 2

        second = await executor.execute(
            "tester", _context(), ScriptedModel(), resume=first.resume_state, user_response="A",
        )

        assert second.error == MAX_ITERATIONS_ERROR
        assert second.iteration_count == 2


# ─────────────────────────────────────────────────────────────────────────────
# Caller mistakes
# ─────────────────────────────────────────────────────────────────────────────


class TestCallerMistakes:
    @pytest.mark.asyncio
    async def test_unknown_specialist_raises(self):
        executor, _, _, _ = _make_executor()
        with pytest.raises(UnknownSpecialistError):
            await executor.execute("nobody", _context(), ScriptedModel())

    @pytest.mark.asyncio
    async def test_disabled_specialist_raises(self):
        executor, _, _, _ = _make_executor(enabled=False)
        with pytest.raises(UnknownSpecialistError, match="disabled"):
            await executor.execute("tester", _context(), ScriptedModel())

    @pytest.mark.asyncio
    async def test_prompt_failure_is_a_result(self):
        from exceptions import PromptAssemblyError

        executor, prompt_engine, _, _ = _make_executor()
        prompt_engine.assemble.side_effect = PromptAssemblyError("prompt assembly failed: missing")

        result = await executor.execute("tester", _context(), ScriptedModel())

        assert not result.success
        assert result.error_category == "prompt_assembly"
