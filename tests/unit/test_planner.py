"""
tests/unit/test_planner.py — Plan Generator Unit Tests
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent.planner import FALLBACK_APOLOGY, PlanGenerator, ResponseMode
from agent.specialist_registry import SpecialistDefinition, StaticSpecialistRegistry
from brain.types import ModelOptions, Role
from exceptions import ModelTransportError, PlanError


def _make_registry() -> StaticSpecialistRegistry:
    return StaticSpecialistRegistry([
        SpecialistDefinition(id="fr_writer", description="Writes functional requirements."),
        SpecialistDefinition(id="nfr_writer"),
        SpecialistDefinition(id="git_operator", category="process"),
        SpecialistDefinition(id="retired_writer", enabled=False),
    ])


def _make_model(reply) -> MagicMock:
    model = MagicMock()
    if isinstance(reply, BaseException):
        model.send_request = AsyncMock(side_effect=reply)
    else:
        model.send_request = AsyncMock(return_value=reply)
    return model


def _plan_reply(*specialists: str, **extra) -> str:
    payload = {
        "thought": "needs two chapters",
        "response_mode": "PLAN_EXECUTION",
        "direct_response": None,
        "execution_plan": {
            "plan_id": "p-1",
            "description": "Write requirements",
            "steps": [
                {"step": i, "specialist": s, "description": f"step for {s}", "relevant_context": "shop"}
                for i, s in enumerate(specialists, start=1)
            ],
        },
    }
    payload.update(extra)
    return json.dumps(payload)


class TestParse:
    def test_plan_execution(self):
        decision = PlanGenerator(_make_registry()).parse(_plan_reply("fr_writer", "nfr_writer"))
        assert decision.response_mode == ResponseMode.PLAN_EXECUTION
        assert decision.plan.plan_id == "p-1"
        assert [s.specialist_id for s in decision.plan.steps] == ["fr_writer", "nfr_writer"]
        assert [s.step_number for s in decision.plan.steps] == [1, 2]
        assert decision.plan.steps[0].relevant_context == "shop"
        assert not decision.fallback

    def test_specialist_id_key_accepted(self):
        reply = json.dumps({
            "response_mode": "PLAN_EXECUTION",
            "execution_plan": {"steps": [{"specialist_id": "git_operator", "description": "commit"}]},
        })
        decision = PlanGenerator(_make_registry()).parse(reply)
        assert decision.plan.steps[0].specialist_id == "git_operator"
        assert decision.plan.plan_id

    def test_knowledge_qa(self):
        reply = json.dumps({"response_mode": "knowledge_qa", "direct_response": "An NFR is ..."})
        decision = PlanGenerator(_make_registry()).parse(reply)
        assert decision.response_mode == ResponseMode.KNOWLEDGE_QA
        assert decision.direct_response == "An NFR is ..."
        assert decision.plan is None

    def test_fenced_json(self):
        reply = "```json\n" + json.dumps({"response_mode": "GENERAL_CHAT", "direct_response": "Hi!"}) + "\n```"
        assert PlanGenerator(_make_registry()).parse(reply).direct_response == "Hi!"

    @pytest.mark.parametrize("reply", [
        "no json here",
        json.dumps({"response_mode": "SING_A_SONG", "direct_response": "la"}),
        json.dumps({"response_mode": "GENERAL_CHAT", "direct_response": "  "}),
        json.dumps({"response_mode": "PLAN_EXECUTION", "execution_plan": None}),
        json.dumps({"response_mode": "PLAN_EXECUTION", "execution_plan": {"steps": []}}),
        _plan_reply("ghost_writer"),
        _plan_reply("retired_writer"),
    ])
    def test_invalid(self, reply):
        with pytest.raises(PlanError):
            PlanGenerator(_make_registry()).parse(reply)


class TestGenerate:
    @pytest.mark.asyncio
    async def test_request_shape(self):
        model = _make_model(_plan_reply("fr_writer"))
        planner = PlanGenerator(_make_registry(), ModelOptions(model="gpt-4o", temperature=0.9))

        decision = await planner.generate(
            model, "Write the FRs", project_name="Shop",
            active_files=["SRS.md"], recent_turns=["user: hi", "assistant: hello"],
        )

        assert decision.plan.steps[0].specialist_id == "fr_writer"
        messages, options = model.send_request.await_args.args
        assert [m.role for m in messages] == [Role.SYSTEM, Role.USER]
        assert "fr_writer (content): Writes functional requirements." in messages[0].content
        assert "retired_writer" not in messages[0].content
        assert "Current project: Shop" in messages[1].content
        assert "SRS.md" in messages[1].content
        assert "assistant: hello" in messages[1].content
        assert options.temperature == 0.2
        assert options.stream is False
        assert options.model == "gpt-4o"

    @pytest.mark.asyncio
    async def test_unparseable_reply_becomes_apology(self):
        decision = await PlanGenerator(_make_registry()).generate(_make_model("sure thing!"), "hello")
        assert decision.fallback
        assert decision.response_mode == ResponseMode.GENERAL_CHAT
        assert decision.direct_response == FALLBACK_APOLOGY

    @pytest.mark.asyncio
    async def test_transport_failure_becomes_classified_apology(self):
        model = _make_model(ModelTransportError("Unauthorized", code="401"))
        decision = await PlanGenerator(_make_registry()).generate(model, "Write the FRs")
        assert decision.fallback
        assert "API key" in decision.direct_response

    @pytest.mark.asyncio
    async def test_streamed_reply_collected(self):
        text = json.dumps({"response_mode": "GENERAL_CHAT", "direct_response": "Hello!"})

        async def stream():
            yield text[:10]
            yield text[10:]

        decision = await PlanGenerator(_make_registry()).generate(_make_model(stream()), "hi")
        assert decision.direct_response == "Hello!"
