"""
kernel/bootstrap.py — Agent Stack Factory

Wires the full pipeline from settings:

    ToolRegistry → ToolBus ─┐
    SpecialistRegistry ─────┼─► SpecialistExecutor ─┐
    PromptAssemblyEngine ───┘                       ├─► Orchestrator
    PlanGenerator ──────────────────────────────────┤
    EngineRegistry / SessionManager factory ────────┘

Usage:
    from kernel.bootstrap import build_agent_stack
    stack = build_agent_stack(settings)
    turn = await stack.orchestrator.handle_message(workspace, "Draft the NFRs")
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from agent.engine_registry import EngineRegistry
from agent.orchestrator import Orchestrator
from agent.planner import PlanGenerator
from agent.specialist_executor import SpecialistExecutor
from agent.specialist_registry import StaticSpecialistRegistry
from brain import LanguageModelFactory
from brain.llm_client import LanguageModel
from brain.types import ModelOptions
from observability.logger import get_logger
from prompts.assembly import PromptAssemblyEngine
from session.manager import SessionManager
from tools import setup_tools
from tools.tool_bus import ToolBus
from tools.tool_registry import ToolRegistry

log = get_logger(__name__)


@dataclass
class AgentStack:
    """All wired components returned by build_agent_stack()."""
    orchestrator: Orchestrator
    executor: SpecialistExecutor
    planner: PlanGenerator
    specialist_registry: StaticSpecialistRegistry
    tool_registry: ToolRegistry
    tool_bus: ToolBus
    prompt_engine: PromptAssemblyEngine
    model: LanguageModel


def build_agent_stack(
    settings,
    model: Optional[LanguageModel] = None,
    *,
    tool_registry: Optional[ToolRegistry] = None,
) -> AgentStack:
    """
    Wire up the agent stack from settings.

    Args:
        settings:       Loaded Settings object (validate_all() already run).
        model:          LanguageModel to use; built from settings.llm when omitted.
        tool_registry:  Pre-populated registry; the built-in tools when omitted.
    """
    model = model or LanguageModelFactory.from_settings(settings)
    tool_registry = tool_registry or setup_tools()
    for name in settings.tools.disabled:
        if name in tool_registry:
            tool_registry.set_enabled(name, False)
        else:
            log.warning("kernel.unknown_disabled_tool", tool=name)
    tool_bus = ToolBus(tool_registry, timeout_seconds=settings.tools.timeout_seconds)

    specialists = StaticSpecialistRegistry.from_settings(settings)
    prompt_engine = PromptAssemblyEngine.from_settings(settings)
    executor = SpecialistExecutor.from_settings(
        settings, specialists, tool_bus, prompt_engine=prompt_engine
    )
    planner = PlanGenerator(
        specialists,
        ModelOptions(
            model=settings.llm.default_model,
            max_tokens=settings.llm.max_tokens,
        ),
    )

    orchestrator = Orchestrator(
        executor=executor,
        planner=planner,
        model=model,
        engines=EngineRegistry(capacity=settings.engine.registry_capacity),
        session_factory=lambda workspace: SessionManager.from_settings(settings, workspace),
        auto_archive_expired=settings.session.auto_archive_expired,
    )

    log.info(
        "kernel.stack_built",
        specialists=len(specialists),
        tools=tool_registry.list_names(),
        model=settings.llm.default_model,
    )
    return AgentStack(
        orchestrator=orchestrator,
        executor=executor,
        planner=planner,
        specialist_registry=specialists,
        tool_registry=tool_registry,
        tool_bus=tool_bus,
        prompt_engine=prompt_engine,
        model=model,
    )
