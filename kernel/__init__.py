"""
kernel/ — SRSForge Composition Root

External callers (main.py, tests) build the whole agent stack from here
instead of wiring the sub-packages themselves.

Exports:
    AgentStack         — every wired component of a running agent
    build_agent_stack  — settings (+ optional model) → AgentStack
"""

from kernel.bootstrap import AgentStack, build_agent_stack

__all__ = ["AgentStack", "build_agent_stack"]
