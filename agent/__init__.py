"""
agent/ — SRSForge Agent Core

Component overview:
    Orchestrator         Routes each user message to its session's Engine
    EngineRegistry       Bounded LRU table of live engines, keyed by session id
    Engine               Per-session state machine: plan, run steps, ask, resume
    PlanGenerator        Chooses a response mode and builds the step plan
    SpecialistExecutor   One specialist's think → act → observe loop
    LoopDetector         Spots repeated or ping-ponging tool calls in one run
    StaticSpecialistRegistry / IterationBudgets
                         Specialist definitions and iteration limits

Import from the submodules directly; prompts/ and tools/ depend on
agent.types, so this package does not re-export anything.
"""
