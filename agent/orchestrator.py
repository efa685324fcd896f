"""
agent/orchestrator.py — Orchestrator

Top-level router for user messages. For each message the orchestrator:
    1. Loads the workspace's current session (creating one on first use)
    2. Derives the session id and fetches/creates its Engine
    3. Resumes the engine if it is waiting on a user answer
    4. Otherwise hands the message to the engine, which asks the
       PlanGenerator for a response mode and either answers directly or
       runs the plan

`new project <name>` archives the current session and starts a new one
before anything is planned.

Usage:
    orc = Orchestrator(executor, planner, model, EngineRegistry(capacity=16))
    turn = await orc.handle_message("/work/acme", "Write the NFR chapter")
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Callable, Optional

from agent.engine import Engine, EngineState, TurnResult
from agent.engine_registry import EngineRegistry, derive_session_id
from agent.planner import PlanGenerator
from agent.specialist_executor import SpecialistExecutor
from brain.llm_client import LanguageModel
from exceptions import ProgrammerError, SRSForgeError
from observability.logger import bind_session, clear_session, get_logger
from session.manager import SessionManager
from session.models import SessionContext

log = get_logger(__name__)

_NEW_PROJECT_RE = re.compile(r"^\s*new\s+project\s*[:\-]?\s+(?P<name>\S.*?)\s*$", re.IGNORECASE)


def parse_new_project(text: str) -> Optional[str]:
    """Project name from a `new project <name>` command, else None."""
    match = _NEW_PROJECT_RE.match(text)
    return match.group("name").strip("\"'") if match else None


class Orchestrator:
    """
    Owns one SessionManager per workspace and the shared EngineRegistry.
    Inject all dependencies via the constructor; kernel.bootstrap wires them
    from settings.
    """

    def __init__(
        self,
        executor: SpecialistExecutor,
        planner: PlanGenerator,
        model: LanguageModel,
        engines: EngineRegistry,
        session_factory: Optional[Callable[[Path], SessionManager]] = None,
        auto_archive_expired: bool = False,
    ):
        self.executor = executor
        self.planner = planner
        self.model = model
        self.engines = engines
        self._session_factory = session_factory or (lambda ws: SessionManager(ws))
        self.auto_archive_expired = auto_archive_expired
        self._managers: dict[Path, SessionManager] = {}

    def session_manager(self, workspace: str | Path) -> SessionManager:
        key = Path(workspace).expanduser().resolve()
        manager = self._managers.get(key)
        if manager is None:
            manager = self._session_factory(key)
            self._managers[key] = manager
        return manager

    # ─────────────────────────────────────────────────────────────────────────
    # Public: one user message
    # ─────────────────────────────────────────────────────────────────────────

    async def handle_message(self, workspace: str | Path, text: str) -> TurnResult:
        new_project = parse_new_project(text)
        if new_project is not None:
            return await self.start_new_project(workspace, new_project)

        try:
            session = await self._current_session(workspace)
            engine = self._engine_for(workspace, session)
            bind_session(engine.session_id, session.project_name or "")
            log.info("orchestrator.turn_start", session_id=engine.session_id,
                     state=engine.state.value, user_message=text[:120])

            if engine.state == EngineState.AWAITING_USER:
                turn = await engine.handle_user_response(text)
            else:
                turn = await engine.handle_task(text)

            log.info("orchestrator.turn_done", session_id=engine.session_id,
                     state=turn.state.value, success=turn.success)
            return turn

        except ProgrammerError:
            raise
        except SRSForgeError as e:
            log.error("orchestrator.turn_error", error=str(e), error_type=type(e).__name__)
            return TurnResult(
                session_id="",
                state=EngineState.IDLE,
                message=f"Something went wrong: {e}",
                success=False,
            )
        finally:
            clear_session()

    # ─────────────────────────────────────────────────────────────────────────
    # Public: session commands
    # ─────────────────────────────────────────────────────────────────────────

    async def start_new_project(
        self,
        workspace: str | Path,
        project_name: Optional[str],
        reason: str = "new_project",
    ) -> TurnResult:
        """Archive the current session (user files untouched) and start fresh."""
        manager = self.session_manager(workspace)
        previous = await manager.get_current_session()
        result = await manager.archive_current_and_start_new(project_name, reason=reason)
        if not result.success:
            return TurnResult(
                session_id="",
                state=EngineState.IDLE,
                message=f"Could not start a new project: {result.error}",
                success=False,
            )

        if previous is not None:
            self.engines.remove(derive_session_id(manager.workspace, previous.project_name))

        lines = [f"Started project '{project_name}'." if project_name else "Started a new session."]
        if result.archived_path:
            lines.append(
                f"Previous session archived to {result.archived_path}; "
                f"{result.preserved_count} file(s) left in place."
            )
        log.info("orchestrator.new_project", project=project_name, archived=result.archived_path)
        return TurnResult(
            session_id=derive_session_id(manager.workspace, project_name),
            state=EngineState.IDLE,
            message=" ".join(lines),
        )

    def cancel(self, workspace: str | Path) -> bool:
        """Cancel the running turn of the workspace's current engine, if any."""
        manager = self.session_manager(workspace)
        for session_id in self.engines:
            engine = self.engines.peek(session_id)
            if engine is not None and engine.session_manager is manager:
                engine.cancel()
                return True
        return False

    async def retry(self, workspace: str | Path) -> TurnResult:
        session = await self._current_session(workspace)
        engine = self._engine_for(workspace, session)
        return await engine.retry()

    async def status(self, workspace: str | Path) -> dict[str, Any]:
        manager = self.session_manager(workspace)
        session = await manager.get_current_session()
        engine = None
        if session is not None:
            engine = self.engines.peek(derive_session_id(manager.workspace, session.project_name))
        return {
            "workspace": str(manager.workspace),
            "session": session.model_dump(mode="json") if session else None,
            "engine": engine.snapshot() if engine else None,
            "expired": await manager.is_session_expired(),
        }

    def shutdown(self) -> None:
        self.engines.dispose_all()

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _current_session(self, workspace: str | Path) -> SessionContext:
        manager = self.session_manager(workspace)
        session = await manager.get_current_session()
        if session is None:
            return await manager.create_new_session()
        if self.auto_archive_expired:
            archived = await manager.auto_archive_expired()
            if archived is not None and archived.success and archived.new_session is not None:
                self.engines.remove(derive_session_id(manager.workspace, session.project_name))
                return archived.new_session
        return session

    def _engine_for(self, workspace: str | Path, session: SessionContext) -> Engine:
        manager = self.session_manager(workspace)
        session_id = derive_session_id(manager.workspace, session.project_name)
        return self.engines.get_or_create(
            session_id,
            lambda: Engine(
                session_id=session_id,
                workspace=manager.workspace,
                executor=self.executor,
                planner=self.planner,
                session_manager=manager,
                model=self.model,
            ),
        )
