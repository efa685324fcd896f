"""
interfaces/cli.py — SRSForge CLI Interface

Interactive REPL for the SRSForge agent.
Uses rich for terminal rendering and aioconsole for async input.

Features:
  - Prompt shows the current project and engine state
  - Turns run as a background task, so /cancel and /status work mid-turn
  - Specialist questions are answered by just typing the reply
  - /status, /cancel, /retry, /archive, /new, /help, /exit
  - Graceful Ctrl+C / Ctrl+D handling

Usage:
    python main.py
    python main.py --workspace ./my-project --log-level DEBUG
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import aioconsole
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from agent.engine import EngineState, TurnResult
from agent.types import StepStatus
from config.settings import Settings
from exceptions import SRSForgeError
from kernel.bootstrap import AgentStack, build_agent_stack
from observability.logger import get_logger

log = get_logger(__name__)

_HELP_TEXT = """
## SRSForge CLI Commands

| Command | Description |
|---------|-------------|
| *(just type)* | Describe what you want in the requirements document, or answer a question |
| `/status` | Show the current session, plan and engine state |
| `/cancel` | Cancel the running task (takes effect between specialist iterations) |
| `/retry` | Re-run the last failed step if it can be retried |
| `/archive` | Archive the current session and start an unnamed one |
| `/new <project>` | Archive the current session and start project `<project>` |
| `/help` | Show this help message |
| `/exit` / Ctrl+D | Exit SRSForge |

Your files are never deleted when a session is archived.
"""

_STATUS_COLOURS = {
    StepStatus.PENDING: "dim",
    StepStatus.RUNNING: "cyan",
    StepStatus.COMPLETED: "green",
    StepStatus.FAILED: "red",
    StepStatus.CANCELLED: "yellow",
    StepStatus.AWAITING_USER: "magenta",
}


class CLIInterface:
    """
    Full interactive REPL for SRSForge.

    Wires Settings → build_agent_stack → Orchestrator, then runs a
    Rich-powered async input loop against one workspace.
    """

    def __init__(self, settings: Settings, workspace: str | Path, stack: Optional[AgentStack] = None):
        self.settings = settings
        self.workspace = Path(workspace).expanduser().resolve()
        self.console = Console()
        self._stack = stack
        self._running_task: Optional[asyncio.Task] = None
        self._shutdown = asyncio.Event()
        self._state_label = EngineState.IDLE.value
        self._project_label = ""

    @property
    def orchestrator(self):
        return self._stack.orchestrator

    # ── Startup ───────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Build the agent stack then run the REPL loop."""
        if self._stack is None:
            self.console.print("[dim]Initializing SRSForge...[/]")
            self._stack = build_agent_stack(self.settings)
        await self._refresh_labels()
        self._print_banner()
        try:
            await self._repl_loop()
        finally:
            await self._cleanup()

    def _print_banner(self) -> None:
        self.console.print(
            Panel(
                f"[bold cyan]{self.settings.agent_name}[/] [bold]v{self.settings.agent.version}[/]  ·  "
                f"LLM: [cyan]{self.settings.default_llm_provider}[/]/[cyan]{self.settings.default_llm_model}[/]\n"
                f"Workspace: [dim]{self.workspace}[/]  ·  "
                f"Project: [bold]{self._project_label or '(none)'}[/]\n\n"
                f"Describe the system you want specified, or [bold]/help[/] for commands. "
                f"[bold]/exit[/] or Ctrl+D to quit.",
                border_style="cyan",
                padding=(0, 2),
            )
        )

    # ── REPL Loop ─────────────────────────────────────────────────────────────

    async def _repl_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                user_input = await aioconsole.ainput(self._build_prompt())
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye.[/]")
                break

            user_input = user_input.strip()
            if not user_input:
                continue
            if user_input.lower() in ("exit", "quit", "/exit", "/quit"):
                self.console.print("[dim]Goodbye.[/]")
                break

            await self._dispatch(user_input)

    def _build_prompt(self) -> str:
        colours = {
            EngineState.AWAITING_USER.value: "\033[35m",
            EngineState.EXECUTING_STEP.value: "\033[36m",
            EngineState.PLANNING.value: "\033[36m",
        }
        reset = "\033[0m"
        colour = colours.get(self._state_label, "\033[32m")
        project = self._project_label or "-"
        suffix = "?" if self._state_label == EngineState.AWAITING_USER.value else ">"
        return f"{colour}SRSForge[{project}][{self._state_label}]{reset}{suffix} "

    @property
    def _busy(self) -> bool:
        return self._running_task is not None and not self._running_task.done()

    # ── Command Dispatch ──────────────────────────────────────────────────────

    async def _dispatch(self, raw: str) -> None:
        if raw.startswith("/"):
            parts = raw.split(maxsplit=1)
            cmd = parts[0].lower()
            arg = parts[1].strip() if len(parts) > 1 else ""

            handlers = {
                "/help":    lambda _: self._print_help(),
                "/status":  lambda _: self._cmd_status(),
                "/cancel":  lambda _: self._cmd_cancel(),
                "/retry":   lambda _: self._cmd_retry(),
                "/archive": lambda _: self._cmd_new(""),
                "/new":     self._cmd_new,
            }
            handler = handlers.get(cmd)
            if handler is None:
                self.console.print(f"[yellow]Unknown command: {cmd}. Type /help for commands.[/]")
                return
            result = handler(arg)
            if asyncio.iscoroutine(result):
                await result
            return

        if self._busy:
            self.console.print("[yellow]Still working on the previous request. Use /cancel to stop it.[/]")
            return
        self._start_turn(self.orchestrator.handle_message(self.workspace, raw))

    def _start_turn(self, coro) -> None:
        self._state_label = EngineState.EXECUTING_STEP.value
        self.console.print("[dim cyan]Working... (/cancel to stop, /status to inspect)[/]")
        self._running_task = asyncio.create_task(self._run_turn(coro))

    async def _run_turn(self, coro) -> None:
        try:
            turn = await coro
        except SRSForgeError as e:
            log.error("cli.turn_failed", error=str(e), error_type=type(e).__name__)
            self.console.print(f"[red]✗ {type(e).__name__}: {e}[/]")
        except asyncio.CancelledError:
            self.console.print("[yellow]🛑 Task cancelled.[/]")
            raise
        else:
            self._render_turn(turn)
        finally:
            await self._refresh_labels()

    # ── Commands ──────────────────────────────────────────────────────────────

    def _print_help(self) -> None:
        self.console.print(Markdown(_HELP_TEXT))

    async def _cmd_status(self) -> None:
        status = await self.orchestrator.status(self.workspace)
        session = status["session"]
        engine = status["engine"]

        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_row("Workspace", status["workspace"])
        if session:
            table.add_row("Project", session.get("project_name") or "(none)")
            table.add_row("Base dir", session.get("base_dir") or "-")
            table.add_row("Last modified", session["metadata"]["last_modified"])
            table.add_row("Expired", "yes" if status["expired"] else "no")
        else:
            table.add_row("Session", "(none yet)")
        if engine:
            table.add_row("Engine", engine["state"])
            if engine.get("pending_question"):
                table.add_row("Waiting for", engine["pending_question"])
            if engine.get("last_failure"):
                table.add_row("Last failure", engine["last_failure"])
        table.add_row("Busy", "yes" if self._busy else "no")
        self.console.print(Panel(table, title="Status", border_style="cyan"))

        if engine and engine.get("plan"):
            self._render_plan_steps(engine["plan"]["steps"])

    def _cmd_cancel(self) -> None:
        if not self._busy and self._state_label != EngineState.AWAITING_USER.value:
            self.console.print("[dim]Nothing to cancel.[/]")
            return
        self.orchestrator.cancel(self.workspace)
        self.console.print("[yellow]Cancellation requested; the current step stops at its next checkpoint.[/]")
        if not self._busy:
            self._state_label = EngineState.IDLE.value

    async def _cmd_retry(self) -> None:
        if self._busy:
            self.console.print("[yellow]Still working. Use /cancel first.[/]")
            return
        self._start_turn(self.orchestrator.retry(self.workspace))

    async def _cmd_new(self, project: str) -> None:
        if self._busy:
            self.console.print("[yellow]Still working. Use /cancel first.[/]")
            return
        turn = await self.orchestrator.start_new_project(self.workspace, project or None)
        self._render_turn(turn)
        await self._refresh_labels()

    # ── Rendering ─────────────────────────────────────────────────────────────

    def _render_turn(self, turn: TurnResult) -> None:
        if turn.steps:
            self._render_plan_steps([
                {"step_number": s.step_number, "specialist_id": s.specialist_id,
                 "status": s.status.value, "description": s.message}
                for s in turn.steps
            ])

        text = turn.message.strip() if turn.message else ""
        if not text:
            return
        if turn.question:
            self.console.print(Panel(Markdown(text), title="❓ Question", border_style="magenta"))
        elif turn.success:
            self.console.print(Panel(Markdown(text), border_style="green"))
        else:
            hint = "\n\n[dim]Type /retry to try this step again.[/]" if turn.recoverable else ""
            self.console.print(Panel(f"{text}{hint}", border_style="red"))

    def _render_plan_steps(self, steps: list[dict]) -> None:
        table = Table(title="Plan", show_lines=False)
        table.add_column("#", justify="right")
        table.add_column("Specialist", style="bold")
        table.add_column("Status")
        table.add_column("Notes", overflow="fold")
        for step in steps:
            status = StepStatus(step["status"])
            colour = _STATUS_COLOURS.get(status, "white")
            table.add_row(
                str(step["step_number"]),
                step["specialist_id"],
                f"[{colour}]{status.value}[/]",
                (step.get("description") or "")[:200],
            )
        self.console.print(table)

    async def _refresh_labels(self) -> None:
        try:
            status = await self.orchestrator.status(self.workspace)
        except SRSForgeError as e:
            log.warning("cli.status_failed", error=str(e))
            return
        session = status["session"]
        engine = status["engine"]
        self._project_label = (session or {}).get("project_name") or ""
        self._state_label = engine["state"] if engine else EngineState.IDLE.value

    # ── Shutdown ──────────────────────────────────────────────────────────────

    async def _cleanup(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()
        if self._busy:
            self.orchestrator.cancel(self.workspace)
            self._running_task.cancel()
            try:
                await self._running_task
            except asyncio.CancelledError:
                pass
        if self._stack is not None:
            self.orchestrator.shutdown()
        log.info("cli.cleanup_done", workspace=str(self.workspace))

