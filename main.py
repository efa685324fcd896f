"""
main.py — SRSForge Entry Point

Usage:
    python main.py                              # CLI REPL in the current directory
    python main.py --workspace ./specs          # CLI REPL rooted at ./specs
    python main.py --log-level DEBUG            # Verbose logging
    python main.py --config path/to/config.yaml
"""

from __future__ import annotations

# ─────────────────────────────────────────────────────────────────────────────
# Load environment variables before anything reads settings
# ─────────────────────────────────────────────────────────────────────────────

from dotenv import load_dotenv
from pathlib import Path

ENV_PATH = Path(__file__).parent / ".env"
load_dotenv(dotenv_path=ENV_PATH)

# ─────────────────────────────────────────────────────────────────────────────
import argparse
import asyncio
import sys


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="srsforge",
        description="SRSForge — specialist agents that write Software Requirements Specifications",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $SRSFORGE_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    parser.add_argument(
        "--workspace",
        default=".",
        help="Directory holding .session-log/ and the project folders (default: .)",
    )
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if:
      - config.yaml has invalid values (Pydantic ValidationError)
      - cross-field problems are found (ConfigError from validate_all())
    """
    from config.settings import load_settings
    from exceptions import ConfigError
    from observability.logger import setup_logging, get_logger
    from pydantic import ValidationError

    # -- Load and parse -------------------------------------------------------
    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {'.'.join(str(p) for p in e['loc']) if e['loc'] else '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError, TypeError) as exc:
        print(
            f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n",
            file=sys.stderr,
        )
        sys.exit(1)

    # -- Cross-field validation -----------------------------------------------
    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    # -- Logging --------------------------------------------------------------
    # CLI --log-level flag overrides config.yaml
    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.log_json_format,
        console_output=settings.log_console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )

    log = get_logger("srsforge.main")
    return settings, log


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings, log = bootstrap(args)

    workspace = Path(args.workspace).expanduser().resolve()
    log.info(
        "srsforge.starting",
        version=settings.agent.version,
        workspace=str(workspace),
        llm_provider=settings.default_llm_provider,
        llm_model=settings.default_llm_model,
    )

    # ── Fail fast on an unusable model ────────────────────────────────────────
    from brain import LanguageModelFactory
    try:
        client = LanguageModelFactory.from_settings(settings)
        is_healthy = await client.health_check()
    except (ValueError, OSError) as e:
        log.error("srsforge.llm_init_failed", error=str(e), error_type=type(e).__name__)
        print(
            f"\n❌  Failed to initialize LLM provider '{settings.default_llm_provider}': {e}\n",
            file=sys.stderr,
        )
        return 1
    if not is_healthy:
        log.error("srsforge.llm_health_check_failed", provider=settings.default_llm_provider)
        print(
            f"\n❌  LLM health check failed for '{settings.default_llm_provider}'.\n"
            f"    Please double check your API key and network connection.\n",
            file=sys.stderr,
        )
        return 1

    workspace.mkdir(parents=True, exist_ok=True)
    settings.log_dir.mkdir(parents=True, exist_ok=True)

    from interfaces.cli import CLIInterface
    from kernel.bootstrap import build_agent_stack

    stack = build_agent_stack(settings, model=client)
    cli = CLIInterface(settings=settings, workspace=workspace, stack=stack)
    log.info("srsforge.interface_starting", interface="cli")
    try:
        await cli.start()
    except KeyboardInterrupt:
        log.info("srsforge.interrupted")
    finally:
        log.info("srsforge.stopped")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
