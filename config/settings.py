"""
config/settings.py — SRSForge Runtime Settings

Merges config.yaml (defaults/structure) with .env (secrets).
Pydantic-powered — all fields are validated and typed.

  - IterationConfig holds the one static specialist budget table
    (category defaults + per-specialist overrides + global default)
  - HistoryConfig rejects tier ratios that do not sum to 1.0
  - SpecialistConfig entries are the static specialist registry
  - validate_all() performs full startup validation and raises ConfigError
    with a clear, human-readable message listing every problem found
  - load_settings() respects SRSFORGE_CONFIG env var as a fallback
    when no explicit config_path argument is given
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from exceptions import ConfigError


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_CATEGORIES = {"content", "process"}
_KNOWN_PROVIDERS = {"openai", "openrouter", "ollama"}
_TIER_NAMES = ("immediate", "recent", "milestone")

_DEFAULT_TEMPLATES_DIR = str(Path(__file__).resolve().parent.parent / "prompts" / "templates")


def _require_positive(name: str, v: int) -> int:
    if v < 1:
        raise ValueError(f"{name} must be >= 1")
    return v


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class AgentConfig(BaseModel):
    name: str = "SRSForge"
    version: str = "1.0.0"


class LLMConfig(BaseModel):
    default_provider: str = "openai"
    default_model: str = "gpt-4o"
    temperature: float = 0.3
    max_tokens: int = 4096
    stream: bool = True

    @field_validator("default_provider")
    @classmethod
    def _known_provider(cls, v: str) -> str:
        if v not in _KNOWN_PROVIDERS:
            raise ValueError(
                f"llm.default_provider '{v}' is not supported. "
                f"Supported: {sorted(_KNOWN_PROVIDERS)}"
            )
        return v

    @field_validator("temperature")
    @classmethod
    def _valid_temperature(cls, v: float) -> float:
        if not (0.0 <= v <= 2.0):
            raise ValueError("llm.temperature must be between 0.0 and 2.0")
        return v

    @field_validator("max_tokens")
    @classmethod
    def _positive_tokens(cls, v: int) -> int:
        return _require_positive("llm.max_tokens", v)


class RetryConfig(BaseModel):
    """Backoff for classified transient model errors: base * 2^(retry-1)."""
    backoff_base_seconds: float = 1.0
    empty_response_retries: int = 3

    @field_validator("backoff_base_seconds")
    @classmethod
    def _non_negative_base(cls, v: float) -> float:
        if v < 0:
            raise ValueError("retry.backoff_base_seconds must be >= 0")
        return v

    @field_validator("empty_response_retries")
    @classmethod
    def _non_negative_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("retry.empty_response_retries must be >= 0")
        return v


class IterationConfig(BaseModel):
    """Static specialist iteration budget table, resolved once at startup."""
    category_defaults: Dict[str, int] = Field(
        default_factory=lambda: {"content": 15, "process": 8}
    )
    global_default: int = 10
    # Operator overrides win over a specialist's own iteration_override.
    # Shipped budgets live on the specialists in config.yaml, so this is empty.
    overrides: Dict[str, int] = Field(default_factory=dict)

    @field_validator("category_defaults")
    @classmethod
    def _known_categories(cls, v: Dict[str, int]) -> Dict[str, int]:
        unknown = set(v) - _VALID_CATEGORIES
        if unknown:
            raise ValueError(
                f"iterations.category_defaults has unknown categories {sorted(unknown)}; "
                f"valid: {sorted(_VALID_CATEGORIES)}"
            )
        for name, budget in v.items():
            _require_positive(f"iterations.category_defaults.{name}", budget)
        return v

    @field_validator("overrides")
    @classmethod
    def _positive_overrides(cls, v: Dict[str, int]) -> Dict[str, int]:
        for name, budget in v.items():
            _require_positive(f"iterations.overrides.{name}", budget)
        return v

    @field_validator("global_default")
    @classmethod
    def _positive_global(cls, v: int) -> int:
        return _require_positive("iterations.global_default", v)


class HistoryConfig(BaseModel):
    token_budget: int = 40000
    tier_ratios: Dict[str, float] = Field(
        default_factory=lambda: {"immediate": 0.55, "recent": 0.30, "milestone": 0.15}
    )
    immediate_iterations: int = 3
    recent_iterations: int = 5

    @field_validator("tier_ratios")
    @classmethod
    def _valid_ratios(cls, v: Dict[str, float]) -> Dict[str, float]:
        if set(v) != set(_TIER_NAMES):
            raise ValueError(f"history.tier_ratios must define exactly {list(_TIER_NAMES)}")
        if any(r < 0 for r in v.values()):
            raise ValueError("history.tier_ratios must be non-negative")
        if abs(sum(v.values()) - 1.0) > 1e-6:
            raise ValueError(
                f"history.tier_ratios must sum to 1.0, got {sum(v.values()):.3f}"
            )
        return v

    @field_validator("token_budget", "immediate_iterations", "recent_iterations")
    @classmethod
    def _positive(cls, v: int) -> int:
        return _require_positive("history value", v)


class SessionConfig(BaseModel):
    log_dir_name: str = ".session-log"
    max_age_hours: float = 24.0
    write_retries: int = 3
    auto_archive_expired: bool = False

    @field_validator("write_retries")
    @classmethod
    def _positive_retries(cls, v: int) -> int:
        return _require_positive("session.write_retries", v)


class EngineConfig(BaseModel):
    registry_capacity: int = 16

    @field_validator("registry_capacity")
    @classmethod
    def _positive_capacity(cls, v: int) -> int:
        return _require_positive("engine.registry_capacity", v)


class PromptsConfig(BaseModel):
    templates_dir: str = _DEFAULT_TEMPLATES_DIR


class ToolsConfig(BaseModel):
    disabled: List[str] = Field(default_factory=list)
    timeout_seconds: Optional[float] = None   # None = no dispatch timeout

    @field_validator("timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError(f"tools.timeout_seconds must be > 0, got {v}")
        return v


class SpecialistConfig(BaseModel):
    """One entry of the static specialist registry."""
    id: str
    category: str = "content"
    enabled: bool = True
    iteration_override: Optional[int] = None
    include_base: List[str] = Field(default_factory=list)
    exclude_base: List[str] = Field(default_factory=list)
    allowed_tools: Optional[List[str]] = None     # None: every enabled tool
    description: str = ""

    @field_validator("category")
    @classmethod
    def _valid_category(cls, v: str) -> str:
        if v not in _VALID_CATEGORIES:
            raise ValueError(
                f"specialist category must be one of {sorted(_VALID_CATEGORIES)}, got '{v}'"
            )
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 100
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

_PROVIDER_BASE_URLS = {
    "openrouter": "https://openrouter.ai/api/v1",
}


class Settings(BaseSettings):
    """
    SRSForge runtime settings.

    Priority (highest to lowest):
      1. Environment variables
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # -- Secrets from .env ---------------------------------------------------
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    openrouter_api_key: Optional[str] = Field(default=None, alias="OPENROUTER_API_KEY")
    ollama_base_url: str = Field(default="http://localhost:11434", alias="OLLAMA_BASE_URL")

    # -- Structured config (from config.yaml) --------------------------------
    agent: AgentConfig = Field(default_factory=AgentConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    iterations: IterationConfig = Field(default_factory=IterationConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    prompts: PromptsConfig = Field(default_factory=PromptsConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    specialists: List[SpecialistConfig] = Field(default_factory=list)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("specialists", mode="before")
    @classmethod
    def _coerce_specialists(cls, v: Any) -> Any:
        # config.yaml may map id -> fields instead of listing entries
        if isinstance(v, dict):
            return [{"id": k, **(fields or {})} for k, fields in v.items()]
        return v

    # -- Convenience properties ----------------------------------------------

    @property
    def default_llm_provider(self) -> str:
        return self.llm.default_provider

    @property
    def default_llm_model(self) -> str:
        return self.llm.default_model

    @property
    def agent_name(self) -> str:
        return self.agent.name

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> "Path":
        return Path(self.logging.log_dir)

    @property
    def log_json_format(self) -> bool:
        return self.logging.json_format

    @property
    def log_console_output(self) -> bool:
        return self.logging.console_output

    @property
    def llm_api_key(self) -> Optional[str]:
        return {
            "openai": self.openai_api_key,
            "openrouter": self.openrouter_api_key,
            "ollama": "ollama",
        }[self.llm.default_provider]

    @property
    def llm_base_url(self) -> Optional[str]:
        if self.llm.default_provider == "ollama":
            return self.ollama_base_url.rstrip("/") + "/v1"
        return _PROVIDER_BASE_URLS.get(self.llm.default_provider)

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time; this
        method catches cross-field problems Pydantic can't see.
        """
        errors: list[str] = []

        # ── LLM provider API key ─────────────────────────────────────────────
        key_names = {"openai": "OPENAI_API_KEY", "openrouter": "OPENROUTER_API_KEY"}
        provider = self.llm.default_provider
        if provider in key_names and not self.llm_api_key:
            errors.append(
                f"LLM provider '{provider}' requires {key_names[provider]} to be set "
                f"in your .env file."
            )

        # ── Specialist registry ─────────────────────────────────────────────
        seen: set[str] = set()
        for definition in self.specialists:
            if definition.id in seen:
                errors.append(f"specialists: duplicate id '{definition.id}'")
            seen.add(definition.id)
            if definition.iteration_override is not None and definition.iteration_override < 1:
                errors.append(
                    f"specialists.{definition.id}.iteration_override must be >= 1"
                )
            overlap = set(definition.include_base) & set(definition.exclude_base)
            if overlap:
                errors.append(
                    f"specialists.{definition.id}: {sorted(overlap)} listed in both "
                    f"include_base and exclude_base"
                )

        # ── Templates directory ──────────────────────────────────────────────
        if not Path(self.prompts.templates_dir).is_dir():
            errors.append(
                f"prompts.templates_dir '{self.prompts.templates_dir}' does not exist."
            )

        # ── Report all errors together ───────────────────────────────────────
        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nSRSForge startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

import threading as _threading

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()

_KNOWN_SECTIONS = {
    "agent", "llm", "retry", "iterations", "history",
    "session", "engine", "prompts", "tools", "specialists", "logging",
}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. SRSFORGE_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("SRSFORGE_CONFIG")
    if env_path:
        return Path(env_path)
    return Path(__file__).resolve().parent / "config.yaml"


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    resolved_path = _resolve_config_path(config_path)
    yaml_data = _load_yaml(resolved_path)

    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading from the default config
    path on first use. Guarded by _singleton_lock against double-initialisation.
    """
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            _singleton = Settings(
                **{
                    k: v
                    for k, v in _load_yaml(_resolve_config_path(None)).items()
                    if k in _KNOWN_SECTIONS
                }
            )
    return _singleton
