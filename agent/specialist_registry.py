"""
agent/specialist_registry.py — Specialist Registry + Iteration Budgets

SpecialistRegistry is the consumed interface:

    get_specialist(id) -> SpecialistDefinition | None

StaticSpecialistRegistry is the default implementation, built once from
the `specialists` section of config.yaml. IterationBudgets resolves a
specialist's maximum model-call rounds from the one static table in
IterationConfig:

    config override → registry iteration_override → category default → global default

The shipped config.yaml leaves `iterations.overrides` empty and puts each
specialist's budget on its own entry, so the config override only matters
when an operator sets one.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from exceptions import UnknownSpecialistError
from observability.logger import get_logger

log = get_logger(__name__)


class SpecialistCategory(str, Enum):
    CONTENT = "content"
    PROCESS = "process"


class SpecialistDefinition(BaseModel):
    id: str
    category: SpecialistCategory = SpecialistCategory.CONTENT
    enabled: bool = True
    iteration_override: Optional[int] = None
    include_base: list[str] = Field(default_factory=list)
    exclude_base: list[str] = Field(default_factory=list)
    allowed_tools: Optional[list[str]] = None
    description: str = ""


@runtime_checkable
class SpecialistRegistry(Protocol):
    def get_specialist(self, specialist_id: str) -> Optional[SpecialistDefinition]:
        ...

    def list_specialists(self) -> list[SpecialistDefinition]:
        ...


class StaticSpecialistRegistry:
    """In-memory registry, read-only after construction."""

    def __init__(self, definitions: Iterable[SpecialistDefinition]):
        self._by_id: dict[str, SpecialistDefinition] = {d.id: d for d in definitions}

    @classmethod
    def from_settings(cls, settings) -> "StaticSpecialistRegistry":
        return cls(
            SpecialistDefinition(**entry.model_dump()) for entry in settings.specialists
        )

    def get_specialist(self, specialist_id: str) -> Optional[SpecialistDefinition]:
        return self._by_id.get(specialist_id)

    def list_specialists(self) -> list[SpecialistDefinition]:
        return list(self._by_id.values())

    def __len__(self) -> int:
        return len(self._by_id)

    def __repr__(self) -> str:
        return f"<StaticSpecialistRegistry specialists={list(self._by_id)}>"


def require_specialist(registry: SpecialistRegistry, specialist_id: str) -> SpecialistDefinition:
    """Return an enabled definition or raise UnknownSpecialistError."""
    definition = registry.get_specialist(specialist_id)
    if definition is None:
        raise UnknownSpecialistError(specialist_id)
    if not definition.enabled:
        raise UnknownSpecialistError(
            specialist_id, f"Specialist '{specialist_id}' is registered but disabled"
        )
    return definition


class IterationBudgets:
    """Resolves iteration budgets from IterationConfig."""

    def __init__(self, iteration_config):
        self._config = iteration_config

    def max_iterations(self, definition: SpecialistDefinition) -> int:
        overrides = self._config.overrides
        if definition.id in overrides:
            source, budget = "config_override", overrides[definition.id]
        elif definition.iteration_override is not None:
            source, budget = "registry_override", definition.iteration_override
        else:
            category = SpecialistCategory(definition.category).value
            if category in self._config.category_defaults:
                source, budget = "category_default", self._config.category_defaults[category]
            else:
                source, budget = "global_default", self._config.global_default
        log.debug(
            "specialist.budget_resolved",
            specialist=definition.id,
            source=source,
            max_iterations=budget,
        )
        return budget
