"""
prompts/templates.py — Template Resolution + Variable Substitution

Layout under the templates directory:

    base/<name>.md                          shared fragments
    specialists/<category>/<specialist>.md  one per specialist

A specialist gets the default base set for its category unless its
registry entry names `include_base` (use exactly those) or
`exclude_base` (drop those from the default set).
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Mapping

from agent.specialist_registry import SpecialistCategory, SpecialistDefinition

DEFAULT_BASE_TEMPLATES = (
    "common-role-definition",
    "output-format-schema",
    "quality-guidelines",
    "boundary-constraints",
)
CONTENT_WORKFLOW_TEMPLATE = "content-specialist-workflow"

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_.]*)\s*\}\}")


def substitute(text: str, variables: Mapping[str, object]) -> str:
    """Replace {{VAR}} with variables[VAR]; unknown placeholders stay verbatim."""

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name in variables and variables[name] is not None:
            return str(variables[name])
        return match.group(0)

    return _PLACEHOLDER_RE.sub(_replace, text)


def base_templates_for(definition: SpecialistDefinition) -> list[str]:
    if definition.include_base:
        return list(definition.include_base)
    names = list(DEFAULT_BASE_TEMPLATES)
    if SpecialistCategory(definition.category) == SpecialistCategory.CONTENT:
        names.insert(2, CONTENT_WORKFLOW_TEMPLATE)
    excluded = set(definition.exclude_base)
    return [n for n in names if n not in excluded]


class TemplateLoader:
    """Reads template files; missing files raise FileNotFoundError."""

    def __init__(self, templates_dir: str | Path):
        self.templates_dir = Path(templates_dir)
        self._cache: dict[Path, str] = {}

    def _read(self, path: Path) -> str:
        if path not in self._cache:
            if not path.is_file():
                raise FileNotFoundError(f"Template not found: {path}")
            self._cache[path] = path.read_text(encoding="utf-8")
        return self._cache[path]

    def load_base(self, definition: SpecialistDefinition) -> list[tuple[str, str]]:
        return [
            (name, self._read(self.templates_dir / "base" / f"{name}.md"))
            for name in base_templates_for(definition)
        ]

    def load_specialist(self, definition: SpecialistDefinition) -> str:
        category = SpecialistCategory(definition.category).value
        return self._read(self.templates_dir / "specialists" / category / f"{definition.id}.md")
