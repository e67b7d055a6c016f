"""
Skills: instruction bundles the model can pull in on demand.

A skill is a directory holding a ``SKILL.md`` whose YAML frontmatter names
and describes it::

    ---
    name: release-notes
    description: Draft release notes from a list of merged changes.
    ---
    (instructions...)

Only names and descriptions go into the system prompt; the model reads the
full file through the ``load_skill`` tool when a skill applies.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Iterable
from xml.sax.saxutils import escape

import yaml

from agentloop.tools.base import AgentTool, tool
from agentloop.tools.registry import ToolRegistry
from agentloop.types import AgentloopError

if TYPE_CHECKING:
    from agentloop.agent import Agent

logger = logging.getLogger(__name__)

SKILL_FILE = "SKILL.md"
LOADER_TOOL_NAME = "load_skill"
MAX_SKILL_CHARS = 50_000
_NAME_RE = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")
_XML_ENTITIES = {'"': "&quot;", "'": "&apos;"}


class SkillError(AgentloopError):
    """A ``SKILL.md`` that cannot be used, or an unknown skill name."""


@dataclass
class Skill:
    name: str
    description: str
    path: Path
    license: str | None = None
    compatibility: str | None = None
    allowed_tools: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def skill_file(self) -> Path:
        return self.path / SKILL_FILE


def default_skill_dirs(cwd: str | Path | None = None) -> list[Path]:
    """Project skills first, then the user's."""
    base = Path(cwd) if cwd is not None else Path.cwd()
    return [base.resolve() / ".agentloop" / "skills", Path.home() / ".agentloop" / "skills"]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_frontmatter(content: str) -> dict:
    lines = content.split("\n")
    if not lines or lines[0].strip() != "---":
        raise SkillError("missing frontmatter start delimiter")
    for end, line in enumerate(lines[1:], start=1):
        if line.strip() == "---":
            break
    else:
        raise SkillError("missing frontmatter end delimiter")
    try:
        fields = yaml.safe_load("\n".join(lines[1:end])) or {}
    except yaml.YAMLError as exc:
        raise SkillError(f"invalid frontmatter: {exc}") from exc
    if not isinstance(fields, dict):
        raise SkillError("frontmatter must be a mapping")
    return fields


def validate_skill_name(name: str) -> None:
    if not 1 <= len(name) <= 64:
        raise SkillError("skill name must be 1-64 characters")
    if not _NAME_RE.match(name):
        raise SkillError(f"invalid skill name: {name}")


def _optional_str(fields: dict, key: str) -> str | None:
    value = fields.get(key)
    return None if value is None else str(value)


def parse_skill(skill_file: str | Path) -> Skill:
    """
    Read and validate one ``SKILL.md``.

    Parameters
    ----------
    skill_file:
        Path to the file; its directory name must equal the skill name.

    Raises
    ------
    SkillError
        Missing or malformed frontmatter, missing ``name``/``description``,
        or a field outside its allowed length.
    """
    skill_file = Path(skill_file)
    fields = parse_frontmatter(skill_file.read_text(encoding="utf-8"))
    name = fields.get("name")
    description = fields.get("description")
    if name is None:
        raise SkillError("missing required field: name")
    if description is None:
        raise SkillError("missing required field: description")
    name, description = str(name), str(description)
    validate_skill_name(name)
    if not 1 <= len(description) <= 1024:
        raise SkillError("description must be 1-1024 characters")
    skill_dir = skill_file.parent
    if skill_dir.name != name:
        raise SkillError(f"skill name must match directory name: {skill_dir.name}")
    compatibility = _optional_str(fields, "compatibility")
    if compatibility is not None and not 1 <= len(compatibility) <= 500:
        raise SkillError("compatibility must be 1-500 characters")
    raw_meta = fields.get("metadata")
    metadata = (
        {str(k): str(v) for k, v in raw_meta.items()} if isinstance(raw_meta, dict) else {}
    )
    return Skill(
        name=name,
        description=description,
        path=skill_dir,
        license=_optional_str(fields, "license"),
        compatibility=compatibility,
        allowed_tools=_optional_str(fields, "allowed-tools"),
        metadata=metadata,
    )


def discover_skills(paths: Iterable[str | Path]) -> list[Skill]:
    """
    Every valid skill under *paths*, in path order then directory order.

    Invalid skills are logged and skipped; a name already found in an
    earlier path shadows later ones.
    """
    skills: list[Skill] = []
    seen: dict[str, Skill] = {}
    for base in paths:
        base = Path(base).expanduser()
        if not base.is_dir():
            continue
        for entry in sorted(base.iterdir()):
            skill_file = entry / SKILL_FILE
            if not entry.is_dir() or not skill_file.is_file():
                continue
            try:
                skill = parse_skill(skill_file)
            except (SkillError, OSError) as exc:
                logger.warning("Skipping invalid skill %s: %s", entry, exc)
                continue
            if skill.name in seen:
                logger.warning(
                    "Skipping duplicate skill %s at %s (first found at %s)",
                    skill.name,
                    entry,
                    seen[skill.name].path,
                )
                continue
            seen[skill.name] = skill
            skills.append(skill)
    return skills


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class SkillRegistry:
    """Skills by name plus a cache of loaded ``SKILL.md`` contents."""

    def __init__(self, paths: Iterable[str | Path] | None = None) -> None:
        self.paths = [Path(p) for p in (paths if paths is not None else default_skill_dirs())]
        self.skills: dict[str, Skill] = {}
        self._loaded: dict[str, str] = {}
        self.reload()

    def reload(self) -> SkillRegistry:
        self.skills = {s.name: s for s in discover_skills(self.paths)}
        self._loaded.clear()
        logger.debug("Found %d skill(s) in %s", len(self.skills), self.paths)
        return self

    def __len__(self) -> int:
        return len(self.skills)

    def __contains__(self, name: object) -> bool:
        return name in self.skills

    def load(self, name: str, *, refresh: bool = False) -> str:
        skill = self.skills.get(name)
        if skill is None:
            raise SkillError(f"unknown skill: {name}")
        if refresh or name not in self._loaded:
            self._loaded[name] = skill.skill_file.read_text(encoding="utf-8")
        return self._loaded[name]

    def loader_tool(self) -> AgentTool:
        registry = self

        @tool(name=LOADER_TOOL_NAME)
        def load_skill(name: str) -> str:
            """Load the full SKILL.md instructions for a known skill by name."""
            content = registry.load(name)
            if len(content) <= MAX_SKILL_CHARS:
                return content
            path = registry.skills[name].skill_file
            return (
                content[:MAX_SKILL_CHARS]
                + f"\n\n[Skill truncated at {MAX_SKILL_CHARS} characters; read {path} for the rest.]"
            )

        return load_skill


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------


def available_skills_xml(skills: Iterable[Skill], *, include_location: bool = True) -> str:
    lines = ["<available_skills>"]
    for skill in sorted(skills, key=lambda s: s.name):
        lines.append("  <skill>")
        lines.append(f"    <name>{escape(skill.name, _XML_ENTITIES)}</name>")
        lines.append(f"    <description>{escape(skill.description, _XML_ENTITIES)}</description>")
        if include_location:
            lines.append(f"    <location>{escape(str(skill.skill_file), _XML_ENTITIES)}</location>")
        lines.append("  </skill>")
    lines.append("</available_skills>")
    return "\n".join(lines)


def append_available_skills(
    prompt: str, skills: Iterable[Skill], *, include_location: bool = True
) -> str:
    xml = available_skills_xml(skills, include_location=include_location)
    return f"{prompt}\n\n{xml}" if prompt else xml


def with_skills(agent: Agent, registry: SkillRegistry, *, include_location: bool = True) -> Agent:
    """
    A copy of *agent* that lists *registry*'s skills in its prompt and can
    load them.  Returns *agent* itself when there are no skills.
    """
    if not registry.skills:
        return agent
    tools = [t for t in agent.tools.list() if t.name != LOADER_TOOL_NAME]
    return replace(
        agent,
        prompt=append_available_skills(
            agent.prompt, registry.skills.values(), include_location=include_location
        ),
        tools=ToolRegistry([*tools, registry.loader_tool()]),
    )
