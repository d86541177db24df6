"""Worker profile discovery from markdown files with YAML front matter."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import yaml

from subagent_relay.orchestrator.models import AgentScope, AgentSource, WorkerProfile

logger = logging.getLogger(__name__)

_FRONT_MATTER_DELIMITER = "---"


@dataclass(slots=True)
class ProfileDiscovery:
    """Profiles visible for one scope, in resolution order."""

    agents: list[WorkerProfile] = field(default_factory=list)
    project_agents_dir: Path | None = None

    def find(self, name: str) -> WorkerProfile | None:
        for agent in self.agents:
            if agent.name == name:
                return agent
        return None

    def names(self) -> list[str]:
        return [agent.name for agent in self.agents]


class ProfileResolver(Protocol):
    """Protocol implemented by profile sources."""

    def discover(self, cwd: Path, scope: AgentScope) -> ProfileDiscovery:
        """Return the profiles visible from ``cwd`` for ``scope``."""


class DirectoryProfileResolver:
    """Reads ``*.md`` agent definitions from user and project directories.

    With ``AgentScope.BOTH`` a project profile replaces a user profile of the
    same name.
    """

    def __init__(self, *, user_dir: Path, project_subdir: str = ".pi/agents") -> None:
        self.user_dir = user_dir
        self.project_subdir = project_subdir

    def discover(self, cwd: Path, scope: AgentScope) -> ProfileDiscovery:
        project_dir = find_project_agents_dir(cwd, self.project_subdir)
        by_name: dict[str, WorkerProfile] = {}

        if scope in (AgentScope.USER, AgentScope.BOTH):
            for profile in load_profiles_from_dir(self.user_dir, AgentSource.USER):
                by_name[profile.name] = profile
        if scope in (AgentScope.PROJECT, AgentScope.BOTH) and project_dir is not None:
            for profile in load_profiles_from_dir(project_dir, AgentSource.PROJECT):
                by_name[profile.name] = profile

        return ProfileDiscovery(agents=list(by_name.values()), project_agents_dir=project_dir)


def find_project_agents_dir(cwd: Path, project_subdir: str) -> Path | None:
    """Walk up from ``cwd`` to the nearest directory holding project agents."""

    current = cwd.resolve()
    for candidate in (current, *current.parents):
        agents_dir = candidate / project_subdir
        if agents_dir.is_dir():
            return agents_dir
    return None


def load_profiles_from_dir(directory: Path, source: AgentSource) -> list[WorkerProfile]:
    if not directory.is_dir():
        return []

    profiles: list[WorkerProfile] = []
    for path in sorted(directory.glob("*.md")):
        try:
            text = path.read_text("utf-8")
        except OSError as error:
            logger.warning("Cannot read agent definition %s: %s", path, error)
            continue
        profile = parse_profile(text, source=source, file_path=path)
        if profile is None:
            logger.debug("Skipping %s: no usable front matter", path)
            continue
        profiles.append(profile)
    return profiles


def parse_profile(
    text: str,
    *,
    source: AgentSource,
    file_path: Path | None = None,
) -> WorkerProfile | None:
    """Parse one agent definition; ``None`` when front matter or name is missing."""

    split = _split_front_matter(text)
    if split is None:
        return None
    header, body = split
    try:
        meta = yaml.safe_load(header)
    except yaml.YAMLError as error:
        logger.warning("Invalid YAML front matter in %s: %s", file_path or "<text>", error)
        return None
    if not isinstance(meta, dict):
        return None

    name = meta.get("name")
    if not isinstance(name, str) or not name.strip():
        return None

    return WorkerProfile(
        name=name.strip(),
        description=_optional_text(meta.get("description")) or "",
        tools=_parse_tools(meta.get("tools")),
        model=_optional_text(meta.get("model")),
        thinking=_optional_text(meta.get("thinking")),
        system_prompt=body.strip(),
        source=source,
        file_path=file_path,
    )


def _split_front_matter(text: str) -> tuple[str, str] | None:
    lines = text.splitlines()
    if not lines or lines[0].strip() != _FRONT_MATTER_DELIMITER:
        return None
    for index in range(1, len(lines)):
        if lines[index].strip() == _FRONT_MATTER_DELIMITER:
            return "\n".join(lines[1:index]), "\n".join(lines[index + 1 :])
    return None


def _parse_tools(raw: Any) -> tuple[str, ...]:
    if isinstance(raw, str):
        items = raw.split(",")
    elif isinstance(raw, list):
        items = [item for item in raw if isinstance(item, str)]
    else:
        return ()
    return tuple(item.strip() for item in items if item.strip())


def _optional_text(raw: Any) -> str | None:
    if raw is None:
        return None
    value = str(raw).strip()
    return value or None
