from __future__ import annotations

from pathlib import Path

import allure
from conftest import write_agent

from subagent_relay.orchestrator.models import AgentScope, AgentSource
from subagent_relay.orchestrator.profiles import (
    DirectoryProfileResolver,
    find_project_agents_dir,
    load_profiles_from_dir,
    parse_profile,
)

pytestmark = [
    allure.epic("Delegation Runtime"),
    allure.feature("Profile Discovery"),
]


def test_parse_profile_reads_front_matter_and_body() -> None:
    profile = parse_profile(
        "---\n"
        "name: reviewer\n"
        "description: Reviews diffs\n"
        "tools: read, grep ,bash\n"
        "model: claude-sonnet\n"
        "thinking: high\n"
        "---\n"
        "\n"
        "You review code.\n"
        "Be strict.\n",
        source=AgentSource.PROJECT,
    )

    assert profile is not None
    assert profile.name == "reviewer"
    assert profile.description == "Reviews diffs"
    assert profile.tools == ("read", "grep", "bash")
    assert profile.model == "claude-sonnet"
    assert profile.thinking == "high"
    assert profile.system_prompt == "You review code.\nBe strict."
    assert profile.source is AgentSource.PROJECT


def test_parse_profile_accepts_tool_list() -> None:
    profile = parse_profile(
        "---\nname: scout\ntools:\n  - read\n  - ls\n---\n",
        source=AgentSource.USER,
    )

    assert profile is not None
    assert profile.tools == ("read", "ls")
    assert profile.system_prompt == ""


def test_parse_profile_rejects_missing_name_or_front_matter() -> None:
    assert parse_profile("just text", source=AgentSource.USER) is None
    assert parse_profile("---\ndescription: nameless\n---\nbody", source=AgentSource.USER) is None
    assert parse_profile("---\nname: [unclosed\n---\n", source=AgentSource.USER) is None
    assert parse_profile("---\nname: open\n", source=AgentSource.USER) is None


def test_load_profiles_skips_unusable_files(tmp_path: Path) -> None:
    write_agent(tmp_path, "alpha")
    (tmp_path / "notes.md").write_text("no front matter", "utf-8")
    (tmp_path / "ignored.txt").write_text("---\nname: txt\n---\n", "utf-8")

    profiles = load_profiles_from_dir(tmp_path, AgentSource.USER)

    assert [profile.name for profile in profiles] == ["alpha"]
    assert profiles[0].file_path == tmp_path / "alpha.md"
    assert load_profiles_from_dir(tmp_path / "missing", AgentSource.USER) == []


def test_find_project_agents_dir_walks_up(tmp_path: Path) -> None:
    agents_dir = tmp_path / "repo" / ".pi" / "agents"
    agents_dir.mkdir(parents=True)
    nested = tmp_path / "repo" / "src" / "pkg"
    nested.mkdir(parents=True)

    assert find_project_agents_dir(nested, ".pi/agents") == agents_dir.resolve()


def test_resolver_scopes_and_project_override(tmp_path: Path) -> None:
    user_dir = tmp_path / "user"
    write_agent(user_dir, "shared", prompt="user version")
    write_agent(user_dir, "personal")
    repo = tmp_path / "repo"
    write_agent(repo / ".pi" / "agents", "shared", prompt="project version")
    write_agent(repo / ".pi" / "agents", "local")
    resolver = DirectoryProfileResolver(user_dir=user_dir)

    user_only = resolver.discover(repo, AgentScope.USER)
    project_only = resolver.discover(repo, AgentScope.PROJECT)
    both = resolver.discover(repo, AgentScope.BOTH)

    assert user_only.names() == ["personal", "shared"]
    assert project_only.names() == ["local", "shared"]
    assert sorted(both.names()) == ["local", "personal", "shared"]
    shared = both.find("shared")
    assert shared is not None
    assert shared.source is AgentSource.PROJECT
    assert shared.system_prompt == "project version"
    assert both.project_agents_dir == (repo / ".pi" / "agents").resolve()
    assert both.find("missing") is None
