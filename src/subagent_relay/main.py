"""CLI entrypoint for subagent-relay."""

from collections.abc import Sequence
from pathlib import Path

import rich_click as click

from subagent_relay import __version__
from subagent_relay.orchestrator.controllers import (
    AgentsCommand,
    ChainCommand,
    DelegateOptions,
    DelegationCliController,
    DelegationCliResult,
    ParallelCommand,
    RequestFileCommand,
    RunCommand,
    describe_project_agents,
)
from subagent_relay.orchestrator.models import AgentScope, WorkerProfile

click.rich_click.USE_MARKDOWN = True


def _confirm_project_agents(profiles: Sequence[WorkerProfile], directory: Path | None) -> bool:
    click.echo(describe_project_agents([profile.name for profile in profiles], directory), err=True)
    return click.confirm("Run project-local agents?", default=False, err=True)


def _echo_progress(line: str) -> None:
    click.echo(line, err=True)


DELEGATION_CONTROLLER = DelegationCliController(
    progress=_echo_progress,
    confirm=_confirm_project_agents,
)

_SCOPE_CHOICE = click.Choice([scope.value for scope in AgentScope])


def _delegate_options(function):  # type: ignore[no-untyped-def]
    function = click.option(
        "--background",
        is_flag=True,
        default=False,
        help="Run as a background job and poll until it finishes.",
    )(function)
    function = click.option(
        "--yes",
        "assume_yes",
        is_flag=True,
        default=False,
        help="Run project-local agents without asking for confirmation.",
    )(function)
    function = click.option(
        "--scope",
        type=_SCOPE_CHOICE,
        default=AgentScope.USER.value,
        show_default=True,
        help="Which agent directories to use.",
    )(function)
    return click.option(
        "--cwd",
        type=click.Path(path_type=Path, file_okay=False),
        default=None,
        help="Working directory for the agent processes.",
    )(function)


def _options(cwd: Path | None, scope: str, assume_yes: bool, background: bool) -> DelegateOptions:
    return DelegateOptions(
        cwd=cwd,
        agent_scope=AgentScope(scope),
        confirm_project_agents=not assume_yes,
        background=background,
    )


@click.group()
@click.version_option(version=__version__, prog_name="subagent-relay")
def subagent_relay() -> None:
    """Delegate tasks to isolated agent processes."""


@subagent_relay.command("run")
@click.option("--agent", required=True, help="Name of the agent to invoke.")
@click.option("--task", required=True, help="Task to delegate to the agent.")
@click.option(
    "--session-id",
    default=None,
    help="Resume a previous session of the same agent.",
)
@_delegate_options
def run(  # noqa: PLR0913
    agent: str,
    task: str,
    session_id: str | None,
    cwd: Path | None,
    scope: str,
    assume_yes: bool,
    background: bool,
) -> None:
    """Run one task with one agent."""

    _emit_result(
        DELEGATION_CONTROLLER.run(
            RunCommand(
                agent=agent,
                task=task,
                session_id=session_id,
                options=_options(cwd, scope, assume_yes, background),
            ),
        ),
    )


@subagent_relay.command("parallel")
@click.option(
    "--item",
    "items",
    multiple=True,
    required=True,
    help="agent=task pair. Can be repeated.",
)
@_delegate_options
def parallel(
    items: tuple[str, ...],
    cwd: Path | None,
    scope: str,
    assume_yes: bool,
    background: bool,
) -> None:
    """Run several tasks concurrently."""

    _emit_result(
        DELEGATION_CONTROLLER.parallel(
            ParallelCommand(items=items, options=_options(cwd, scope, assume_yes, background)),
        ),
    )


@subagent_relay.command("chain")
@click.option(
    "--step",
    "steps",
    multiple=True,
    required=True,
    help="agent=task step; {previous} is replaced with the prior step's output.",
)
@_delegate_options
def chain(
    steps: tuple[str, ...],
    cwd: Path | None,
    scope: str,
    assume_yes: bool,
    background: bool,
) -> None:
    """Run steps sequentially, feeding each output into the next task."""

    _emit_result(
        DELEGATION_CONTROLLER.chain(
            ChainCommand(steps=steps, options=_options(cwd, scope, assume_yes, background)),
        ),
    )


@subagent_relay.command("request")
@click.argument("path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option(
    "--cwd",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Base working directory.",
)
def request(path: Path, cwd: Path | None) -> None:
    """Run a JSON request (agent/task, tasks or chain)."""

    _emit_result(DELEGATION_CONTROLLER.request_file(RequestFileCommand(path=path, cwd=cwd)))


@subagent_relay.command("agents")
@click.option(
    "--scope",
    type=_SCOPE_CHOICE,
    default=AgentScope.BOTH.value,
    show_default=True,
    help="Which agent directories to list.",
)
@click.option(
    "--cwd",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory to search for project agents from.",
)
def agents(scope: str, cwd: Path | None) -> None:
    """List discovered agent profiles."""

    _emit_lines(DELEGATION_CONTROLLER.agents(AgentsCommand(cwd=cwd, agent_scope=AgentScope(scope))))


def _emit_result(result: DelegationCliResult) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Delegation failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    subagent_relay()
