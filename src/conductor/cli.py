from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

import click

from conductor.backends import (
    AgentBackend,
    BackendExecutionError,
    ClaudeCodeBackend,
    OpenAIResponsesBackend,
    ResilientBackend,
    RetryPolicy,
)
from conductor.config import BackendName, ConductorConfig, load_config, save_config
from conductor.orchestration.engine import (
    PhaseEngine,
    RunSummary,
    build_default_phases,
    current_task_id,
)
from conductor.orchestration.executor import AgentExecutor
from conductor.orchestration.fixer import GlobalFixer
from conductor.orchestration.judge import JudgeProtocol
from conductor.orchestration.phases import PhaseServices
from conductor.orchestration.workspace import GitRepositoryManager, RepositoryManager
from conductor.specialists import (
    DeveloperAgent,
    FixerAgent,
    JudgeAgent,
    PlanningAgent,
    QAAgent,
    SpecialistAgent,
)
from conductor.state import (
    Database,
    EventLog,
    FixAttemptStore,
    RepositoryStore,
    SessionCheckpointStore,
    StateError,
    TaskStore,
)
from conductor.state.repositories import REPOSITORY_TYPES
from conductor.state.tasks import DIRECTIVE_PRIORITIES, TASK_PRIORITIES, TASK_STATUSES

DEFAULT_CONFIG = "conductor.toml"
PHASE_NAMES = ("planning", "development", "review", "integration")

logger = logging.getLogger(__name__)

config_option = click.option(
    "--config", "config_value", default=DEFAULT_CONFIG, show_default=True
)


@dataclass(slots=True)
class Runtime:
    root: Path
    config_path: Path
    config: ConductorConfig
    db: Database
    tasks: TaskStore
    events: EventLog
    checkpoints: SessionCheckpointStore
    fix_attempts: FixAttemptStore
    repositories: RepositoryStore
    engine: PhaseEngine


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _build_single_backend(
    backend_name: BackendName, config: ConductorConfig, root: Path
) -> AgentBackend:
    if backend_name == "openai":
        return OpenAIResponsesBackend(model=config.backend.openai_model, working_directory=root)
    return ClaudeCodeBackend(binary=config.backend.claude_binary, working_directory=root)


def _record_backend_event(tasks: TaskStore, event: dict[str, Any]) -> None:
    logger.info("Backend event: %s", event)
    task_id = current_task_id.get()
    if task_id is None:
        return
    payload = dict(event)
    payload["type"] = "backend"
    try:
        tasks.append_activity(task_id, payload)
    except StateError as exc:
        logger.warning("Could not record backend event for %s: %s", task_id, exc)


def _build_backend(config: ConductorConfig, root: Path, tasks: TaskStore) -> ResilientBackend:
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=config.backend.primary,
        primary_backend=_build_single_backend(config.backend.primary, config, root),
        fallback_name=config.backend.fallback,
        fallback_backend=_build_single_backend(config.backend.fallback, config, root),
        retry_policy=policy,
        event_hook=lambda event: _record_backend_event(tasks, event),
    )


def _build_specialists(
    backend: AgentBackend, config: ConductorConfig
) -> dict[str, SpecialistAgent]:
    agents = config.agents
    return {
        "planning-agent": PlanningAgent(backend, model=agents.default_model),
        "developer": DeveloperAgent(backend, model=agents.default_model),
        "judge": JudgeAgent(backend, model=agents.judge_model),
        "qa": QAAgent(backend, model=agents.default_model),
        "fixer": FixerAgent(backend, model=agents.fixer_model),
    }


def build_runtime(
    root: Path,
    config_path: Path,
    *,
    backend: AgentBackend | None = None,
    repository_manager: RepositoryManager | None = None,
) -> Runtime:
    config = load_config(config_path)
    db = Database(config.database_path(root))
    tasks = TaskStore(
        db,
        log_retention=config.logging.task_log_retention,
        activity_retention=config.logging.activity_retention,
    )
    events = EventLog(db)
    checkpoints = SessionCheckpointStore(
        db,
        freshness=timedelta(seconds=config.checkpoints.freshness_seconds),
        heartbeat_turns=config.checkpoints.heartbeat_turns,
        heartbeat_seconds=config.checkpoints.heartbeat_seconds,
    )
    fix_attempts = FixAttemptStore(db)
    repositories = RepositoryStore(db)

    executor = AgentExecutor(
        _build_specialists(backend or _build_backend(config, root, tasks), config)
    )
    judge = JudgeProtocol(
        executor,
        min_score=config.workflow.judge_min_score,
        enabled=config.workflow.judge_enabled,
        model=config.agents.judge_model,
    )
    fixer = GlobalFixer(
        fix_attempts,
        executor,
        max_attempts=config.fixer.max_attempts,
        model=config.agents.fixer_model,
    )
    services = PhaseServices(
        tasks=tasks,
        events=events,
        checkpoints=checkpoints,
        executor=executor,
        config=config,
        judge=judge,
        repository_manager=repository_manager or GitRepositoryManager(),
    )
    workspace_root = Path(config.project.workspace_root)
    if not workspace_root.is_absolute():
        workspace_root = root / workspace_root
    engine = PhaseEngine(
        services,
        repositories,
        build_default_phases(services),
        fixer=fixer,
        workspace_root=workspace_root,
    )
    return Runtime(
        root=root,
        config_path=config_path,
        config=config,
        db=db,
        tasks=tasks,
        events=events,
        checkpoints=checkpoints,
        fix_attempts=fix_attempts,
        repositories=repositories,
        engine=engine,
    )


@contextmanager
def _runtime(config_value: str) -> Iterator[Runtime]:
    root = Path.cwd().resolve()
    runtime = build_runtime(root, _resolve_config_path(root, config_value))
    try:
        yield runtime
    except (StateError, BackendExecutionError) as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        runtime.db.close()


def _echo_summary(summary: RunSummary) -> None:
    click.echo(f"Task {summary.task_id}: {summary.status}")
    if summary.phases_skipped:
        click.echo(f"Skipped: {', '.join(summary.phases_skipped)}")
    if summary.phases_run:
        click.echo(f"Ran: {', '.join(summary.phases_run)}")
    for warning in summary.warnings:
        click.echo(f"Warning: {warning}")
    if summary.error:
        click.echo(f"Error: {summary.error}")
    click.echo(f"Cost: ${summary.total_cost:.4f}")


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Overrides [logging] level from the config file.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """Conductor CLI."""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level


def _configure_logging(config: ConductorConfig) -> None:
    root_obj = click.get_current_context().find_root().obj or {}
    override = root_obj.get("log_level")
    logging.basicConfig(
        level=(override or config.logging.level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--name", default=None, help="Project name.")
@click.option("--backend", type=click.Choice(["claude", "openai"]), default=None)
@config_option
def init_command(name: str | None, backend: str | None, config_value: str) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    config = load_config(config_path)
    if name:
        config.project.name = name
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
        config.backend.fallback = "openai" if backend == "claude" else "claude"
    save_config(config_path, config)

    db_path = config.database_path(root)
    Database(db_path).close()

    click.echo(f"Initialized Conductor in {root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Database: {db_path}")
    click.echo(f"Backend: {config.backend.primary} (fallback: {config.backend.fallback})")


@cli.group("repo")
def repo_group() -> None:
    """Manage registered repositories."""


@repo_group.command("add")
@click.argument("name")
@click.argument("path", type=click.Path(file_okay=False))
@click.option("--type", "repo_type", type=click.Choice(REPOSITORY_TYPES), required=True)
@click.option("--branch", "default_branch", default="main", show_default=True)
@click.option("--remote", "remote_url", default=None)
@config_option
def repo_add_command(
    name: str,
    path: str,
    repo_type: str,
    default_branch: str,
    remote_url: str | None,
    config_value: str,
) -> None:
    with _runtime(config_value) as runtime:
        repository = runtime.repositories.add(
            name,
            path,
            type=repo_type,
            default_branch=default_branch,
            remote_url=remote_url,
        )
    click.echo(f"Added repository {repository.name} ({repository.id})")


@repo_group.command("list")
@config_option
def repo_list_command(config_value: str) -> None:
    with _runtime(config_value) as runtime:
        repositories = runtime.repositories.find_all()
    if not repositories:
        click.echo("No repositories registered.")
        return
    for repository in repositories:
        click.echo(
            f"{repository.id} {repository.name:<20} {repository.type or '-':<14} "
            f"{repository.default_branch:<10} {repository.local_path}"
        )


@cli.command("create")
@click.argument("title")
@click.option("--description", "-d", default="")
@click.option("--repo", "repo_refs", multiple=True, required=True, help="Repository name or id.")
@click.option("--priority", type=click.Choice(TASK_PRIORITIES), default="medium", show_default=True)
@click.option("--tag", "tags", multiple=True)
@click.option("--attach", "attachments", multiple=True, help="Path or URL handed to agents.")
@config_option
def create_command(
    title: str,
    description: str,
    repo_refs: tuple[str, ...],
    priority: str,
    tags: tuple[str, ...],
    attachments: tuple[str, ...],
    config_value: str,
) -> None:
    with _runtime(config_value) as runtime:
        repository_ids = []
        for ref in repo_refs:
            repository = runtime.repositories.resolve(ref)
            if repository is None:
                raise click.ClickException(f"Repository not found: {ref}")
            repository_ids.append(repository.id)
        task = runtime.tasks.create(
            title,
            description,
            repository_ids=repository_ids,
            priority=priority,
            tags=list(tags),
            attachments=list(attachments),
        )
    click.echo(f"Created task {task.id}")


@cli.command("run")
@click.argument("task_ids", nargs=-1, required=True)
@click.option(
    "--recover/--fresh",
    "recovery",
    default=None,
    help="Force or forbid skipping completed phases (default: detect).",
)
@config_option
def run_command(task_ids: tuple[str, ...], recovery: bool | None, config_value: str) -> None:
    with _runtime(config_value) as runtime:
        _configure_logging(runtime.config)
        if len(task_ids) == 1:
            summaries = [asyncio.run(runtime.engine.run(task_ids[0], recovery=recovery))]
        else:
            summaries = asyncio.run(runtime.engine.run_many(list(task_ids), recovery=recovery))
    for summary in summaries:
        _echo_summary(summary)
    if any(summary.status == "failed" for summary in summaries):
        click.get_current_context().exit(1)


@cli.command("status")
@click.argument("task_id", required=False)
@click.option("--status", "status_filter", type=click.Choice(TASK_STATUSES), default=None)
@click.option("--limit", default=20, show_default=True)
@config_option
def status_command(
    task_id: str | None, status_filter: str | None, limit: int, config_value: str
) -> None:
    with _runtime(config_value) as runtime:
        if task_id is None:
            tasks = runtime.tasks.find_all(status=status_filter, limit=limit)
            if not tasks:
                click.echo("No tasks.")
                return
            for task in tasks:
                phase = task.orchestration.get("current_phase", "-")
                click.echo(f"{task.id} {task.status:<11} {phase:<12} {task.title}")
            return

        task = runtime.tasks.get(task_id)
        state = runtime.events.get_current_state(task_id)
        steps = task.orchestration.get("steps") or {}
        payload = {
            "id": task.id,
            "title": task.title,
            "status": task.status,
            "priority": task.priority,
            "current_phase": task.orchestration.get("current_phase"),
            "phases": {
                name: {
                    key: steps.get(name, {}).get(key)
                    for key in ("status", "started_at", "completed_at", "cost", "error")
                }
                for name in PHASE_NAMES
            },
            "epics": len(task.orchestration.get("epics") or []),
            "stories": {story.get("id"): story.get("status") for story in state.stories},
            "total_cost": task.orchestration.get("total_cost", 0.0),
            "total_tokens": task.orchestration.get("total_tokens", 0),
            "pending_approval": task.orchestration.get("pending_approval"),
            "checkpoints": [
                {"phase": item.phase_name, "status": item.status, "turns": item.turns_completed}
                for item in runtime.checkpoints.find_by_task(task_id)
            ],
            "fix_attempts": runtime.fix_attempts.stats(task_id),
            "recent_logs": task.logs[-10:],
        }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("pause")
@click.argument("task_id")
@config_option
def pause_command(task_id: str, config_value: str) -> None:
    with _runtime(config_value) as runtime:
        runtime.tasks.set_paused(task_id, True)
    click.echo(f"Task {task_id} will pause at the next safe point.")


@cli.command("resume")
@click.argument("task_id")
@click.option("--run", "run_now", is_flag=True, default=False, help="Run the task right away.")
@config_option
def resume_command(task_id: str, run_now: bool, config_value: str) -> None:
    with _runtime(config_value) as runtime:
        task = runtime.tasks.get(task_id)
        if task.orchestration.get("pending_approval"):
            runtime.tasks.set_pending_approval(task_id, None)
            runtime.tasks.append_log(task_id, "Pending output approved by operator")
            click.echo(f"Approved pending output for {task_id}")
        runtime.tasks.set_paused(task_id, False)
        click.echo(f"Task {task_id} resumed.")
        if run_now:
            _configure_logging(runtime.config)
            summary = asyncio.run(runtime.engine.run(task_id, recovery=True))
            _echo_summary(summary)


@cli.command("cancel")
@click.argument("task_id")
@config_option
def cancel_command(task_id: str, config_value: str) -> None:
    with _runtime(config_value) as runtime:
        task = runtime.tasks.get(task_id)
        if task.is_terminal:
            raise click.ClickException(f"Task {task_id} is already {task.status}.")
        runtime.tasks.set_cancel_requested(task_id, True)
        if task.status in ("pending", "paused"):
            runtime.tasks.update_status(task_id, "cancelled")
            click.echo(f"Task {task_id} cancelled.")
            return
    click.echo(f"Task {task_id} will stop at the next safe point.")


@cli.command("directive")
@click.argument("task_id")
@click.argument("content")
@click.option("--priority", type=click.Choice(DIRECTIVE_PRIORITIES), default="normal")
@click.option("--phase", "target_phase", type=click.Choice(PHASE_NAMES), default=None)
@config_option
def directive_command(
    task_id: str, content: str, priority: str, target_phase: str | None, config_value: str
) -> None:
    with _runtime(config_value) as runtime:
        directive = runtime.tasks.add_directive(
            task_id, content, priority=priority, target_phase=target_phase
        )
    click.echo(f"Queued directive {directive['id']} ({priority})")


@cli.command("continue")
@click.argument("task_id")
@click.argument("requirements")
@click.option("--run", "run_now", is_flag=True, default=False, help="Run the task right away.")
@config_option
def continue_command(task_id: str, requirements: str, run_now: bool, config_value: str) -> None:
    with _runtime(config_value) as runtime:
        task = runtime.tasks.get(task_id)
        if task.status == "in_progress":
            raise click.ClickException(f"Task {task_id} is running; pause it first.")
        continuation = runtime.tasks.add_continuation(task_id, requirements)
        click.echo(f"Continuation #{continuation['seq']} added to {task_id}")
        if run_now:
            _configure_logging(runtime.config)
            summary = asyncio.run(runtime.engine.run(task_id))
            _echo_summary(summary)


@cli.command("recover")
@config_option
def recover_command(config_value: str) -> None:
    with _runtime(config_value) as runtime:
        _configure_logging(runtime.config)
        summaries = asyncio.run(runtime.engine.recover())
    if not summaries:
        click.echo("Nothing to recover.")
        return
    for summary in summaries:
        _echo_summary(summary)


@cli.command("cleanup")
@click.option("--checkpoint-days", type=int, default=None)
@click.option("--fix-days", type=int, default=None)
@config_option
def cleanup_command(
    checkpoint_days: int | None, fix_days: int | None, config_value: str
) -> None:
    with _runtime(config_value) as runtime:
        if checkpoint_days is None:
            checkpoint_days = runtime.config.checkpoints.retention_days
        if fix_days is None:
            fix_days = runtime.config.fixer.retention_days
        removed_checkpoints = runtime.checkpoints.cleanup(checkpoint_days)
        removed_fixes = runtime.fix_attempts.cleanup(fix_days)
    click.echo(f"Removed {removed_checkpoints} checkpoint(s) and {removed_fixes} fix record(s).")
