"""CLI entrypoint for homespun."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click

from homespun.agents.factory import create_harness_factory
from homespun.agents.types import AgentPrompt, AgentStartOptions
from homespun.branches import extract_linked_id, generate_branch_name
from homespun.config import HomespunConfig, load_config
from homespun.errors import HomespunError
from homespun.logger import get_logger, setup_logging
from homespun.timeline import PullRequestInfo, PullRequestStatus, build_timeline, ensure_valid

logger = get_logger(__name__)


def _parse_time(value: Any) -> datetime | None:
    """Parse an ISO 8601 timestamp; values without an offset are taken as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def load_pull_requests(path: Path) -> list[PullRequestInfo]:
    """Read a JSON array of pull requests.

    Each item needs ``number``, ``title`` and ``status``; ``created_at``,
    ``merged_at``, ``closed_at`` (ISO 8601, UTC when no offset is given) and ``branch_name`` are optional.
    """
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise click.ClickException(f"{path} must contain a JSON array")
    prs: list[PullRequestInfo] = []
    for item in raw:
        try:
            pr = PullRequestInfo(
                number=int(item["number"]),
                title=str(item.get("title", "")),
                status=PullRequestStatus(item["status"]),
                created_at=_parse_time(item.get("created_at")),
                merged_at=_parse_time(item.get("merged_at")),
                closed_at=_parse_time(item.get("closed_at")),
                branch_name=item.get("branch_name"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise click.ClickException(f"Invalid pull request entry {item!r}: {exc}") from exc
        prs.append(ensure_valid(pr))
    return prs


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Path to homespun.yaml.")
@click.option("--debug", is_flag=True, help="Enable debug logging.")
@click.option("--json-logs", is_flag=True, help="Write logs as JSON lines.")
@click.pass_context
def main(ctx: click.Context, config_path: Path | None, debug: bool, json_logs: bool) -> None:
    """Homespun agent harness and timeline tools."""
    try:
        config = load_config(config_path)
    except HomespunError as exc:
        raise click.ClickException(str(exc)) from exc
    setup_logging(debug=debug or config.debug, json_output=json_logs)
    ctx.obj = config


@main.command()
@click.pass_obj
def harnesses(config: HomespunConfig) -> None:
    """List the available harness types."""
    factory = create_harness_factory(config)
    for name in factory.available_harness_types:
        marker = " (default)" if name == factory.default_harness_type else ""
        click.echo(f"{name}{marker}")


@main.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Emit JSON instead of a table.")
def timeline(path: Path, as_json: bool) -> None:
    """Print timeline positions for the pull requests in PATH."""
    try:
        entries = build_timeline(load_pull_requests(path))
    except HomespunError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        click.echo(json.dumps([{"number": pr.number, "t": t, "status": str(pr.status)} for pr, t in entries]))
        return
    for pr, t in entries:
        click.echo(f"{t:>4}  #{pr.number:<6} {pr.status:<18} {pr.title}")


@main.command("branch-name")
@click.argument("linked_id")
@click.argument("change_type")
@click.argument("title")
@click.option("--group", default=None, help="Branch group (default: issues).")
@click.option("--branch-id", default=None, help="Explicit branch id instead of the sanitized title.")
def branch_name(linked_id: str, change_type: str, title: str, group: str | None, branch_id: str | None) -> None:
    """Generate a branch name for an issue."""
    click.echo(generate_branch_name(linked_id, change_type, title, group=group, branch_id=branch_id))


@main.command("linked-id")
@click.argument("branch")
def linked_id(branch: str) -> None:
    """Print the issue id linked from BRANCH (exit code 1 when absent)."""
    found = extract_linked_id(branch)
    if found is None:
        raise click.exceptions.Exit(1)
    click.echo(found)


@main.command()
@click.argument("entity_id")
@click.argument("prompt")
@click.option("--workdir", type=click.Path(exists=True, file_okay=False, path_type=Path), default=Path("."))
@click.option("--harness", "harness_type", default=None, help="Harness type (default from config).")
@click.option("--model", default=None, help="Model as provider/model.")
@click.pass_obj
def ask(
    config: HomespunConfig,
    entity_id: str,
    prompt: str,
    workdir: Path,
    harness_type: str | None,
    model: str | None,
) -> None:
    """Start an agent for ENTITY_ID, send PROMPT, print the reply and stop."""
    try:
        reply = asyncio.run(_ask(config, entity_id, prompt, workdir, harness_type, model))
    except HomespunError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(reply)


async def _ask(
    config: HomespunConfig,
    entity_id: str,
    prompt: str,
    workdir: Path,
    harness_type: str | None,
    model: str | None,
) -> str:
    factory = create_harness_factory(config)
    harness = factory.get(harness_type) if harness_type else factory.get_default()
    try:
        agent = await harness.start_agent(AgentStartOptions(
            entity_id=entity_id,
            working_directory=str(workdir.resolve()),
            model=model,
        ))
        logger.info("agent_running", agent_id=agent.agent_id, url=agent.web_view_url or agent.api_base_url)
        message = await harness.send_prompt(agent.agent_id, AgentPrompt(text=prompt, model=model))
        return message.text
    finally:
        await factory.aclose()
