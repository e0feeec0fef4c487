"""CLI commands for submitting jobs and inspecting diffs."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional
from uuid import uuid4

import typer
import yaml
from pydantic import ValidationError

from .config import DEFAULT_CONFIG_NAME, Settings, default_config_yaml, load_settings
from .models import GPT5Client, LLMClient, OfflineClient
from .orchestrator import JobOrchestrator
from .publish import Publisher
from .repair import RepairPipeline
from .schema import Job, ProjectRef
from .tools.patch import Applicable, DiffLimits, NoChanges, validate_candidate

APP_HELP = "patchpilot: verified, iterative code changes from natural-language requests."

app = typer.Typer(help=APP_HELP)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def load_config(config: Optional[str]) -> Settings:
    """Load settings from ``config`` (or the default file when present)."""
    if config is not None:
        config_path = Path(config)
        if not config_path.exists():
            raise typer.BadParameter(f"Config file not found: {config_path}")
    else:
        config_path = Path(DEFAULT_CONFIG_NAME)

    try:
        return load_settings(config_path)
    except (ValueError, yaml.YAMLError) as error:
        typer.echo(f"Failed to load config: {error}")
        raise typer.Exit(code=1) from error


def _build_client(settings: Settings, *, use_remote: bool) -> LLMClient:
    """Select either the real GPT-5 client or the offline stub."""
    if use_remote and settings.model.lower() != "offline":
        typer.echo(f"Using GPT-5 client ({settings.model}).")
        try:
            return GPT5Client(
                model=settings.model,
                base_url=settings.model_base_url,
                timeout=settings.model_timeout,
                max_attempts=settings.model_max_attempts,
            )
        except ValueError as error:
            typer.echo(str(error))
            raise typer.Exit(code=1) from error
    typer.echo("Using offline client (always answers NO_CHANGES).")
    return OfflineClient()


def _build_job(
    prompt: str,
    *,
    job_id: Optional[str],
    repo: Optional[str],
    url: Optional[str],
    github_repo: Optional[str],
    base_branch: Optional[str],
) -> Job:
    try:
        return Job(
            id=job_id or uuid4().hex[:8],
            prompt=prompt,
            project=ProjectRef(
                local_path=str(Path(repo).resolve()) if repo else None,
                repository_url=url,
                github_repo=github_repo,
                base_branch=base_branch,
            ),
        )
    except ValidationError as error:
        raise typer.BadParameter(str(error)) from error


@app.command()
def init(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path of the configuration file to create.",
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file."),
) -> None:
    """Write a starter configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Config already exists: {config_path} (use --force to overwrite)")
        raise typer.Exit(code=1)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(default_config_yaml(), encoding="utf-8")
    typer.echo(f"Wrote {config_path}")


@app.command()
def run(
    prompt: str = typer.Argument(..., help="Natural-language change request."),
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help="Local project directory."),
    url: Optional[str] = typer.Option(None, "--url", help="Remote repository URL to clone."),
    github_repo: Optional[str] = typer.Option(None, "--github-repo", help="owner/repo to open the pull request on."),
    base_branch: Optional[str] = typer.Option(None, "--base-branch", "-b", help="Branch to start from and target."),
    job_id: Optional[str] = typer.Option(None, "--job-id", help="Job identifier (random when omitted)."),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the configuration file."),
    use_remote: bool = typer.Option(
        True,
        "--use-remote/--no-use-remote",
        help="Call the GPT-5 API instead of the offline stub (requires API key).",
    ),
    publish: bool = typer.Option(True, "--publish/--no-publish", help="Publish the verified branch."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Run one change request to a verified commit."""
    _configure_logging(verbose)
    settings = load_config(config)
    job = _build_job(prompt, job_id=job_id, repo=repo, url=url, github_repo=github_repo, base_branch=base_branch)
    orchestrator = JobOrchestrator(
        settings,
        _build_client(settings, use_remote=use_remote),
        publisher=Publisher(settings) if publish else None,
    )
    result = orchestrator.run(job)
    typer.echo(result.summary())
    if result.failed_patch_path:
        typer.echo(f"Failing diff saved to {result.failed_patch_path}")
    if not result.succeeded:
        raise typer.Exit(code=1)


@app.command()
def repair(
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help="Local project directory."),
    url: Optional[str] = typer.Option(None, "--url", help="Remote repository URL to clone."),
    github_repo: Optional[str] = typer.Option(None, "--github-repo", help="owner/repo to open the pull request on."),
    base_branch: Optional[str] = typer.Option(None, "--base-branch", "-b", help="Branch to start from and target."),
    job_id: Optional[str] = typer.Option(None, "--job-id", help="Job identifier (random when omitted)."),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the configuration file."),
    use_remote: bool = typer.Option(
        True,
        "--use-remote/--no-use-remote",
        help="Call the GPT-5 API instead of the offline stub (requires API key).",
    ),
    publish: bool = typer.Option(True, "--publish/--no-publish", help="Publish when a stage committed."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Run the staged repair pipeline to make a repository shippable."""
    _configure_logging(verbose)
    settings = load_config(config)
    job = _build_job(
        "Make this repository shippable",
        job_id=job_id,
        repo=repo,
        url=url,
        github_repo=github_repo,
        base_branch=base_branch,
    )
    pipeline = RepairPipeline(
        settings,
        _build_client(settings, use_remote=use_remote),
        publisher=Publisher(settings) if publish else None,
    )
    result = pipeline.run(job)
    typer.echo(result.format_summary())
    if result.publication is not None:
        typer.echo(result.publication.describe())
    if not result.succeeded:
        raise typer.Exit(code=1)


@app.command("check-diff")
def check_diff(
    diff_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="File holding generator output."),
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Repository to check against."),
    prompt: Optional[str] = typer.Option(None, "--prompt", "-p", help="Request text for the deletion policy."),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the configuration file."),
) -> None:
    """Validate a diff against a repository without applying it."""
    settings = load_config(config)
    outcome = validate_candidate(
        diff_file.read_text(encoding="utf-8"),
        repo_root=repo,
        prompt=prompt,
        limits=DiffLimits(max_lines=settings.max_diff_lines, max_chars=settings.max_diff_chars),
    )
    if isinstance(outcome, NoChanges):
        typer.echo("NO_CHANGES: generator reported nothing to do.")
        return
    if isinstance(outcome, Applicable):
        typer.echo(f"APPLICABLE: {len(outcome.paths)} path(s)")
        for path in outcome.paths:
            typer.echo(f"- {path.as_posix()}")
        for note in outcome.adjustments:
            typer.echo(f"  adjusted: {note}")
        return
    typer.echo(f"REJECTED at {outcome.stage}: {outcome.reason}")
    raise typer.Exit(code=1)


@app.command()
def status(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the configuration file."),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of YAML."),
) -> None:
    """Print the effective settings with secrets masked."""
    settings = load_config(config)
    data = settings.redacted()
    if as_json:
        typer.echo(json.dumps(data, indent=2, sort_keys=True))
        return
    typer.echo(yaml.safe_dump(data, sort_keys=True).rstrip())
    configured = [stage.name for stage in settings.preflight_stages() if stage.enabled]
    typer.echo(f"Preflight stages enabled: {', '.join(configured) if configured else 'none'}")


if __name__ == "__main__":
    app()
