"""CLI commands for extracting and applying patches suggested in PR comments."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import typer

from .config import DEFAULT_CONFIG_NAME, ConfigError, WingmanConfig, load_config
from .extract import extract_patches
from .github import from_actions_environment
from .handler import handle_comment
from .report import ApplyStatus, classify, render_comment
from .tools.patch import apply_patches
from .tools.vcs import WorkingTreeError

APP_HELP = "Apply unified diff suggestions posted in pull request comments."

app = typer.Typer(help=APP_HELP)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _read_comment(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    path = Path(source)
    if not path.exists():
        raise typer.BadParameter(f"Comment file not found: {path}")
    return path.read_text(encoding="utf-8")


def _load(config: str) -> WingmanConfig:
    try:
        return load_config(Path(config))
    except ConfigError as error:
        typer.echo(str(error), err=True)
        raise typer.Exit(code=1) from error


@app.command()
def extract(
    comment: str = typer.Argument(..., help="Comment file to scan, or '-' for stdin."),
) -> None:
    """Print the diff blocks found in a comment as JSON."""
    patches = extract_patches(_read_comment(comment))
    payload = [{"index": patch.index, "body": patch.body} for patch in patches]
    typer.echo(json.dumps(payload, indent=2))


@app.command()
def apply(
    comment: str = typer.Argument(..., help="Comment file to scan, or '-' for stdin."),
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Working tree to patch."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    commit: bool = typer.Option(True, "--commit/--no-commit", help="Commit the resulting changes."),
    push: bool = typer.Option(False, "--push/--no-push", help="Push the commit to the configured remote."),
    branch: Optional[str] = typer.Option(None, "--branch", help="Branch to push to (defaults to current)."),
    as_json: bool = typer.Option(False, "--json", help="Print the structured result instead of markdown."),
) -> None:
    """Extract patches from a comment and apply them to a local working tree."""
    config_data = _load(config)
    patches = extract_patches(_read_comment(comment))
    if not patches:
        typer.echo(render_comment(None))
        return

    options = config_data.apply_options(branch=branch)
    options.commit = commit
    options.push = push and commit
    try:
        result = apply_patches(repo, patches, options=options)
    except WorkingTreeError as error:
        typer.echo(f"Unable to use working tree {repo}: {error}", err=True)
        raise typer.Exit(code=1) from error

    typer.echo(json.dumps(result.to_dict(), indent=2) if as_json else render_comment(result))
    if classify(result) is ApplyStatus.NONE_APPLIED:
        raise typer.Exit(code=2)


@app.command("handle-actions")
def handle_actions(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
) -> None:
    """Handle the issue_comment event of the current GitHub Actions job."""
    config_data = _load(config)
    try:
        event, source = from_actions_environment(config=config_data)
    except ValueError as error:
        typer.echo(f"Unable to load the comment event: {error}", err=True)
        raise typer.Exit(code=1) from error

    outcome = handle_comment(event, source, config=config_data)
    if not outcome.handled:
        typer.echo(f"Skipped: {outcome.skipped_reason}")
        return
    typer.echo(f"Outcome: {outcome.status.value if outcome.status else 'error'}")
    if outcome.error:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
