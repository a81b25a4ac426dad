"""gitlab-automerge CLI entry point using Click.

Commands:
    gitlab-automerge -t TOKEN -p PROJECT merge [--branch-pattern P] [--clone URL]
        [--dir D] [--source-branch S] [--destination-branch D]
        [--no-pipeline] [--accept-draft] [--dry-run]
                     merge open merge requests into the destination branch

Global options can also come from the environment (``GITLAB_URL``,
``GITLAB_TOKEN``, ``GITLAB_PROJECT_ID``), from a ``.env`` file given with
``--env-file``, or from a YAML config file (see ``automerge.config``).
"""

import logging
from pathlib import Path

import click

from automerge.fmt import get_version


def _load_env_file(ctx: click.Context, param: click.Parameter, value: Path | None) -> None:
    """Load a .env file before the options that read the environment."""
    if value is None:
        return
    from dotenv import load_dotenv

    load_dotenv(value)


def _load_config_file(ctx: click.Context, param: click.Parameter, value: Path | None) -> None:
    """Install a YAML config file as the context's default map."""
    from automerge.config import ConfigError, find_config, load_config

    path = find_config(value)
    if path is None:
        return
    try:
        data = load_config(path)
    except ConfigError as exc:
        raise click.BadParameter(str(exc), ctx=ctx, param=param)
    ctx.default_map = {**(ctx.default_map or {}), **data}


@click.group()
@click.version_option(version=get_version(), prog_name="gitlab-automerge")
@click.option(
    "--env-file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None, is_eager=True, expose_value=False, callback=_load_env_file,
    help="Path to .env file to load (e.g. for GITLAB_TOKEN).",
)
@click.option(
    "--config", type=click.Path(dir_okay=False, path_type=Path),
    default=None, envvar="AUTOMERGE_CONFIG", is_eager=True, expose_value=False,
    callback=_load_config_file,
    help="YAML file with option defaults (default: ./.automerge.yaml if present).",
)
@click.option(
    "-g", "--gitlab-url", envvar="GITLAB_URL", default="https://gitlab.com",
    show_default=True, help="GitLab URL.",
)
@click.option("-t", "--token", envvar="GITLAB_TOKEN", required=True, help="GitLab access token.")
@click.option("-p", "--project-id", envvar="GITLAB_PROJECT_ID", required=True, help="Project id or path.")
@click.option("-v", "--verbose", is_flag=True, help="Log git commands and other debug output.")
@click.option(
    "--log-file", type=click.Path(dir_okay=False, path_type=Path), default=None,
    envvar="AUTOMERGE_LOG_FILE", help="Also write the log to this file (rotated).",
)
@click.pass_context
def main(
    ctx: click.Context,
    gitlab_url: str,
    token: str,
    project_id: str,
    verbose: bool,
    log_file: Path | None,
) -> None:
    """Merge features from a GitLab project."""
    from automerge.logging_setup import configure_logging

    configure_logging(log_file, level=logging.DEBUG if verbose else logging.INFO)
    ctx.ensure_object(dict)
    ctx.obj["gitlab_url"] = gitlab_url
    ctx.obj["token"] = token
    ctx.obj["project_id"] = project_id


# ──────────────────────────────────────────────────────────────
# gitlab-automerge merge
# ──────────────────────────────────────────────────────────────

@main.command()
@click.option(
    "--branch-pattern", default="feature/*", show_default=True,
    help="Source branches to merge.  A regular expression searched anywhere "
         "in the branch name, unless --pattern-syntax glob.",
)
@click.option(
    "--pattern-syntax", type=click.Choice(["regex", "glob"]), default="regex",
    show_default=True, help="How --branch-pattern is interpreted.",
)
@click.option("-c", "--clone", "clone_url", default=None, help="Clone this git URL into --dir first.")
@click.option("-b", "--dir", "directory", default="temp", show_default=True, help="Working directory.")
@click.option("-s", "--source-branch", default="master", show_default=True, help="Branch the run starts from.")
@click.option(
    "-d", "--destination-branch", default="dev", show_default=True,
    help="Branch force-pushed with the result.",
)
@click.option("--no-pipeline", is_flag=True, help="Do not wait for a successful pipeline.")
@click.option("--accept-draft", is_flag=True, help="Merge draft merge requests too.")
@click.option("--dry-run", is_flag=True, help="Merge locally but do not push.")
@click.pass_context
def merge(
    ctx: click.Context,
    branch_pattern: str,
    pattern_syntax: str,
    clone_url: str | None,
    directory: str,
    source_branch: str,
    destination_branch: str,
    no_pipeline: bool,
    accept_draft: bool,
    dry_run: bool,
) -> None:
    """Merge open merge requests into the destination branch."""
    from automerge.fmt import error, info, success
    from automerge.gitlab_api import GitLabClient
    from automerge.merge import MergeOptions, compile_branch_matcher, run_merge
    from automerge.workcopy import GitError

    try:
        compile_branch_matcher(branch_pattern, pattern_syntax)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--branch-pattern")

    options = MergeOptions(
        branch_pattern=branch_pattern,
        pattern_syntax=pattern_syntax,
        source_branch=source_branch,
        destination_branch=destination_branch,
        check_pipeline=not no_pipeline,
        accept_draft=accept_draft,
        dry_run=dry_run,
    )
    client = GitLabClient(ctx.obj["gitlab_url"], ctx.obj["token"], ctx.obj["project_id"])

    try:
        report = run_merge(client, options, directory, clone_url)
    except GitError as exc:
        error(str(exc))
        raise SystemExit(1)

    if report.pushed:
        success(f"Pushed {destination_branch}: {report.summary()}")
    else:
        info(f"Done without push: {report.summary()}")
    for mr in report.merged():
        info(f"  merged {mr}")


if __name__ == "__main__":
    main()
