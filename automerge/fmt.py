"""Colored one-line messages for the CLI."""

from importlib.metadata import PackageNotFoundError, version

import click


def get_version() -> str:
    try:
        return version("gitlab-automerge")
    except PackageNotFoundError:
        return "0.0.0+unknown"


def success(msg: str) -> None:
    click.secho(msg, fg="green", err=True)


def info(msg: str) -> None:
    click.secho(msg, err=True)


def error(msg: str) -> None:
    click.secho(f"Error: {msg}", fg="red", err=True)
