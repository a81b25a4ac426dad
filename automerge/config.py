"""Optional YAML config file supplying option defaults.

Example ``.automerge.yaml``::

    gitlab_url: https://gitlab.example.com
    project_id: group/app
    merge:
      branch_pattern: "^feature/"
      destination_branch: integration
      dir: /var/tmp/automerge
      clone: git@gitlab.example.com:group/app.git
      no_pipeline: false

Top-level keys are global options; the ``merge`` mapping holds options of
the ``merge`` command.  Keys are the long option names, with dashes or
underscores (``branch-pattern``, ``branch_pattern``); the parameter names
``directory`` and ``clone_url`` are accepted for ``dir`` and ``clone``.
Unknown keys are rejected.
Values given on the command line or through environment variables win.
"""

from pathlib import Path

import yaml

DEFAULT_CONFIG_NAME = ".automerge.yaml"

GLOBAL_KEYS = {"gitlab_url", "token", "project_id", "verbose", "log_file"}
MERGE_KEYS = {
    "branch_pattern", "pattern_syntax", "clone_url", "directory",
    "source_branch", "destination_branch", "no_pipeline", "accept_draft", "dry_run",
}

# option name -> click parameter name
_MERGE_ALIASES = {"dir": "directory", "clone": "clone_url"}


class ConfigError(ValueError):
    """The config file exists but cannot be used."""


def find_config(explicit: Path | None = None, cwd: Path | None = None) -> Path | None:
    """Return *explicit* if given, else ``./.automerge.yaml`` if present."""
    if explicit is not None:
        return explicit
    candidate = (cwd or Path.cwd()) / DEFAULT_CONFIG_NAME
    return candidate if candidate.is_file() else None


def _normalize(data: dict, known: set[str], where: str, aliases: dict | None = None) -> dict:
    out = {}
    for key, value in data.items():
        key = str(key).replace("-", "_")
        key = (aliases or {}).get(key, key)
        if key not in known:
            raise ConfigError(f"Unknown key {key!r} in {where}")
        out[key] = value
    return out


def load_config(path: Path) -> dict:
    """Read *path* into a click ``default_map``.

    Raises ``ConfigError`` if the file is missing, is not valid YAML, does
    not hold a mapping or has unknown keys.  An empty file yields ``{}``.
    """
    try:
        raw = yaml.safe_load(path.read_text())
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a mapping, got {type(raw).__name__}")

    merge = raw.pop("merge", None)
    data = _normalize(raw, GLOBAL_KEYS, str(path))
    if merge is not None:
        if not isinstance(merge, dict):
            raise ConfigError(f"'merge' in {path} must be a mapping")
        data["merge"] = _normalize(merge, MERGE_KEYS, f"'merge' of {path}", _MERGE_ALIASES)
    return data
