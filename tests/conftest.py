"""Shared test fixtures for gitlab-automerge tests."""

import subprocess
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from automerge.models import MergeRequest, Pipeline
from automerge.workcopy import GitError


T0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def git_identity(monkeypatch):
    """Commit identity for every git subprocess, independent of the host config."""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@test.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@test.com")


@pytest.fixture
def make_mr():
    """Factory for MergeRequest objects; ``minutes`` offsets created_at from T0."""
    counter = {"iid": 0}

    def _make(source_branch="feature/test", status="mergeable", minutes=None, **kwargs):
        counter["iid"] += 1
        iid = kwargs.pop("iid", counter["iid"])
        offset = iid if minutes is None else minutes
        return MergeRequest(
            project_id=kwargs.pop("project_id", 42),
            iid=iid,
            source_branch=source_branch,
            target_branch=kwargs.pop("target_branch", "master"),
            title=kwargs.pop("title", f"Add {source_branch}"),
            created_at=kwargs.pop("created_at", T0 + timedelta(minutes=offset)),
            detailed_merge_status=status,
            **kwargs,
        )

    return _make


class FakeGitLab:
    """In-memory stand-in for ``GitLabClient``.

    ``statuses`` maps iid -> list of statuses returned by successive
    ``get_merge_request`` calls (the last one repeats).  ``pipelines`` maps
    branch -> pipeline status.  ``errors`` maps method name -> exception
    raised by that method (optionally ``(iid, exc)`` to target one MR).
    """

    def __init__(self, mrs=(), statuses=None, pipelines=None, errors=None):
        self.mrs = list(mrs)
        self.statuses = {k: list(v) for k, v in (statuses or {}).items()}
        self.pipelines = dict(pipelines or {})
        self.errors = dict(errors or {})
        self.titles: dict[int, str] = {}
        self.notes: list[tuple[int, str]] = []
        self.calls: list[tuple] = []

    def _maybe_fail(self, method, iid=None):
        err = self.errors.get(method)
        if err is None:
            return
        if isinstance(err, tuple):
            target, exc = err
            if target == iid:
                raise exc
            return
        raise err

    def list_open_merge_requests(self):
        self.calls.append(("list",))
        self._maybe_fail("list_open_merge_requests")
        return list(self.mrs)

    def get_merge_request(self, iid):
        self.calls.append(("get", iid))
        self._maybe_fail("get_merge_request", iid)
        mr = next(m for m in self.mrs if m.iid == iid)
        queue = self.statuses.get(iid)
        if queue:
            status = queue.pop(0) if len(queue) > 1 else queue[0]
        else:
            status = mr.detailed_merge_status
        return MergeRequest(**{**mr.__dict__, "detailed_merge_status": status})

    def latest_pipeline(self, ref):
        self.calls.append(("pipeline", ref))
        self._maybe_fail("latest_pipeline")
        status = self.pipelines.get(ref)
        return None if status is None else Pipeline(id=1, ref=ref, status=status)

    def set_title(self, iid, title):
        self.calls.append(("set_title", iid))
        self._maybe_fail("set_title", iid)
        self.titles[iid] = title

    def add_note(self, iid, body):
        self.calls.append(("add_note", iid))
        self._maybe_fail("add_note", iid)
        self.notes.append((iid, body))


class FakeWorkingCopy:
    """Records merges; branches listed in ``conflicts`` fail to merge."""

    def __init__(self, conflicts=()):
        self.conflicts = set(conflicts)
        self.merged: list[str] = []
        self.aborts = 0
        self.pushed: list[str] = []

    def merge_no_ff(self, branch):
        if branch in self.conflicts:
            raise GitError(["merge", "--no-ff", f"origin/{branch}"], 1, "CONFLICT (content)")
        self.merged.append(branch)

    def abort_merge(self):
        self.aborts += 1
        return True

    def push_force(self, destination):
        self.pushed.append(destination)

    def head(self):
        return "0123456789abcdef0123456789abcdef01234567"


@pytest.fixture
def fake_gitlab():
    return FakeGitLab


@pytest.fixture
def fake_wc():
    return FakeWorkingCopy


# ---------------------------------------------------------------------------
# Real git repositories
# ---------------------------------------------------------------------------

def git(args, cwd):
    return subprocess.run(
        ["git"] + args, cwd=str(cwd), capture_output=True, text=True, check=True,
    ).stdout.strip()


class OriginRepo:
    """A bare ``origin`` plus a seed clone used to push branches into it."""

    def __init__(self, root: Path):
        self.path = root / "origin.git"
        self.seed = root / "seed"
        subprocess.run(
            ["git", "init", "--bare", "--initial-branch=master", str(self.path)],
            capture_output=True, check=True,
        )
        subprocess.run(["git", "clone", str(self.path), str(self.seed)], capture_output=True, check=True)
        git(["symbolic-ref", "HEAD", "refs/heads/master"], self.seed)
        (self.seed / "file.txt").write_text("original content\n")
        git(["add", "."], self.seed)
        git(["commit", "-m", "Initial"], self.seed)
        git(["push", "origin", "master"], self.seed)

    @property
    def url(self) -> str:
        return str(self.path)

    def add_branch(self, name: str, files: dict[str, str], base: str = "master") -> None:
        git(["checkout", "-b", name, base], self.seed)
        for rel, content in files.items():
            (self.seed / rel).write_text(content)
        git(["add", "."], self.seed)
        git(["commit", "-m", f"Change on {name}"], self.seed)
        git(["push", "origin", name], self.seed)
        git(["checkout", "master"], self.seed)

    def show(self, ref: str, rel: str) -> str:
        return git(["--git-dir", str(self.path), "show", f"{ref}:{rel}"], self.path)

    def has_branch(self, name: str) -> bool:
        out = git(["--git-dir", str(self.path), "branch", "--list", name], self.path)
        return bool(out)


@pytest.fixture
def origin(tmp_path):
    """Bare origin repository with ``master`` holding ``file.txt``."""
    return OriginRepo(tmp_path)
