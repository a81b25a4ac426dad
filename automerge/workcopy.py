"""Local git working copy used as the merge staging ground.

The working copy is an explicit object handed to the triage loop.  Every
git call goes through ``WorkingCopy._run`` so tests can swap in a fake
with the same public methods.

Layout when ``--clone`` is given::

    <dir>/          # wiped and recreated on every run
      .git/
      ...           # checkout of origin/<source-branch>
"""

import logging
import shutil
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 120  # seconds per git invocation

# Directory values that must never be wiped before cloning.
_KEEP_DIRS = {".", "./", "/.", "/"}


class GitError(RuntimeError):
    """A git command exited non-zero, timed out or could not be started."""

    def __init__(self, args: list[str], returncode: int, output: str):
        self.args_ = args
        self.returncode = returncode
        self.output = output
        super().__init__(f"git {' '.join(args)} failed ({returncode}): {output}")


class WorkingCopy:
    """A git checkout with an ``origin`` remote."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def __repr__(self) -> str:
        return f"WorkingCopy({str(self.path)!r})"

    def _run(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess:
        """Run ``git <args>`` inside the working copy."""
        logger.debug("git %s (cwd=%s)", " ".join(args), self.path)
        try:
            result = subprocess.run(
                ["git"] + args,
                cwd=str(self.path),
                capture_output=True,
                text=True,
                timeout=GIT_TIMEOUT,
            )
        except subprocess.TimeoutExpired as exc:
            raise GitError(args, -1, f"timed out after {exc.timeout}s") from exc
        except OSError as exc:
            # missing working directory or no git binary
            raise GitError(args, -1, str(exc)) from exc
        if check and result.returncode != 0:
            output = "\n".join(s for s in (result.stdout.strip(), result.stderr.strip()) if s)
            raise GitError(args, result.returncode, output)
        return result

    def clone(self, url: str) -> None:
        """Clone *url* into the (empty) working copy directory."""
        self._run(["clone", "-q", url, "."])

    def checkout_tracking(self, branch: str) -> bool:
        """Check out a local branch tracking ``origin/<branch>``.

        Returns False when *branch* is already the current branch, which is
        what a fresh clone of the default branch looks like.  Any other
        refusal (unknown branch, a different branch checked out) raises
        ``GitError``.
        """
        args = ["checkout", "-q", "--track", f"origin/{branch}"]
        result = self._run(args, check=False)
        if result.returncode == 0:
            return True
        current = self._run(["rev-parse", "--abbrev-ref", "HEAD"], check=False).stdout.strip()
        if current != branch:
            raise GitError(args, result.returncode, result.stderr.strip())
        logger.debug("%s is already checked out", branch)
        return False

    def merge_no_ff(self, branch: str) -> None:
        """Merge ``origin/<branch>`` into HEAD with a merge commit.

        Raises ``GitError`` on conflict or any other failure; the merge is
        left in progress for the caller to abort.
        """
        self._run(["merge", "--no-ff", "--no-edit", f"origin/{branch}"])

    def abort_merge(self) -> bool:
        """Abort an in-progress merge.  Returns False if git refused."""
        try:
            result = self._run(["merge", "--abort"], check=False)
        except GitError as exc:
            logger.debug("git merge --abort failed: %s", exc)
            return False
        if result.returncode != 0:
            logger.debug("git merge --abort failed: %s", result.stderr.strip())
            return False
        return True

    def push_force(self, destination: str) -> None:
        """Force-push HEAD to ``origin/<destination>``."""
        self._run(["push", "-f", "origin", f"HEAD:{destination}"])

    def head(self) -> str:
        """Commit sha of HEAD."""
        return self._run(["rev-parse", "HEAD"]).stdout.strip()


def prepare_working_copy(directory: str | Path, clone_url: str | None = None) -> WorkingCopy:
    """Return a working copy at *directory*, freshly cloned if *clone_url* is set.

    Without a clone URL the directory must already be a git checkout and is
    used as-is.  With one, the directory is removed and recreated first
    (unless it is the current directory).
    """
    keep = str(directory) in _KEEP_DIRS
    directory = Path(directory)
    if clone_url is not None:
        if not keep:
            if directory.exists():
                logger.debug("Removing previous working copy at %s", directory)
                shutil.rmtree(directory)
            directory.mkdir(parents=True)
        logger.info("Clone project with %s", clone_url)
        wc = WorkingCopy(directory)
        wc.clone(clone_url)
        return wc
    return WorkingCopy(directory)
