"""Merge triage: fold open merge requests into the destination branch.

The sequence for one run:

1. List open merge requests of the project (100 per page, 10 pages max).
   A listing failure is logged and treated as "nothing to do".
2. Keep those whose source branch matches the branch pattern; drop
   drafts/WIP unless ``accept_draft`` is set.
3. Sort oldest first by ``created_at``.  Merge order decides which of two
   conflicting merge requests wins, so it must not depend on API order.
4. For each merge request:
   a. Poll its detailed merge status while GitLab is still evaluating it
      (``unchecked``/``checked``), 5s apart, 10 re-fetches max.
   b. Classify it (``classify``):
      - ``mergeable``, or a CI status with pipeline checks disabled
        → merge now;
      - ``ci_must_pass``/``ci_still_running`` → merge only if the latest
        pipeline of the source branch succeeded;
      - anything else → skip.
   c. Merge: ``git merge --no-ff origin/<branch>`` into the working copy.
      On failure abort the merge, flag the merge request ``Draft: `` and
      leave a note so humans see it (and the next run filters it out).
5. Force-push HEAD to the destination branch unless ``dry_run``.

Failure handling:
- Everything that happens to one merge request runs inside a boundary
  that catches GitLab, HTTP and git errors; the merge request is reported
  as ``error`` and the loop moves on.
- The draft title and the note are each best-effort.
- Clone and push failures are not caught here; they abort the run.
"""

import fnmatch
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import requests
from gitlab.exceptions import GitlabError

from automerge.logging_setup import log_mr
from automerge.models import (
    CI_STATUSES,
    DRAFT_PREFIX,
    MERGEABLE,
    PENDING_STATUSES,
    MergeOutcome,
    MergeRequest,
    RunReport,
    TriageOutcome,
)
from automerge.workcopy import GitError, WorkingCopy, prepare_working_copy

logger = logging.getLogger(__name__)

POLL_ATTEMPTS = 10
POLL_DELAY = 5.0  # seconds

CONFLICT_NOTE = "[AUTOMERGE][FAILED] Conflict with other merge request"

# Errors that fail a single merge request without stopping the run.
ITEM_ERRORS = (GitlabError, requests.RequestException, GitError)


@dataclass
class MergeOptions:
    """Options of the ``merge`` command that shape a run."""

    branch_pattern: str = "feature/*"
    pattern_syntax: str = "regex"
    source_branch: str = "master"
    destination_branch: str = "dev"
    check_pipeline: bool = True
    accept_draft: bool = False
    dry_run: bool = False


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def compile_branch_matcher(pattern: str, syntax: str = "regex") -> Callable[[str], bool]:
    """Return a predicate for source branch names.

    ``regex``: ``re.search`` anywhere in the name, so ``feature/*`` matches
    any branch containing ``feature``.
    ``glob``: ``fnmatch`` against the whole name, so ``feature/*`` matches
    ``feature/login`` but not ``hotfix/feature``.

    Raises ``ValueError`` for an unknown syntax or an invalid regex.
    """
    if syntax == "regex":
        try:
            regex = re.compile(pattern)
        except re.error as exc:
            raise ValueError(f"Invalid branch pattern {pattern!r}: {exc}") from exc
        return lambda branch: regex.search(branch) is not None
    if syntax == "glob":
        return lambda branch: fnmatch.fnmatchcase(branch, pattern)
    raise ValueError(f"Unknown pattern syntax {syntax!r} (expected 'regex' or 'glob')")


def select_merge_requests(
    mrs: list[MergeRequest],
    matches: Callable[[str], bool],
    accept_draft: bool = False,
) -> list[MergeRequest]:
    """Filter by branch pattern and draft flag, then sort oldest first."""
    selected = []
    for mr in mrs:
        if not matches(mr.source_branch):
            logger.debug("%s does not match the branch pattern", mr.source_branch)
            continue
        if not accept_draft and mr.is_draft:
            logger.info("%s is draft", mr.source_branch, extra={"color": "yellow"})
            continue
        selected.append(mr)
    # sorted() is stable: equal timestamps keep API order
    return sorted(selected, key=lambda mr: (mr.created_at is None, mr.created_at or 0))


def fetch_open_merge_requests(client) -> list[MergeRequest]:
    """List open merge requests, or ``[]`` if GitLab cannot be reached."""
    try:
        mrs = client.list_open_merge_requests()
    except ITEM_ERRORS as exc:
        logger.error("Failed to get all merge requests: %s", exc)
        return []
    logger.info("Found %d merge request(s) opened", len(mrs), extra={"color": "blue"})
    return mrs


# ---------------------------------------------------------------------------
# Status poller / pipeline checker
# ---------------------------------------------------------------------------

def poll_merge_status(
    client,
    mr: MergeRequest,
    *,
    attempts: int = POLL_ATTEMPTS,
    delay: float = POLL_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> str | None:
    """Wait for GitLab to finish evaluating *mr* and return its status.

    Re-fetches at most *attempts* times.  The returned status can still
    be ``unchecked``/``checked`` when the budget runs out.
    """
    count = 0
    status = mr.detailed_merge_status
    while count < attempts:
        if status not in PENDING_STATUSES:
            return status
        logger.info("Waiting, %s is %s", mr.source_branch, status, extra={"color": "yellow"})
        sleep(delay)
        status = client.get_merge_request(mr.iid).detailed_merge_status
        count += 1
    return status


def check_pipeline(client, mr: MergeRequest) -> str | None:
    """Status of the latest pipeline on the source branch, or None."""
    pipeline = client.latest_pipeline(mr.source_branch)
    return pipeline.status if pipeline is not None else None


def classify(status: str | None, check_pipeline: bool = True) -> TriageOutcome:
    if status == MERGEABLE:
        return TriageOutcome.MERGE_NOW
    if status in CI_STATUSES:
        return TriageOutcome.WAIT_ON_PIPELINE if check_pipeline else TriageOutcome.MERGE_NOW
    return TriageOutcome.SKIP


# ---------------------------------------------------------------------------
# Merge executor / conflict handler
# ---------------------------------------------------------------------------

def mark_conflict(client, mr: MergeRequest) -> None:
    """Flag *mr* as draft and explain why, unless it already is one.

    The title update and the note are independent: a failure of one is
    logged and the other is still attempted.
    """
    if mr.is_draft or mr.title.startswith(DRAFT_PREFIX):
        logger.debug("%s is already draft, leaving it alone", mr)
        return

    logger.info("Set draft merge request %d on %s", mr.iid, mr.source_branch, extra={"color": "blue"})
    try:
        client.set_title(mr.iid, f"{DRAFT_PREFIX}{mr.title}")
    except ITEM_ERRORS as exc:
        logger.warning("Could not set draft title on %s: %s", mr, exc)
    try:
        client.add_note(mr.iid, CONFLICT_NOTE)
    except ITEM_ERRORS as exc:
        logger.warning("Could not post conflict note on %s: %s", mr, exc)


def merge_request(client, wc: WorkingCopy, mr: MergeRequest) -> bool:
    """Merge *mr*'s source branch into the working copy.  Single attempt.

    Returns True on success.  On failure the merge is aborted, the merge
    request is flagged through ``mark_conflict`` and False is returned.
    """
    try:
        wc.merge_no_ff(mr.source_branch)
    except GitError as exc:
        logger.error("Failed to merge %s, rollback: %s", mr.source_branch, exc)
        wc.abort_merge()
        mark_conflict(client, mr)
        return False
    logger.info("Merge %s", mr.source_branch, extra={"color": "green"})
    return True


# ---------------------------------------------------------------------------
# Triage loop
# ---------------------------------------------------------------------------

def process_merge_request(
    client,
    wc: WorkingCopy,
    mr: MergeRequest,
    options: MergeOptions,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> MergeOutcome:
    """Poll, classify and (maybe) merge one merge request."""
    status = poll_merge_status(client, mr, sleep=sleep)
    logger.info("Merge request %s is %s", mr.source_branch, status, extra={"color": "blue"})

    if status in PENDING_STATUSES:
        logger.warning(
            "Merge request for %s is ignored because GitLab is still evaluating it (%s)",
            mr.source_branch, status,
        )
        return MergeOutcome.STATUS_UNKNOWN

    triage = classify(status, options.check_pipeline)
    if triage is TriageOutcome.WAIT_ON_PIPELINE:
        logger.info("Verify pipeline for %s", mr.source_branch, extra={"color": "blue"})
        pipeline_status = check_pipeline(client, mr)
        if pipeline_status != "success":
            logger.warning(
                "Merge request for %s, pipeline is %s",
                mr.source_branch, pipeline_status or "not-found",
            )
            return MergeOutcome.PIPELINE_NOT_READY
        triage = TriageOutcome.MERGE_NOW

    if triage is TriageOutcome.MERGE_NOW:
        merged = merge_request(client, wc, mr)
        return MergeOutcome.MERGED if merged else MergeOutcome.CONFLICT

    logger.warning("Merge request for %s is ignored because status is %s", mr.source_branch, status)
    return MergeOutcome.SKIPPED


def triage(
    client,
    wc: WorkingCopy,
    options: MergeOptions,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> RunReport:
    """Merge every eligible open merge request into *wc*, then push.

    *client* is a ``GitLabClient`` or anything with the same methods.
    Raises ``ValueError`` for a bad branch pattern and ``GitError`` if
    HEAD cannot be read or the final push fails.
    """
    matches = compile_branch_matcher(options.branch_pattern, options.pattern_syntax)
    mrs = select_merge_requests(fetch_open_merge_requests(client), matches, options.accept_draft)

    report = RunReport()
    for mr in mrs:
        token = log_mr.set(str(mr))
        try:
            outcome = process_merge_request(client, wc, mr, options, sleep=sleep)
        except ITEM_ERRORS as exc:
            logger.error("Merge request for %s failed: %s", mr.source_branch, exc)
            outcome = MergeOutcome.ERROR
        finally:
            log_mr.reset(token)
        report.add(mr, outcome)

    head = wc.head()
    if options.dry_run:
        logger.info("Dry run, no push (HEAD %s)", head[:12])
    else:
        logger.info("Push force %s to %s", head[:12], options.destination_branch)
        wc.push_force(options.destination_branch)
        report.pushed = True
    return report


def run_merge(
    client,
    options: MergeOptions,
    directory: str | Path = "temp",
    clone_url: str | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> RunReport:
    """Prepare the working copy, check out the source branch and triage.

    Raises ``GitError`` if the working copy is unusable or the source
    branch cannot be checked out; nothing is pushed in that case.
    """
    wc = prepare_working_copy(directory, clone_url)
    logger.info("Checkout source branch origin/%s", options.source_branch)
    wc.checkout_tracking(options.source_branch)
    return triage(client, wc, options, sleep=sleep)
