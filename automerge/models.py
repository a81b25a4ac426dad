"""Merge request, pipeline and outcome types shared across the tool."""

import enum
from dataclasses import dataclass, field
from datetime import datetime


# Detailed merge statuses the triage loop cares about.  GitLab has more
# (conflict, draft_status, discussions_not_resolved, ...); those all skip.
MERGEABLE = "mergeable"
CI_MUST_PASS = "ci_must_pass"
CI_STILL_RUNNING = "ci_still_running"

PENDING_STATUSES = frozenset({"unchecked", "checked"})
CI_STATUSES = frozenset({CI_MUST_PASS, CI_STILL_RUNNING})

DRAFT_PREFIX = "Draft: "


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    # GitLab returns ISO 8601 with a trailing Z
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class MergeRequest:
    """The subset of a GitLab merge request the triage loop reads."""

    project_id: int
    iid: int
    source_branch: str
    target_branch: str
    title: str
    created_at: datetime | None = None
    detailed_merge_status: str | None = None
    draft: bool = False
    work_in_progress: bool = False

    @classmethod
    def from_attributes(cls, attrs: dict) -> "MergeRequest":
        """Build from the ``attributes`` dict of a python-gitlab object."""
        return cls(
            project_id=attrs["project_id"],
            iid=attrs["iid"],
            source_branch=attrs["source_branch"],
            target_branch=attrs.get("target_branch", ""),
            title=attrs.get("title", ""),
            created_at=_parse_timestamp(attrs.get("created_at")),
            detailed_merge_status=attrs.get("detailed_merge_status"),
            draft=bool(attrs.get("draft", False)),
            work_in_progress=bool(attrs.get("work_in_progress", False)),
        )

    @property
    def is_draft(self) -> bool:
        return self.draft or self.work_in_progress

    def __str__(self) -> str:
        return f"!{self.iid} {self.source_branch}"


@dataclass
class Pipeline:
    id: int
    ref: str
    status: str

    @classmethod
    def from_attributes(cls, attrs: dict) -> "Pipeline":
        return cls(id=attrs["id"], ref=attrs.get("ref", ""), status=attrs["status"])


class TriageOutcome(enum.Enum):
    """What to do with a merge request given its detailed merge status."""

    MERGE_NOW = "merge-now"
    WAIT_ON_PIPELINE = "wait-on-pipeline"
    SKIP = "skip"


class MergeOutcome(enum.Enum):
    """Final result for one merge request in a run."""

    MERGED = "merged"
    CONFLICT = "conflict"
    PIPELINE_NOT_READY = "pipeline-not-ready"
    SKIPPED = "skipped"
    STATUS_UNKNOWN = "status-unknown"
    ERROR = "error"


@dataclass
class RunReport:
    """Outcome of every merge request processed in a run, in order."""

    results: list[tuple[MergeRequest, MergeOutcome]] = field(default_factory=list)
    pushed: bool = False

    def add(self, mr: MergeRequest, outcome: MergeOutcome) -> None:
        self.results.append((mr, outcome))

    def merged(self) -> list[MergeRequest]:
        return [mr for mr, outcome in self.results if outcome is MergeOutcome.MERGED]

    def counts(self) -> dict[MergeOutcome, int]:
        counts: dict[MergeOutcome, int] = {}
        for _, outcome in self.results:
            counts[outcome] = counts.get(outcome, 0) + 1
        return counts

    def summary(self) -> str:
        counts = self.counts()
        if not counts:
            return "no merge requests processed"
        return ", ".join(
            f"{counts[o]} {o.value}" for o in MergeOutcome if o in counts
        )
