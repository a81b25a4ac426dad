"""GitLab access for one project, on top of python-gitlab.

Only the handful of calls the triage loop needs are exposed, and each one
returns the plain types from ``automerge.models`` so the rest of the code
never touches python-gitlab objects.
"""

import logging

import gitlab

from automerge.models import MergeRequest, Pipeline

logger = logging.getLogger(__name__)

PER_PAGE = 100
MAX_PAGES = 10


class GitLabClient:
    """Merge request and pipeline calls scoped to a single project."""

    def __init__(self, url: str, token: str, project_id: str | int, *, gl: gitlab.Gitlab | None = None):
        self.url = url
        self.project_id = project_id
        self._gl = gl if gl is not None else gitlab.Gitlab(url, private_token=token)
        # lazy: no request until the first real call
        self._project = self._gl.projects.get(project_id, lazy=True)

    def list_open_merge_requests(self, per_page: int = PER_PAGE, max_pages: int = MAX_PAGES) -> list[MergeRequest]:
        """Return open merge requests, at most ``per_page * max_pages`` of them."""
        mrs: list[MergeRequest] = []
        for page in range(1, max_pages + 1):
            batch = self._project.mergerequests.list(state="opened", per_page=per_page, page=page)
            mrs.extend(MergeRequest.from_attributes(obj.attributes) for obj in batch)
            if len(batch) < per_page:
                break
        return mrs

    def get_merge_request(self, iid: int) -> MergeRequest:
        obj = self._project.mergerequests.get(iid)
        return MergeRequest.from_attributes(obj.attributes)

    def latest_pipeline(self, ref: str) -> Pipeline | None:
        """Most recent pipeline for *ref*, or None if it never ran."""
        pipelines = self._project.pipelines.list(ref=ref, per_page=1, page=1)
        if not pipelines:
            return None
        return Pipeline.from_attributes(pipelines[0].attributes)

    def set_title(self, iid: int, title: str) -> None:
        self._project.mergerequests.update(iid, {"title": title})

    def add_note(self, iid: int, body: str) -> None:
        mr = self._project.mergerequests.get(iid, lazy=True)
        mr.notes.create({"body": body})
