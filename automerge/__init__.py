"""gitlab-automerge: merge matching GitLab merge requests into an integration branch."""
