"""
Push Event Model
================
Pydantic model for the CI trigger that starts a pipeline run.

Fields:
    event_name  - "push" or "pull_request"
    branch      - triggering branch (PR head ref for pull requests)
    commit_sha  - hex commit id (6-64 chars); becomes the immutable image tag

from_github_env() reconstructs the event from the variables GitHub Actions
exports into every job (GITHUB_EVENT_NAME, GITHUB_REF_NAME, GITHUB_HEAD_REF,
GITHUB_SHA).
"""
import os
import re
from typing import Literal, Mapping, Optional

from pydantic import BaseModel, field_validator

EventName = Literal["push", "pull_request"]

# Abbreviated or full git object id (SHA-1 or SHA-256), always a valid image tag
COMMIT_SHA_PATTERN = re.compile(r"^[0-9a-f]{6,64}$")


class PushEvent(BaseModel):
    event_name: EventName = "push"
    branch: str
    commit_sha: str

    @field_validator("branch")
    @classmethod
    def _strip_ref_prefix(cls, v: str) -> str:
        v = v.strip()
        if v.startswith("refs/heads/"):
            v = v[len("refs/heads/"):]
        if not v:
            raise ValueError("branch must not be empty")
        return v

    @field_validator("commit_sha")
    @classmethod
    def _valid_sha(cls, v: str) -> str:
        v = v.strip().lower()
        if not COMMIT_SHA_PATTERN.match(v):
            raise ValueError(f"invalid commit sha: {v!r}")
        return v

    @property
    def is_pull_request(self) -> bool:
        return self.event_name == "pull_request"

    @classmethod
    def from_github_env(cls, env: Optional[Mapping[str, str]] = None) -> "PushEvent":
        """Build the event from GitHub Actions environment variables."""
        env = os.environ if env is None else env
        event_name = env.get("GITHUB_EVENT_NAME", "push")
        if event_name == "pull_request":
            branch = env.get("GITHUB_HEAD_REF", "")
        else:
            branch = env.get("GITHUB_REF_NAME") or env.get("GITHUB_REF", "")
        return cls(
            event_name=event_name,
            branch=branch,
            commit_sha=env.get("GITHUB_SHA", ""),
        )
