"""
Models for the source push that triggers a pipeline run.
"""
from typing import Optional
from pydantic import BaseModel, field_validator

BRANCH_PREFIX = "refs/heads/"
TAG_PREFIX = "refs/tags/"


class PushEvent(BaseModel):
    """
    A push to a git ref. A bare branch name is accepted and normalised to
    ``refs/heads/<name>``.
    """
    ref: str
    sha: Optional[str] = None
    repository: Optional[str] = None

    @field_validator("ref")
    @classmethod
    def _normalise_ref(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Empty ref")
        if not value.startswith("refs/"):
            value = BRANCH_PREFIX + value
        return value

    @property
    def branch(self) -> Optional[str]:
        """Branch name, or None when the push is not to a branch."""
        if self.ref.startswith(BRANCH_PREFIX):
            return self.ref[len(BRANCH_PREFIX):]
        return None

    @property
    def ref_name(self) -> str:
        for prefix in (BRANCH_PREFIX, TAG_PREFIX):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.ref

    @classmethod
    def for_branch(cls, branch: str, sha: Optional[str] = None, repository: Optional[str] = None) -> "PushEvent":
        return cls(ref=BRANCH_PREFIX + branch, sha=sha, repository=repository)
