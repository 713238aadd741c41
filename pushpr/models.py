from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional

# Pull requests are always opened against the repository's default branch.
DEFAULT_BASE_BRANCH = "master"

STATUS_GLYPHS = {
    "failure": "❌",
    "pending": "🕐",
    "success": "✅",
}


class PublishRequest(BaseModel):
    repo_name: str = Field(min_length=1)
    repo_owner: str = Field(min_length=1)
    branch_name: str = Field(min_length=1)
    # First line is the PR title; the rest is the body unless pr_body is set.
    commit_message: str
    pr_body: str = ""
    pr_assignee: str = ""
    # Git working copy holding the commit to publish
    plan_dir: str

    @property
    def head(self) -> str:
        return f"{self.repo_owner}:{self.branch_name}"


class PublishResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = False
    commit_sha: str = ""
    pull_request_url: str = ""
    pull_request_number: int = 0
    pull_request_combined_status: str = ""  # failure, pending, or success
    pull_request_assignee: str = ""
    circleci_build_url: str = ""

    @classmethod
    def failed(cls) -> "PublishResult":
        return cls(success=False)

    def render(self) -> str:
        s = "status:" + STATUS_GLYPHS.get(self.pull_request_combined_status, "?")
        s += f"  assignee:{self.pull_request_assignee} {self.pull_request_url}"
        if self.circleci_build_url:
            s += f" {self.circleci_build_url}"
        return s

    def __str__(self) -> str:
        return self.render()


class DesiredPR(BaseModel):
    title: str
    body: str
    head: str  # owner:branch
    base: str = DEFAULT_BASE_BRANCH


class PullRequestHandle(BaseModel):
    number: int
    head_sha: str
    html_url: str
    # None means GitHub did not report the field, which is not the same as ""
    title: Optional[str] = None
    body: Optional[str] = None
    assignee: Optional[str] = None

    @classmethod
    def from_api(cls, pr: Dict[str, Any]) -> "PullRequestHandle":
        return cls(
            number=pr["number"],
            head_sha=(pr.get("head") or {}).get("sha") or "",
            html_url=pr.get("html_url", ""),
            title=pr.get("title"),
            body=pr.get("body"),
            assignee=(pr.get("assignee") or {}).get("login"),
        )


class StatusContext(BaseModel):
    context: Optional[str] = None
    state: Optional[str] = None
    target_url: Optional[str] = None


class CombinedStatus(BaseModel):
    state: str = ""
    sha: str = ""
    statuses: List[StatusContext] = Field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "CombinedStatus":
        return cls(
            state=data.get("state") or "",
            sha=data.get("sha") or "",
            statuses=[
                StatusContext(context=s.get("context"), state=s.get("state"), target_url=s.get("target_url"))
                for s in data.get("statuses") or []
            ],
        )
