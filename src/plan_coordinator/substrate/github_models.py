"""Pydantic models for the GitHub REST responses the adapter consumes."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from ..models import Collaborator, IssueSnapshot, PullRequestInfo


class GitHubUser(BaseModel):
    login: str


class GitHubLabel(BaseModel):
    name: str


class GitHubIssue(BaseModel):
    """Issue payload (also returned for pull requests listed as issues)."""

    number: int
    title: str
    body: Optional[str] = None
    state: str = "open"
    html_url: Optional[str] = None
    assignees: list[GitHubUser] = Field(default_factory=list)
    labels: list[GitHubLabel] = Field(default_factory=list)
    pull_request: Optional[dict] = None

    def to_snapshot(self) -> IssueSnapshot:
        return IssueSnapshot(
            number=self.number,
            title=self.title,
            body=self.body or "",
            assignees=[user.login for user in self.assignees],
            labels=[label.name for label in self.labels],
            state=self.state,
            url=self.html_url,
        )


class GitHubIssueEvent(BaseModel):
    event: str
    created_at: datetime
    assignee: Optional[GitHubUser] = None


class GitHubBranch(BaseModel):
    name: str


class GitHubPullRef(BaseModel):
    ref: str


class GitHubPullRequest(BaseModel):
    number: int
    html_url: str
    title: str = ""
    body: Optional[str] = None
    state: str = "open"
    merged_at: Optional[datetime] = None
    head: GitHubPullRef
    base: GitHubPullRef
    user: Optional[GitHubUser] = None

    def to_info(self) -> PullRequestInfo:
        return PullRequestInfo(
            number=self.number,
            url=self.html_url,
            head=self.head.ref,
            base=self.base.ref,
            title=self.title,
            body=self.body or "",
            state=self.state,
            merged=self.merged_at is not None,
            author=self.user.login if self.user else None,
        )


class GitHubPermissions(BaseModel):
    push: bool = False


class GitHubCollaborator(BaseModel):
    login: str
    permissions: GitHubPermissions = Field(default_factory=GitHubPermissions)

    def to_collaborator(self) -> Collaborator:
        return Collaborator(login=self.login, can_push=self.permissions.push)
