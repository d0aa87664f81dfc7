"""GitHub REST adapter for the shared issue tracker."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Iterator, Optional, Type, TypeVar

import httpx
from loguru import logger
from pydantic import BaseModel, ValidationError

from ..constants import DEFAULT_GITHUB_API_URL, DEFAULT_HTTP_TIMEOUT_SECONDS, PLAN_LABEL
from ..errors import SubstrateError
from ..models import Collaborator, IssueSnapshot, PullRequestInfo, RepoRef
from .base import Substrate
from .github_models import (
    GitHubBranch,
    GitHubCollaborator,
    GitHubIssue,
    GitHubIssueEvent,
    GitHubPullRequest,
)

ModelT = TypeVar("ModelT", bound=BaseModel)

_PAGE_SIZE = 100


class GitHubSubstrate(Substrate):
    """Talk to the GitHub REST API through a synchronous ``httpx.Client``.

    Args:
        token: Personal access or installation token.
        api_url: REST root; defaults to public GitHub.
        web_url: Host used to build authenticated clone URLs.
        timeout_seconds: Per-request timeout.
        transport: Optional transport override (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        token: str,
        *,
        api_url: str = DEFAULT_GITHUB_API_URL,
        web_url: str = "https://github.com",
        timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._token = token
        self._web_url = web_url.rstrip("/")
        self._client = httpx.Client(
            base_url=api_url.rstrip("/"),
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {token}",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            timeout=timeout_seconds,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "GitHubSubstrate":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # Transport helpers ----------------------------------------------------

    def _request(self, method: str, url: str, *, operation: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise SubstrateError(
                f"{operation} failed: {exc.__class__.__name__}: {exc}",
                operation=operation,
            ) from exc
        if response.status_code >= 400:
            message = _error_message(response)
            raise SubstrateError(
                f"{operation} failed with HTTP {response.status_code}: {message}",
                operation=operation,
                status_code=response.status_code,
            )
        return response

    def _parse(self, model: Type[ModelT], payload: Any, *, operation: str) -> ModelT:
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            raise SubstrateError(
                f"{operation} returned an unexpected payload: {exc.error_count()} validation error(s)",
                operation=operation,
            ) from exc

    def _paginate(self, url: str, *, operation: str, params: Optional[dict[str, Any]] = None) -> Iterator[Any]:
        next_url: Optional[str] = url
        query: Optional[dict[str, Any]] = {"per_page": _PAGE_SIZE, **(params or {})}
        while next_url:
            response = self._request("GET", next_url, operation=operation, params=query)
            payload = response.json()
            if not isinstance(payload, list):
                raise SubstrateError(f"{operation} expected a list response", operation=operation)
            yield from payload
            next_url = response.links.get("next", {}).get("url")
            # The "next" link already carries the query string.
            query = None

    @staticmethod
    def _issue_path(repo: RepoRef, issue_number: int) -> str:
        return f"/repos/{repo.owner}/{repo.name}/issues/{issue_number}"

    # Issues ---------------------------------------------------------------

    def get_issue(self, repo: RepoRef, issue_number: int) -> IssueSnapshot:
        response = self._request("GET", self._issue_path(repo, issue_number), operation="get_issue")
        return self._parse(GitHubIssue, response.json(), operation="get_issue").to_snapshot()

    def list_plan_issues(self, repo: RepoRef) -> list[IssueSnapshot]:
        items = self._paginate(
            f"/repos/{repo.owner}/{repo.name}/issues",
            operation="list_plan_issues",
            params={"labels": PLAN_LABEL, "state": "open", "sort": "created", "direction": "asc"},
        )
        issues = [self._parse(GitHubIssue, item, operation="list_plan_issues") for item in items]
        return [issue.to_snapshot() for issue in issues if issue.pull_request is None]

    def create_issue(self, repo: RepoRef, title: str, body: str, labels: Iterable[str] = ()) -> IssueSnapshot:
        response = self._request(
            "POST",
            f"/repos/{repo.owner}/{repo.name}/issues",
            operation="create_issue",
            json={"title": title, "body": body, "labels": list(labels)},
        )
        return self._parse(GitHubIssue, response.json(), operation="create_issue").to_snapshot()

    def add_assignee(self, repo: RepoRef, issue_number: int, login: str) -> None:
        response = self._request(
            "POST",
            f"{self._issue_path(repo, issue_number)}/assignees",
            operation="add_assignee",
            json={"assignees": [login]},
        )
        issue = self._parse(GitHubIssue, response.json(), operation="add_assignee")
        # GitHub silently drops assignees without repository access. Logins are case-insensitive.
        if login.lower() not in {user.login.lower() for user in issue.assignees}:
            raise SubstrateError(
                f"GitHub did not accept {login} as an assignee of {repo}#{issue_number}",
                operation="add_assignee",
                status_code=response.status_code,
            )

    def remove_assignee(self, repo: RepoRef, issue_number: int, login: str) -> None:
        self._request(
            "DELETE",
            f"{self._issue_path(repo, issue_number)}/assignees",
            operation="remove_assignee",
            json={"assignees": [login]},
        )

    def update_issue_body(self, repo: RepoRef, issue_number: int, body: str) -> None:
        self._request(
            "PATCH",
            self._issue_path(repo, issue_number),
            operation="update_issue_body",
            json={"body": body},
        )

    def set_labels(self, repo: RepoRef, issue_number: int, labels: Iterable[str]) -> None:
        self._request(
            "PATCH",
            self._issue_path(repo, issue_number),
            operation="set_labels",
            json={"labels": list(dict.fromkeys(labels))},
        )

    def close_issue(self, repo: RepoRef, issue_number: int) -> None:
        self._request(
            "PATCH",
            self._issue_path(repo, issue_number),
            operation="close_issue",
            json={"state": "closed"},
        )

    def post_comment(self, repo: RepoRef, issue_number: int, body: str) -> None:
        self._request(
            "POST",
            f"{self._issue_path(repo, issue_number)}/comments",
            operation="post_comment",
            json={"body": body},
        )

    def assignment_times(self, repo: RepoRef, issue_number: int) -> dict[str, datetime]:
        times: dict[str, datetime] = {}
        for item in self._paginate(
            f"{self._issue_path(repo, issue_number)}/events",
            operation="assignment_times",
        ):
            event = self._parse(GitHubIssueEvent, item, operation="assignment_times")
            if event.assignee is None:
                continue
            if event.event == "assigned":
                times[event.assignee.login] = event.created_at
            elif event.event == "unassigned":
                times.pop(event.assignee.login, None)
        return times

    # Branches and pull requests ------------------------------------------

    def list_remote_branches(self, repo: RepoRef) -> list[str]:
        items = self._paginate(f"/repos/{repo.owner}/{repo.name}/branches", operation="list_remote_branches")
        return [self._parse(GitHubBranch, item, operation="list_remote_branches").name for item in items]

    def delete_branch(self, repo: RepoRef, branch: str) -> None:
        self._request(
            "DELETE",
            f"/repos/{repo.owner}/{repo.name}/git/refs/heads/{branch}",
            operation="delete_branch",
        )

    def create_pull_request(
        self,
        repo: RepoRef,
        *,
        title: str,
        body: str,
        head: str,
        base: str,
    ) -> PullRequestInfo:
        response = self._request(
            "POST",
            f"/repos/{repo.owner}/{repo.name}/pulls",
            operation="create_pull_request",
            json={"title": title, "body": body, "head": head, "base": base},
        )
        pull = self._parse(GitHubPullRequest, response.json(), operation="create_pull_request")
        logger.info("Opened pull request #{} for {} on {}", pull.number, head, repo)
        return pull.to_info()

    def list_pull_requests(
        self,
        repo: RepoRef,
        *,
        head: Optional[str] = None,
        state: str = "all",
    ) -> list[PullRequestInfo]:
        params: dict[str, Any] = {"state": state}
        if head:
            params["head"] = f"{repo.owner}:{head}"
        items = self._paginate(
            f"/repos/{repo.owner}/{repo.name}/pulls",
            operation="list_pull_requests",
            params=params,
        )
        return [self._parse(GitHubPullRequest, item, operation="list_pull_requests").to_info() for item in items]

    def request_reviewers(self, repo: RepoRef, pr_number: int, reviewers: Iterable[str]) -> None:
        logins = list(reviewers)
        if not logins:
            return
        self._request(
            "POST",
            f"/repos/{repo.owner}/{repo.name}/pulls/{pr_number}/requested_reviewers",
            operation="request_reviewers",
            json={"reviewers": logins},
        )

    def list_collaborators(self, repo: RepoRef) -> list[Collaborator]:
        items = self._paginate(f"/repos/{repo.owner}/{repo.name}/collaborators", operation="list_collaborators")
        return [
            self._parse(GitHubCollaborator, item, operation="list_collaborators").to_collaborator()
            for item in items
        ]

    def clone_url(self, repo: RepoRef) -> str:
        scheme, _, host = self._web_url.partition("://")
        return f"{scheme}://x-access-token:{self._token}@{host}/{repo.full_name}.git"


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return response.reason_phrase
