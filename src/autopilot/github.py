from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Literal

logger = logging.getLogger(__name__)

CommentKind = Literal["issue", "pr"]

EVENTS_JQ = ".[] | {id, type, actor: {login: .actor.login}, created_at, payload}"

# gh view fields fetched per event type when building coordinator context.
CONTEXT_FIELDS: dict[str, tuple[str, str, str]] = {
    "IssuesEvent": ("issue", "issue_number", "title,body,labels,state"),
    "PullRequestEvent": ("pr", "pr_number", "title,body,headRefName,isDraft,labels"),
    "IssueCommentEvent": ("issue", "issue_number", "title,body,comments"),
    "PullRequestReviewEvent": ("pr", "pr_number", "title,body,reviews"),
    "PullRequestReviewCommentEvent": ("pr", "pr_number", "title,body,reviews"),
}


class GitHubError(RuntimeError):
    """Raised when a gh CLI invocation fails."""


@dataclass(slots=True, frozen=True)
class PullRequestInfo:
    number: int
    url: str
    state: str

    def to_dict(self) -> dict[str, Any]:
        return {"number": self.number, "url": self.url, "state": self.state}


class GitHubClient:
    """Thin async wrapper over the ``gh`` CLI."""

    def __init__(self, binary: str = "gh") -> None:
        self.binary = binary

    async def _gh(
        self, args: list[str], *, owner: str | None = None, repo: str | None = None
    ) -> str:
        env = os.environ.copy()
        if owner and repo:
            env["GH_REPO"] = f"{owner}/{repo}"
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise GitHubError(f"gh binary not found: {self.binary}") from exc
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise GitHubError(f"gh {' '.join(args[:2])} failed: {message or process.returncode}")
        return stdout.decode("utf-8", errors="replace")

    async def _gh_json(self, args: list[str], *, owner: str, repo: str) -> Any:
        output = await self._gh(args, owner=owner, repo=repo)
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            raise GitHubError(f"gh returned malformed JSON for {' '.join(args[:2])}") from exc

    async def find_pull_request(
        self, owner: str, repo: str, branch: str
    ) -> PullRequestInfo | None:
        try:
            payload = await self._gh_json(
                ["pr", "list", "--head", branch, "--json", "number,url,state", "--limit", "1"],
                owner=owner,
                repo=repo,
            )
        except GitHubError as exc:
            logger.warning("Pull request lookup for %s failed: %s", branch, exc)
            return None
        if not isinstance(payload, list) or not payload or not isinstance(payload[0], dict):
            return None
        first = payload[0]
        try:
            return PullRequestInfo(
                number=int(first["number"]),
                url=str(first.get("url") or ""),
                state=str(first.get("state") or ""),
            )
        except (KeyError, TypeError, ValueError):
            return None

    async def fetch_events(
        self, owner: str, repo: str, *, per_page: int = 25
    ) -> list[dict[str, Any]]:
        output = await self._gh(
            ["api", f"repos/{owner}/{repo}/events?per_page={per_page}", "--jq", EVENTS_JQ]
        )
        # --jq emits one object per line rather than an array.
        events: list[dict[str, Any]] = []
        for line in output.splitlines():
            if not line.strip():
                continue
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError as exc:
                raise GitHubError("gh api returned a malformed event line") from exc
            if isinstance(parsed, dict):
                events.append(parsed)
        return events

    async def fetch_context(
        self, owner: str, repo: str, event_meta: dict[str, Any]
    ) -> dict[str, Any] | None:
        event_type = event_meta.get("type")
        fields = CONTEXT_FIELDS.get(str(event_type)) if event_type else None
        if fields is None:
            return None
        command, number_key, json_fields = fields
        number = event_meta.get(number_key)
        if not number:
            return None
        try:
            data = await self._gh_json(
                [command, "view", str(number), "--json", json_fields],
                owner=owner,
                repo=repo,
            )
        except GitHubError as exc:
            logger.warning("Context fetch for %s #%s failed: %s", command, number, exc)
            return None
        if not isinstance(data, dict):
            return None
        return {"type": event_type, "data": data}

    async def post_comment(
        self, kind: CommentKind, number: int, body: str, owner: str, repo: str
    ) -> None:
        await self._gh([kind, "comment", str(number), "--body", body], owner=owner, repo=repo)
