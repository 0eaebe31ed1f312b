from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from autopilot.audit import ActionWriter, SpanWriter, enqueue_action
from autopilot.github import GitHubClient
from autopilot.models import COORDINATE, PendingAction
from autopilot.state.store import AutopilotStore

logger = logging.getLogger(__name__)

EVENT_STEP = "event"
COORDINATE_REASONING = "Needs to take a decision about what to do with this event"
ISSUE_ACTIONS = frozenset({"opened", "closed", "reopened"})
PR_ACTIONS = frozenset({"opened", "closed", "reopened", "ready_for_review", "review_requested"})
BODY_PREVIEW_LIMIT = 200


@dataclass(slots=True)
class RelevantEvent:
    summary: str
    meta: dict[str, Any] = field(default_factory=dict)


def _logins(items: Any, key: str = "login") -> list[str]:
    if not isinstance(items, list):
        return []
    return [str(item.get(key)) for item in items if isinstance(item, dict) and item.get(key)]


def _login(item: Any) -> str | None:
    return item.get("login") if isinstance(item, dict) else None


def _preview(text: Any) -> str:
    return str(text or "")[:BODY_PREVIEW_LIMIT]


def extract_relevant_event(event: dict[str, Any]) -> RelevantEvent | None:
    """Reduce a GitHub event to the summary and metadata the pipeline acts on."""
    event_type = event.get("type")
    payload = event.get("payload") if isinstance(event.get("payload"), dict) else {}
    action = payload.get("action")

    if event_type == "IssuesEvent":
        if action not in ISSUE_ACTIONS:
            return None
        issue = payload.get("issue") or {}
        return RelevantEvent(
            f"issue {action} #{issue.get('number')}",
            {
                "type": event_type,
                "action": action,
                "issue_number": issue.get("number"),
                "title": issue.get("title"),
                "state": issue.get("state"),
                "author": _login(issue.get("user")),
                "labels": _logins(issue.get("labels"), "name"),
                "assignees": _logins(issue.get("assignees")),
                "url": issue.get("html_url"),
            },
        )

    if event_type == "PullRequestEvent":
        if action not in PR_ACTIONS:
            return None
        pr = payload.get("pull_request") or {}
        return RelevantEvent(
            f"PR {action} #{pr.get('number')}",
            {
                "type": event_type,
                "action": action,
                "pr_number": pr.get("number"),
                "title": pr.get("title"),
                "state": pr.get("state"),
                "draft": bool(pr.get("draft", False)),
                "merged": bool(pr.get("merged", False)),
                "author": _login(pr.get("user")),
                "branch": (pr.get("head") or {}).get("ref"),
                "base_branch": (pr.get("base") or {}).get("ref"),
                "labels": _logins(pr.get("labels"), "name"),
                "assignees": _logins(pr.get("assignees")),
                "requested_reviewers": _logins(pr.get("requested_reviewers")),
                "additions": pr.get("additions"),
                "deletions": pr.get("deletions"),
                "changed_files": pr.get("changed_files"),
                "url": pr.get("html_url"),
            },
        )

    if event_type == "IssueCommentEvent":
        if action != "created":
            return None
        issue = payload.get("issue") or {}
        comment = payload.get("comment") or {}
        return RelevantEvent(
            f"new comment on #{issue.get('number')}",
            {
                "type": event_type,
                "issue_number": issue.get("number"),
                "issue_title": issue.get("title"),
                "issue_state": issue.get("state"),
                "is_pull_request": bool(issue.get("pull_request")),
                "author": _login(comment.get("user")),
                "comment_id": comment.get("id"),
                "body": _preview(comment.get("body")),
            },
        )

    if event_type in ("PullRequestReviewEvent", "PullRequestReviewCommentEvent"):
        expected = "submitted" if event_type == "PullRequestReviewEvent" else "created"
        if action != expected:
            return None
        pr = payload.get("pull_request") or {}
        meta: dict[str, Any] = {
            "type": event_type,
            "pr_number": pr.get("number"),
            "pr_title": pr.get("title"),
            "pr_state": pr.get("state"),
            "pr_merged": bool(pr.get("merged", False)),
        }
        if event_type == "PullRequestReviewEvent":
            review = payload.get("review") or {}
            meta.update(
                reviewer=_login(review.get("user")),
                state=review.get("state"),
                body=str(review.get("body") or ""),
            )
            return RelevantEvent(f"new review on PR #{pr.get('number')}", meta)
        comment = payload.get("comment") or {}
        meta.update(
            author=_login(comment.get("user")),
            comment_id=comment.get("id"),
            path=comment.get("path"),
            body=_preview(comment.get("body")),
        )
        return RelevantEvent(f"new review comment on PR #{pr.get('number')}", meta)

    if event_type == "PushEvent":
        commits = payload.get("commits") if isinstance(payload.get("commits"), list) else []
        return RelevantEvent(
            f"new push to {payload.get('ref')}",
            {
                "type": event_type,
                "ref": payload.get("ref"),
                "pusher": _login(event.get("actor")),
                "commit_count": payload.get("size") or len(commits),
                "head_sha": payload.get("head"),
                "commits": [
                    {"sha": commit.get("sha"), "message": commit.get("message")}
                    for commit in commits
                    if isinstance(commit, dict)
                ],
            },
        )

    return None


def record_event(
    store: AutopilotStore,
    summary: str,
    meta: dict[str, Any],
    *,
    chain_id: str | None = None,
) -> PendingAction:
    """Start a new trace for an event and queue its ``coordinate`` action."""
    trace_id = str(uuid.uuid4())
    span = SpanWriter(store, EVENT_STEP, None, meta)
    span.complete(summary)
    action = ActionWriter(store, COORDINATE, span.id, trace_id, COORDINATE_REASONING, meta)
    return enqueue_action(
        store,
        chain_id=chain_id or trace_id,
        trace_id=trace_id,
        action=action,
        step=EVENT_STEP,
        summary=summary,
    )


class EventWatcher:
    """Polls repository events and records the ones not seen before."""

    def __init__(
        self,
        store: AutopilotStore,
        github: GitHubClient,
        owner: str,
        repo: str,
        *,
        per_page: int = 25,
    ) -> None:
        self.store = store
        self.github = github
        self.owner = owner
        self.repo = repo
        self.per_page = per_page

    async def poll_once(self) -> int:
        events = await self.github.fetch_events(self.owner, self.repo, per_page=self.per_page)
        recorded: list[str] = []
        # The API lists newest first; record oldest first so traces follow event order.
        for event in reversed(events):
            event_id = str(event.get("id") or "")
            if not event_id or self.store.is_event_processed(event_id):
                continue
            relevant = extract_relevant_event(event)
            if relevant is None:
                continue
            record_event(self.store, relevant.summary, relevant.meta)
            recorded.append(event_id)
        if recorded:
            self.store.mark_events_processed(recorded)
        logger.debug(
            "Fetched %d events from %s/%s, recorded %d",
            len(events),
            self.owner,
            self.repo,
            len(recorded),
        )
        return len(recorded)
