from __future__ import annotations

import re
import secrets
import subprocess
from dataclasses import dataclass
from pathlib import Path

GITHUB_REMOTE_PATTERNS = (
    re.compile(r"github[^:/]*[:/]([^/]+)/([^/.]+?)(?:\.git)?/?$"),
    re.compile(r"^https?://github\.com/([^/]+)/([^/.]+?)(?:\.git)?/?$"),
)


class GitCommandError(RuntimeError):
    """Raised when a git invocation exits non-zero."""


@dataclass(slots=True, frozen=True)
class RepoInfo:
    owner: str
    repo: str

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.repo}"


def parse_repo_info(remote_url: str) -> RepoInfo | None:
    candidate = remote_url.strip()
    for pattern in GITHUB_REMOTE_PATTERNS:
        match = pattern.search(candidate)
        if match:
            return RepoInfo(owner=match.group(1), repo=match.group(2))
    return None


def generate_branch_name(task_id: int, prefix: str = "rover/task") -> str:
    return f"{prefix}-{task_id}-{secrets.token_hex(3)}"


class Git:
    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()

    def _run_git(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=cwd or self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise GitCommandError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def is_repo(self) -> bool:
        try:
            proc = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        except FileNotFoundError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def current_branch(self) -> str:
        return self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def main_branch(self) -> str:
        proc = self._run_git(
            ["symbolic-ref", "--quiet", "refs/remotes/origin/HEAD"],
            check=False,
        )
        if proc.returncode == 0 and proc.stdout.strip():
            return proc.stdout.strip().rsplit("/", maxsplit=1)[-1]
        for candidate in ("main", "master"):
            check = self._run_git(
                ["show-ref", "--verify", "--quiet", f"refs/heads/{candidate}"],
                check=False,
            )
            if check.returncode == 0:
                return candidate
        return self.current_branch()

    def remote_url(self, remote: str = "origin") -> str | None:
        proc = self._run_git(["remote", "get-url", remote], check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def repo_info(self) -> RepoInfo | None:
        remote = self.remote_url()
        if not remote:
            return None
        return parse_repo_info(remote)

    def create_worktree(self, path: Path, branch: str, base: str | None = None) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        args = ["worktree", "add", "-b", branch, str(path)]
        if base:
            args.append(base)
        self._run_git(args)
        return path

    def commit_hash(self, ref: str = "HEAD", *, cwd: Path | None = None) -> str:
        return self._run_git(["rev-parse", ref], cwd=cwd).stdout.strip()

    def recent_commits(self, limit: int = 10, *, cwd: Path | None = None) -> list[str]:
        proc = self._run_git(["log", f"-{limit}", "--pretty=format:%s"], cwd=cwd, check=False)
        if proc.returncode != 0:
            return []
        return [line for line in proc.stdout.splitlines() if line.strip()]
