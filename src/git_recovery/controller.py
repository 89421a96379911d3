from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Literal

from src.projects.store import Fragment, GitFragmentRecord, ProjectStore, new_id
from src.sandbox_backends import config
from src.sandbox_backends.base import ExecResult, ProviderAdapter, SandboxHandle, utcnow

logger = logging.getLogger(__name__)

AUTO_FIXED_MARKER = "Auto-fixed"
AUTO_FIXED_SUFFIX = " (Auto-fixed)"

# Sandbox-local tooling state; never committed.
TOOLING_DIR = ".sandbox"

DEFAULT_AUTHOR_NAME = "Sandbox Bot"
DEFAULT_AUTHOR_EMAIL = "bot@sandbox.dev"

_COMMIT_RE = re.compile(r"^[0-9a-fA-F]{4,40}$")


class GitCommandError(RuntimeError):
    def __init__(self, argv: list[str], exit_code: int, output: str) -> None:
        super().__init__(
            f"git {' '.join(argv[1:])} failed ({exit_code}): {output.strip()[:500]}"
        )
        self.argv = argv
        self.exit_code = exit_code
        self.output = output


def is_auto_fixed(title: str | None) -> bool:
    return AUTO_FIXED_MARKER in (title or "")


def auto_fixed_title(title: str) -> str:
    return title if is_auto_fixed(title) else f"{title}{AUTO_FIXED_SUFFIX}"


@dataclass(frozen=True)
class RestoreDecision:
    method: Literal["git", "files"]
    commit_hash: str | None
    reason: str


def decide_restore_source(
    fragment: Fragment,
    *,
    git_record: GitFragmentRecord | None,
    project_commit_hash: str | None,
) -> RestoreDecision:
    """Pure decision helper: restore a fragment through git or by writing files.

    Auto-fixed fragments never correspond to a real commit, so they always use
    direct file restoration regardless of available history.
    """
    if is_auto_fixed(fragment.title):
        return RestoreDecision(method="files", commit_hash=None, reason="auto_fixed")
    if git_record is not None and git_record.commit_hash:
        return RestoreDecision(
            method="git", commit_hash=git_record.commit_hash, reason="matching_commit"
        )
    if project_commit_hash:
        return RestoreDecision(
            method="git", commit_hash=project_commit_hash, reason="project_commit"
        )
    return RestoreDecision(method="files", commit_hash=None, reason="no_history")


@dataclass(frozen=True)
class CommitAuthor:
    name: str
    email: str


class GitRecoveryController:
    """Keeps a per-project commit history inside the sandbox working tree."""

    def __init__(
        self,
        adapter: ProviderAdapter,
        store: ProjectStore,
        *,
        workdir: str | None = None,
        author: CommitAuthor | None = None,
    ) -> None:
        self._adapter = adapter
        self._store = store
        self._workdir = workdir or config.sandbox_workdir()
        self._author = author or CommitAuthor(DEFAULT_AUTHOR_NAME, DEFAULT_AUTHOR_EMAIL)

    async def _git(
        self, handle: SandboxHandle, *args: str, check: bool = True
    ) -> ExecResult:
        argv = ["git", *args]
        res = await self._adapter.exec(
            handle, argv, timeout_s=config.exec_timeout_s(), workdir=self._workdir
        )
        if check and not res.ok:
            raise GitCommandError(argv, res.exit_code, res.output)
        return res

    async def has_repository(self, handle: SandboxHandle) -> bool:
        res = await self._git(handle, "status", check=False)
        return res.ok

    async def _is_dirty(self, handle: SandboxHandle) -> bool:
        res = await self._git(handle, "status", "--porcelain")
        return bool(res.stdout.strip())

    async def initialize(self, handle: SandboxHandle) -> None:
        await self._git(handle, "init")
        await self._git(handle, "config", "user.name", self._author.name)
        await self._git(handle, "config", "user.email", self._author.email)
        ignore = (
            f"grep -qxF '{TOOLING_DIR}/' .gitignore 2>/dev/null "
            f"|| echo '{TOOLING_DIR}/' >> .gitignore"
        )
        await self._adapter.exec(
            handle,
            ["sh", "-c", ignore],
            timeout_s=config.exec_timeout_s(),
            workdir=self._workdir,
        )
        await self._git(handle, "add", "-A", "--", ".", f":!{TOOLING_DIR}")
        if await self._is_dirty(handle):
            await self._git(handle, "commit", "-m", "Initial commit")
        logger.info("Initialized git repository in sandbox %s", handle.sandbox_id)

    async def create_commit(
        self,
        handle: SandboxHandle,
        project_id: str,
        message: str,
        *,
        author: CommitAuthor | None = None,
        title: str | None = None,
    ) -> GitFragmentRecord | None:
        """Commit the working tree. Returns None when there is nothing to commit."""
        if not await self.has_repository(handle):
            await self.initialize(handle)

        await self._git(handle, "add", "-A", "--", ".", f":!{TOOLING_DIR}")
        if not await self._is_dirty(handle):
            logger.info("Nothing to commit in sandbox %s", handle.sandbox_id)
            return None

        who = author or self._author
        await self._git(
            handle,
            "-c",
            f"user.name={who.name}",
            "-c",
            f"user.email={who.email}",
            "commit",
            "-m",
            message,
        )
        commit_hash = (await self._git(handle, "rev-parse", "HEAD")).stdout.strip()
        branch_res = await self._git(handle, "branch", "--show-current", check=False)
        branch = branch_res.stdout.strip() or "main"

        await asyncio.to_thread(
            self._store.set_git_state, project_id, commit_hash=commit_hash, branch=branch
        )
        record = GitFragmentRecord(
            record_id=new_id(),
            project_id=project_id,
            commit_hash=commit_hash,
            branch=branch,
            message=message,
            author_name=who.name,
            author_email=who.email,
            title=title,
            created_at=utcnow(),
        )
        await asyncio.to_thread(self._store.add_git_fragment, record)
        logger.info(
            "Committed %s on %s in sandbox %s", commit_hash[:12], branch, handle.sandbox_id
        )
        return record

    async def switch_to_commit(
        self, handle: SandboxHandle, project_id: str, commit_hash: str
    ) -> None:
        h = (commit_hash or "").strip()
        if not _COMMIT_RE.match(h):
            raise ValueError(f"invalid commit hash: {commit_hash!r}")
        await self._git(handle, "checkout", h)
        # Git history and fragments are mutually exclusive restore sources.
        await asyncio.to_thread(
            self._store.set_git_state,
            project_id,
            commit_hash=h,
            clear_active_fragment=True,
        )
        logger.info("Switched sandbox %s to commit %s", handle.sandbox_id, h[:12])
