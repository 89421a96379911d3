from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Protocol

from src.sandbox_backends.base import SandboxHandle, utcnow


@dataclass(frozen=True)
class Project:
    project_id: str
    name: str = ""
    template_name: str | None = None
    # Imported codebases need a dependency install after restore.
    imported: bool = False
    sandbox_provider: str | None = None
    sandbox_id: str | None = None
    sandbox_url: str | None = None
    sandbox_created_at: datetime | None = None
    sandbox_expires_at: datetime | None = None
    active_fragment_id: str | None = None
    git_commit_hash: str | None = None
    git_branch: str | None = None

    def sandbox_handle(self) -> SandboxHandle | None:
        if not self.sandbox_id or not self.sandbox_provider:
            return None
        return SandboxHandle(
            provider=self.sandbox_provider,  # type: ignore[arg-type]
            sandbox_id=self.sandbox_id,
            public_url=self.sandbox_url,
            created_at=self.sandbox_created_at or utcnow(),
            expires_at=self.sandbox_expires_at,
        )


@dataclass(frozen=True)
class Fragment:
    fragment_id: str
    project_id: str
    title: str
    files: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    snapshot_image_id: str | None = None
    snapshot_created_at: datetime | None = None
    snapshot_provider: str | None = None


@dataclass(frozen=True)
class GitFragmentRecord:
    record_id: str
    project_id: str
    commit_hash: str
    branch: str
    message: str
    author_name: str
    author_email: str
    title: str | None = None
    created_at: datetime = field(default_factory=utcnow)


def new_id() -> str:
    return uuid.uuid4().hex


class ProjectStore(Protocol):
    """Persistence for project sandbox state, fragments and git history.

    Calls are blocking; async callers wrap them in `asyncio.to_thread`.
    """

    def get_project(self, project_id: str) -> Project | None: ...

    def set_sandbox(self, project_id: str, handle: SandboxHandle) -> None: ...

    def clear_sandbox(self, project_id: str) -> None: ...

    def count_projects_using_sandbox(
        self, sandbox_id: str, *, exclude_project_id: str | None = None
    ) -> int: ...

    def set_active_fragment(self, project_id: str, fragment_id: str | None) -> None: ...

    def set_git_state(
        self,
        project_id: str,
        *,
        commit_hash: str,
        branch: str | None = None,
        clear_active_fragment: bool = False,
    ) -> None: ...

    def get_fragment(self, fragment_id: str) -> Fragment | None: ...

    def latest_fragment(self, project_id: str) -> Fragment | None: ...

    def count_fragments(self, project_id: str) -> int: ...

    def bind_snapshot(
        self, fragment_id: str, *, image_id: str, provider: str, created_at: datetime
    ) -> None: ...

    def clear_snapshot(self, fragment_id: str) -> None: ...

    def list_snapshot_bindings(
        self, project_id: str, *, provider: str | None = None
    ) -> list[Fragment]: ...

    def fragments_with_image(self, image_id: str) -> list[Fragment]: ...

    def add_git_fragment(self, record: GitFragmentRecord) -> None: ...

    def find_git_fragment_by_title(
        self, project_id: str, title: str
    ) -> GitFragmentRecord | None: ...


class InMemoryProjectStore:
    """Process-local store; used by tests and the example script."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._projects: dict[str, Project] = {}
        self._fragments: dict[str, Fragment] = {}
        self._git: list[GitFragmentRecord] = []

    # Seeding helpers (not part of the protocol).
    def put_project(self, project: Project) -> Project:
        with self._lock:
            self._projects[project.project_id] = project
        return project

    def put_fragment(self, fragment: Fragment) -> Fragment:
        with self._lock:
            self._fragments[fragment.fragment_id] = fragment
        return fragment

    def git_fragments(self, project_id: str) -> list[GitFragmentRecord]:
        with self._lock:
            return [r for r in self._git if r.project_id == project_id]

    def _update_project(self, project_id: str, **changes) -> None:
        with self._lock:
            cur = self._projects.get(project_id)
            if cur is None:
                raise KeyError(f"unknown project {project_id}")
            self._projects[project_id] = replace(cur, **changes)

    def _update_fragment(self, fragment_id: str, **changes) -> None:
        with self._lock:
            cur = self._fragments.get(fragment_id)
            if cur is None:
                raise KeyError(f"unknown fragment {fragment_id}")
            self._fragments[fragment_id] = replace(cur, **changes)

    def get_project(self, project_id: str) -> Project | None:
        with self._lock:
            return self._projects.get(project_id)

    def set_sandbox(self, project_id: str, handle: SandboxHandle) -> None:
        self._update_project(
            project_id,
            sandbox_provider=handle.provider,
            sandbox_id=handle.sandbox_id,
            sandbox_url=handle.public_url,
            sandbox_created_at=handle.created_at,
            sandbox_expires_at=handle.expires_at,
        )

    def clear_sandbox(self, project_id: str) -> None:
        # Git state is deliberately kept: it is the recovery source.
        self._update_project(
            project_id,
            sandbox_id=None,
            sandbox_url=None,
            sandbox_created_at=None,
            sandbox_expires_at=None,
        )

    def count_projects_using_sandbox(
        self, sandbox_id: str, *, exclude_project_id: str | None = None
    ) -> int:
        with self._lock:
            return sum(
                1
                for p in self._projects.values()
                if p.sandbox_id == sandbox_id and p.project_id != exclude_project_id
            )

    def set_active_fragment(self, project_id: str, fragment_id: str | None) -> None:
        self._update_project(project_id, active_fragment_id=fragment_id)

    def set_git_state(
        self,
        project_id: str,
        *,
        commit_hash: str,
        branch: str | None = None,
        clear_active_fragment: bool = False,
    ) -> None:
        changes: dict = {"git_commit_hash": commit_hash}
        if branch is not None:
            changes["git_branch"] = branch
        if clear_active_fragment:
            changes["active_fragment_id"] = None
        self._update_project(project_id, **changes)

    def get_fragment(self, fragment_id: str) -> Fragment | None:
        with self._lock:
            return self._fragments.get(fragment_id)

    def latest_fragment(self, project_id: str) -> Fragment | None:
        with self._lock:
            items = [f for f in self._fragments.values() if f.project_id == project_id]
        if not items:
            return None
        return max(items, key=lambda f: f.created_at)

    def count_fragments(self, project_id: str) -> int:
        with self._lock:
            return sum(1 for f in self._fragments.values() if f.project_id == project_id)

    def bind_snapshot(
        self, fragment_id: str, *, image_id: str, provider: str, created_at: datetime
    ) -> None:
        self._update_fragment(
            fragment_id,
            snapshot_image_id=image_id,
            snapshot_provider=provider,
            snapshot_created_at=created_at,
        )

    def clear_snapshot(self, fragment_id: str) -> None:
        self._update_fragment(
            fragment_id,
            snapshot_image_id=None,
            snapshot_provider=None,
            snapshot_created_at=None,
        )

    def list_snapshot_bindings(
        self, project_id: str, *, provider: str | None = None
    ) -> list[Fragment]:
        with self._lock:
            items = [
                f
                for f in self._fragments.values()
                if f.project_id == project_id
                and f.snapshot_image_id
                and (provider is None or f.snapshot_provider == provider)
            ]
        return sorted(
            items,
            key=lambda f: f.snapshot_created_at or f.created_at,
            reverse=True,
        )

    def fragments_with_image(self, image_id: str) -> list[Fragment]:
        with self._lock:
            return [f for f in self._fragments.values() if f.snapshot_image_id == image_id]

    def add_git_fragment(self, record: GitFragmentRecord) -> None:
        with self._lock:
            self._git.append(record)

    def find_git_fragment_by_title(
        self, project_id: str, title: str
    ) -> GitFragmentRecord | None:
        with self._lock:
            matches = [
                r for r in self._git if r.project_id == project_id and r.title == title
            ]
        if not matches:
            return None
        return max(matches, key=lambda r: r.created_at)
