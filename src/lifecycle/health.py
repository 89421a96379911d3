from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from src.projects.store import ProjectStore
from src.sandbox_backends.base import ProviderAdapter
from src.sandbox_backends.errors import (
    SandboxError,
    SandboxNotFoundError,
    is_recoverable_error,
)
from src.sandbox_files.sandbox_fs import list_project_files

logger = logging.getLogger(__name__)

_CORE_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("package.json", re.compile(r"^package\.json$", re.I)),
    ("vite.config", re.compile(r"^vite\.config\.(js|ts|mjs|cjs)$", re.I)),
    ("app entry", re.compile(r"^(src/)?(main|app|index|App)\.(t|j)sx?$", re.I)),
]
_CONFIG_PATTERN = ("tsconfig/jsconfig", re.compile(r"^(tsconfig|jsconfig)(\.[^.]+)?\.json$", re.I))
# Only app code under src/ counts; vite.config.ts does not.
_TS_SOURCE_RE = re.compile(r"^src/.*\.(ts|tsx)$", re.I)


@dataclass(frozen=True)
class HealthReport:
    broken: bool
    sandbox_id: str | None
    reason: str | None = None
    missing_files: tuple[str, ...] = field(default_factory=tuple)


def missing_critical_files(paths: Iterable[str]) -> list[str]:
    """Labels of required project files that are absent from `paths`."""
    all_paths = list(paths)
    required = list(_CORE_PATTERNS)
    if any(_TS_SOURCE_RE.match(p) for p in all_paths):
        required.append(_CONFIG_PATTERN)
    return [
        label for label, rx in required if not any(rx.match(p) for p in all_paths)
    ]


async def check_project_health(
    adapter: ProviderAdapter, store: ProjectStore, project_id: str
) -> HealthReport:
    project = await asyncio.to_thread(store.get_project, project_id)
    if project is None:
        raise KeyError(f"unknown project {project_id}")

    handle = project.sandbox_handle()
    if handle is None:
        count = await asyncio.to_thread(store.count_fragments, project_id)
        if count == 0:
            # Nothing generated yet; there is nothing to recover.
            return HealthReport(
                broken=False, sandbox_id=None, reason="new-project-no-generation-yet"
            )
        return HealthReport(broken=True, sandbox_id=None, reason="missing-sandbox")

    try:
        live = await adapter.attach(handle.sandbox_id)
    except SandboxNotFoundError:
        return HealthReport(broken=True, sandbox_id=handle.sandbox_id, reason="sandbox-not-found")
    except SandboxError as e:
        reason = "sandbox-unreachable" if is_recoverable_error(e) else "attach-failed"
        return HealthReport(broken=True, sandbox_id=handle.sandbox_id, reason=reason)
    if live.status == "stopped":
        return HealthReport(
            broken=True, sandbox_id=handle.sandbox_id, reason="sandbox-unreachable"
        )

    try:
        paths = await list_project_files(adapter, handle)
    except SandboxError as e:
        logger.error(
            "Listing files failed for project %s sandbox %s: %s",
            project_id,
            handle.sandbox_id,
            e,
        )
        reason = "sandbox-unreachable" if is_recoverable_error(e) else "list-files-failed"
        return HealthReport(broken=True, sandbox_id=handle.sandbox_id, reason=reason)

    missing = missing_critical_files(paths)
    if missing:
        logger.warning(
            "Sandbox %s for project %s is missing critical files: %s",
            handle.sandbox_id,
            project_id,
            ", ".join(missing),
        )
        return HealthReport(
            broken=True,
            sandbox_id=handle.sandbox_id,
            reason="missing-critical-files",
            missing_files=tuple(missing),
        )
    return HealthReport(broken=False, sandbox_id=handle.sandbox_id)
