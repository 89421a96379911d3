from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from src.projects.store import Fragment, Project, ProjectStore
from src.sandbox_backends.base import SandboxHandle
from src.sandbox_backends.errors import (
    SandboxNotFoundError,
    WorkspaceMissingError,
    is_recoverable_error,
)
from src.templates.registry import (
    DEFAULT_TEMPLATE,
    has_template_snapshot,
    infer_template_from_files,
)

logger = logging.getLogger(__name__)

RecoveryState = Literal["attached", "stale", "missing", "unreachable"]
TemplateSource = Literal["override", "project", "fragment", "heuristic", "fallback"]


def state_after_failure(exc: BaseException) -> RecoveryState | None:
    """Next state after attaching to / probing a recorded sandbox failed.

    None means the error is not one recovery can act on and must propagate.
    """
    if isinstance(exc, SandboxNotFoundError):
        return "stale"
    if isinstance(exc, WorkspaceMissingError):
        # Alive but empty: nothing to reuse.
        return "missing"
    if is_recoverable_error(exc):
        return "unreachable"
    return None


@dataclass(frozen=True)
class RecoveryPlan:
    fragment_id: str | None
    snapshot_image_id: str | None
    template_name: str | None
    template_source: TemplateSource
    snapshot_source: str | None = None


@dataclass(frozen=True)
class RecoveryOutcome:
    recovered: bool
    handle: SandboxHandle | None
    reason: str | None = None


def _usable_snapshot(fragment: Fragment | None, provider: str) -> str | None:
    if fragment is None or not fragment.snapshot_image_id:
        return None
    if fragment.snapshot_provider and fragment.snapshot_provider != provider:
        return None
    return fragment.snapshot_image_id


def resolve_template(
    store: ProjectStore,
    project: Project,
    *,
    override: str | None = None,
) -> tuple[str | None, TemplateSource]:
    if override:
        return override, "override"
    if project.template_name:
        return project.template_name, "project"

    candidates: list[tuple[Fragment, TemplateSource]] = []
    if project.active_fragment_id:
        active = store.get_fragment(project.active_fragment_id)
        if active is not None:
            candidates.append((active, "fragment"))
    latest = store.latest_fragment(project.project_id)
    if latest is not None and all(c.fragment_id != latest.fragment_id for c, _ in candidates):
        candidates.append((latest, "heuristic"))

    for fragment, source in candidates:
        inferred = infer_template_from_files(fragment.files)
        if inferred and has_template_snapshot(inferred):
            return inferred, source
    if has_template_snapshot(DEFAULT_TEMPLATE):
        return DEFAULT_TEMPLATE, "fallback"
    # No usable template snapshot at all: boot the base image.
    return None, "fallback"


def plan_recovery(
    store: ProjectStore,
    project: Project,
    *,
    provider: str,
    preferred_fragment_id: str | None = None,
    template_override: str | None = None,
) -> RecoveryPlan:
    """Choose what a replacement sandbox is rebuilt from.

    Preference: snapshot of the starting fragment, then the newest snapshot
    of an older fragment, then the newest snapshot in the project, then the
    starting (or latest) fragment's files on a template image.

    Blocking; call through `asyncio.to_thread` from async code.
    """
    start_id = preferred_fragment_id or project.active_fragment_id
    start = store.get_fragment(start_id) if start_id else None
    if start_id and start is None:
        logger.warning(
            "Fragment %s for project %s is missing; using latest", start_id, project.project_id
        )

    template, template_source = resolve_template(store, project, override=template_override)

    snap = _usable_snapshot(start, provider)
    if start is not None and snap:
        return RecoveryPlan(
            fragment_id=start.fragment_id,
            snapshot_image_id=snap,
            template_name=template,
            template_source=template_source,
            snapshot_source="active-fragment",
        )

    bindings = [
        f
        for f in store.list_snapshot_bindings(project.project_id, provider=provider)
        if _usable_snapshot(f, provider)
    ]
    bindings.sort(key=lambda f: f.created_at, reverse=True)
    if start is not None:
        older = [f for f in bindings if f.created_at <= start.created_at]
        if older:
            return RecoveryPlan(
                fragment_id=older[0].fragment_id,
                snapshot_image_id=older[0].snapshot_image_id,
                template_name=template,
                template_source=template_source,
                snapshot_source="fallback-fragment",
            )
    if bindings:
        return RecoveryPlan(
            fragment_id=bindings[0].fragment_id,
            snapshot_image_id=bindings[0].snapshot_image_id,
            template_name=template,
            template_source=template_source,
            snapshot_source="latest-snapshot",
        )

    fragment = start or store.latest_fragment(project.project_id)
    return RecoveryPlan(
        fragment_id=fragment.fragment_id if fragment else None,
        snapshot_image_id=None,
        template_name=template,
        template_source=template_source,
    )
