"""Get-or-create orchestration for per-project sandboxes.

State machine over a recorded sandbox handle:

  attached     handle resolves and the workspace can be listed -> reuse
  stale        provider no longer knows the sandbox -> clear handle -> missing
  unreachable  sandbox exists but is stopped / has no address -> start,
               re-probe once; on failure -> terminate -> missing
  missing      no usable handle (or a sandbox whose workspace is gone, which
               is terminated first) -> full provisioning

A replaced sandbox is terminated unless another project still records it.

Provisioning is image selection -> create -> restore (files or git) ->
dependency install for imported projects -> readiness -> persist handle.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Literal

from src.git_recovery.controller import (
    GitCommandError,
    GitRecoveryController,
    decide_restore_source,
)
from src.lifecycle.health import HealthReport, check_project_health
from src.lifecycle.image_policy import ImageRequest, ImageSelection, select_boot_image
from src.lifecycle.readiness import ReadinessMonitor, wait_until
from src.lifecycle.recovery import (
    RecoveryOutcome,
    plan_recovery,
    state_after_failure,
)
from src.lifecycle.snapshots import SnapshotLifecycleManager
from src.projects.store import Fragment, GitFragmentRecord, Project, ProjectStore
from src.sandbox_backends import config, factory
from src.sandbox_backends.base import ProviderAdapter, ResourceSpec, SandboxHandle
from src.sandbox_backends.errors import (
    SandboxConfigError,
    SandboxError,
    SandboxNotFoundError,
    SandboxRecoveryError,
    SandboxUnavailableError,
    SandboxUnreachableError,
)
from src.sandbox_files.restore import FragmentRestorer
from src.sandbox_files.sandbox_fs import path_exists

logger = logging.getLogger(__name__)

DEV_SERVER_PROCESS = "dev-server"


class SandboxLifecycleManager:
    def __init__(
        self,
        store: ProjectStore,
        *,
        provider: str | None = None,
        adapters: Mapping[str, ProviderAdapter] | None = None,
        spec: ResourceSpec | None = None,
        start_settle_s: float = 3.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._provider = (provider or config.default_provider()).strip().lower()
        self._adapters: dict[str, ProviderAdapter] = dict(adapters or {})
        self._spec = spec or ResourceSpec.from_env()
        self._start_settle_s = start_settle_s
        self._sleep = sleep
        self._clock = clock

        # Serialises get-or-create per project within this process.
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_guard = threading.Lock()

    def adapter(self, tag: str | None = None) -> ProviderAdapter:
        key = (tag or self._provider).strip().lower()
        adapter = self._adapters.get(key)
        if adapter is None:
            adapter = factory.get_provider(key)
            self._adapters[key] = adapter
        return adapter

    def _project_lock(self, project_id: str) -> asyncio.Lock:
        with self._locks_guard:
            lock = self._locks.get(project_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[project_id] = lock
            return lock

    async def _project(self, project_id: str) -> Project:
        project = await asyncio.to_thread(self._store.get_project, project_id)
        if project is None:
            raise KeyError(f"unknown project {project_id}")
        return project

    def _readiness(self, adapter: ProviderAdapter) -> ReadinessMonitor:
        return ReadinessMonitor(adapter, sleep=self._sleep, clock=self._clock)

    # -- attach -------------------------------------------------------------

    async def _probe(self, adapter: ProviderAdapter, handle: SandboxHandle) -> None:
        await adapter.list_files(handle, self._spec.workdir)

    async def _start_and_reprobe(
        self, adapter: ProviderAdapter, handle: SandboxHandle
    ) -> SandboxHandle | None:
        try:
            started = await adapter.start(handle)
            if self._start_settle_s > 0:
                await self._sleep(self._start_settle_s)
            await self._probe(adapter, started)
        except SandboxError as e:
            logger.warning("Start-and-retry failed for sandbox %s: %s", handle.sandbox_id, e)
            return None
        logger.info("Sandbox %s started and reachable again", handle.sandbox_id)
        return started

    async def _attach_recorded(
        self, project_id: str, handle: SandboxHandle
    ) -> SandboxHandle | None:
        """Return a usable handle, or None when the project must be re-provisioned."""
        adapter = self.adapter(handle.provider)
        try:
            live = await adapter.attach(handle.sandbox_id)
            if live.status == "stopped":
                raise SandboxUnreachableError(
                    "Sandbox is not running", sandbox_id=handle.sandbox_id, operation="attach"
                )
            await self._probe(adapter, live)
        except SandboxError as e:
            state = state_after_failure(e)
            if state is None:
                raise
            if state == "stale":
                logger.warning(
                    "Sandbox %s for project %s no longer exists; clearing handle",
                    handle.sandbox_id,
                    project_id,
                )
                await asyncio.to_thread(self._store.clear_sandbox, project_id)
                return None
            if state == "missing":
                logger.warning(
                    "Sandbox %s for project %s has no workspace (%s); replacing it",
                    handle.sandbox_id,
                    project_id,
                    e,
                )
                await self._discard(project_id, handle)
                return None
            logger.info(
                "Sandbox %s for project %s unreachable (%s); starting it",
                handle.sandbox_id,
                project_id,
                e,
            )
            live = await self._start_and_reprobe(adapter, handle)
            if live is None:
                await self._discard(project_id, handle)
                return None

        refreshed = handle.with_url(live.public_url or handle.public_url).with_status("running")
        if refreshed.public_url != handle.public_url:
            await asyncio.to_thread(self._store.set_sandbox, project_id, refreshed)
        return refreshed

    async def _discard(self, project_id: str, handle: SandboxHandle) -> None:
        """Forget a recorded sandbox that cannot be reused and terminate it."""
        await asyncio.to_thread(self._store.clear_sandbox, project_id)
        await self._delete_if_unreferenced(project_id, handle)

    # -- public API ---------------------------------------------------------

    async def get_or_create_sandbox(
        self,
        project_id: str,
        *,
        template_name: str | None = None,
        fragment_id: str | None = None,
        recovery_snapshot_id: str | None = None,
        user_facing: bool = False,
    ) -> SandboxHandle:
        try:
            async with self._project_lock(project_id):
                project = await self._project(project_id)
                recorded = project.sandbox_handle()
                if recorded is not None:
                    handle = await self._attach_recorded(project_id, recorded)
                    if handle is not None:
                        return handle
                return await self._provision_locked(
                    project_id,
                    template_name=template_name,
                    fragment_id=fragment_id,
                    recovery_snapshot_id=recovery_snapshot_id,
                )
        except SandboxConfigError:
            raise
        except SandboxError as e:
            if not user_facing:
                raise
            logger.error("Sandbox unavailable for project %s: %s", project_id, e)
            raise SandboxUnavailableError(
                sandbox_id=e.sandbox_id, operation="get_or_create_sandbox"
            ) from e

    async def provision(
        self,
        project_id: str,
        *,
        template_name: str | None = None,
        fragment_id: str | None = None,
        recovery_snapshot_id: str | None = None,
    ) -> SandboxHandle:
        """Always create a fresh sandbox, replacing whatever handle is recorded."""
        async with self._project_lock(project_id):
            return await self._provision_locked(
                project_id,
                template_name=template_name,
                fragment_id=fragment_id,
                recovery_snapshot_id=recovery_snapshot_id,
            )

    # -- provisioning -------------------------------------------------------

    async def _target_fragment(
        self, project: Project, fragment_id: str | None
    ) -> Fragment | None:
        fid = fragment_id or project.active_fragment_id
        if fid:
            fragment = await asyncio.to_thread(self._store.get_fragment, fid)
            if fragment is not None:
                return fragment
            logger.warning("Fragment %s not found for project %s", fid, project.project_id)
        return await asyncio.to_thread(self._store.latest_fragment, project.project_id)

    async def _provision_locked(
        self,
        project_id: str,
        *,
        template_name: str | None,
        fragment_id: str | None,
        recovery_snapshot_id: str | None,
    ) -> SandboxHandle:
        project = await self._project(project_id)
        replaced = project.sandbox_handle()
        adapter = self.adapter()
        fragment = await self._target_fragment(project, fragment_id)

        fragment_snapshot = None
        if fragment is not None and fragment.snapshot_image_id:
            if fragment.snapshot_provider in (None, adapter.provider):
                fragment_snapshot = fragment.snapshot_image_id

        selection = select_boot_image(
            ImageRequest(
                recovery_snapshot_id=recovery_snapshot_id,
                fragment_snapshot_id=fragment_snapshot,
                template_name=template_name or project.template_name,
            )
        )
        logger.info(
            "Provisioning sandbox for project %s from %s (%s)",
            project_id,
            selection.source,
            selection.reason,
        )

        handle = await adapter.create(selection.image, self._spec)
        restore_method: str | None = None
        try:
            if not selection.skip_restore and fragment is not None:
                restore_method = await self._populate(adapter, handle, project, fragment)
            if project.imported and not selection.skip_restore:
                await self._install_dependencies(adapter, handle)
            handle = await self._await_ready(adapter, handle, selection)
        except BaseException:
            await self._terminate_best_effort(adapter, handle)
            raise

        await asyncio.to_thread(self._store.set_sandbox, project_id, handle)
        if replaced is not None and replaced.sandbox_id != handle.sandbox_id:
            await self._delete_if_unreferenced(project_id, replaced)
        if fragment is not None and restore_method != "git":
            await asyncio.to_thread(
                self._store.set_active_fragment, project_id, fragment.fragment_id
            )
        logger.info(
            "Sandbox %s ready for project %s at %s",
            handle.sandbox_id,
            project_id,
            handle.public_url,
        )
        return handle

    async def _populate(
        self,
        adapter: ProviderAdapter,
        handle: SandboxHandle,
        project: Project,
        fragment: Fragment,
    ) -> Literal["git", "files"]:
        git_record = await asyncio.to_thread(
            self._store.find_git_fragment_by_title, project.project_id, fragment.title
        )
        decision = decide_restore_source(
            fragment, git_record=git_record, project_commit_hash=project.git_commit_hash
        )
        if decision.method == "git" and decision.commit_hash:
            git = GitRecoveryController(adapter, self._store, workdir=self._spec.workdir)
            try:
                if await git.has_repository(handle):
                    await git.switch_to_commit(handle, project.project_id, decision.commit_hash)
                    return "git"
                logger.info(
                    "No git repository in sandbox %s; restoring fragment files",
                    handle.sandbox_id,
                )
            except (GitCommandError, SandboxError, ValueError) as e:
                logger.warning(
                    "Git restore to %s failed for project %s, restoring files: %s",
                    decision.commit_hash,
                    project.project_id,
                    e,
                )

        restorer = FragmentRestorer(adapter, root=self._spec.workdir)
        result = await restorer.restore(handle, fragment.files)
        if result.failed:
            logger.warning(
                "Restored %s/%s files of fragment %s (failed: %s)",
                result.restored,
                result.total,
                fragment.fragment_id,
                ", ".join(result.failed_paths[:10]),
            )
        return "files"

    async def _install_dependencies(
        self, adapter: ProviderAdapter, handle: SandboxHandle
    ) -> None:
        try:
            res = await adapter.exec(
                handle,
                ["bun", "install"],
                timeout_s=config.install_timeout_s(),
                workdir=self._spec.workdir,
            )
        except SandboxError as e:
            logger.warning("Dependency install failed in sandbox %s: %s", handle.sandbox_id, e)
            return
        if not res.ok:
            logger.warning(
                "Dependency install exited %s in sandbox %s: %s",
                res.exit_code,
                handle.sandbox_id,
                res.output.strip()[-500:],
            )

    async def _await_ready(
        self,
        adapter: ProviderAdapter,
        handle: SandboxHandle,
        selection: ImageSelection,
    ) -> SandboxHandle:
        monitor = self._readiness(adapter)
        if selection.image.from_registry:
            # A bare base image runs no dev server on its own.
            package_json = f"{self._spec.workdir}/package.json"
            if await path_exists(adapter, handle, package_json):
                process_id = await adapter.start_process(
                    handle,
                    [
                        "sh",
                        "-c",
                        f"cd {self._spec.workdir} && bun run dev --host 0.0.0.0 "
                        f"--port {self._spec.preview_port}",
                    ],
                    name=DEV_SERVER_PROCESS,
                )
                await monitor.wait_for_dev_server(handle, process_id)
        else:
            await monitor.wait_for_marker(handle, f"{self._spec.workdir}/index.html")

        if not handle.public_url:
            await monitor.wait_for_tunnel(handle, self._spec.preview_port)
            tunnels = await adapter.tunnels(handle)
            handle = handle.with_url(tunnels.get(self._spec.preview_port))
        return handle

    async def _terminate_best_effort(
        self, adapter: ProviderAdapter, handle: SandboxHandle
    ) -> None:
        try:
            await adapter.terminate(handle)
        except SandboxError as e:
            logger.warning("Failed to terminate sandbox %s: %s", handle.sandbox_id, e)

    # -- recovery -----------------------------------------------------------

    async def health(self, project_id: str) -> HealthReport:
        project = await self._project(project_id)
        return await check_project_health(
            self.adapter(project.sandbox_provider), self._store, project_id
        )

    async def recover_project(
        self,
        project_id: str,
        *,
        fragment_id: str | None = None,
        template_name: str | None = None,
    ) -> RecoveryOutcome:
        async with self._project_lock(project_id):
            project = await self._project(project_id)
            report = await check_project_health(
                self.adapter(project.sandbox_provider), self._store, project_id
            )
            if not report.broken:
                if report.reason == "new-project-no-generation-yet":
                    logger.info("Skipping recovery for new project %s", project_id)
                return RecoveryOutcome(
                    recovered=False, handle=project.sandbox_handle(), reason=report.reason
                )

            old = project.sandbox_handle()
            if report.reason == "sandbox-unreachable" and old is not None:
                adapter = self.adapter(old.provider)
                started = await self._start_and_reprobe(adapter, old)
                if started is not None:
                    report = await check_project_health(adapter, self._store, project_id)
                    if not report.broken:
                        handle = old.with_url(started.public_url or old.public_url).with_status(
                            "running"
                        )
                        await asyncio.to_thread(self._store.set_sandbox, project_id, handle)
                        logger.info(
                            "Sandbox %s for project %s recovered by starting it",
                            old.sandbox_id,
                            project_id,
                        )
                        return RecoveryOutcome(
                            recovered=True, handle=handle, reason="sandbox-unreachable"
                        )

            plan = await asyncio.to_thread(
                plan_recovery,
                self._store,
                project,
                provider=self._provider,
                preferred_fragment_id=fragment_id,
                template_override=template_name,
            )
            logger.info(
                "Recovering project %s (reason=%s, fragment=%s, snapshot=%s, template=%s/%s)",
                project_id,
                report.reason,
                plan.fragment_id,
                plan.snapshot_image_id,
                plan.template_name,
                plan.template_source,
            )
            handle = await self._provision_locked(
                project_id,
                template_name=plan.template_name,
                fragment_id=plan.fragment_id,
                recovery_snapshot_id=plan.snapshot_image_id,
            )

            verification = await check_project_health(
                self.adapter(handle.provider), self._store, project_id
            )
            if verification.broken:
                logger.error(
                    "Recovery verification failed for project %s: %s %s",
                    project_id,
                    verification.reason,
                    ", ".join(verification.missing_files),
                )
                raise SandboxRecoveryError(
                    "Sandbox recovery failed verification. Critical files still missing.",
                    sandbox_id=handle.sandbox_id,
                    operation="recover_project",
                )
            return RecoveryOutcome(recovered=True, handle=handle, reason=report.reason)

    async def _delete_if_unreferenced(self, project_id: str, old: SandboxHandle) -> None:
        others = await asyncio.to_thread(
            self._store.count_projects_using_sandbox,
            old.sandbox_id,
            exclude_project_id=project_id,
        )
        if others:
            logger.info(
                "Keeping old sandbox %s: still used by %s other project(s)",
                old.sandbox_id,
                others,
            )
            return
        await self._terminate_best_effort(self.adapter(old.provider), old)

    # -- explicit operations ------------------------------------------------

    async def restore_fragment(self, project_id: str, fragment_id: str) -> SandboxHandle:
        """Load a fragment into the project's live sandbox (git or files)."""
        async with self._project_lock(project_id):
            project = await self._project(project_id)
            fragment = await asyncio.to_thread(self._store.get_fragment, fragment_id)
            if fragment is None:
                raise KeyError(f"unknown fragment {fragment_id}")
            recorded = project.sandbox_handle()
            handle: SandboxHandle | None = None
            if recorded is not None:
                handle = await self._attach_recorded(project_id, recorded)
            if handle is None:
                # A fresh sandbox is populated from this fragment while provisioning.
                return await self._provision_locked(
                    project_id,
                    template_name=None,
                    fragment_id=fragment_id,
                    recovery_snapshot_id=None,
                )
            method = await self._populate(self.adapter(handle.provider), handle, project, fragment)
            if method == "files":
                await asyncio.to_thread(
                    self._store.set_active_fragment, project_id, fragment_id
                )
        return handle

    async def start_sandbox(
        self, project_id: str, *, max_wait_s: float = 30.0, poll_interval_s: float = 2.0
    ) -> SandboxHandle:
        async with self._project_lock(project_id):
            project = await self._project(project_id)
            recorded = project.sandbox_handle()
            if recorded is None:
                raise SandboxNotFoundError(
                    f"project {project_id} has no sandbox", operation="start_sandbox"
                )
            adapter = self.adapter(recorded.provider)
            started = await adapter.start(recorded)

            async def _reachable() -> bool:
                await self._probe(adapter, started)
                return True

            ok = await wait_until(
                _reachable,
                max_wait_s=max_wait_s,
                poll_interval_s=poll_interval_s,
                clock=self._clock,
                sleep=self._sleep,
            )
            if not ok:
                logger.warning("Sandbox %s started but not yet reachable", recorded.sandbox_id)
            handle = recorded.with_url(started.public_url or recorded.public_url)
            await asyncio.to_thread(self._store.set_sandbox, project_id, handle)
            return handle

    async def terminate_sandbox(self, project_id: str) -> bool:
        async with self._project_lock(project_id):
            project = await self._project(project_id)
            recorded = project.sandbox_handle()
            if recorded is None:
                return False
            try:
                await self.adapter(recorded.provider).terminate(recorded)
            except SandboxNotFoundError:
                logger.info("Sandbox %s already gone", recorded.sandbox_id)
            await asyncio.to_thread(self._store.clear_sandbox, project_id)
            return True

    async def snapshot(
        self, project_id: str, fragment_id: str | None = None, *, keep: int | None = None
    ) -> str | None:
        if not config.snapshots_enabled():
            logger.debug("Snapshots disabled; skipping project %s", project_id)
            return None
        project = await self._project(project_id)
        recorded = project.sandbox_handle()
        fid = fragment_id or project.active_fragment_id
        if recorded is None or not fid:
            raise SandboxNotFoundError(
                f"project {project_id} has no sandbox or active fragment",
                operation="snapshot",
            )
        adapter = self.adapter(recorded.provider)
        if not adapter.supports_snapshots:
            logger.info(
                "Provider %s cannot snapshot; skipping project %s", adapter.provider, project_id
            )
            return None
        snapshots = SnapshotLifecycleManager(adapter, self._store)
        return await snapshots.create_snapshot(recorded, project_id, fid, keep=keep)

    async def commit(
        self, project_id: str, message: str, *, title: str | None = None
    ) -> GitFragmentRecord | None:
        handle = await self.get_or_create_sandbox(project_id)
        git = GitRecoveryController(
            self.adapter(handle.provider), self._store, workdir=self._spec.workdir
        )
        return await git.create_commit(handle, project_id, message, title=title)
