from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from src.projects.store import ProjectStore
from src.sandbox_backends import config
from src.sandbox_backends.base import ProviderAdapter, SandboxHandle, utcnow
from src.sandbox_backends.errors import ProviderRejectedError, SandboxError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CleanupResult:
    deleted: int
    kept: int


class SnapshotLifecycleManager:
    """Creates fragment-bound filesystem snapshots and bounds how many are kept."""

    def __init__(self, adapter: ProviderAdapter, store: ProjectStore) -> None:
        self._adapter = adapter
        self._store = store

    async def _delete_image_best_effort(self, image_id: str) -> bool:
        try:
            await self._adapter.delete_image(image_id)
        except SandboxError as e:
            logger.warning(
                "Failed to delete snapshot image %s (may already be gone): %s",
                image_id,
                e,
            )
            return False
        logger.info("Deleted snapshot image %s", image_id)
        return True

    async def create_snapshot(
        self,
        handle: SandboxHandle,
        project_id: str,
        fragment_id: str,
        *,
        keep: int | None = None,
    ) -> str:
        if not self._adapter.supports_snapshots:
            raise ProviderRejectedError(
                f"{self._adapter.provider} does not support filesystem snapshots",
                sandbox_id=handle.sandbox_id,
                operation="create_snapshot",
            )
        fragment = await asyncio.to_thread(self._store.get_fragment, fragment_id)
        if fragment is None:
            raise KeyError(f"unknown fragment {fragment_id}")

        image_id = await self._adapter.snapshot_filesystem(handle)

        # One live binding per fragment: the superseded image must not leak.
        previous = fragment.snapshot_image_id
        if previous and previous != image_id:
            await self._delete_image_best_effort(previous)

        await asyncio.to_thread(
            self._store.bind_snapshot,
            fragment_id,
            image_id=image_id,
            provider=self._adapter.provider,
            created_at=utcnow(),
        )
        logger.info(
            "Bound snapshot %s to fragment %s (project %s)",
            image_id,
            fragment_id,
            project_id,
        )

        await self.cleanup(project_id, config.snapshot_keep_count() if keep is None else keep)
        return image_id

    async def cleanup(self, project_id: str, keep_count: int) -> CleanupResult:
        if keep_count < 0:
            raise ValueError("keep_count must be >= 0")
        bindings = await asyncio.to_thread(
            self._store.list_snapshot_bindings,
            project_id,
            provider=self._adapter.provider,
        )
        if len(bindings) <= keep_count:
            return CleanupResult(deleted=0, kept=len(bindings))

        stale = bindings[keep_count:]
        logger.info(
            "Pruning %s old snapshots for project %s (keeping %s)",
            len(stale),
            project_id,
            keep_count,
        )
        deleted = 0
        for fragment in stale:
            if fragment.snapshot_image_id:
                await self._delete_image_best_effort(fragment.snapshot_image_id)
            # Cleared even when the provider delete failed.
            await asyncio.to_thread(self._store.clear_snapshot, fragment.fragment_id)
            deleted += 1
        return CleanupResult(deleted=deleted, kept=len(bindings) - deleted)

    async def delete_snapshot(self, image_id: str) -> int:
        await self._delete_image_best_effort(image_id)
        fragments = await asyncio.to_thread(self._store.fragments_with_image, image_id)
        for fragment in fragments:
            await asyncio.to_thread(self._store.clear_snapshot, fragment.fragment_id)
        return len(fragments)
