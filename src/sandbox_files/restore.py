from __future__ import annotations

import asyncio
import logging
import posixpath
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from src.sandbox_backends import config
from src.sandbox_backends.base import ProviderAdapter, SandboxHandle
from src.sandbox_files.content import parse_content
from src.sandbox_files.policy import require_restore_allowed, workspace_path
from src.sandbox_files.sandbox_fs import mkdirs, write_bytes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RestoreResult:
    restored: int
    failed: int = 0
    failed_paths: tuple[str, ...] = field(default_factory=tuple)
    dirs_created: int = 0
    duration_s: float = 0.0

    @property
    def total(self) -> int:
        return self.restored + self.failed


def unique_parent_dirs(paths: Iterable[str], root: str) -> list[str]:
    """Absolute parent directories for `paths`, excluding `root` itself."""
    root_norm = root.rstrip("/") or "/"
    out: set[str] = set()
    for p in paths:
        parent = posixpath.dirname(workspace_path(root_norm, p))
        if parent and parent != root_norm:
            out.add(parent)
    return sorted(out)


class FragmentRestorer:
    """Writes a fragment file map into a live sandbox.

    Restoration is not transactional: a failed write is counted and the rest
    of the batch continues. Only the up-front `mkdir -p` is fatal.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        *,
        batch_size: int | None = None,
        root: str | None = None,
    ) -> None:
        self._adapter = adapter
        self._batch_size = max(1, batch_size or config.restore_batch_size())
        self._root = root or config.sandbox_workdir()

    @property
    def root(self) -> str:
        return self._root

    async def _write_one(self, handle: SandboxHandle, rel: str, raw: str) -> None:
        data = parse_content(raw).to_bytes()
        await write_bytes(self._adapter, handle, workspace_path(self._root, rel), data)

    async def restore(
        self, handle: SandboxHandle, files: Mapping[str, str]
    ) -> RestoreResult:
        started = time.monotonic()
        failed: list[str] = []

        # Validate up front so bad paths never reach the provider.
        valid: list[tuple[str, str]] = []
        for path, raw in files.items():
            try:
                valid.append((require_restore_allowed(path), raw))
            except (ValueError, PermissionError) as e:
                logger.warning("Skipping fragment file %r: %s", path, e)
                failed.append(path)

        if not valid:
            return RestoreResult(
                restored=0, failed=len(failed), failed_paths=tuple(failed)
            )

        dirs = unique_parent_dirs((p for p, _ in valid), self._root)
        created = await mkdirs(self._adapter, handle, dirs)

        restored = 0
        total_batches = (len(valid) + self._batch_size - 1) // self._batch_size
        for idx in range(0, len(valid), self._batch_size):
            batch = valid[idx : idx + self._batch_size]
            results = await asyncio.gather(
                *(self._write_one(handle, rel, raw) for rel, raw in batch),
                return_exceptions=True,
            )
            for (rel, _), res in zip(batch, results):
                if isinstance(res, BaseException):
                    if not isinstance(res, Exception):
                        raise res
                    logger.warning(
                        "Failed to restore %s in sandbox %s: %s",
                        rel,
                        handle.sandbox_id,
                        res,
                    )
                    failed.append(rel)
                else:
                    restored += 1
            logger.info(
                "Restore batch %s/%s done for sandbox %s (%s/%s files)",
                idx // self._batch_size + 1,
                total_batches,
                handle.sandbox_id,
                restored,
                len(valid),
            )

        duration = time.monotonic() - started
        logger.info(
            "Restored %s files (%s failed) into sandbox %s in %.2fs",
            restored,
            len(failed),
            handle.sandbox_id,
            duration,
        )
        return RestoreResult(
            restored=restored,
            failed=len(failed),
            failed_paths=tuple(failed),
            dirs_created=created,
            duration_s=duration,
        )
