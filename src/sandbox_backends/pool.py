"""Pooled sandboxes for short-lived helper work.

This module provides SandboxPool, which keeps a bounded set of warm sandboxes
booted from one image (e.g. a type-checker image) and hands them out one
caller at a time.

Unlike project sandboxes, pool members carry no project state: a member that
cannot be revived is terminated and replaced instead of being recovered.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from src.sandbox_backends import config
from src.sandbox_backends.base import BootImage, ProviderAdapter, ResourceSpec, SandboxHandle
from src.sandbox_backends.errors import SandboxError, is_recoverable_error

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolStatus:
    total: int
    idle: int
    in_use: int


@dataclass
class _Member:
    handle: SandboxHandle
    last_used: float
    in_use: bool = False


class SandboxPool:
    """Bounded pool of warm sandboxes with health-checked checkout.

    Concurrency:
        Safe for concurrent use from tasks on one event loop. `acquire()` waits
        when `max_size` members are all checked out.

    Usage:
        pool = SandboxPool(adapter, BootImage("im-checker"), max_size=2)

        async with pool.lease() as handle:
            await adapter.exec(handle, ["tsc", "--noEmit"], timeout_s=60)

        # Periodically
        await pool.evict_idle()

        # Shutdown
        await pool.close()
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        image: BootImage,
        *,
        max_size: int | None = None,
        idle_ttl_s: float | None = None,
        spec: ResourceSpec | None = None,
        probe_dir: str | None = None,
        start_settle_s: float = 3.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._adapter = adapter
        self._image = image
        self.max_size = max_size if max_size is not None else config.pool_max_size()
        if self.max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.idle_ttl_s = idle_ttl_s if idle_ttl_s is not None else config.pool_idle_ttl_s()
        self._spec = spec or ResourceSpec.from_env()
        self._probe_dir = probe_dir or self._spec.workdir
        self._start_settle_s = start_settle_s
        self._sleep = sleep
        self._clock = clock

        self._cond = asyncio.Condition()
        self._members: dict[str, _Member] = {}
        # Slots reserved by creates still in flight.
        self._pending = 0
        self._closed = False

    async def _probe(self, handle: SandboxHandle) -> None:
        await self._adapter.list_files(handle, self._probe_dir)

    async def _revive(self, handle: SandboxHandle) -> SandboxHandle | None:
        """Health-check an idle member; None means it was discarded."""
        try:
            await self._probe(handle)
            return handle
        except SandboxError as e:
            if not is_recoverable_error(e):
                logger.warning("Pool sandbox %s is unusable (%s); recreating", handle.sandbox_id, e)
                await self._terminate_quietly(handle)
                return None
            logger.info("Pool sandbox %s unreachable (%s); starting it", handle.sandbox_id, e)

        try:
            started = await self._adapter.start(handle)
            if self._start_settle_s > 0:
                await self._sleep(self._start_settle_s)
            await self._probe(started)
            return started
        except SandboxError as e:
            logger.warning(
                "Pool sandbox %s did not come back after start (%s); recreating",
                handle.sandbox_id,
                e,
            )
            await self._terminate_quietly(handle)
            return None

    async def _terminate_quietly(self, handle: SandboxHandle) -> None:
        try:
            await self._adapter.terminate(handle)
        except SandboxError as e:
            logger.warning("Failed to terminate pool sandbox %s: %s", handle.sandbox_id, e)

    async def acquire(self) -> SandboxHandle:
        while True:
            async with self._cond:
                if self._closed:
                    raise RuntimeError("sandbox pool is closed")
                idle = [m for m in self._members.values() if not m.in_use]
                if idle:
                    member = max(idle, key=lambda m: m.last_used)
                    member.in_use = True
                    candidate: SandboxHandle | None = member.handle
                elif len(self._members) + self._pending < self.max_size:
                    self._pending += 1
                    candidate = None
                else:
                    await self._cond.wait()
                    continue

            if candidate is None:
                return await self._create_member()

            revived = await self._revive(candidate)
            async with self._cond:
                if revived is None:
                    self._members.pop(candidate.sandbox_id, None)
                    self._cond.notify()
                    continue
                member = self._members.pop(candidate.sandbox_id)
                member.handle = revived
                member.last_used = self._clock()
                self._members[revived.sandbox_id] = member
            logger.debug("Reusing pool sandbox %s", revived.sandbox_id)
            return revived

    async def _create_member(self) -> SandboxHandle:
        try:
            handle = await self._adapter.create(self._image, self._spec)
        except BaseException:
            async with self._cond:
                self._pending -= 1
                self._cond.notify()
            raise
        async with self._cond:
            self._pending -= 1
            self._members[handle.sandbox_id] = _Member(
                handle=handle, last_used=self._clock(), in_use=True
            )
        logger.info(
            "Created pool sandbox %s (%s/%s)",
            handle.sandbox_id,
            len(self._members),
            self.max_size,
        )
        return handle

    async def release(self, handle: SandboxHandle, *, recycle: bool = False) -> None:
        """Return a member. `recycle=True` terminates it instead of keeping it warm."""
        async with self._cond:
            member = self._members.get(handle.sandbox_id)
            if member is None:
                logger.warning("Released unknown pool sandbox %s", handle.sandbox_id)
                return
            if recycle or self._closed:
                self._members.pop(handle.sandbox_id, None)
            else:
                member.in_use = False
                member.last_used = self._clock()
            self._cond.notify()
        if recycle or self._closed:
            await self._terminate_quietly(handle)

    @contextlib.asynccontextmanager
    async def lease(self) -> AsyncIterator[SandboxHandle]:
        handle = await self.acquire()
        try:
            yield handle
        except SandboxError as e:
            await self.release(handle, recycle=not is_recoverable_error(e))
            raise
        except BaseException:
            await self.release(handle)
            raise
        else:
            await self.release(handle)

    async def evict_idle(self, now: float | None = None) -> int:
        """Terminate idle members unused for longer than `idle_ttl_s`."""
        if self.idle_ttl_s <= 0:
            return 0
        cutoff = (self._clock() if now is None else now) - self.idle_ttl_s
        async with self._cond:
            stale = [
                m.handle
                for m in self._members.values()
                if not m.in_use and m.last_used < cutoff
            ]
            for h in stale:
                self._members.pop(h.sandbox_id, None)
            if stale:
                self._cond.notify_all()

        for h in stale:
            logger.info("Evicting idle pool sandbox %s", h.sandbox_id)
            await self._terminate_quietly(h)
        return len(stale)

    def status(self) -> PoolStatus:
        in_use = sum(1 for m in self._members.values() if m.in_use)
        return PoolStatus(
            total=len(self._members), idle=len(self._members) - in_use, in_use=in_use
        )

    async def close(self) -> None:
        """Terminate idle members; in-use members are terminated on release."""
        async with self._cond:
            self._closed = True
            idle = [m.handle for m in self._members.values() if not m.in_use]
            for h in idle:
                self._members.pop(h.sandbox_id, None)
            self._cond.notify_all()

        logger.info("Closing sandbox pool, terminating %d idle sandbox(es)", len(idle))
        for h in idle:
            await self._terminate_quietly(h)

    async def __aenter__(self) -> SandboxPool:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()
