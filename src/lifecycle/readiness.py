from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Union

from src.sandbox_backends import config
from src.sandbox_backends.base import ProviderAdapter, SandboxHandle
from src.sandbox_files.sandbox_fs import path_exists

logger = logging.getLogger(__name__)

Predicate = Callable[[], Union[bool, Awaitable[bool]]]

READY_INDICATORS: tuple[str, ...] = (
    "ready in",
    "Local:",
    "VITE v",
    "ready",
    "localhost:5173",
)


async def wait_until(
    predicate: Predicate,
    *,
    max_wait_s: float,
    poll_interval_s: float,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> bool:
    """Poll `predicate` until it is truthy or `max_wait_s` elapses.

    Returns False on timeout instead of raising. A predicate that raises counts
    as "not ready yet". The predicate runs at least once.
    """
    deadline = clock() + max(0.0, max_wait_s)
    while True:
        try:
            res = predicate()
            if inspect.isawaitable(res):
                res = await res
            if res:
                return True
        except Exception as e:
            logger.debug("Readiness predicate raised: %s", e)
        remaining = deadline - clock()
        if remaining <= 0:
            return False
        await sleep(min(poll_interval_s, remaining))


def marker_file_exists(
    adapter: ProviderAdapter, handle: SandboxHandle, path: str
) -> Predicate:
    async def _check() -> bool:
        return await path_exists(adapter, handle, path)

    return _check


def tunnel_available(adapter: ProviderAdapter, handle: SandboxHandle, port: int) -> Predicate:
    async def _check() -> bool:
        tunnels = await adapter.tunnels(handle)
        return bool(tunnels.get(port))

    return _check


def logs_contain_ready_banner(
    adapter: ProviderAdapter,
    handle: SandboxHandle,
    process_id: str,
    indicators: Sequence[str] = READY_INDICATORS,
) -> Predicate:
    lowered = tuple(i.lower() for i in indicators)

    async def _check() -> bool:
        logs = (await adapter.process_logs(handle, process_id)).lower()
        return any(i in logs for i in lowered)

    return _check


class ReadinessMonitor:
    """Provider-appropriate readiness waits. A timeout is a warning, never an error."""

    def __init__(
        self,
        adapter: ProviderAdapter,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._adapter = adapter
        self._sleep = sleep
        self._clock = clock

    async def _wait(
        self,
        what: str,
        handle: SandboxHandle,
        predicate: Predicate,
        max_wait_s: float,
        poll_interval_s: float,
    ) -> bool:
        ok = await wait_until(
            predicate,
            max_wait_s=max_wait_s,
            poll_interval_s=poll_interval_s,
            clock=self._clock,
            sleep=self._sleep,
        )
        if not ok:
            logger.warning(
                "Sandbox %s: %s not ready after %ss, continuing",
                handle.sandbox_id,
                what,
                max_wait_s,
            )
        return ok

    async def wait_for_marker(
        self,
        handle: SandboxHandle,
        path: str | None = None,
        *,
        max_wait_s: float = 30.0,
        poll_interval_s: float = 1.0,
    ) -> bool:
        marker = path or f"{config.sandbox_workdir()}/index.html"
        return await self._wait(
            f"marker {marker}",
            handle,
            marker_file_exists(self._adapter, handle, marker),
            max_wait_s,
            poll_interval_s,
        )

    async def wait_for_tunnel(
        self,
        handle: SandboxHandle,
        port: int | None = None,
        *,
        max_wait_s: float = 30.0,
        poll_interval_s: float = 2.0,
    ) -> bool:
        p = port or config.preview_port()
        return await self._wait(
            f"tunnel on port {p}",
            handle,
            tunnel_available(self._adapter, handle, p),
            max_wait_s,
            poll_interval_s,
        )

    async def wait_for_dev_server(
        self,
        handle: SandboxHandle,
        process_id: str,
        *,
        max_wait_s: float = 30.0,
        poll_interval_s: float = 2.0,
    ) -> bool:
        return await self._wait(
            "dev server",
            handle,
            logs_contain_ready_banner(self._adapter, handle, process_id),
            max_wait_s,
            poll_interval_s,
        )
