from __future__ import annotations

import asyncio
import logging
import shlex
from enum import Enum
from functools import partial
from typing import Any, Callable

from daytona_sdk import (
    CreateSandboxFromImageParams,
    CreateSandboxFromSnapshotParams,
    Daytona,
    DaytonaConfig,
    Resources,
    SessionExecuteRequest,
)

from src.sandbox_backends import config
from src.sandbox_backends.base import (
    BootImage,
    ExecResult,
    FileEntry,
    FileHandle,
    FileMode,
    ResourceSpec,
    SandboxHandle,
    utcnow,
)
from src.sandbox_backends.errors import (
    ProviderRejectedError,
    ProviderTimeoutError,
    SandboxConfigError,
    SandboxError,
    SandboxNotFoundError,
    WorkspaceMissingError,
    classify_provider_error,
)

logger = logging.getLogger(__name__)

_TRANSIENT_MARKERS = (
    "remote end closed connection",
    "remotedisconnected",
    "connection aborted",
    "connection reset",
    "broken pipe",
    "service unavailable",
    "502",
    "503",
    "504",
)
# Slack on top of a command timeout before the client call itself is abandoned.
_EXEC_GRACE_S = 15.0


class _RetryPolicy(Enum):
    # SAFE calls are idempotent reads/lookups; UNSAFE calls are never replayed.
    SAFE = "safe"
    UNSAFE = "unsafe"


def _is_transient(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


class _DaytonaFile:
    """Daytona exposes whole-file upload/download, so writes are buffered until close."""

    def __init__(
        self, adapter: DaytonaProviderAdapter, handle: SandboxHandle, path: str, mode: FileMode
    ) -> None:
        self._adapter = adapter
        self._handle = handle
        self._path = path
        self._mode = mode
        self._buf = bytearray()
        self._closed = False

    async def read(self) -> bytes:
        if self._mode != "rb":
            raise ProviderRejectedError(
                f"{self._path} not opened for reading", sandbox_id=self._handle.sandbox_id
            )
        sb = await self._adapter._sandbox(self._handle.sandbox_id)
        data = await self._adapter._call(
            sb.fs.download_file,
            self._path,
            sandbox_id=self._handle.sandbox_id,
            operation=f"download {self._path}",
            policy=_RetryPolicy.SAFE,
        )
        if isinstance(data, str):
            return data.encode("utf-8")
        return bytes(data or b"")

    async def write(self, data: bytes) -> None:
        if self._mode != "wb":
            raise ProviderRejectedError(
                f"{self._path} not opened for writing", sandbox_id=self._handle.sandbox_id
            )
        self._buf.extend(data)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._mode != "wb":
            return
        sb = await self._adapter._sandbox(self._handle.sandbox_id)
        await self._adapter._call(
            sb.fs.upload_file,
            bytes(self._buf),
            self._path,
            sandbox_id=self._handle.sandbox_id,
            operation=f"upload {self._path}",
            policy=_RetryPolicy.SAFE,
        )


class DaytonaProviderAdapter:
    """Provider adapter backed by Daytona sandboxes.

    Daytona sandboxes auto-stop when idle and can be started again, so
    `start` is meaningful here. Background processes run as async session
    commands so their logs can be polled.
    """

    provider = "daytona"
    supports_snapshots = False

    def __init__(
        self,
        *,
        client: Any = None,
        retries: int = 5,
        initial_delay_s: float = 0.25,
    ) -> None:
        if client is None:
            api_key = config.daytona_api_key()
            if not api_key:
                raise SandboxConfigError("DAYTONA_API_KEY is not set")
            client = Daytona(
                DaytonaConfig(
                    api_key=api_key,
                    api_url=config.daytona_api_url(),
                    target=config.daytona_target(),
                )
            )
        self._client = client
        self._retries = max(1, retries)
        self._initial_delay_s = initial_delay_s
        self._sandboxes: dict[str, Any] = {}
        self._sessions: set[tuple[str, str]] = set()

    async def _call(
        self,
        func: Callable[..., Any],
        *args: Any,
        sandbox_id: str | None,
        operation: str,
        policy: _RetryPolicy = _RetryPolicy.UNSAFE,
        deadline_s: float | None = None,
        **kwargs: Any,
    ) -> Any:
        limit = deadline_s if deadline_s is not None else config.provider_call_timeout_s()
        delay_s = self._initial_delay_s
        attempts = self._retries if policy == _RetryPolicy.SAFE else 1
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(partial(func, *args, **kwargs)), timeout=limit
                )
            except asyncio.TimeoutError as e:
                raise ProviderTimeoutError(
                    f"no response within {limit:g}s", sandbox_id=sandbox_id, operation=operation
                ) from e
            except Exception as e:
                if attempt < attempts and _is_transient(e):
                    logger.debug(
                        "Retrying Daytona %s after transient error (attempt %s): %s",
                        operation,
                        attempt,
                        e,
                    )
                    await asyncio.sleep(delay_s)
                    delay_s *= 2
                    continue
                raise classify_provider_error(
                    e, sandbox_id=sandbox_id, operation=operation
                ) from e
        raise SandboxError("retries exhausted", sandbox_id=sandbox_id, operation=operation)

    async def _sandbox(self, sandbox_id: str) -> Any:
        sb = self._sandboxes.get(sandbox_id)
        if sb is None:
            sb = await self._call(
                self._client.get,
                sandbox_id,
                sandbox_id=sandbox_id,
                operation="get",
                policy=_RetryPolicy.SAFE,
            )
            if sb is None:
                raise SandboxNotFoundError(
                    "sandbox not found", sandbox_id=sandbox_id, operation="get"
                )
            self._sandboxes[sandbox_id] = sb
        return sb

    async def _preview_url(self, sb: Any, sandbox_id: str, port: int) -> str | None:
        link = await self._call(
            sb.get_preview_link,
            port,
            sandbox_id=sandbox_id,
            operation="get_preview_link",
            policy=_RetryPolicy.SAFE,
        )
        return getattr(link, "url", None) or (link if isinstance(link, str) else None)

    async def create(self, image: BootImage, spec: ResourceSpec) -> SandboxHandle:
        auto_stop_min = max(1, spec.idle_timeout_s // 60)
        if image.from_registry:
            params: Any = CreateSandboxFromImageParams(
                image=image.image_id,
                resources=Resources(
                    cpu=max(1, int(spec.cpu)),
                    memory=max(1, spec.memory_mib // 1024),
                ),
                public=True,
                auto_stop_interval=auto_stop_min,
            )
        else:
            params = CreateSandboxFromSnapshotParams(
                snapshot=image.image_id,
                public=True,
                auto_stop_interval=auto_stop_min,
            )
        sb = await self._call(
            self._client.create,
            params,
            timeout=max(60, config.exec_timeout_s()),
            sandbox_id=None,
            operation="create",
            deadline_s=config.create_timeout_s(),
        )
        sandbox_id = str(sb.id)
        self._sandboxes[sandbox_id] = sb
        logger.info("Created Daytona sandbox %s from %s", sandbox_id, image.image_id)

        await self._call(
            sb.process.exec,
            f"mkdir -p {shlex.quote(spec.workdir)}",
            sandbox_id=sandbox_id,
            operation="mkdir workdir",
        )
        url = await self._preview_url(sb, sandbox_id, spec.preview_port)
        return SandboxHandle(
            provider="daytona",
            sandbox_id=sandbox_id,
            public_url=url,
            created_at=utcnow(),
        )

    async def attach(self, sandbox_id: str) -> SandboxHandle:
        self._sandboxes.pop(sandbox_id, None)
        sb = await self._sandbox(sandbox_id)
        state = getattr(sb, "state", None)
        state_value = str(getattr(state, "value", state) or "").lower()
        status = "running"
        if state_value in ("stopped", "archived", "stopping"):
            status = "stopped"
        elif state_value in ("destroyed", "destroying", "error"):
            self._sandboxes.pop(sandbox_id, None)
            raise SandboxNotFoundError(
                f"sandbox is {state_value}", sandbox_id=sandbox_id, operation="attach"
            )
        url = None
        if status == "running":
            url = await self._preview_url(sb, sandbox_id, config.preview_port())
        return SandboxHandle(
            provider="daytona", sandbox_id=sandbox_id, public_url=url, status=status
        )

    async def exec(
        self,
        handle: SandboxHandle,
        argv: list[str],
        *,
        timeout_s: float,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
    ) -> ExecResult:
        sb = await self._sandbox(handle.sandbox_id)
        resp = await self._call(
            sb.process.exec,
            shlex.join(argv),
            cwd=workdir,
            env=env,
            timeout=max(1, int(timeout_s)),
            sandbox_id=handle.sandbox_id,
            operation=f"exec {argv[0] if argv else ''}",
            deadline_s=timeout_s + _EXEC_GRACE_S,
        )
        # Daytona merges stderr into `result`.
        return ExecResult(
            stdout=str(getattr(resp, "result", "") or ""),
            stderr="",
            exit_code=int(getattr(resp, "exit_code", 1)),
        )

    async def open_file(
        self, handle: SandboxHandle, path: str, mode: FileMode
    ) -> FileHandle:
        return _DaytonaFile(self, handle, path, mode)

    async def list_files(self, handle: SandboxHandle, directory: str) -> list[FileEntry]:
        sb = await self._sandbox(handle.sandbox_id)
        try:
            infos = await self._call(
                sb.fs.list_files,
                directory,
                sandbox_id=handle.sandbox_id,
                operation="list_files",
                policy=_RetryPolicy.SAFE,
            )
        except SandboxNotFoundError as e:
            # The sandbox itself resolved above; only the directory is missing.
            raise WorkspaceMissingError(
                str(e), sandbox_id=handle.sandbox_id, operation="list_files"
            ) from e
        base = directory.rstrip("/")
        return [
            FileEntry(
                name=str(i.name),
                path=f"{base}/{i.name}",
                is_dir=bool(getattr(i, "is_dir", False)),
                size=int(getattr(i, "size", 0) or 0),
                mod_time=str(getattr(i, "mod_time", "") or "") or None,
            )
            for i in (infos or [])
        ]

    async def tunnels(self, handle: SandboxHandle) -> dict[int, str]:
        sb = await self._sandbox(handle.sandbox_id)
        out: dict[int, str] = {}
        for port in config.exposed_ports():
            url = await self._preview_url(sb, handle.sandbox_id, port)
            if url:
                out[port] = url
        return out

    async def snapshot_filesystem(self, handle: SandboxHandle) -> str:
        raise ProviderRejectedError(
            "filesystem snapshots are not supported for Daytona sandboxes",
            sandbox_id=handle.sandbox_id,
            operation="snapshot_filesystem",
        )

    async def delete_image(self, image_id: str) -> None:
        raise ProviderRejectedError(
            f"cannot delete image {image_id}: Daytona snapshots are managed out of band",
            operation="delete_image",
        )

    async def start(self, handle: SandboxHandle) -> SandboxHandle:
        sb = await self._sandbox(handle.sandbox_id)
        await self._call(
            sb.start, timeout=60, sandbox_id=handle.sandbox_id, operation="start"
        )
        logger.info("Started Daytona sandbox %s", handle.sandbox_id)
        url = await self._preview_url(sb, handle.sandbox_id, config.preview_port())
        return handle.with_url(url or handle.public_url).with_status("running")

    async def start_process(
        self, handle: SandboxHandle, argv: list[str], *, name: str
    ) -> str:
        sb = await self._sandbox(handle.sandbox_id)
        key = (handle.sandbox_id, name)
        if key not in self._sessions:
            await self._call(
                sb.process.create_session,
                name,
                sandbox_id=handle.sandbox_id,
                operation="create_session",
            )
            self._sessions.add(key)
        resp = await self._call(
            sb.process.execute_session_command,
            name,
            SessionExecuteRequest(command=shlex.join(argv), run_async=True),
            sandbox_id=handle.sandbox_id,
            operation="execute_session_command",
        )
        return f"{name}:{resp.cmd_id}"

    async def process_logs(self, handle: SandboxHandle, process_id: str) -> str:
        session, _, cmd_id = process_id.partition(":")
        sb = await self._sandbox(handle.sandbox_id)
        logs = await self._call(
            sb.process.get_session_command_logs,
            session,
            cmd_id,
            sandbox_id=handle.sandbox_id,
            operation="get_session_command_logs",
            policy=_RetryPolicy.SAFE,
        )
        # Newer SDKs return a response object, older ones a plain string.
        return str(getattr(logs, "output", logs) or "")

    async def terminate(self, handle: SandboxHandle) -> None:
        sb = await self._sandbox(handle.sandbox_id)
        await self._call(
            self._client.delete, sb, sandbox_id=handle.sandbox_id, operation="delete"
        )
        self._sandboxes.pop(handle.sandbox_id, None)
        self._sessions = {k for k in self._sessions if k[0] != handle.sandbox_id}
        logger.info("Deleted Daytona sandbox %s", handle.sandbox_id)
