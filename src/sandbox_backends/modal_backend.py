from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable

import modal
import modal.exception

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
    SandboxError,
    SandboxNotFoundError,
    WorkspaceMissingError,
    classify_provider_error,
)

logger = logging.getLogger(__name__)

_LOG_DIR = "/tmp"
_LOG_TAIL_LINES = 200
# Slack on top of a command timeout before the client call itself is abandoned.
_EXEC_GRACE_S = 15.0


def _translate(exc: BaseException, *, sandbox_id: str | None, operation: str) -> SandboxError:
    if isinstance(exc, modal.exception.NotFoundError):
        return SandboxNotFoundError(str(exc), sandbox_id=sandbox_id, operation=operation)
    if isinstance(exc, modal.exception.TimeoutError):
        return ProviderTimeoutError(str(exc), sandbox_id=sandbox_id, operation=operation)
    return classify_provider_error(exc, sandbox_id=sandbox_id, operation=operation)


async def _bounded(
    func: Callable[..., Any],
    *args: Any,
    sandbox_id: str | None,
    operation: str,
    deadline_s: float | None = None,
    **kwargs: Any,
) -> Any:
    """Run a blocking SDK call in a thread with a deadline."""
    limit = deadline_s if deadline_s is not None else config.provider_call_timeout_s()
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=limit)
    except asyncio.TimeoutError as e:
        raise ProviderTimeoutError(
            f"no response within {limit:g}s", sandbox_id=sandbox_id, operation=operation
        ) from e
    except Exception as e:
        raise _translate(e, sandbox_id=sandbox_id, operation=operation) from e


def _env_prefix(env: dict[str, str] | None) -> list[str]:
    if not env:
        return []
    return ["env", *[f"{k}={v}" for k, v in env.items()]]


@dataclass
class _ModalFile:
    """Async wrapper over modal's blocking sandbox file object."""

    _fh: Any
    _sandbox_id: str
    _path: str

    async def read(self) -> bytes:
        data = await _bounded(
            self._fh.read, sandbox_id=self._sandbox_id, operation=f"read {self._path}"
        )
        if isinstance(data, str):
            return data.encode("utf-8")
        return bytes(data or b"")

    async def write(self, data: bytes) -> None:
        await _bounded(
            self._fh.write, data, sandbox_id=self._sandbox_id, operation=f"write {self._path}"
        )

    async def close(self) -> None:
        await _bounded(
            self._fh.close, sandbox_id=self._sandbox_id, operation=f"close {self._path}"
        )


class ModalProviderAdapter:
    """Provider adapter backed by Modal sandboxes.

    Modal sandboxes cannot be restarted once they exit: `attach` treats an
    exited sandbox as stale and `start` only re-validates a running one.
    """

    provider = "modal"
    supports_snapshots = True

    def __init__(self, *, app_name: str | None = None) -> None:
        self._app_name = app_name or config.modal_app_name()
        self._app: Any = None
        self._sandboxes: dict[str, Any] = {}

    async def _call(
        self,
        func: Callable[..., Any],
        *args: Any,
        sandbox_id: str | None,
        operation: str,
        deadline_s: float | None = None,
        **kwargs: Any,
    ) -> Any:
        return await _bounded(
            func,
            *args,
            sandbox_id=sandbox_id,
            operation=operation,
            deadline_s=deadline_s,
            **kwargs,
        )

    async def _get_app(self) -> Any:
        if self._app is None:
            self._app = await self._call(
                modal.App.lookup,
                self._app_name,
                create_if_missing=True,
                sandbox_id=None,
                operation="app_lookup",
            )
        return self._app

    async def _sandbox(self, sandbox_id: str) -> Any:
        sb = self._sandboxes.get(sandbox_id)
        if sb is not None:
            return sb
        sb = await self._call(
            modal.Sandbox.from_id, sandbox_id, sandbox_id=sandbox_id, operation="from_id"
        )
        self._sandboxes[sandbox_id] = sb
        return sb

    def _resolve_image(self, image: BootImage) -> Any:
        if image.from_registry:
            return modal.Image.from_registry(image.image_id)
        return modal.Image.from_id(image.image_id)

    async def _preview_url(self, sb: Any, sandbox_id: str, port: int) -> str | None:
        tunnels = await self._call(
            sb.tunnels, sandbox_id=sandbox_id, operation="tunnels"
        )
        tunnel = (tunnels or {}).get(port)
        return getattr(tunnel, "url", None) if tunnel is not None else None

    async def create(self, image: BootImage, spec: ResourceSpec) -> SandboxHandle:
        app = await self._get_app()
        modal_image = await self._call(
            self._resolve_image, image, sandbox_id=None, operation="resolve_image"
        )
        sb = await self._call(
            modal.Sandbox.create,
            app=app,
            image=modal_image,
            timeout=spec.timeout_s,
            idle_timeout=spec.idle_timeout_s,
            workdir=spec.workdir,
            cpu=spec.cpu,
            memory=spec.memory_mib,
            encrypted_ports=list(spec.exposed_ports),
            sandbox_id=None,
            operation="create",
            deadline_s=config.create_timeout_s(),
        )
        sandbox_id = str(sb.object_id)
        self._sandboxes[sandbox_id] = sb
        logger.info("Created Modal sandbox %s from %s", sandbox_id, image.image_id)

        settle = config.tunnel_settle_s()
        if settle > 0:
            await asyncio.sleep(settle)
        url = await self._preview_url(sb, sandbox_id, spec.preview_port)
        created = utcnow()
        return SandboxHandle(
            provider="modal",
            sandbox_id=sandbox_id,
            public_url=url,
            created_at=created,
            expires_at=created + timedelta(seconds=spec.timeout_s),
        )

    async def attach(self, sandbox_id: str) -> SandboxHandle:
        self._sandboxes.pop(sandbox_id, None)
        sb = await self._sandbox(sandbox_id)
        rc = await self._call(sb.poll, sandbox_id=sandbox_id, operation="poll")
        if rc is not None:
            self._sandboxes.pop(sandbox_id, None)
            raise SandboxNotFoundError(
                f"sandbox has exited with code {rc}",
                sandbox_id=sandbox_id,
                operation="attach",
            )
        url = await self._preview_url(sb, sandbox_id, config.preview_port())
        return SandboxHandle(provider="modal", sandbox_id=sandbox_id, public_url=url)

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
        cmd = [*_env_prefix(env), *argv]

        def _run() -> ExecResult:
            kwargs: dict[str, Any] = {"timeout": max(1, int(timeout_s))}
            if workdir:
                kwargs["workdir"] = workdir
            proc = sb.exec(*cmd, **kwargs)
            proc.wait()
            return ExecResult(
                stdout=proc.stdout.read() or "",
                stderr=proc.stderr.read() or "",
                exit_code=int(proc.returncode if proc.returncode is not None else -1),
            )

        return await self._call(
            _run,
            sandbox_id=handle.sandbox_id,
            operation=f"exec {argv[0] if argv else ''}",
            deadline_s=timeout_s + _EXEC_GRACE_S,
        )

    async def open_file(
        self, handle: SandboxHandle, path: str, mode: FileMode
    ) -> FileHandle:
        sb = await self._sandbox(handle.sandbox_id)
        fh = await self._call(
            sb.open, path, mode, sandbox_id=handle.sandbox_id, operation=f"open {path}"
        )
        return _ModalFile(fh, handle.sandbox_id, path)

    async def list_files(self, handle: SandboxHandle, directory: str) -> list[FileEntry]:
        # `ls -p` marks directories with a trailing slash.
        res = await self.exec(
            handle, ["ls", "-1Ap", directory], timeout_s=config.exec_timeout_s()
        )
        if not res.ok:
            # The sandbox answered, so a failed `ls` never means it is gone.
            detail = res.output.strip() or f"ls {directory} failed"
            if "no such file or directory" in detail.lower():
                raise WorkspaceMissingError(
                    detail, sandbox_id=handle.sandbox_id, operation="list_files"
                )
            raise ProviderRejectedError(
                detail, sandbox_id=handle.sandbox_id, operation="list_files"
            )
        base = directory.rstrip("/")
        out: list[FileEntry] = []
        for line in res.stdout.splitlines():
            name = line.strip()
            if not name:
                continue
            is_dir = name.endswith("/")
            name = name.rstrip("/")
            out.append(FileEntry(name=name, path=f"{base}/{name}", is_dir=is_dir))
        return out

    async def tunnels(self, handle: SandboxHandle) -> dict[int, str]:
        sb = await self._sandbox(handle.sandbox_id)
        raw = await self._call(sb.tunnels, sandbox_id=handle.sandbox_id, operation="tunnels")
        return {int(port): t.url for port, t in (raw or {}).items() if getattr(t, "url", None)}

    async def snapshot_filesystem(self, handle: SandboxHandle) -> str:
        sb = await self._sandbox(handle.sandbox_id)
        image = await self._call(
            sb.snapshot_filesystem,
            sandbox_id=handle.sandbox_id,
            operation="snapshot_filesystem",
            deadline_s=config.create_timeout_s(),
        )
        image_id = str(image.object_id)
        logger.info("Snapshotted Modal sandbox %s as %s", handle.sandbox_id, image_id)
        return image_id

    async def delete_image(self, image_id: str) -> None:
        delete = getattr(modal.Image, "delete", None)
        if delete is None:
            raise ProviderRejectedError(
                "installed modal client cannot delete images", operation="delete_image"
            )
        await self._call(delete, image_id, sandbox_id=None, operation="delete_image")

    async def start(self, handle: SandboxHandle) -> SandboxHandle:
        return await self.attach(handle.sandbox_id)

    async def start_process(
        self, handle: SandboxHandle, argv: list[str], *, name: str
    ) -> str:
        log_path = f"{_LOG_DIR}/{name}.log"
        script = f"nohup {shlex.join(argv)} > {shlex.quote(log_path)} 2>&1 &"
        res = await self.exec(
            handle, ["sh", "-c", script], timeout_s=config.exec_timeout_s()
        )
        if not res.ok:
            raise ProviderRejectedError(
                f"failed to start {name}: {res.output.strip()}",
                sandbox_id=handle.sandbox_id,
                operation="start_process",
            )
        return name

    async def process_logs(self, handle: SandboxHandle, process_id: str) -> str:
        res = await self.exec(
            handle,
            ["tail", "-n", str(_LOG_TAIL_LINES), f"{_LOG_DIR}/{process_id}.log"],
            timeout_s=config.exec_timeout_s(),
        )
        return res.stdout if res.ok else ""

    async def terminate(self, handle: SandboxHandle) -> None:
        sb = await self._sandbox(handle.sandbox_id)
        await self._call(sb.terminate, sandbox_id=handle.sandbox_id, operation="terminate")
        self._sandboxes.pop(handle.sandbox_id, None)
        logger.info("Terminated Modal sandbox %s", handle.sandbox_id)
