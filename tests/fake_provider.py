from __future__ import annotations

import itertools
import shlex
from dataclasses import dataclass, field

from src.sandbox_backends.base import (
    BootImage,
    ExecResult,
    FileEntry,
    ResourceSpec,
    SandboxHandle,
)
from src.sandbox_backends.errors import (
    ProviderRejectedError,
    SandboxNotFoundError,
    SandboxUnreachableError,
    WorkspaceMissingError,
)
from src.sandbox_files.policy import LISTING_EXCLUDE_DIRS

OK = ExecResult(stdout="", stderr="", exit_code=0)


@dataclass
class _FakeFile:
    adapter: FakeAdapter
    sandbox_id: str
    path: str
    mode: str
    buf: bytearray = field(default_factory=bytearray)

    async def read(self) -> bytes:
        fs = self.adapter.fs[self.sandbox_id]
        if self.path not in fs:
            raise ProviderRejectedError(f"no such file: {self.path}")
        return fs[self.path]

    async def write(self, data: bytes) -> None:
        if self.path in self.adapter.fail_writes:
            raise ProviderRejectedError(f"write refused: {self.path}")
        self.buf.extend(data)

    async def close(self) -> None:
        if self.mode == "wb":
            self.adapter.fs[self.sandbox_id][self.path] = bytes(self.buf)


class FakeAdapter:
    """In-memory provider: each sandbox is a dict of absolute path -> bytes."""

    def __init__(self, provider: str = "modal", *, supports_snapshots: bool = True) -> None:
        self.provider = provider
        self.supports_snapshots = supports_snapshots
        self.fs: dict[str, dict[str, bytes]] = {}
        self.images: dict[str, dict[str, bytes]] = {}
        self.gone: set[str] = set()
        self.stopped: set[str] = set()
        self.unreachable: set[str] = set()
        # Sandboxes that stay unreachable even after start().
        self.broken: set[str] = set()
        # Sandboxes that answer but whose workdir is gone.
        self.no_workspace: set[str] = set()
        self.fail_writes: set[str] = set()
        self.fail_deletes: set[str] = set()
        self.exec_rules: list[tuple[str, ExecResult]] = []

        self.created: list[tuple[str, BootImage]] = []
        self.started: list[str] = []
        self.terminated: list[str] = []
        self.deleted_images: list[str] = []
        self.exec_calls: list[tuple[str, list[str]]] = []
        self.mkdir_calls: list[str] = []
        self.processes: dict[str, list[str]] = {}
        self.process_output = "VITE v5.0.0  ready in 312 ms\n  Local: http://localhost:5173/"
        self._ids = itertools.count(1)

    def _check_reachable(self, sandbox_id: str) -> None:
        if sandbox_id in self.gone:
            raise SandboxNotFoundError("Sandbox not found", sandbox_id=sandbox_id)
        if sandbox_id in self.unreachable or sandbox_id in self.stopped:
            raise SandboxUnreachableError("Sandbox is not running", sandbox_id=sandbox_id)

    def url_for(self, sandbox_id: str) -> str:
        return f"https://{sandbox_id}-5173.example.test"

    def seed_sandbox(self, sandbox_id: str, files: dict[str, bytes] | None = None) -> SandboxHandle:
        self.fs[sandbox_id] = dict(files or {})
        return SandboxHandle(self.provider, sandbox_id, self.url_for(sandbox_id))  # type: ignore[arg-type]

    async def create(self, image: BootImage, spec: ResourceSpec) -> SandboxHandle:
        # Separate namespace so created ids never collide with seeded ones.
        sid = f"sb-new-{next(self._ids)}"
        self.created.append((sid, image))
        base = {} if image.from_registry else self.images.get(image.image_id)
        if base is None:
            raise ProviderRejectedError(f"unknown image {image.image_id}")
        self.fs[sid] = dict(base)
        return SandboxHandle(self.provider, sid, self.url_for(sid))  # type: ignore[arg-type]

    async def attach(self, sandbox_id: str) -> SandboxHandle:
        if sandbox_id in self.gone or sandbox_id not in self.fs:
            raise SandboxNotFoundError("Sandbox not found", sandbox_id=sandbox_id)
        status = "stopped" if sandbox_id in self.stopped else "running"
        return SandboxHandle(
            self.provider, sandbox_id, self.url_for(sandbox_id), status=status  # type: ignore[arg-type]
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
        sid = handle.sandbox_id
        self.exec_calls.append((sid, list(argv)))
        self._check_reachable(sid)
        joined = " ".join(argv)
        for needle, result in self.exec_rules:
            if needle in joined:
                return result

        fs = self.fs[sid]
        if argv[:2] == ["test", "-f"]:
            return ExecResult("", "", 0 if argv[2] in fs else 1)
        if argv[:2] == ["sh", "-c"]:
            cmd = argv[2]
            if cmd.startswith("mkdir -p"):
                self.mkdir_calls.append(cmd)
                return OK
            if "find ." in cmd:
                root = shlex.split(cmd)[1].rstrip("/")
                lines = []
                for path in sorted(fs):
                    if not path.startswith(root + "/"):
                        continue
                    rel = path[len(root) + 1 :]
                    if any(part in LISTING_EXCLUDE_DIRS for part in rel.split("/")[:-1]):
                        continue
                    lines.append(f"./{rel}")
                return ExecResult("\n".join(lines), "", 0)
        return OK

    async def open_file(self, handle: SandboxHandle, path: str, mode: str) -> _FakeFile:
        self._check_reachable(handle.sandbox_id)
        return _FakeFile(self, handle.sandbox_id, path, mode)

    async def list_files(self, handle: SandboxHandle, directory: str) -> list[FileEntry]:
        self._check_reachable(handle.sandbox_id)
        if handle.sandbox_id in self.no_workspace:
            raise WorkspaceMissingError(
                f"ls: {directory}: No such file or directory", sandbox_id=handle.sandbox_id
            )
        prefix = directory.rstrip("/") + "/"
        names = sorted(
            {p[len(prefix) :].split("/", 1)[0] for p in self.fs[handle.sandbox_id] if p.startswith(prefix)}
        )
        return [FileEntry(name=n, path=prefix + n, is_dir=False) for n in names]

    async def tunnels(self, handle: SandboxHandle) -> dict[int, str]:
        self._check_reachable(handle.sandbox_id)
        return {5173: self.url_for(handle.sandbox_id)}

    async def snapshot_filesystem(self, handle: SandboxHandle) -> str:
        image_id = f"im-snap-{next(self._ids)}"
        self.images[image_id] = dict(self.fs[handle.sandbox_id])
        return image_id

    async def delete_image(self, image_id: str) -> None:
        if image_id in self.fail_deletes:
            raise ProviderRejectedError(f"cannot delete {image_id}")
        self.deleted_images.append(image_id)
        self.images.pop(image_id, None)

    async def start(self, handle: SandboxHandle) -> SandboxHandle:
        sid = handle.sandbox_id
        if sid in self.gone:
            raise SandboxNotFoundError("Sandbox not found", sandbox_id=sid)
        self.started.append(sid)
        self.stopped.discard(sid)
        if sid not in self.broken:
            self.unreachable.discard(sid)
        return handle.with_url(self.url_for(sid)).with_status("running")

    async def start_process(self, handle: SandboxHandle, argv: list[str], *, name: str) -> str:
        self.processes[name] = list(argv)
        return name

    async def process_logs(self, handle: SandboxHandle, process_id: str) -> str:
        return self.process_output

    async def terminate(self, handle: SandboxHandle) -> None:
        self.terminated.append(handle.sandbox_id)
        self.gone.add(handle.sandbox_id)
