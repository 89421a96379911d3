from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Literal, Protocol

from src.sandbox_backends import config

Provider = Literal["modal", "daytona"]
SandboxStatus = Literal["running", "stopped", "terminated"]
FileMode = Literal["rb", "wb"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SandboxHandle:
    provider: Provider
    sandbox_id: str
    public_url: str | None
    created_at: datetime = field(default_factory=utcnow)
    expires_at: datetime | None = None
    status: SandboxStatus = "running"

    def with_url(self, url: str | None) -> SandboxHandle:
        return replace(self, public_url=url)

    def with_status(self, status: SandboxStatus) -> SandboxHandle:
        return replace(self, status=status)


@dataclass(frozen=True)
class ResourceSpec:
    cpu: float = 1.0
    memory_mib: int = 2048
    timeout_s: int = 3600
    idle_timeout_s: int = 900
    workdir: str = "/workspace"
    exposed_ports: tuple[int, ...] = (8000, 5173)
    preview_port: int = 5173

    @classmethod
    def from_env(cls) -> ResourceSpec:
        return cls(
            cpu=config.sandbox_cpu(),
            memory_mib=config.sandbox_memory_mib(),
            timeout_s=config.sandbox_timeout_s(),
            idle_timeout_s=config.sandbox_idle_timeout_s(),
            workdir=config.sandbox_workdir(),
            exposed_ports=config.exposed_ports(),
            preview_port=config.preview_port(),
        )


@dataclass(frozen=True)
class BootImage:
    """What a new sandbox boots from.

    `from_registry=True` means `image_id` is a container registry reference
    (e.g. "oven/bun:1"); otherwise it is a provider image/snapshot id.
    """

    image_id: str
    from_registry: bool = False


@dataclass(frozen=True)
class ExecResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        if self.stderr:
            return f"{self.stdout}\n{self.stderr}" if self.stdout else self.stderr
        return self.stdout


@dataclass(frozen=True)
class FileEntry:
    name: str
    path: str
    is_dir: bool
    size: int = 0
    mod_time: str | None = None


class FileHandle(Protocol):
    async def read(self) -> bytes: ...

    async def write(self, data: bytes) -> None: ...

    async def close(self) -> None: ...


class ProviderAdapter(Protocol):
    """Uniform capability surface over a compute provider.

    Every method is a network round-trip. Implementations translate SDK errors
    via `classify_provider_error`, so callers only ever see `SandboxError`
    subclasses:

      - SandboxNotFoundError: the handle is stale
      - ProviderTimeoutError: the call exceeded its timeout
      - SandboxUnreachableError: exists but not running / no address yet
      - ProviderRejectedError: anything else the provider refused

    A non-zero exit code from `exec` is a result, not an error.
    """

    provider: Provider
    supports_snapshots: bool

    async def create(self, image: BootImage, spec: ResourceSpec) -> SandboxHandle: ...

    async def attach(self, sandbox_id: str) -> SandboxHandle: ...

    async def exec(
        self,
        handle: SandboxHandle,
        argv: list[str],
        *,
        timeout_s: float,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
    ) -> ExecResult: ...

    async def open_file(
        self, handle: SandboxHandle, path: str, mode: FileMode
    ) -> FileHandle: ...

    async def list_files(
        self, handle: SandboxHandle, directory: str
    ) -> list[FileEntry]: ...

    async def tunnels(self, handle: SandboxHandle) -> dict[int, str]: ...

    async def snapshot_filesystem(self, handle: SandboxHandle) -> str: ...

    async def delete_image(self, image_id: str) -> None: ...

    async def start(self, handle: SandboxHandle) -> SandboxHandle: ...

    async def start_process(
        self, handle: SandboxHandle, argv: list[str], *, name: str
    ) -> str: ...

    async def process_logs(self, handle: SandboxHandle, process_id: str) -> str: ...

    async def terminate(self, handle: SandboxHandle) -> None: ...
