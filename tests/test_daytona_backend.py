from __future__ import annotations

import asyncio
import importlib.util
import time
from types import SimpleNamespace

import pytest

if importlib.util.find_spec("daytona_sdk") is None:  # pragma: no cover
    pytest.skip("daytona_sdk not installed", allow_module_level=True)

from src.sandbox_backends.base import SandboxHandle
from src.sandbox_backends.daytona_backend import DaytonaProviderAdapter
from src.sandbox_backends.errors import (
    ProviderRejectedError,
    ProviderTimeoutError,
    SandboxNotFoundError,
    SandboxUnreachableError,
    WorkspaceMissingError,
)

HANDLE = SandboxHandle("daytona", "sb-1", None)


class FakeFs:
    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.list_failures: list[Exception] = []

    def list_files(self, directory: str):
        if self.list_failures:
            raise self.list_failures.pop(0)
        return [SimpleNamespace(name="src", is_dir=True, size=0, mod_time="")]

    def download_file(self, path: str) -> bytes:
        return self.files[path]

    def upload_file(self, data: bytes, path: str) -> None:
        self.files[path] = data


class FakeProcess:
    def __init__(self) -> None:
        self.exec_calls: list[tuple[str, dict]] = []
        self.exec_error: Exception | None = None
        self.sessions: list[str] = []
        self.commands: list[tuple[str, str]] = []

    def exec(self, command: str, **kw):
        self.exec_calls.append((command, kw))
        if self.exec_error is not None:
            raise self.exec_error
        return SimpleNamespace(result="out", exit_code=0)

    def create_session(self, name: str) -> None:
        self.sessions.append(name)

    def execute_session_command(self, name: str, req):
        self.commands.append((name, req.command))
        return SimpleNamespace(cmd_id=f"c{len(self.commands)}")

    def get_session_command_logs(self, session: str, cmd_id: str):
        return SimpleNamespace(output=f"logs of {session}/{cmd_id}")


class FakeSandbox:
    def __init__(self, state: str = "started") -> None:
        self.id = "sb-1"
        self.state = SimpleNamespace(value=state)
        self.fs = FakeFs()
        self.process = FakeProcess()
        self.started = 0

    def get_preview_link(self, port: int):
        return SimpleNamespace(url=f"https://{port}-sb-1.daytona.test")

    def start(self, timeout: int = 60) -> None:
        self.started += 1
        self.state = SimpleNamespace(value="started")


class FakeDaytona:
    def __init__(self, sandbox: FakeSandbox | None) -> None:
        self.sandbox = sandbox
        self.deleted: list[FakeSandbox] = []

    def get(self, sandbox_id: str):
        if self.sandbox is None:
            raise RuntimeError(f"Sandbox {sandbox_id} not found")
        return self.sandbox

    def delete(self, sb) -> None:
        self.deleted.append(sb)


def _adapter(sb: FakeSandbox | None) -> tuple[DaytonaProviderAdapter, FakeDaytona]:
    client = FakeDaytona(sb)
    return DaytonaProviderAdapter(client=client, initial_delay_s=0), client


def test_attach_reports_stopped_without_url() -> None:
    adapter, _ = _adapter(FakeSandbox(state="stopped"))
    handle = asyncio.run(adapter.attach("sb-1"))
    assert handle.status == "stopped"
    assert handle.public_url is None


def test_attach_destroyed_is_not_found() -> None:
    adapter, _ = _adapter(FakeSandbox(state="destroyed"))
    with pytest.raises(SandboxNotFoundError):
        asyncio.run(adapter.attach("sb-1"))


def test_attach_unknown_sandbox() -> None:
    adapter, _ = _adapter(None)
    with pytest.raises(SandboxNotFoundError):
        asyncio.run(adapter.attach("sb-9"))


def test_safe_reads_retry_transient_errors() -> None:
    sb = FakeSandbox()
    sb.fs.list_failures = [RuntimeError("503 Service Unavailable"), RuntimeError("Connection reset by peer")]
    adapter, _ = _adapter(sb)

    entries = asyncio.run(adapter.list_files(HANDLE, "/workspace"))

    assert [(e.path, e.is_dir) for e in entries] == [("/workspace/src", True)]


def test_exec_is_not_replayed() -> None:
    sb = FakeSandbox()
    sb.process.exec_error = RuntimeError("503 Service Unavailable")
    adapter, _ = _adapter(sb)

    with pytest.raises(ProviderRejectedError):
        asyncio.run(adapter.exec(HANDLE, ["bun", "install"], timeout_s=30))
    assert len(sb.process.exec_calls) == 1


def test_exec_classifies_unreachable() -> None:
    sb = FakeSandbox()
    sb.process.exec_error = RuntimeError("Sandbox is not running")
    adapter, _ = _adapter(sb)
    with pytest.raises(SandboxUnreachableError):
        asyncio.run(adapter.exec(HANDLE, ["ls"], timeout_s=5))


def test_exec_quotes_argv_and_passes_cwd() -> None:
    sb = FakeSandbox()
    adapter, _ = _adapter(sb)

    res = asyncio.run(
        adapter.exec(HANDLE, ["sh", "-c", "echo a b"], timeout_s=10, workdir="/workspace")
    )

    [(command, kw)] = sb.process.exec_calls
    assert command == "sh -c 'echo a b'"
    assert kw["cwd"] == "/workspace"
    assert res.stdout == "out" and res.ok


def test_file_writes_upload_on_close() -> None:
    sb = FakeSandbox()
    adapter, _ = _adapter(sb)

    async def run():
        fh = await adapter.open_file(HANDLE, "/workspace/a.txt", "wb")
        await fh.write(b"he")
        await fh.write(b"llo")
        assert sb.fs.files == {}
        await fh.close()
        reader = await adapter.open_file(HANDLE, "/workspace/a.txt", "rb")
        return await reader.read()

    assert asyncio.run(run()) == b"hello"


def test_start_process_reuses_session() -> None:
    sb = FakeSandbox()
    adapter, _ = _adapter(sb)

    async def run():
        first = await adapter.start_process(HANDLE, ["bun", "run", "dev"], name="dev-server")
        second = await adapter.start_process(HANDLE, ["bun", "run", "dev"], name="dev-server")
        return first, second, await adapter.process_logs(HANDLE, second)

    first, second, logs = asyncio.run(run())
    assert (first, second) == ("dev-server:c1", "dev-server:c2")
    assert sb.process.sessions == ["dev-server"]
    assert logs == "logs of dev-server/c2"


def test_start_refreshes_url() -> None:
    sb = FakeSandbox(state="stopped")
    adapter, _ = _adapter(sb)
    handle = asyncio.run(adapter.start(HANDLE.with_status("stopped")))
    assert sb.started == 1
    assert handle.status == "running"
    assert handle.public_url == "https://5173-sb-1.daytona.test"


def test_snapshots_unsupported() -> None:
    adapter, _ = _adapter(FakeSandbox())
    assert adapter.supports_snapshots is False
    with pytest.raises(ProviderRejectedError):
        asyncio.run(adapter.snapshot_filesystem(HANDLE))


def test_terminate_deletes_sandbox() -> None:
    sb = FakeSandbox()
    adapter, client = _adapter(sb)
    asyncio.run(adapter.terminate(HANDLE))
    assert client.deleted == [sb]


def test_missing_directory_is_not_a_missing_sandbox() -> None:
    sb = FakeSandbox()
    sb.fs.list_failures = [RuntimeError("directory /workspace not found")]
    adapter, _ = _adapter(sb)

    with pytest.raises(WorkspaceMissingError):
        asyncio.run(adapter.list_files(HANDLE, "/workspace"))


def test_hung_lookup_times_out(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SANDBOX_PROVIDER_CALL_TIMEOUT_S", "0.05")

    class HangingDaytona(FakeDaytona):
        def get(self, sandbox_id: str):
            time.sleep(0.5)
            return self.sandbox

    adapter = DaytonaProviderAdapter(client=HangingDaytona(FakeSandbox()), initial_delay_s=0)

    with pytest.raises(ProviderTimeoutError) as exc:
        asyncio.run(adapter.attach("sb-1"))
    assert exc.value.operation == "get"
