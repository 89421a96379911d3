from __future__ import annotations

import asyncio
import importlib.util
import time
from types import SimpleNamespace

import pytest

if importlib.util.find_spec("modal") is None:  # pragma: no cover
    pytest.skip("modal not installed", allow_module_level=True)

import modal
import modal.exception

from src.sandbox_backends.base import SandboxHandle
from src.sandbox_backends.errors import (
    ProviderRejectedError,
    ProviderTimeoutError,
    SandboxNotFoundError,
    WorkspaceMissingError,
)
from src.sandbox_backends.modal_backend import ModalProviderAdapter

HANDLE = SandboxHandle("modal", "sb-1", None)


class _Stream:
    def __init__(self, text: str) -> None:
        self._text = text

    def read(self) -> str:
        return self._text


class FakeModalSandbox:
    def __init__(self, *, poll_rc: int | None = None) -> None:
        self.poll_rc = poll_rc
        self.exec_calls: list[tuple[tuple, dict]] = []
        self.outputs: dict[str, tuple[str, str, int]] = {}
        self.exec_error: Exception | None = None
        self.terminated = False

    def exec(self, *cmd, **kw):
        if self.exec_error is not None:
            raise self.exec_error
        self.exec_calls.append((cmd, kw))
        out, err, rc = self.outputs.get(cmd[0], ("", "", 0))
        return SimpleNamespace(
            wait=lambda: None, stdout=_Stream(out), stderr=_Stream(err), returncode=rc
        )

    def poll(self):
        return self.poll_rc

    def tunnels(self):
        return {5173: SimpleNamespace(url="https://sb-1-5173.modal.test"), 8000: SimpleNamespace(url=None)}

    def terminate(self):
        self.terminated = True


def _adapter(sb: FakeModalSandbox) -> ModalProviderAdapter:
    adapter = ModalProviderAdapter(app_name="test-app")
    adapter._sandboxes["sb-1"] = sb
    return adapter


def test_exec_prefixes_env_and_passes_workdir() -> None:
    sb = FakeModalSandbox()
    sb.outputs["env"] = ("hi\n", "warn", 0)

    res = asyncio.run(
        _adapter(sb).exec(HANDLE, ["echo", "hi"], timeout_s=0.5, workdir="/workspace", env={"A": "1"})
    )

    [(cmd, kw)] = sb.exec_calls
    assert cmd == ("env", "A=1", "echo", "hi")
    assert kw == {"timeout": 1, "workdir": "/workspace"}
    assert res.stdout == "hi\n" and res.stderr == "warn" and res.ok


def test_exec_translates_not_found() -> None:
    sb = FakeModalSandbox()
    sb.exec_error = modal.exception.NotFoundError("Sandbox sb-1 not found")
    with pytest.raises(SandboxNotFoundError):
        asyncio.run(_adapter(sb).exec(HANDLE, ["true"], timeout_s=5))


def test_list_files_parses_ls_output() -> None:
    sb = FakeModalSandbox()
    sb.outputs["ls"] = ("src/\npackage.json\n\n", "", 0)

    entries = asyncio.run(_adapter(sb).list_files(HANDLE, "/workspace/"))

    assert [(e.name, e.path, e.is_dir) for e in entries] == [
        ("src", "/workspace/src", True),
        ("package.json", "/workspace/package.json", False),
    ]


def test_list_files_missing_directory_is_workspace_missing() -> None:
    sb = FakeModalSandbox()
    sb.outputs["ls"] = ("", "ls: /nope: No such file or directory", 2)
    with pytest.raises(WorkspaceMissingError):
        asyncio.run(_adapter(sb).list_files(HANDLE, "/nope"))


def test_list_files_shell_not_found_does_not_mean_sandbox_gone() -> None:
    sb = FakeModalSandbox()
    sb.outputs["ls"] = ("", "sh: ls: not found", 127)
    with pytest.raises(ProviderRejectedError) as exc:
        asyncio.run(_adapter(sb).list_files(HANDLE, "/workspace"))
    assert not isinstance(exc.value, SandboxNotFoundError)
    assert not isinstance(exc.value, WorkspaceMissingError)


def test_start_process_backgrounds_with_log_file() -> None:
    sb = FakeModalSandbox()
    adapter = _adapter(sb)

    pid = asyncio.run(adapter.start_process(HANDLE, ["bun", "run", "dev"], name="dev-server"))

    assert pid == "dev-server"
    [(cmd, _)] = sb.exec_calls
    assert cmd[:2] == ("sh", "-c")
    assert cmd[2] == "nohup bun run dev > /tmp/dev-server.log 2>&1 &"


def test_tunnels_skip_ports_without_url() -> None:
    tunnels = asyncio.run(_adapter(FakeModalSandbox()).tunnels(HANDLE))
    assert tunnels == {5173: "https://sb-1-5173.modal.test"}


def test_attach_exited_sandbox_is_not_found(monkeypatch: pytest.MonkeyPatch) -> None:
    sb = FakeModalSandbox(poll_rc=137)
    monkeypatch.setattr(modal.Sandbox, "from_id", lambda sandbox_id: sb)
    adapter = ModalProviderAdapter(app_name="test-app")

    with pytest.raises(SandboxNotFoundError, match="exited with code 137"):
        asyncio.run(adapter.attach("sb-1"))
    assert "sb-1" not in adapter._sandboxes


def test_attach_running_sandbox(monkeypatch: pytest.MonkeyPatch) -> None:
    sb = FakeModalSandbox()
    monkeypatch.setattr(modal.Sandbox, "from_id", lambda sandbox_id: sb)

    handle = asyncio.run(ModalProviderAdapter(app_name="test-app").attach("sb-1"))

    assert handle.public_url == "https://sb-1-5173.modal.test"
    assert handle.status == "running"


def test_terminate_drops_cached_sandbox() -> None:
    sb = FakeModalSandbox()
    adapter = _adapter(sb)
    asyncio.run(adapter.terminate(HANDLE))
    assert sb.terminated
    assert "sb-1" not in adapter._sandboxes


def test_hung_sdk_call_times_out(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SANDBOX_PROVIDER_CALL_TIMEOUT_S", "0.05")

    class HangingSandbox(FakeModalSandbox):
        def tunnels(self):
            time.sleep(0.5)
            return {}

    with pytest.raises(ProviderTimeoutError) as exc:
        asyncio.run(_adapter(HangingSandbox()).tunnels(HANDLE))
    assert exc.value.operation == "tunnels"
    assert exc.value.sandbox_id == "sb-1"
