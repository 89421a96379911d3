from __future__ import annotations

import pytest
from fake_provider import FakeAdapter

from src.sandbox_backends import config, factory
from src.sandbox_backends.base import ResourceSpec
from src.sandbox_backends.errors import SandboxConfigError


@pytest.fixture(autouse=True)
def _clean_registry():
    factory.reset_providers()
    yield
    factory.reset_providers()


def test_registered_adapter_is_returned_for_tag() -> None:
    adapter = FakeAdapter("daytona")
    factory.register_provider("Daytona", adapter)
    assert factory.get_provider("daytona") is adapter
    assert factory.get_provider(" DAYTONA ") is adapter


def test_default_tag_comes_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    adapter = FakeAdapter("daytona")
    factory.register_provider("daytona", adapter)
    monkeypatch.setenv("SANDBOX_PROVIDER", "daytona")
    assert factory.get_provider() is adapter
    assert factory.get_provider(None) is adapter


def test_unknown_provider_is_config_error() -> None:
    with pytest.raises(SandboxConfigError, match="Unknown sandbox provider"):
        factory.get_provider("e2b")


def test_missing_daytona_key_is_config_error(monkeypatch: pytest.MonkeyPatch) -> None:
    pytest.importorskip("daytona_sdk")
    monkeypatch.delenv("DAYTONA_API_KEY", raising=False)
    with pytest.raises(SandboxConfigError, match="DAYTONA_API_KEY"):
        factory.get_provider("daytona")


def test_resource_spec_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SANDBOX_CPU", "2")
    monkeypatch.setenv("SANDBOX_MEMORY_MIB", "4096")
    monkeypatch.setenv("SANDBOX_WORKDIR", "/srv/app/")
    monkeypatch.setenv("SANDBOX_PREVIEW_PORT", "3000")
    monkeypatch.delenv("SANDBOX_EXPOSED_PORTS", raising=False)

    spec = ResourceSpec.from_env()

    assert spec.cpu == 2.0
    assert spec.memory_mib == 4096
    assert spec.workdir == "/srv/app"
    assert spec.preview_port == 3000
    assert spec.exposed_ports == (8000, 3000)


def test_config_falls_back_on_garbage(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SANDBOX_EXEC_TIMEOUT_S", "soon")
    monkeypatch.setenv("SANDBOX_RESTORE_BATCH_SIZE", "0")
    monkeypatch.setenv("SANDBOX_EXPOSED_PORTS", "80, x, 5173")
    monkeypatch.setenv("SANDBOX_SNAPSHOTS_ENABLED", "maybe")

    assert config.exec_timeout_s() == 60
    assert config.restore_batch_size() == 1
    assert config.exposed_ports() == (80, 5173)
    assert config.snapshots_enabled() is True

    monkeypatch.setenv("SANDBOX_SNAPSHOTS_ENABLED", "off")
    assert config.snapshots_enabled() is False
