import sys
from pathlib import Path

import pytest

# Ensure the repo root is on sys.path so tests can import the local `src/` package.
ROOT = str(Path(__file__).resolve().parents[1])
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)


@pytest.fixture(autouse=True)
def _pin_sandbox_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # Tests choose templates/providers explicitly; never inherit the shell's.
    monkeypatch.setenv("SANDBOX_RUNTIME_MODE", "production")
    monkeypatch.setenv("SANDBOX_TUNNEL_SETTLE_S", "0")
    monkeypatch.delenv("SANDBOX_TEMPLATE_IMAGE_MAP_JSON", raising=False)
    monkeypatch.delenv("SANDBOX_PROVIDER", raising=False)
    monkeypatch.delenv("SANDBOX_WORKDIR", raising=False)
