from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from src.sandbox_backends import config
from src.sandbox_backends.errors import SandboxConfigError

if TYPE_CHECKING:  # pragma: no cover
    from .base import ProviderAdapter


_adapters: dict[str, ProviderAdapter] = {}
_adapters_lock = threading.Lock()


def _build(tag: str) -> ProviderAdapter:
    # Import lazily: each SDK is heavy and only one may be installed.
    if tag == "modal":
        from .modal_backend import ModalProviderAdapter

        return ModalProviderAdapter()
    if tag == "daytona":
        from .daytona_backend import DaytonaProviderAdapter

        return DaytonaProviderAdapter()
    raise SandboxConfigError(f"Unknown sandbox provider: {tag!r}")


def get_provider(tag: str | None = None) -> ProviderAdapter:
    """Return the adapter for a stored provider tag (cached per process)."""
    key = (tag or config.default_provider()).strip().lower()
    with _adapters_lock:
        adapter = _adapters.get(key)
        if adapter is None:
            adapter = _build(key)
            _adapters[key] = adapter
        return adapter


def register_provider(tag: str, adapter: ProviderAdapter) -> None:
    with _adapters_lock:
        _adapters[tag.strip().lower()] = adapter


def reset_providers() -> None:
    with _adapters_lock:
        _adapters.clear()
