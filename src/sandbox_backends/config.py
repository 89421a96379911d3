from __future__ import annotations

import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    return default


def default_provider() -> str:
    return (os.environ.get("SANDBOX_PROVIDER") or "modal").strip().lower() or "modal"


def runtime_mode() -> str:
    return (os.environ.get("SANDBOX_RUNTIME_MODE") or "production").strip().lower()


def sandbox_workdir() -> str:
    return (os.environ.get("SANDBOX_WORKDIR") or "/workspace").strip().rstrip(
        "/"
    ) or "/workspace"


def base_image() -> str:
    return (os.environ.get("SANDBOX_BASE_IMAGE") or "oven/bun:1").strip() or "oven/bun:1"


def sandbox_cpu() -> float:
    return _env_float("SANDBOX_CPU", 1.0)


def sandbox_memory_mib() -> int:
    return _env_int("SANDBOX_MEMORY_MIB", 2048)


def sandbox_timeout_s() -> int:
    # Hard lifetime of a sandbox.
    return _env_int("SANDBOX_TIMEOUT_S", 3600)


def sandbox_idle_timeout_s() -> int:
    return _env_int("SANDBOX_IDLE_TIMEOUT_S", 900)


def preview_port() -> int:
    return _env_int("SANDBOX_PREVIEW_PORT", 5173)


def exposed_ports() -> tuple[int, ...]:
    raw = (os.environ.get("SANDBOX_EXPOSED_PORTS") or "").strip()
    if not raw:
        return (8000, preview_port())
    out: list[int] = []
    for part in raw.split(","):
        part = part.strip()
        if part.isdigit():
            out.append(int(part))
    return tuple(out) or (8000, preview_port())


def exec_timeout_s() -> int:
    return _env_int("SANDBOX_EXEC_TIMEOUT_S", 60)


def provider_call_timeout_s() -> float:
    # Deadline for a single SDK call that has no timeout of its own.
    return _env_float("SANDBOX_PROVIDER_CALL_TIMEOUT_S", 120.0)


def create_timeout_s() -> float:
    return _env_float("SANDBOX_CREATE_TIMEOUT_S", 300.0)


def restore_batch_size() -> int:
    return max(1, _env_int("SANDBOX_RESTORE_BATCH_SIZE", 10))


def snapshot_keep_count() -> int:
    return max(0, _env_int("SANDBOX_SNAPSHOT_KEEP", 10))


def install_timeout_s() -> int:
    return _env_int("SANDBOX_INSTALL_TIMEOUT_S", 120)


def tunnel_settle_s() -> float:
    # Tunnels are not published immediately after create.
    return _env_float("SANDBOX_TUNNEL_SETTLE_S", 2.0)


def pool_max_size() -> int:
    return max(1, _env_int("SANDBOX_POOL_MAX_SIZE", 2))


def pool_idle_ttl_s() -> int:
    return _env_int("SANDBOX_POOL_IDLE_TTL_S", 900)


def snapshots_enabled() -> bool:
    return _env_bool("SANDBOX_SNAPSHOTS_ENABLED", default=True)


def modal_app_name() -> str:
    return (os.environ.get("MODAL_APP_NAME") or "sandbox-lifecycle").strip()


def daytona_api_key() -> str:
    return (os.environ.get("DAYTONA_API_KEY") or "").strip()


def daytona_api_url() -> str | None:
    v = (os.environ.get("DAYTONA_API_URL") or "").strip()
    return v or None


def daytona_target() -> str:
    return (os.environ.get("DAYTONA_TARGET") or "us").strip() or "us"
