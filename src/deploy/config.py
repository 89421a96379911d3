from __future__ import annotations

import os
from dataclasses import dataclass


class DeploymentConfigError(RuntimeError):
    pass


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


@dataclass(frozen=True)
class DeploymentConfig:
    plane_url: str
    api_key: str
    build_command: str = "bun run build"
    max_upload_retries: int = 2
    retry_delay_s: float = 2.0
    request_timeout_s: int = 120


def deployment_plane_url() -> str:
    return (os.environ.get("DEPLOYMENT_PLANE_URL") or "").strip().rstrip("/")


def deployment_plane_api_key() -> str:
    return (os.environ.get("DEPLOYMENT_PLANE_API_KEY") or "").strip()


def deploy_build_command() -> str:
    return (os.environ.get("DEPLOY_BUILD_COMMAND") or "bun run build").strip() or "bun run build"


def deployment_config_from_env() -> DeploymentConfig:
    url = deployment_plane_url()
    key = deployment_plane_api_key()
    if not url:
        raise DeploymentConfigError("DEPLOYMENT_PLANE_URL is not set")
    if not key:
        raise DeploymentConfigError("DEPLOYMENT_PLANE_API_KEY is not set")
    return DeploymentConfig(
        plane_url=url,
        api_key=key,
        build_command=deploy_build_command(),
        max_upload_retries=max(0, _env_int("DEPLOY_MAX_UPLOAD_RETRIES", 2)),
        retry_delay_s=_env_float("DEPLOY_RETRY_DELAY_S", 2.0),
        request_timeout_s=_env_int("DEPLOY_REQUEST_TIMEOUT_S", 120),
    )


def default_app_name(project_id: str) -> str:
    return f"sandbox-app-{project_id}"
