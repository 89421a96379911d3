from __future__ import annotations

import asyncio
import logging
import re
import shlex
from dataclasses import dataclass, field
from typing import Literal

from src.deploy.client import DeploymentPlaneClient, DeploymentUploadError, parse_deploy_response
from src.deploy.config import DeploymentConfig, default_app_name
from src.deploy.script import build_direct_upload_script, parse_script_output
from src.sandbox_backends.base import ExecResult, ProviderAdapter, SandboxHandle
from src.sandbox_backends.errors import SandboxError
from src.sandbox_files.sandbox_fs import read_bytes, write_bytes

logger = logging.getLogger(__name__)

Strategy = Literal["zip", "direct"]

BUILD_TIMEOUT_S = 600
UPLOAD_SCRIPT_TIMEOUT_S = 300
OUTPUT_DIR_CANDIDATES: tuple[str, ...] = ("dist", "build", "out")

_BUILD_ERROR_MARKERS = (
    "Failed to build application",
    "error TS",
    "build command failed",
    "Build failed",
)
_APP_NAME_RE = re.compile(r"[^a-z0-9-]+")


class DeploymentBuildError(RuntimeError):
    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output = output


def is_build_error(message: str) -> bool:
    return any(m in (message or "") for m in _BUILD_ERROR_MARKERS)


def sanitize_app_name(name: str) -> str:
    cleaned = _APP_NAME_RE.sub("-", (name or "").strip().lower()).strip("-")
    return cleaned[:63] or "app"


@dataclass(frozen=True)
class DeploymentResult:
    success: bool
    deployment_url: str | None = None
    error: str | None = None
    logs: list[str] = field(default_factory=list)
    strategy: Strategy | None = None


class DeploymentPipeline:
    """Build inside the sandbox, then publish the output.

    The zipped upload is tried first. Any failure other than a build failure
    falls back to the direct-upload script exactly once; build failures are
    returned as-is since re-uploading cannot fix them.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        client: DeploymentPlaneClient,
        cfg: DeploymentConfig,
        *,
        workdir: str = "/workspace",
    ) -> None:
        self._adapter = adapter
        self._client = client
        self._cfg = cfg
        self._workdir = workdir.rstrip("/") or "/"

    def _filter(self, line: str) -> str:
        out = line
        if self._cfg.api_key:
            out = out.replace(self._cfg.api_key, "[HIDDEN]")
        if self._cfg.plane_url:
            out = out.replace(self._cfg.plane_url, "[URL_FILTERED]")
        return out

    async def _sh(self, handle: SandboxHandle, cmd: str, *, timeout_s: float, **kw) -> ExecResult:
        return await self._adapter.exec(
            handle, ["sh", "-c", cmd], timeout_s=timeout_s, workdir=self._workdir, **kw
        )

    async def _build(self, handle: SandboxHandle, logs: list[str]) -> None:
        logger.info("Building application in sandbox %s", handle.sandbox_id)
        res = await self._sh(handle, self._cfg.build_command, timeout_s=BUILD_TIMEOUT_S)
        if not res.ok:
            output = res.output.strip() or "build command failed"
            logger.error(
                "Build failed in sandbox %s (exit %s, typescript=%s)",
                handle.sandbox_id,
                res.exit_code,
                "error TS" in output,
            )
            if "error TS" in output:
                message = f"Failed to build application - TypeScript errors:\n{output}"
            else:
                message = f"Failed to build application:\n{output}"
            raise DeploymentBuildError(message, output=output)
        logs.append(f"Build: {res.stdout.strip() or 'Success'}")

    async def _output_dir(self, handle: SandboxHandle) -> str:
        checks = " || ".join(f"(test -d {d} && echo {d})" for d in OUTPUT_DIR_CANDIDATES)
        res = await self._sh(handle, f"{checks} || echo .", timeout_s=30)
        found = res.stdout.strip().splitlines()
        return found[0].strip() if found else "."

    async def _deploy_zip(
        self, handle: SandboxHandle, project_id: str, name: str, build_dir: str, logs: list[str]
    ) -> str | None:
        zip_path = f"/tmp/{name}.zip"
        src_dir = f"{self._workdir}/{build_dir}" if build_dir != "." else self._workdir
        res = await self._sh(
            handle,
            f"rm -f {shlex.quote(zip_path)} && cd {shlex.quote(src_dir)} "
            f"&& zip -qr {shlex.quote(zip_path)} . -x 'node_modules/*'",
            timeout_s=120,
        )
        if not res.ok:
            raise DeploymentUploadError(
                "Failed to create zip file from build output: "
                f"{res.stderr.strip() or 'zip command not available or failed'}"
            )
        logs.append("ZIP Creation: Success")

        try:
            data = await read_bytes(self._adapter, handle, zip_path)
            url = await asyncio.to_thread(self._client.upload_zip, project_id, name, data)
        finally:
            try:
                await self._adapter.exec(handle, ["rm", "-f", zip_path], timeout_s=30)
            except SandboxError as e:
                logger.warning("Failed to clean up %s: %s", zip_path, e)
        return url

    async def _deploy_direct(
        self, handle: SandboxHandle, project_id: str, name: str, build_dir: str, logs: list[str]
    ) -> str | None:
        root = f"{self._workdir}/{build_dir}" if build_dir != "." else self._workdir
        script = build_direct_upload_script(root=root, project_id=project_id, name=name)
        script_path = "/tmp/deploy-direct.cjs"
        await write_bytes(self._adapter, handle, script_path, script.encode("utf-8"))
        res = await self._adapter.exec(
            handle,
            ["node", script_path],
            timeout_s=UPLOAD_SCRIPT_TIMEOUT_S,
            workdir=self._workdir,
            env={"DEPLOY_PLANE_URL": self._cfg.plane_url, "DEPLOY_API_KEY": self._cfg.api_key},
        )
        result = parse_script_output(res.output)
        if result is None:
            raise DeploymentUploadError(
                f"Direct upload script produced no result (exit {res.exit_code})"
            )
        if not result.get("success"):
            raise DeploymentUploadError(
                f"Direct upload failed: {result.get('error') or 'unknown error'}", payload=result
            )
        logs.append(f"Direct upload: {result.get('files', 0)} files")
        return parse_deploy_response(int(result.get("status") or 0), str(result.get("body") or ""))

    async def deploy(
        self, handle: SandboxHandle, project_id: str, *, name: str | None = None
    ) -> DeploymentResult:
        app = sanitize_app_name(name or default_app_name(project_id))
        logs: list[str] = []

        def _result(**kw) -> DeploymentResult:
            return DeploymentResult(logs=[self._filter(line) for line in logs], **kw)

        try:
            await self._build(handle, logs)
            build_dir = await self._output_dir(handle)
            logs.append(f"Build Directory: {build_dir}")
        except DeploymentBuildError as e:
            logger.error("Not attempting fallback for project %s: build failed", project_id)
            logs.append(str(e))
            return _result(success=False, error=self._filter(str(e)), strategy="zip")
        except SandboxError as e:
            logger.error("Build step failed for project %s: %s", project_id, e)
            return _result(success=False, error=self._filter(str(e)), strategy="zip")

        try:
            url = await self._deploy_zip(handle, project_id, app, build_dir, logs)
            logger.info("Zip deployment of project %s succeeded: %s", project_id, url)
            return _result(success=True, deployment_url=url, strategy="zip")
        except (DeploymentUploadError, SandboxError) as e:
            if is_build_error(str(e)):
                return _result(success=False, error=self._filter(str(e)), strategy="zip")
            logger.warning(
                "Zip deployment failed for project %s, falling back to direct upload: %s",
                project_id,
                self._filter(str(e)),
            )
            logs.append(f"Zip deployment failed: {e}")

        try:
            url = await self._deploy_direct(handle, project_id, app, build_dir, logs)
        except (DeploymentUploadError, SandboxError) as e:
            logger.error(
                "Direct deployment failed for project %s: %s", project_id, self._filter(str(e))
            )
            logs.append(f"Deployment failed: {e}")
            return _result(success=False, error=self._filter(str(e)), strategy="direct")
        logger.info("Direct deployment of project %s succeeded: %s", project_id, url)
        return _result(success=True, deployment_url=url, strategy="direct")
