from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable
from typing import Any

import requests

from src.deploy.config import DeploymentConfig

logger = logging.getLogger(__name__)

# Transient failure of the plane's upstream validation step; the same upload
# usually succeeds on a second attempt.
RETRYABLE_DEPLOY_ERROR = "Deployment validation failed: Error: closed"

_URL_RE = re.compile(r"https?://[^\s\"'}<>]+")
_TRAILING_JUNK_RE = re.compile(r"[\"}'\]]+$")
_NON_DEPLOYMENT_URL_PARTS = (
    "/static/",
    ".woff",
    ".css",
    ".js",
    ".png",
    ".jpg",
    "cdn.ngrok.com",
)


class DeploymentUploadError(RuntimeError):
    def __init__(
        self, message: str, *, status_code: int | None = None, payload: Any = None
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


def _clean_url(url: str) -> str:
    return _TRAILING_JUNK_RE.sub("", url.strip())


def _looks_like_html(text: str) -> bool:
    t = text.lstrip().lower()
    return t.startswith("<!doctype") or "<html" in t[:2000]


def _url_from_text(text: str) -> str | None:
    for match in _URL_RE.findall(text or ""):
        lowered = match.lower()
        if any(part in lowered for part in _NON_DEPLOYMENT_URL_PARTS):
            continue
        return _clean_url(match)
    return None


def parse_deploy_response(status_code: int, text: str) -> str | None:
    """Extract the deployment URL from a deployment plane response.

    Raises `DeploymentUploadError` for HTML bodies (plane not reachable behind
    a proxy), JSON bodies carrying `error`, and non-2xx statuses. A 2xx
    response without any URL returns None.
    """
    body = text or ""
    payload: Any = None
    try:
        payload = json.loads(body) if body.strip() else None
    except ValueError:
        payload = None

    if isinstance(payload, dict) and payload.get("error"):
        raise DeploymentUploadError(
            f"Deployment failed: {payload['error']}", status_code=status_code, payload=payload
        )
    if payload is None and _looks_like_html(body):
        raise DeploymentUploadError(
            "Deployment service returned HTML instead of JSON response. "
            "The deployment service may not be running or accessible.",
            status_code=status_code,
            payload={"raw": body[:500]},
        )
    if status_code >= 400:
        raise DeploymentUploadError(
            f"Deployment plane error {status_code}",
            status_code=status_code,
            payload=payload if payload is not None else {"raw": body[:500]},
        )

    if isinstance(payload, dict):
        for key in ("url", "deploymentUrl", "link"):
            v = payload.get(key)
            if isinstance(v, str) and v.strip():
                return _clean_url(v)
        return None
    return _url_from_text(body)


class DeploymentPlaneClient:
    def __init__(
        self,
        cfg: DeploymentConfig,
        *,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._cfg = cfg
        self._http = session or requests.Session()
        self._sleep = sleep

    @property
    def deploy_url(self) -> str:
        return f"{self._cfg.plane_url}/api/deploy"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._cfg.api_key}",
            "bypass-tunnel-reminder": "true",
        }

    def upload_zip(self, project_id: str, name: str, zip_bytes: bytes) -> str | None:
        """POST the zipped build output. Blocking; returns the deployment URL."""
        attempts = self._cfg.max_upload_retries + 1
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                logger.info("Retrying deployment upload (attempt %s/%s)", attempt, attempts)
                self._sleep(self._cfg.retry_delay_s)
            try:
                res = self._http.post(
                    self.deploy_url,
                    headers=self._headers(),
                    data={"projectId": project_id, "name": name},
                    files={"app": (f"{name}.zip", zip_bytes, "application/zip")},
                    timeout=self._cfg.request_timeout_s,
                )
            except requests.RequestException as e:
                raise DeploymentUploadError(f"Deployment upload failed: {e}") from e

            try:
                return parse_deploy_response(res.status_code, res.text)
            except DeploymentUploadError as e:
                if RETRYABLE_DEPLOY_ERROR in str(e) and attempt < attempts:
                    logger.info("Deployment plane closed the connection; will retry")
                    continue
                raise
        raise DeploymentUploadError("Deployment upload retries exhausted")
