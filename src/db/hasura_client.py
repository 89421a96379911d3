"""Minimal Hasura client for the project store.

Only the `run_sql` endpoint is used: the sandbox metadata tables live in their
own Postgres schema and are not tracked in Hasura metadata.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import requests

_log = logging.getLogger(__name__)

# Concurrent migrations from several workers surface as 409s.
_RETRYABLE_STATUS = frozenset({409, 502, 503})


@dataclass(frozen=True)
class HasuraConfig:
    base_url: str
    admin_secret: str
    source_name: str = "default"
    timeout_s: float = 30.0
    attempts: int = 3
    backoff_s: float = 0.2


class HasuraError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _env(name: str) -> str | None:
    v = (os.environ.get(name) or "").strip()
    return v or None


def db_enabled_from_env() -> bool:
    return bool(_env("HASURA_BASE_URL") and _env("HASURA_GRAPHQL_ADMIN_SECRET"))


def hasura_client_from_env() -> HasuraClient:
    base = _env("HASURA_BASE_URL")
    secret = _env("HASURA_GRAPHQL_ADMIN_SECRET")
    if not base or not secret:
        raise HasuraError(
            "Hasura not configured (missing HASURA_BASE_URL or HASURA_GRAPHQL_ADMIN_SECRET)"
        )
    return HasuraClient(
        HasuraConfig(
            base_url=base.rstrip("/"),
            admin_secret=secret,
            source_name=_env("HASURA_SOURCE_NAME") or "default",
        )
    )


def tuples_to_dicts(res: dict[str, Any]) -> list[dict[str, Any]]:
    """Convert a run_sql tuples result (header row first) into dicts.

    Hasura renders SQL NULL as the string "NULL"; it is mapped back to None.
    """
    rows = res.get("result")
    if not isinstance(rows, list) or len(rows) < 2 or not isinstance(rows[0], list):
        return []
    header = [c if isinstance(c, str) else None for c in rows[0]]
    return [
        {
            col: (None if val == "NULL" else val)
            for col, val in zip(header, row)
            if col is not None
        }
        for row in rows[1:]
        if isinstance(row, list)
    ]


class HasuraClient:
    def __init__(
        self,
        cfg: HasuraConfig,
        *,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._cfg = cfg
        self._http = session or requests.Session()
        self._sleep = sleep

    @property
    def cfg(self) -> HasuraConfig:
        return self._cfg

    def _query_url(self) -> str:
        return f"{self._cfg.base_url.rstrip('/')}/v2/query"

    def run_sql(self, sql: str, *, read_only: bool = False) -> dict[str, Any]:
        body = {
            "type": "run_sql",
            "args": {
                "source": self._cfg.source_name,
                "sql": sql,
                "read_only": bool(read_only),
            },
        }
        headers = {
            "x-hasura-admin-secret": self._cfg.admin_secret,
            "content-type": "application/json",
        }
        attempts = max(1, self._cfg.attempts)
        for attempt in range(1, attempts + 1):
            last = attempt == attempts
            try:
                resp = self._http.post(
                    self._query_url(), headers=headers, json=body, timeout=self._cfg.timeout_s
                )
            except requests.RequestException as e:
                if last:
                    raise HasuraError(f"run_sql transport error: {e}") from e
                _log.debug("run_sql transport error (attempt %s/%s): %s", attempt, attempts, e)
                self._sleep(self._cfg.backoff_s * attempt)
                continue

            if resp.status_code in _RETRYABLE_STATUS and not last:
                _log.debug("run_sql got %s (attempt %s/%s)", resp.status_code, attempt, attempts)
                self._sleep(self._cfg.backoff_s * attempt)
                continue
            if resp.status_code >= 400:
                raise HasuraError(
                    f"run_sql failed ({resp.status_code}): {resp.text}",
                    status_code=resp.status_code,
                )
            return resp.json()
        raise HasuraError("run_sql: retries exhausted")

    def select(self, sql: str) -> list[dict[str, Any]]:
        return tuples_to_dicts(self.run_sql(sql, read_only=True))
