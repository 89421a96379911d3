from __future__ import annotations

import json
import logging
import re
import threading
from datetime import datetime
from typing import TYPE_CHECKING, Any

from src.projects.store import Fragment, GitFragmentRecord, Project
from src.sandbox_backends.base import SandboxHandle

if TYPE_CHECKING:  # pragma: no cover
    from src.db.hasura_client import HasuraClient


_log = logging.getLogger(__name__)

_schema_ready = False
_schema_lock = threading.Lock()

_TZ_SHORT_RE = re.compile(r"([+-]\d{2})$")


def _sql_str(value: str) -> str:
    return "'" + (value or "").replace("'", "''") + "'"


def _sql_opt(value: str | None) -> str:
    return "NULL" if value is None else _sql_str(value)


def _sql_ts(value: datetime | None) -> str:
    return "NULL" if value is None else _sql_str(value.isoformat())


def _ts(raw: Any) -> datetime | None:
    if raw is None:
        return None
    s = str(raw).strip().replace(" ", "T", 1)
    # Postgres prints "+00"; fromisoformat wants "+00:00".
    s = _TZ_SHORT_RE.sub(r"\1:00", s)
    return datetime.fromisoformat(s)


def _opt_str(raw: Any) -> str | None:
    return str(raw) if raw is not None else None


def _bool(raw: Any) -> bool:
    return str(raw).strip().lower() in ("t", "true", "1")


def ensure_sandbox_schema(client: HasuraClient) -> None:
    global _schema_ready
    if _schema_ready:
        return
    with _schema_lock:
        if _schema_ready:
            return
        _log.info("Running sandbox lifecycle schema migration (once per process)")
        client.run_sql(
            """
            CREATE SCHEMA IF NOT EXISTS sandbox_meta;
            CREATE TABLE IF NOT EXISTS sandbox_meta.projects (
              project_id text PRIMARY KEY,
              name text NOT NULL DEFAULT '',
              template_name text NULL,
              imported boolean NOT NULL DEFAULT false,
              sandbox_provider text NULL,
              sandbox_id text NULL,
              sandbox_url text NULL,
              sandbox_created_at timestamptz NULL,
              sandbox_expires_at timestamptz NULL,
              active_fragment_id text NULL,
              git_commit_hash text NULL,
              git_branch text NULL,
              updated_at timestamptz NOT NULL DEFAULT now()
            );
            CREATE INDEX IF NOT EXISTS idx_projects_sandbox
              ON sandbox_meta.projects(sandbox_id);

            CREATE TABLE IF NOT EXISTS sandbox_meta.fragments (
              fragment_id text PRIMARY KEY,
              project_id text NOT NULL REFERENCES sandbox_meta.projects(project_id) ON DELETE CASCADE,
              title text NOT NULL DEFAULT '',
              files jsonb NOT NULL DEFAULT '{}'::jsonb,
              created_at timestamptz NOT NULL DEFAULT now(),
              snapshot_image_id text NULL,
              snapshot_created_at timestamptz NULL,
              snapshot_provider text NULL
            );
            CREATE INDEX IF NOT EXISTS idx_fragments_project
              ON sandbox_meta.fragments(project_id, created_at DESC);
            CREATE INDEX IF NOT EXISTS idx_fragments_snapshot
              ON sandbox_meta.fragments(snapshot_image_id);

            CREATE TABLE IF NOT EXISTS sandbox_meta.git_fragments (
              record_id text PRIMARY KEY,
              project_id text NOT NULL REFERENCES sandbox_meta.projects(project_id) ON DELETE CASCADE,
              commit_hash text NOT NULL,
              branch text NOT NULL,
              message text NOT NULL,
              author_name text NOT NULL,
              author_email text NOT NULL,
              title text NULL,
              created_at timestamptz NOT NULL DEFAULT now()
            );
            CREATE INDEX IF NOT EXISTS idx_git_fragments_title
              ON sandbox_meta.git_fragments(project_id, title, created_at DESC);
            """.strip()
        )
        _schema_ready = True


_PROJECT_COLS = (
    "project_id, name, template_name, imported, sandbox_provider, sandbox_id, "
    "sandbox_url, sandbox_created_at, sandbox_expires_at, active_fragment_id, "
    "git_commit_hash, git_branch"
)
_FRAGMENT_COLS = (
    "fragment_id, project_id, title, files, created_at, snapshot_image_id, "
    "snapshot_created_at, snapshot_provider"
)
_GIT_COLS = (
    "record_id, project_id, commit_hash, branch, message, author_name, "
    "author_email, title, created_at"
)


def _project(r: dict[str, Any]) -> Project:
    return Project(
        project_id=str(r["project_id"]),
        name=str(r.get("name") or ""),
        template_name=_opt_str(r.get("template_name")),
        imported=_bool(r.get("imported")),
        sandbox_provider=_opt_str(r.get("sandbox_provider")),
        sandbox_id=_opt_str(r.get("sandbox_id")),
        sandbox_url=_opt_str(r.get("sandbox_url")),
        sandbox_created_at=_ts(r.get("sandbox_created_at")),
        sandbox_expires_at=_ts(r.get("sandbox_expires_at")),
        active_fragment_id=_opt_str(r.get("active_fragment_id")),
        git_commit_hash=_opt_str(r.get("git_commit_hash")),
        git_branch=_opt_str(r.get("git_branch")),
    )


def _fragment(r: dict[str, Any]) -> Fragment:
    raw_files = r.get("files")
    files = json.loads(raw_files) if isinstance(raw_files, str) else (raw_files or {})
    return Fragment(
        fragment_id=str(r["fragment_id"]),
        project_id=str(r["project_id"]),
        title=str(r.get("title") or ""),
        files={str(k): str(v) for k, v in files.items()},
        created_at=_ts(r.get("created_at")) or datetime.min,
        snapshot_image_id=_opt_str(r.get("snapshot_image_id")),
        snapshot_created_at=_ts(r.get("snapshot_created_at")),
        snapshot_provider=_opt_str(r.get("snapshot_provider")),
    )


def _git_record(r: dict[str, Any]) -> GitFragmentRecord:
    return GitFragmentRecord(
        record_id=str(r["record_id"]),
        project_id=str(r["project_id"]),
        commit_hash=str(r["commit_hash"]),
        branch=str(r["branch"]),
        message=str(r["message"]),
        author_name=str(r["author_name"]),
        author_email=str(r["author_email"]),
        title=_opt_str(r.get("title")),
        created_at=_ts(r.get("created_at")) or datetime.min,
    )


class HasuraProjectStore:
    """ProjectStore backed by Postgres through Hasura's run_sql endpoint."""

    def __init__(self, client: HasuraClient) -> None:
        self._client = client

    def _exec(self, sql: str) -> None:
        ensure_sandbox_schema(self._client)
        self._client.run_sql(sql.strip())

    def _select(self, sql: str) -> list[dict[str, Any]]:
        ensure_sandbox_schema(self._client)
        return self._client.select(sql.strip())

    def get_project(self, project_id: str) -> Project | None:
        rows = self._select(
            f"""
            SELECT {_PROJECT_COLS} FROM sandbox_meta.projects
            WHERE project_id = {_sql_str(project_id)} LIMIT 1;
            """
        )
        return _project(rows[0]) if rows else None

    def set_sandbox(self, project_id: str, handle: SandboxHandle) -> None:
        self._exec(
            f"""
            UPDATE sandbox_meta.projects
            SET sandbox_provider = {_sql_str(handle.provider)},
                sandbox_id = {_sql_str(handle.sandbox_id)},
                sandbox_url = {_sql_opt(handle.public_url)},
                sandbox_created_at = {_sql_ts(handle.created_at)},
                sandbox_expires_at = {_sql_ts(handle.expires_at)},
                updated_at = now()
            WHERE project_id = {_sql_str(project_id)};
            """
        )

    def clear_sandbox(self, project_id: str) -> None:
        self._exec(
            f"""
            UPDATE sandbox_meta.projects
            SET sandbox_id = NULL, sandbox_url = NULL, sandbox_created_at = NULL,
                sandbox_expires_at = NULL, updated_at = now()
            WHERE project_id = {_sql_str(project_id)};
            """
        )

    def count_projects_using_sandbox(
        self, sandbox_id: str, *, exclude_project_id: str | None = None
    ) -> int:
        exclude = (
            f" AND project_id <> {_sql_str(exclude_project_id)}"
            if exclude_project_id
            else ""
        )
        rows = self._select(
            f"""
            SELECT count(*) AS n FROM sandbox_meta.projects
            WHERE sandbox_id = {_sql_str(sandbox_id)}{exclude};
            """
        )
        return int(rows[0]["n"]) if rows else 0

    def set_active_fragment(self, project_id: str, fragment_id: str | None) -> None:
        self._exec(
            f"""
            UPDATE sandbox_meta.projects
            SET active_fragment_id = {_sql_opt(fragment_id)}, updated_at = now()
            WHERE project_id = {_sql_str(project_id)};
            """
        )

    def set_git_state(
        self,
        project_id: str,
        *,
        commit_hash: str,
        branch: str | None = None,
        clear_active_fragment: bool = False,
    ) -> None:
        sets = [f"git_commit_hash = {_sql_str(commit_hash)}"]
        if branch is not None:
            sets.append(f"git_branch = {_sql_str(branch)}")
        if clear_active_fragment:
            sets.append("active_fragment_id = NULL")
        sets.append("updated_at = now()")
        self._exec(
            f"""
            UPDATE sandbox_meta.projects SET {", ".join(sets)}
            WHERE project_id = {_sql_str(project_id)};
            """
        )

    def get_fragment(self, fragment_id: str) -> Fragment | None:
        rows = self._select(
            f"""
            SELECT {_FRAGMENT_COLS} FROM sandbox_meta.fragments
            WHERE fragment_id = {_sql_str(fragment_id)} LIMIT 1;
            """
        )
        return _fragment(rows[0]) if rows else None

    def latest_fragment(self, project_id: str) -> Fragment | None:
        rows = self._select(
            f"""
            SELECT {_FRAGMENT_COLS} FROM sandbox_meta.fragments
            WHERE project_id = {_sql_str(project_id)}
            ORDER BY created_at DESC LIMIT 1;
            """
        )
        return _fragment(rows[0]) if rows else None

    def count_fragments(self, project_id: str) -> int:
        rows = self._select(
            f"""
            SELECT count(*) AS n FROM sandbox_meta.fragments
            WHERE project_id = {_sql_str(project_id)};
            """
        )
        return int(rows[0]["n"]) if rows else 0

    def bind_snapshot(
        self, fragment_id: str, *, image_id: str, provider: str, created_at: datetime
    ) -> None:
        self._exec(
            f"""
            UPDATE sandbox_meta.fragments
            SET snapshot_image_id = {_sql_str(image_id)},
                snapshot_provider = {_sql_str(provider)},
                snapshot_created_at = {_sql_ts(created_at)}
            WHERE fragment_id = {_sql_str(fragment_id)};
            """
        )

    def clear_snapshot(self, fragment_id: str) -> None:
        self._exec(
            f"""
            UPDATE sandbox_meta.fragments
            SET snapshot_image_id = NULL, snapshot_provider = NULL, snapshot_created_at = NULL
            WHERE fragment_id = {_sql_str(fragment_id)};
            """
        )

    def list_snapshot_bindings(
        self, project_id: str, *, provider: str | None = None
    ) -> list[Fragment]:
        prov = f" AND snapshot_provider = {_sql_str(provider)}" if provider else ""
        rows = self._select(
            f"""
            SELECT {_FRAGMENT_COLS} FROM sandbox_meta.fragments
            WHERE project_id = {_sql_str(project_id)}
              AND snapshot_image_id IS NOT NULL{prov}
            ORDER BY snapshot_created_at DESC;
            """
        )
        return [_fragment(r) for r in rows]

    def fragments_with_image(self, image_id: str) -> list[Fragment]:
        rows = self._select(
            f"""
            SELECT {_FRAGMENT_COLS} FROM sandbox_meta.fragments
            WHERE snapshot_image_id = {_sql_str(image_id)};
            """
        )
        return [_fragment(r) for r in rows]

    def add_git_fragment(self, record: GitFragmentRecord) -> None:
        self._exec(
            f"""
            INSERT INTO sandbox_meta.git_fragments ({_GIT_COLS})
            VALUES (
              {_sql_str(record.record_id)}, {_sql_str(record.project_id)},
              {_sql_str(record.commit_hash)}, {_sql_str(record.branch)},
              {_sql_str(record.message)}, {_sql_str(record.author_name)},
              {_sql_str(record.author_email)}, {_sql_opt(record.title)},
              {_sql_ts(record.created_at)}
            );
            """
        )

    def find_git_fragment_by_title(
        self, project_id: str, title: str
    ) -> GitFragmentRecord | None:
        rows = self._select(
            f"""
            SELECT {_GIT_COLS} FROM sandbox_meta.git_fragments
            WHERE project_id = {_sql_str(project_id)} AND title = {_sql_str(title)}
            ORDER BY created_at DESC LIMIT 1;
            """
        )
        return _git_record(rows[0]) if rows else None
