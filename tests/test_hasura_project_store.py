from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest
import requests

from src.db.hasura_client import HasuraClient, HasuraConfig, HasuraError, tuples_to_dicts
from src.projects import hasura_store
from src.projects.hasura_store import HasuraProjectStore
from src.projects.store import GitFragmentRecord
from src.sandbox_backends.base import SandboxHandle


class FakeHasuraClient:
    """Records statements; SELECTs answer from `rows` keyed by table name."""

    def __init__(self) -> None:
        self.statements: list[str] = []
        self.rows: dict[str, list[dict]] = {}

        class _Cfg:
            source_name = "default"

        self.cfg = _Cfg()

    def run_sql(self, sql: str, *, read_only: bool = False):
        _ = read_only
        self.statements.append(sql)
        return {"result_type": "CommandOk", "result": []}

    def select(self, sql: str) -> list[dict]:
        self.statements.append(sql)
        for table, rows in self.rows.items():
            if f"from sandbox_meta.{table}" in sql.lower():
                return rows
        return []


@pytest.fixture(autouse=True)
def _fresh_schema(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(hasura_store, "_schema_ready", False)


def _project_row(**overrides) -> dict:
    row = {
        "project_id": "p1",
        "name": "Demo",
        "template_name": "vite",
        "imported": "f",
        "sandbox_provider": "modal",
        "sandbox_id": "sb-1",
        "sandbox_url": "https://sb-1.test",
        "sandbox_created_at": "2026-01-02 03:04:05.123456+00",
        "sandbox_expires_at": None,
        "active_fragment_id": None,
        "git_commit_hash": None,
        "git_branch": None,
    }
    row.update(overrides)
    return row


def test_schema_created_once_per_process() -> None:
    client = FakeHasuraClient()
    store = HasuraProjectStore(client)

    store.clear_sandbox("p1")
    store.clear_sandbox("p2")

    creates = [s for s in client.statements if "CREATE SCHEMA" in s]
    assert len(creates) == 1
    assert len(client.statements) == 3


def test_get_project_maps_row() -> None:
    client = FakeHasuraClient()
    client.rows["projects"] = [_project_row(imported="t")]
    store = HasuraProjectStore(client)

    project = store.get_project("p1")

    assert project is not None
    assert project.imported is True
    assert project.sandbox_created_at == datetime(2026, 1, 2, 3, 4, 5, 123456, tzinfo=timezone.utc)
    handle = project.sandbox_handle()
    assert handle is not None and handle.sandbox_id == "sb-1"


def test_get_project_missing() -> None:
    store = HasuraProjectStore(FakeHasuraClient())
    assert store.get_project("nope") is None


def test_values_are_quoted() -> None:
    client = FakeHasuraClient()
    store = HasuraProjectStore(client)
    handle = SandboxHandle("daytona", "sb-'x", None)

    store.set_sandbox("it's", handle)

    sql = client.statements[-1]
    assert "sandbox_id = 'sb-''x'" in sql
    assert "sandbox_url = NULL" in sql
    assert "WHERE project_id = 'it''s'" in sql


def test_set_git_state_clears_active_fragment() -> None:
    client = FakeHasuraClient()
    HasuraProjectStore(client).set_git_state(
        "p1", commit_hash="abc123", branch="main", clear_active_fragment=True
    )
    sql = client.statements[-1]
    assert "git_commit_hash = 'abc123'" in sql
    assert "git_branch = 'main'" in sql
    assert "active_fragment_id = NULL" in sql


def test_fragment_files_decoded_from_json_text() -> None:
    client = FakeHasuraClient()
    client.rows["fragments"] = [
        {
            "fragment_id": "f1",
            "project_id": "p1",
            "title": "first",
            "files": json.dumps({"src/App.tsx": "export {}"}),
            "created_at": "2026-01-02T03:04:05+00:00",
            "snapshot_image_id": "im-1",
            "snapshot_created_at": "2026-01-02 04:00:00+00",
            "snapshot_provider": "modal",
        }
    ]
    store = HasuraProjectStore(client)

    [fragment] = store.list_snapshot_bindings("p1", provider="modal")

    assert fragment.files == {"src/App.tsx": "export {}"}
    assert fragment.snapshot_image_id == "im-1"
    assert "snapshot_provider = 'modal'" in client.statements[-1]


def test_counts() -> None:
    client = FakeHasuraClient()
    client.rows["projects"] = [{"n": "2"}]
    store = HasuraProjectStore(client)

    assert store.count_projects_using_sandbox("sb-1", exclude_project_id="p1") == 2
    assert "project_id <> 'p1'" in client.statements[-1]


def test_add_git_fragment_inserts_row() -> None:
    client = FakeHasuraClient()
    record = GitFragmentRecord(
        record_id="r1",
        project_id="p1",
        commit_hash="abc",
        branch="main",
        message="Restore",
        author_name="Sandbox Bot",
        author_email="bot@sandbox.dev",
    )

    HasuraProjectStore(client).add_git_fragment(record)

    sql = client.statements[-1]
    assert sql.startswith("INSERT INTO sandbox_meta.git_fragments")
    assert "'bot@sandbox.dev'" in sql
    assert "NULL" in sql


def test_tuples_to_dicts_maps_null() -> None:
    res = {"result": [["a", "b"], ["1", "NULL"], "junk"]}
    assert tuples_to_dicts(res) == [{"a": "1", "b": None}]
    assert tuples_to_dicts({"result": [["a"]]}) == []


class _Resp:
    def __init__(self, status_code: int, payload: dict | None = None) -> None:
        self.status_code = status_code
        self._payload = payload or {}
        self.text = json.dumps(self._payload)

    def json(self) -> dict:
        return self._payload


class _Session:
    def __init__(self, responses: list[_Resp]) -> None:
        self._responses = responses
        self.posts: list[dict] = []

    def post(self, url: str, **kw):
        self.posts.append({"url": url, **kw})
        return self._responses.pop(0)


def test_run_sql_retries_conflict() -> None:
    session = _Session([_Resp(409), _Resp(200, {"result_type": "CommandOk"})])
    sleeps: list[float] = []
    client = HasuraClient(
        HasuraConfig(base_url="https://hasura.test/", admin_secret="s"),
        session=session,
        sleep=sleeps.append,
    )

    assert client.run_sql("SELECT 1;") == {"result_type": "CommandOk"}
    assert len(session.posts) == 2
    assert session.posts[0]["url"] == "https://hasura.test/v2/query"
    assert session.posts[0]["json"]["args"]["source"] == "default"
    assert sleeps == [0.2]


def test_run_sql_error_status() -> None:
    session = _Session([_Resp(400, {"error": "syntax"})])
    client = HasuraClient(HasuraConfig(base_url="https://h.test", admin_secret="s"), session=session)
    with pytest.raises(HasuraError, match="400"):
        client.run_sql("SELEC 1;")


def test_run_sql_transport_errors_exhaust_attempts() -> None:
    class _Down:
        calls = 0

        def post(self, url: str, **kw):
            self.calls += 1
            raise requests.ConnectionError("connection refused")

    session = _Down()
    client = HasuraClient(
        HasuraConfig(base_url="https://h.test", admin_secret="s", attempts=2),
        session=session,
        sleep=lambda _s: None,
    )
    with pytest.raises(HasuraError, match="transport error"):
        client.run_sql("SELECT 1;")
    assert session.calls == 2
