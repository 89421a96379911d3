from __future__ import annotations

import asyncio

from fake_provider import FakeAdapter

from src.lifecycle.health import check_project_health, missing_critical_files
from src.projects.store import Fragment, InMemoryProjectStore, Project
from src.sandbox_backends.base import ExecResult

HEALTHY = {
    "/workspace/package.json": b"{}",
    "/workspace/vite.config.ts": b"",
    "/workspace/src/main.tsx": b"",
    "/workspace/tsconfig.json": b"{}",
}


def test_missing_critical_files_requires_ts_config_only_for_ts_sources() -> None:
    js = ["package.json", "vite.config.js", "src/main.jsx"]
    assert missing_critical_files(js) == []
    ts = ["package.json", "vite.config.ts", "src/App.tsx"]
    assert missing_critical_files(ts) == ["tsconfig/jsconfig"]
    assert missing_critical_files([]) == ["package.json", "vite.config", "app entry"]


def test_vite_config_ts_alone_does_not_require_tsconfig() -> None:
    assert missing_critical_files(["package.json", "vite.config.ts", "index.js"]) == []


def _store(**project_kw) -> InMemoryProjectStore:
    store = InMemoryProjectStore()
    store.put_project(Project(project_id="p1", **project_kw))
    return store


def test_new_project_is_not_broken() -> None:
    report = asyncio.run(check_project_health(FakeAdapter(), _store(), "p1"))
    assert not report.broken
    assert report.reason == "new-project-no-generation-yet"


def test_missing_sandbox_with_fragments_is_broken() -> None:
    store = _store()
    store.put_fragment(Fragment(fragment_id="f1", project_id="p1", title="v1"))
    report = asyncio.run(check_project_health(FakeAdapter(), store, "p1"))
    assert report.broken and report.reason == "missing-sandbox"


def test_sandbox_not_found() -> None:
    store = _store(sandbox_provider="modal", sandbox_id="sb-gone")
    report = asyncio.run(check_project_health(FakeAdapter(), store, "p1"))
    assert report.broken and report.reason == "sandbox-not-found"


def test_listing_failure() -> None:
    adapter = FakeAdapter()
    adapter.seed_sandbox("sb-1", HEALTHY)
    adapter.exec_rules.append(("find .", ExecResult("", "boom", 2)))
    store = _store(sandbox_provider="modal", sandbox_id="sb-1")
    report = asyncio.run(check_project_health(adapter, store, "p1"))
    assert report.broken and report.reason == "list-files-failed"


def test_missing_critical_files_reported() -> None:
    adapter = FakeAdapter()
    adapter.seed_sandbox("sb-1", {"/workspace/package.json": b"{}"})
    store = _store(sandbox_provider="modal", sandbox_id="sb-1")
    report = asyncio.run(check_project_health(adapter, store, "p1"))
    assert report.broken
    assert report.reason == "missing-critical-files"
    assert "vite.config" in report.missing_files


def test_healthy_sandbox() -> None:
    adapter = FakeAdapter()
    adapter.seed_sandbox("sb-1", HEALTHY)
    store = _store(sandbox_provider="modal", sandbox_id="sb-1")
    report = asyncio.run(check_project_health(adapter, store, "p1"))
    assert not report.broken
    assert report.sandbox_id == "sb-1"


def test_stopped_sandbox_is_unreachable() -> None:
    adapter = FakeAdapter()
    adapter.seed_sandbox("sb-1", HEALTHY)
    adapter.stopped.add("sb-1")
    store = _store(sandbox_provider="modal", sandbox_id="sb-1")
    report = asyncio.run(check_project_health(adapter, store, "p1"))
    assert report.broken and report.reason == "sandbox-unreachable"


def test_listing_that_cannot_reach_sandbox_is_unreachable() -> None:
    adapter = FakeAdapter()
    adapter.seed_sandbox("sb-1", HEALTHY)
    adapter.unreachable.add("sb-1")
    store = _store(sandbox_provider="modal", sandbox_id="sb-1")
    report = asyncio.run(check_project_health(adapter, store, "p1"))
    assert report.broken and report.reason == "sandbox-unreachable"
