from __future__ import annotations

import shlex
from collections.abc import Iterable

from src.sandbox_backends import config
from src.sandbox_backends.base import ProviderAdapter, SandboxHandle
from src.sandbox_backends.errors import ProviderRejectedError
from src.sandbox_files.policy import LISTING_EXCLUDE_DIRS, is_listed_hidden_entry


async def read_bytes(adapter: ProviderAdapter, handle: SandboxHandle, path: str) -> bytes:
    fh = await adapter.open_file(handle, path, "rb")
    try:
        return await fh.read()
    finally:
        await fh.close()


async def read_text(adapter: ProviderAdapter, handle: SandboxHandle, path: str) -> str:
    data = await read_bytes(adapter, handle, path)
    return data.decode("utf-8", errors="replace")


async def write_bytes(
    adapter: ProviderAdapter, handle: SandboxHandle, path: str, data: bytes
) -> None:
    fh = await adapter.open_file(handle, path, "wb")
    try:
        await fh.write(data)
    finally:
        await fh.close()


async def mkdirs(
    adapter: ProviderAdapter, handle: SandboxHandle, dirs: Iterable[str]
) -> int:
    """Create all directories with a single `mkdir -p` round-trip."""
    unique = sorted({d for d in dirs if d})
    if not unique:
        return 0
    cmd = "mkdir -p -- " + " ".join(shlex.quote(d) for d in unique)
    res = await adapter.exec(
        handle, ["sh", "-c", cmd], timeout_s=config.exec_timeout_s()
    )
    if not res.ok:
        raise ProviderRejectedError(
            f"mkdir failed: {res.output.strip()}",
            sandbox_id=handle.sandbox_id,
            operation="mkdir",
        )
    return len(unique)


async def path_exists(adapter: ProviderAdapter, handle: SandboxHandle, path: str) -> bool:
    res = await adapter.exec(
        handle, ["test", "-f", path], timeout_s=config.exec_timeout_s()
    )
    return res.ok


def _find_command(root: str) -> str:
    prune = " -o ".join(f"-name {shlex.quote(d)}" for d in LISTING_EXCLUDE_DIRS)
    return (
        f"cd {shlex.quote(root)} && "
        f"find . \\( {prune} \\) -prune -o -type f -print"
    )


async def list_project_files(
    adapter: ProviderAdapter, handle: SandboxHandle, *, root: str | None = None
) -> list[str]:
    """Return repo-relative paths of all project files (build output and deps excluded)."""
    base = root or config.sandbox_workdir()
    res = await adapter.exec(
        handle, ["sh", "-c", _find_command(base)], timeout_s=config.exec_timeout_s()
    )
    if not res.ok:
        raise ProviderRejectedError(
            f"listing files failed: {res.output.strip()}",
            sandbox_id=handle.sandbox_id,
            operation="list_project_files",
        )
    out: list[str] = []
    for line in res.stdout.splitlines():
        p = line.strip()
        if p.startswith("./"):
            p = p[2:]
        if not p:
            continue
        top = p.split("/", 1)[0]
        if not is_listed_hidden_entry(top):
            continue
        out.append(p)
    return sorted(out)
