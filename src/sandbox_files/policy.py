from __future__ import annotations

import posixpath
from dataclasses import dataclass

# Never restored from a fragment: dependency trees and VCS internals are
# rebuilt in the sandbox, and writing into them corrupts it.
DENY_RESTORE_PREFIXES = ("node_modules/", ".git/")

# Pruned from recursive listings of the workspace.
LISTING_EXCLUDE_DIRS = (
    "node_modules",
    ".git",
    "dist",
    "build",
    ".next",
    ".turbo",
    "coverage",
    ".cache",
    "tmp",
)


@dataclass(frozen=True)
class Policy:
    deny_restore_prefixes: tuple[str, ...]


DEFAULT_POLICY = Policy(deny_restore_prefixes=DENY_RESTORE_PREFIXES)


def normalize_repo_path(path: str) -> str:
    """Normalize a repo-relative fragment path like 'src/App.tsx'.

    Leading slashes and "./" are stripped. Absolute traversal out of the
    workspace is rejected.
    """
    raw = (path or "").strip()
    if not raw:
        raise ValueError("empty path")
    if "\x00" in raw:
        raise ValueError("invalid path")

    raw = raw.lstrip("/")
    segments = raw.split("/")
    if ".." in segments:
        raise ValueError("path traversal not allowed")

    norm = posixpath.normpath(raw)
    if norm in (".", ""):
        raise ValueError("invalid path")
    return norm


def is_denied_path(path: str, *, policy: Policy = DEFAULT_POLICY) -> bool:
    normalized = path.rstrip("/") + "/"
    return any(normalized.startswith(p) for p in policy.deny_restore_prefixes)


def require_restore_allowed(path: str, *, policy: Policy = DEFAULT_POLICY) -> str:
    p = normalize_repo_path(path)
    if is_denied_path(p, policy=policy):
        raise PermissionError(f"restore not allowed for '{p}'")
    return p


def workspace_path(root: str, rel: str) -> str:
    return posixpath.join(root.rstrip("/") or "/", rel)


def is_listed_hidden_entry(name: str) -> bool:
    """Hidden entries at the workspace root are skipped, except env files."""
    if not name.startswith("."):
        return True
    return name.startswith(".env")
