from __future__ import annotations

USER_FACING_UNAVAILABLE_MESSAGE = (
    "Sandbox is currently unavailable. Recovery is in progress. "
    "Please retry in a few seconds."
)

# Lower-cased substrings that mark a sandbox which exists but cannot be reached
# right now. A provider "start" followed by a retry usually fixes these.
_UNREACHABLE_MARKERS = (
    "no ip address found",
    "no ip address",
    "sandbox is not running",
    "not running",
    "connection refused",
    "connection closed",
    "error: closed",
)

_NOT_FOUND_MARKERS = (
    "not found",
    "does not exist",
    "no such sandbox",
    "has been terminated",
    "sandbox has exited",
)

_TIMEOUT_MARKERS = (
    "timed out",
    "timeout",
    "deadline exceeded",
)


class SandboxError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        sandbox_id: str | None = None,
        operation: str | None = None,
    ) -> None:
        super().__init__(message)
        self.sandbox_id = sandbox_id
        self.operation = operation

    def __str__(self) -> str:
        base = super().__str__()
        ctx = []
        if self.operation:
            ctx.append(f"op={self.operation}")
        if self.sandbox_id:
            ctx.append(f"sandbox={self.sandbox_id}")
        if not ctx:
            return base
        return f"{base} ({', '.join(ctx)})"


class SandboxNotFoundError(SandboxError):
    """The provider no longer knows this sandbox (expired, terminated, deleted)."""


class ProviderTimeoutError(SandboxError):
    pass


class ProviderRejectedError(SandboxError):
    pass


class WorkspaceMissingError(ProviderRejectedError):
    """The sandbox answers but its workspace directory is gone."""


class SandboxUnreachableError(SandboxError):
    """The sandbox exists but is stopped or has no network address yet."""


class SandboxConfigError(SandboxError):
    pass


class SandboxRecoveryError(SandboxError):
    pass


class SandboxUnavailableError(SandboxError):
    def __init__(
        self, *, sandbox_id: str | None = None, operation: str | None = None
    ) -> None:
        super().__init__(
            USER_FACING_UNAVAILABLE_MESSAGE, sandbox_id=sandbox_id, operation=operation
        )

    def __str__(self) -> str:
        # Shown to end users as-is.
        return USER_FACING_UNAVAILABLE_MESSAGE


def _has_marker(message: str, markers: tuple[str, ...]) -> bool:
    m = (message or "").lower()
    return any(marker in m for marker in markers)


def is_unreachable_message(message: str) -> bool:
    return _has_marker(message, _UNREACHABLE_MARKERS)


def is_not_found_message(message: str) -> bool:
    return _has_marker(message, _NOT_FOUND_MARKERS)


def classify_provider_error(
    exc: BaseException,
    *,
    sandbox_id: str | None = None,
    operation: str | None = None,
) -> SandboxError:
    """Map a raw SDK/transport exception onto the sandbox error taxonomy.

    Already-classified errors are returned unchanged. Order matters: an
    "unreachable" message wins over "timeout" because "connection closed" style
    failures are retried through a provider start, not surfaced as a timeout.
    """
    if isinstance(exc, SandboxError):
        return exc

    message = str(exc) or exc.__class__.__name__
    if isinstance(exc, TimeoutError):
        return ProviderTimeoutError(message, sandbox_id=sandbox_id, operation=operation)
    if is_unreachable_message(message):
        return SandboxUnreachableError(
            message, sandbox_id=sandbox_id, operation=operation
        )
    if is_not_found_message(message):
        return SandboxNotFoundError(message, sandbox_id=sandbox_id, operation=operation)
    if _has_marker(message, _TIMEOUT_MARKERS):
        return ProviderTimeoutError(message, sandbox_id=sandbox_id, operation=operation)
    return ProviderRejectedError(message, sandbox_id=sandbox_id, operation=operation)


def is_recoverable_error(exc: BaseException) -> bool:
    """True for errors where starting the sandbox and retrying once is worthwhile."""
    if isinstance(exc, SandboxUnreachableError):
        return True
    if isinstance(exc, SandboxError):
        return False
    return is_unreachable_message(str(exc))
