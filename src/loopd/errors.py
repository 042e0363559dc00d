"""Error taxonomy shared by the daemon, the engine and the CLI.

Every failure that crosses a component boundary is a :class:`LoopdError`
with a stable ``kind``.  The CLI maps kinds to exit codes; the daemon
echoes them in ``ACK`` frames so a remote caller can re-raise the same
error on its side.
"""

from __future__ import annotations

VALID_ERROR_KINDS = {
    "config_invalid",
    "profile_not_found",
    "loop_not_found",
    "role_not_found",
    "agent_launch_failed",
    "recording_corrupted",
    "socket_unavailable",
    "session_not_found",
    "no_parent_session",
    "spawn_denied",
    "spawn_queue_timeout",
    "turn_timeout",
    "fatal_agent_failures",
    "store_conflict",
    "worktree_busy",
    "merge_failed",
    "permission_denied",
    "push_delivery_failed",
    "cancelled",
    "internal",
}

USER_ERROR_KINDS = {
    "config_invalid",
    "profile_not_found",
    "loop_not_found",
    "role_not_found",
    "session_not_found",
    "no_parent_session",
    "spawn_denied",
    "spawn_queue_timeout",
    "worktree_busy",
    "store_conflict",
    "merge_failed",
    "permission_denied",
}

EXIT_OK = 0
EXIT_USER_ERROR = 1
EXIT_SYSTEM_ERROR = 2
EXIT_CANCELLED = 130


def exit_code_for(kind: str) -> int:
    if kind == "cancelled":
        return EXIT_CANCELLED
    if kind in USER_ERROR_KINDS:
        return EXIT_USER_ERROR
    return EXIT_SYSTEM_ERROR


class LoopdError(RuntimeError):
    """Base error carrying a taxonomy kind."""

    default_kind = "internal"

    def __init__(self, message: str, *, kind: str | None = None) -> None:
        super().__init__(message)
        resolved = kind or self.default_kind
        self.kind = resolved if resolved in VALID_ERROR_KINDS else "internal"

    @property
    def exit_code(self) -> int:
        return exit_code_for(self.kind)

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "error": str(self)}


class ConfigInvalid(LoopdError):
    default_kind = "config_invalid"


class RecordingCorrupted(LoopdError):
    default_kind = "recording_corrupted"


class AgentLaunchFailed(LoopdError):
    default_kind = "agent_launch_failed"


class SessionNotFound(LoopdError):
    default_kind = "session_not_found"


class NoParentSession(LoopdError):
    default_kind = "no_parent_session"


class SpawnDenied(LoopdError):
    default_kind = "spawn_denied"


class SpawnQueueTimeout(LoopdError):
    default_kind = "spawn_queue_timeout"


class WorktreeBusy(LoopdError):
    default_kind = "worktree_busy"


class PushDeliveryFailed(LoopdError):
    default_kind = "push_delivery_failed"


class Cancelled(LoopdError):
    default_kind = "cancelled"


def from_ack(frame: dict) -> LoopdError:
    """Rebuild an error from a failed ``ACK`` frame."""
    kind = frame.get("kind") or "internal"
    message = frame.get("err") or f"{frame.get('verb', 'control')} failed"
    for cls in (
        ConfigInvalid,
        SessionNotFound,
        NoParentSession,
        SpawnDenied,
        SpawnQueueTimeout,
        WorktreeBusy,
        Cancelled,
    ):
        if cls.default_kind == kind:
            return cls(message)
    return LoopdError(message, kind=kind)
