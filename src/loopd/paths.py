"""Canonical filesystem paths for loopd configuration and state.

Everything lives under one data root::

    <root>/profiles.yaml
    <root>/projects/<slug>/...
    <root>/records/<session-id>/events.log
    <root>/sessions/<session-id>.json|.sock|.pid

The root is ``$LOOPD_HOME`` when set, else ``$XDG_DATA_HOME/loopd``, else
``~/.local/share/loopd``.  Helpers re-read the environment on every call.
"""

from __future__ import annotations

import os
from pathlib import Path

HOME_ENV = "LOOPD_HOME"


def data_root() -> Path:
    env_home = os.environ.get(HOME_ENV)
    if env_home:
        return Path(env_home).expanduser()
    xdg = os.environ.get("XDG_DATA_HOME")
    base = Path(xdg).expanduser() if xdg else Path.home() / ".local" / "share"
    return base / "loopd"


def config_path() -> Path:
    return data_root() / "profiles.yaml"


def projects_dir() -> Path:
    return data_root() / "projects"


def project_dir(slug: str) -> Path:
    return projects_dir() / slug


def records_dir() -> Path:
    return data_root() / "records"


def record_dir(session_id: int) -> Path:
    return records_dir() / str(session_id)


def sessions_dir() -> Path:
    return data_root() / "sessions"


def session_meta_path(session_id: int) -> Path:
    return sessions_dir() / f"{session_id}.json"


def session_socket_path(session_id: int) -> Path:
    return sessions_dir() / f"{session_id}.sock"


def session_pid_path(session_id: int) -> Path:
    # Same convention as the socket: PID file sits beside it.
    return session_socket_path(session_id).with_suffix(".pid")


def session_launch_path(session_id: int) -> Path:
    return sessions_dir() / f"{session_id}.launch.json"


def daemon_log_path(session_id: int) -> Path:
    return record_dir(session_id) / "daemon.log"
