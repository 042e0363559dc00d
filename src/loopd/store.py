"""JSON-file store for project state: plans, issues, docs, logs, notes, spawns, stats.

Layout under ``<data-root>/projects/<slug>/``::

    project.json
    plans/<plan-id>.json
    issues/<n>.json
    docs/<doc-id>.json
    logs/<n>.json
    notes/<n>.json
    spawns/<n>.json
    stats/profile.json
    stats/loop.json

Every write goes to a temp file in the target directory and is moved into
place with ``os.replace``, so a reader sees either the old or the new
record, never a torn one.  New integer ids are claimed with ``os.link``,
which fails if the name already exists; two processes racing for the same
id cannot both win.  Read-modify-write of the stats documents holds an
``fcntl`` lock so concurrent sessions do not lose increments.

Records are plain dicts described by the ``*Row`` TypedDicts below.
Issues and docs with an empty ``plan_id`` are *shared*; the rest are
*plan-scoped*.
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import os
import re
import tempfile
import threading
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypedDict, cast

from loopd import paths
from loopd.errors import LoopdError

log = logging.getLogger(__name__)

VALID_PLAN_STATUSES = {"active", "frozen", "done", "cancelled"}
VALID_PHASE_STATUSES = {"not_started", "in_progress", "complete", "blocked"}
VALID_ISSUE_STATUSES = {"open", "in_progress", "resolved", "wontfix"}
OPEN_ISSUE_STATUSES = {"open", "in_progress"}
VALID_ISSUE_PRIORITIES = {"critical", "high", "medium", "low"}
VALID_SPAWN_STATUSES = {"queued", "running", "completed", "failed", "merged", "rejected"}
SPAWN_TERMINAL_STATUSES = {"completed", "failed", "merged", "rejected"}

_MAX_ID_ATTEMPTS = 64


def _utcnow() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def slugify(text: str, max_len: int = 40) -> str:
    """Turn a project name into a directory-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_len].rstrip("-") or "project"


# -- Row types ----------------------------------------------------------------


class ProjectRow(TypedDict):
    name: str
    slug: str
    repo_path: str
    active_plan_id: str
    created: str


class PhaseRow(TypedDict):
    id: str
    title: str
    description: str
    status: str
    priority: int
    depends_on: list[str]


class PlanRow(TypedDict):
    id: str
    title: str
    description: str
    status: str
    phases: list[PhaseRow]
    created: str
    updated: str


class IssueRow(TypedDict):
    id: int
    plan_id: str
    title: str
    description: str
    status: str
    priority: str
    labels: list[str]
    session_id: int
    created: str
    updated: str


class DocRow(TypedDict):
    id: str
    plan_id: str
    title: str
    content: str
    created: str
    updated: str


class SessionLogRow(TypedDict):
    id: int
    session_id: int
    profile: str
    plan_id: str
    objective: str
    what_was_built: str
    key_decisions: str
    challenges: str
    current_state: str
    known_issues: str
    next_steps: str
    build_state: str
    created: str


class NoteRow(TypedDict):
    id: int
    session_id: int
    author: str
    note: str
    created: str


class SpawnRow(TypedDict):
    id: int
    parent_session_id: int
    child_session_id: int
    child_index: int
    parent_profile: str
    child_profile: str
    role: str
    task: str
    read_only: bool
    branch: str
    worktree_path: str
    status: str
    result: str
    exit_code: int
    merge_commit: str
    created: str
    updated: str


class StatsRow(TypedDict):
    total_runs: int
    total_cycles: int
    success_count: int
    failure_count: int
    total_cost_usd: float
    last_run_at: str
    tool_calls: dict[str, int]


SESSION_LOG_FIELDS = (
    "objective",
    "what_was_built",
    "key_decisions",
    "challenges",
    "current_state",
    "known_issues",
    "next_steps",
    "build_state",
)


def empty_stats() -> StatsRow:
    return {
        "total_runs": 0,
        "total_cycles": 0,
        "success_count": 0,
        "failure_count": 0,
        "total_cost_usd": 0.0,
        "last_run_at": "",
        "tool_calls": {},
    }


# -- File primitives ----------------------------------------------------------------


def write_json_atomic(path: Path, data: Any) -> None:
    """Write *data* as JSON via temp file + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def _create_json_exclusive(path: Path, data: Any) -> bool:
    """Create *path* with full contents, failing if it exists. Returns False on collision."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
        try:
            os.link(tmp, path)
        except FileExistsError:
            return False
        return True
    finally:
        Path(tmp).unlink(missing_ok=True)


def read_json(path: Path) -> Any | None:
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (json.JSONDecodeError, UnicodeDecodeError):
        log.warning("Skipping unreadable record %s", path)
        return None


@contextlib.contextmanager
def file_lock(path: Path) -> Iterator[None]:
    """Exclusive advisory lock on *path* (created if missing)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a+") as fh:
        fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)


def _int_ids(directory: Path) -> list[int]:
    if not directory.is_dir():
        return []
    ids = []
    for entry in directory.iterdir():
        if entry.suffix == ".json" and entry.stem.isdigit():
            ids.append(int(entry.stem))
    return sorted(ids)


# -- Store --------------------------------------------------------------------------


class Store:
    """State store for one project."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self._lock = threading.RLock()

    # -- Generic helpers --

    def _dir(self, name: str) -> Path:
        return self.root / name

    def _insert_with_next_id(self, kind: str, build: Any) -> dict:
        directory = self._dir(kind)
        for _ in range(_MAX_ID_ATTEMPTS):
            ids = _int_ids(directory)
            next_id = (ids[-1] + 1) if ids else 1
            row = build(next_id)
            if _create_json_exclusive(directory / f"{next_id}.json", row):
                return row
        raise LoopdError(f"could not allocate a new {kind} id", kind="store_conflict")

    def _list_int_rows(self, kind: str) -> list[dict]:
        directory = self._dir(kind)
        rows = []
        for rid in _int_ids(directory):
            row = read_json(directory / f"{rid}.json")
            if isinstance(row, dict):
                rows.append(row)
        return rows

    # -- Project --

    def load_project(self) -> ProjectRow:
        row = read_json(self.root / "project.json")
        if not isinstance(row, dict):
            raise LoopdError(f"no project at {self.root}", kind="config_invalid")
        return cast(ProjectRow, row)

    def save_project(self, project: ProjectRow) -> None:
        with self._lock:
            write_json_atomic(self.root / "project.json", project)

    # -- Plans --

    def create_plan(self, plan_id: str, title: str, description: str = "") -> PlanRow:
        plan_id = plan_id.strip()
        if not plan_id or not re.fullmatch(r"[A-Za-z0-9][A-Za-z0-9._-]*", plan_id):
            raise LoopdError(f"invalid plan id '{plan_id}'", kind="config_invalid")
        if any(p["id"].lower() == plan_id.lower() for p in self.list_plans()):
            raise LoopdError(f"plan '{plan_id}' already exists", kind="store_conflict")
        now = _utcnow()
        plan: PlanRow = {
            "id": plan_id,
            "title": title,
            "description": description,
            "status": "active",
            "phases": [],
            "created": now,
            "updated": now,
        }
        if not _create_json_exclusive(self._dir("plans") / f"{plan_id}.json", plan):
            raise LoopdError(f"plan '{plan_id}' already exists", kind="store_conflict")
        return plan

    def get_plan(self, plan_id: str) -> PlanRow | None:
        if not plan_id:
            return None
        row = read_json(self._dir("plans") / f"{plan_id}.json")
        if row is None:
            key = plan_id.lower()
            return next((p for p in self.list_plans() if p["id"].lower() == key), None)
        return cast(PlanRow, row)

    def _require_plan(self, plan_id: str) -> PlanRow:
        plan = self.get_plan(plan_id)
        if plan is None:
            raise LoopdError(f"plan '{plan_id}' not found", kind="config_invalid")
        return plan

    def list_plans(self) -> list[PlanRow]:
        directory = self._dir("plans")
        if not directory.is_dir():
            return []
        plans = []
        for entry in sorted(directory.glob("*.json")):
            row = read_json(entry)
            if isinstance(row, dict):
                plans.append(cast(PlanRow, row))
        return plans

    def update_plan(self, plan: PlanRow) -> PlanRow:
        with self._lock:
            plan["updated"] = _utcnow()
            write_json_atomic(self._dir("plans") / f"{plan['id']}.json", plan)
        return plan

    def add_phase(
        self,
        plan_id: str,
        phase_id: str,
        title: str,
        *,
        description: str = "",
        priority: int = 0,
        depends_on: list[str] | None = None,
    ) -> PlanRow:
        with self._lock:
            plan = self._require_plan(plan_id)
            if any(ph["id"] == phase_id for ph in plan["phases"]):
                raise LoopdError(f"phase '{phase_id}' already exists", kind="store_conflict")
            plan["phases"].append(
                {
                    "id": phase_id,
                    "title": title,
                    "description": description,
                    "status": "not_started",
                    "priority": priority,
                    "depends_on": list(depends_on or []),
                }
            )
            return self.update_plan(plan)

    def set_phase_status(self, plan_id: str, phase_id: str, status: str) -> PlanRow:
        if status not in VALID_PHASE_STATUSES:
            raise LoopdError(f"invalid phase status '{status}'", kind="config_invalid")
        with self._lock:
            plan = self._require_plan(plan_id)
            for phase in plan["phases"]:
                if phase["id"] == phase_id:
                    phase["status"] = status
                    return self.update_plan(plan)
        raise LoopdError(f"phase '{phase_id}' not found in plan '{plan_id}'", kind="config_invalid")

    def set_plan_status(self, plan_id: str, status: str) -> PlanRow:
        """Change plan status, rebinding or closing its open issues as needed.

        ``done`` moves open issues to the shared pool; ``cancelled`` marks
        open and in-progress issues ``wontfix``.  A plan that stops being
        active is cleared as the project's active plan.
        """
        if status not in VALID_PLAN_STATUSES:
            raise LoopdError(f"invalid plan status '{status}'", kind="config_invalid")
        with self._lock:
            plan = self._require_plan(plan_id)
            plan["status"] = status
            self.update_plan(plan)
            if status in ("done", "cancelled"):
                for issue in self.list_issues(plan_id=plan["id"], include_shared=False):
                    if issue["status"] not in OPEN_ISSUE_STATUSES:
                        continue
                    if status == "done":
                        issue["plan_id"] = ""
                    else:
                        issue["status"] = "wontfix"
                    self._save_issue(issue)
            if status != "active":
                project = self.load_project()
                if project.get("active_plan_id") == plan["id"]:
                    project["active_plan_id"] = ""
                    self.save_project(project)
        return plan

    def active_plan(self) -> PlanRow | None:
        project = self.load_project()
        plan = self.get_plan(project.get("active_plan_id", ""))
        if plan is None or plan["status"] != "active":
            return None
        return plan

    def set_active_plan(self, plan_id: str) -> PlanRow:
        with self._lock:
            plan = self._require_plan(plan_id)
            if plan["status"] != "active":
                raise LoopdError(
                    f"plan '{plan['id']}' is {plan['status']}; only active plans can be selected",
                    kind="config_invalid",
                )
            project = self.load_project()
            project["active_plan_id"] = plan["id"]
            self.save_project(project)
        return plan

    # -- Issues --

    def create_issue(
        self,
        title: str,
        *,
        description: str = "",
        priority: str = "medium",
        labels: list[str] | None = None,
        plan_id: str = "",
        session_id: int = 0,
    ) -> IssueRow:
        if priority not in VALID_ISSUE_PRIORITIES:
            raise LoopdError(f"invalid issue priority '{priority}'", kind="config_invalid")
        if plan_id:
            plan_id = self._require_plan(plan_id)["id"]
        now = _utcnow()

        def build(issue_id: int) -> IssueRow:
            return {
                "id": issue_id,
                "plan_id": plan_id,
                "title": title,
                "description": description,
                "status": "open",
                "priority": priority,
                "labels": list(labels or []),
                "session_id": session_id,
                "created": now,
                "updated": now,
            }

        with self._lock:
            return cast(IssueRow, self._insert_with_next_id("issues", build))

    def get_issue(self, issue_id: int) -> IssueRow | None:
        return cast(IssueRow | None, read_json(self._dir("issues") / f"{issue_id}.json"))

    def list_issues(
        self,
        *,
        plan_id: str | None = None,
        include_shared: bool = True,
        status: set[str] | None = None,
    ) -> list[IssueRow]:
        """List issues; ``plan_id`` scopes to one plan (plus shared issues unless excluded)."""
        issues = []
        for row in self._list_int_rows("issues"):
            issue = cast(IssueRow, row)
            if plan_id is not None:
                scoped = issue.get("plan_id", "") == plan_id
                shared = include_shared and not issue.get("plan_id")
                if not (scoped or shared):
                    continue
            if status and issue["status"] not in status:
                continue
            issues.append(issue)
        return issues

    def _save_issue(self, issue: IssueRow) -> None:
        issue["updated"] = _utcnow()
        write_json_atomic(self._dir("issues") / f"{issue['id']}.json", issue)

    def update_issue(self, issue_id: int, **changes: Any) -> IssueRow:
        with self._lock:
            issue = self.get_issue(issue_id)
            if issue is None:
                raise LoopdError(f"issue #{issue_id} not found", kind="config_invalid")
            if "status" in changes and changes["status"] not in VALID_ISSUE_STATUSES:
                raise LoopdError(f"invalid issue status '{changes['status']}'", kind="config_invalid")
            if "priority" in changes and changes["priority"] not in VALID_ISSUE_PRIORITIES:
                raise LoopdError(
                    f"invalid issue priority '{changes['priority']}'", kind="config_invalid"
                )
            for key in ("title", "description", "status", "priority", "labels", "plan_id"):
                if changes.get(key) is not None:
                    issue[key] = changes[key]  # type: ignore[literal-required]
            self._save_issue(issue)
            return issue

    # -- Docs --

    def save_doc(self, doc_id: str, title: str, content: str, *, plan_id: str = "") -> DocRow:
        path = self._dir("docs") / f"{slugify(doc_id, 80)}.json"
        with self._lock:
            existing = read_json(path)
            now = _utcnow()
            doc: DocRow = {
                "id": slugify(doc_id, 80),
                "plan_id": plan_id,
                "title": title,
                "content": content,
                "created": existing.get("created", now) if isinstance(existing, dict) else now,
                "updated": now,
            }
            write_json_atomic(path, doc)
        return doc

    def get_doc(self, doc_id: str) -> DocRow | None:
        return cast(DocRow | None, read_json(self._dir("docs") / f"{slugify(doc_id, 80)}.json"))

    def list_docs(self, *, plan_id: str | None = None) -> list[DocRow]:
        directory = self._dir("docs")
        if not directory.is_dir():
            return []
        docs = []
        for entry in sorted(directory.glob("*.json")):
            row = read_json(entry)
            if not isinstance(row, dict):
                continue
            if plan_id is not None and row.get("plan_id") not in ("", plan_id):
                continue
            docs.append(cast(DocRow, row))
        return docs

    # -- Session logs --

    def create_log(self, *, session_id: int = 0, profile: str = "", plan_id: str = "", **fields: str) -> SessionLogRow:
        unknown = set(fields) - set(SESSION_LOG_FIELDS)
        if unknown:
            raise LoopdError(f"unknown log fields: {', '.join(sorted(unknown))}", kind="config_invalid")
        now = _utcnow()

        def build(log_id: int) -> SessionLogRow:
            row: dict[str, Any] = {
                "id": log_id,
                "session_id": session_id,
                "profile": profile,
                "plan_id": plan_id,
                "created": now,
            }
            for name in SESSION_LOG_FIELDS:
                row[name] = fields.get(name, "")
            return cast(SessionLogRow, row)

        with self._lock:
            return cast(SessionLogRow, self._insert_with_next_id("logs", build))

    def get_log(self, log_id: int) -> SessionLogRow | None:
        return cast(SessionLogRow | None, read_json(self._dir("logs") / f"{log_id}.json"))

    def list_logs(self) -> list[SessionLogRow]:
        return cast(list[SessionLogRow], self._list_int_rows("logs"))

    def latest_log(self) -> SessionLogRow | None:
        logs = self.list_logs()
        return logs[-1] if logs else None

    # -- Supervisor notes --

    def add_note(self, session_id: int, note: str, *, author: str = "supervisor") -> NoteRow:
        now = _utcnow()

        def build(note_id: int) -> NoteRow:
            return {"id": note_id, "session_id": session_id, "author": author, "note": note, "created": now}

        with self._lock:
            return cast(NoteRow, self._insert_with_next_id("notes", build))

    def list_notes(self, session_id: int | None = None) -> list[NoteRow]:
        notes = cast(list[NoteRow], self._list_int_rows("notes"))
        if session_id is None:
            return notes
        return [n for n in notes if n["session_id"] == session_id]

    # -- Spawn records --

    def create_spawn(self, **fields: Any) -> SpawnRow:
        now = _utcnow()

        def build(spawn_id: int) -> SpawnRow:
            row: dict[str, Any] = {
                "id": spawn_id,
                "parent_session_id": 0,
                "child_session_id": 0,
                "child_index": 0,
                "parent_profile": "",
                "child_profile": "",
                "role": "",
                "task": "",
                "read_only": False,
                "branch": "",
                "worktree_path": "",
                "status": "queued",
                "result": "",
                "exit_code": 0,
                "merge_commit": "",
                "created": now,
                "updated": now,
            }
            row.update(fields)
            return cast(SpawnRow, row)

        with self._lock:
            return cast(SpawnRow, self._insert_with_next_id("spawns", build))

    def get_spawn(self, spawn_id: int) -> SpawnRow | None:
        return cast(SpawnRow | None, read_json(self._dir("spawns") / f"{spawn_id}.json"))

    def update_spawn(self, spawn_id: int, **changes: Any) -> SpawnRow:
        with self._lock:
            row = self.get_spawn(spawn_id)
            if row is None:
                raise LoopdError(f"spawn #{spawn_id} not found", kind="config_invalid")
            if "status" in changes and changes["status"] not in VALID_SPAWN_STATUSES:
                raise LoopdError(f"invalid spawn status '{changes['status']}'", kind="internal")
            row.update(changes)  # type: ignore[typeddict-item]
            row["updated"] = _utcnow()
            write_json_atomic(self._dir("spawns") / f"{spawn_id}.json", row)
            return row

    def list_spawns(self, parent_session_id: int | None = None) -> list[SpawnRow]:
        rows = cast(list[SpawnRow], self._list_int_rows("spawns"))
        if parent_session_id is None:
            return rows
        return [r for r in rows if r["parent_session_id"] == parent_session_id]

    # -- Statistics --

    def _stats_path(self, kind: str) -> Path:
        return self._dir("stats") / f"{kind}.json"

    def load_stats(self, kind: str) -> dict[str, StatsRow]:
        data = read_json(self._stats_path(kind))
        return cast(dict[str, StatsRow], data) if isinstance(data, dict) else {}

    def reset_stats(self) -> None:
        """Drop all accumulated counters (before rebuilding them from recordings)."""
        for kind in ("profile", "loop"):
            path = self._stats_path(kind)
            with self._lock, file_lock(path.with_suffix(".lock")):
                path.unlink(missing_ok=True)

    def record_stats(
        self,
        kind: str,
        name: str,
        *,
        runs: int = 0,
        cycles: int = 0,
        success: bool | None = None,
        cost_usd: float = 0.0,
        tool_calls: dict[str, int] | None = None,
    ) -> StatsRow:
        """Accumulate counters for a profile (``kind="profile"``) or loop (``kind="loop"``)."""
        if kind not in ("profile", "loop"):
            raise ValueError(f"unknown stats kind: {kind}")
        path = self._stats_path(kind)
        with self._lock, file_lock(path.with_suffix(".lock")):
            data = self.load_stats(kind)
            row = data.get(name) or empty_stats()
            row["total_runs"] += runs
            row["total_cycles"] += cycles
            if success is True:
                row["success_count"] += 1
            elif success is False:
                row["failure_count"] += 1
            row["total_cost_usd"] = round(row["total_cost_usd"] + cost_usd, 6)
            for tool, count in (tool_calls or {}).items():
                row["tool_calls"][tool] = row["tool_calls"].get(tool, 0) + count
            row["last_run_at"] = _utcnow()
            data[name] = row
            write_json_atomic(path, data)
            return row


# -- Project discovery -------------------------------------------------------------------


def init_project(name: str, repo_path: str | Path) -> Store:
    """Register a project (idempotent for the same repo path)."""
    repo = str(Path(repo_path).resolve())
    slug = slugify(name)
    root = paths.project_dir(slug)
    store = Store(root)
    existing = read_json(root / "project.json")
    if isinstance(existing, dict):
        if existing.get("repo_path") != repo:
            raise LoopdError(
                f"project '{name}' is already registered for {existing.get('repo_path')}",
                kind="config_invalid",
            )
        return store
    store.save_project(
        {"name": name, "slug": slug, "repo_path": repo, "active_plan_id": "", "created": _utcnow()}
    )
    log.info("Registered project %s at %s", name, repo)
    return store


def list_projects() -> list[ProjectRow]:
    root = paths.projects_dir()
    if not root.is_dir():
        return []
    rows = []
    for entry in sorted(root.iterdir()):
        row = read_json(entry / "project.json")
        if isinstance(row, dict):
            rows.append(cast(ProjectRow, row))
    return rows


def open_project(name: str) -> Store:
    key = name.lower()
    for row in list_projects():
        if row["name"].lower() == key or row["slug"] == key:
            return Store(paths.project_dir(row["slug"]))
    raise LoopdError(f"project '{name}' is not registered (run `loopd init`)", kind="config_invalid")


def find_project_for_path(path: str | Path) -> Store | None:
    """Return the project whose repo contains *path* (deepest match wins)."""
    target = Path(path).resolve()
    best: ProjectRow | None = None
    for row in list_projects():
        repo = Path(row["repo_path"])
        if (target == repo or repo in target.parents) and (
            best is None or len(row["repo_path"]) > len(best["repo_path"])
        ):
            best = row
    return Store(paths.project_dir(best["slug"])) if best else None


def resolve_project(cwd: str | Path | None = None) -> Store:
    """Resolve the current project from ``LOOPD_PROJECT`` or the working directory."""
    env_name = os.environ.get("LOOPD_PROJECT")
    if env_name:
        return open_project(env_name)
    store = find_project_for_path(cwd or Path.cwd())
    if store is None:
        raise LoopdError(
            "no loopd project contains this directory (run `loopd init`)", kind="config_invalid"
        )
    return store
