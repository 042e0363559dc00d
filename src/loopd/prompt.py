"""Per-turn prompt composition.

:func:`compose` is pure: it renders a :class:`PromptContext` into one string.
:func:`gather` builds that context from the config and the project store and
never lets a missing or unreadable input escape; anything it cannot load is
left empty and the prompt falls back to the exploratory stance.

Section order::

    pending inter-step messages (head)
    role identity
    role prompt rules
    objective (project + current phase, or explore)
    Rules block
    Context (last session, open issues, neighbouring phases, supervisor notes)
    loop position and tool permissions, delegation
    AGENTS.md (inline up to 16 KiB, else a path reference)
    step instructions
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from loopd.config import Delegation, DelegationNode, GlobalConfig, Profile, PromptRule, RoleDefinition
from loopd.errors import LoopdError
from loopd.store import OPEN_ISSUE_STATUSES, IssueRow, NoteRow, PlanRow, SessionLogRow, Store

log = logging.getLogger(__name__)

MAX_AGENTS_MD_BYTES = 16 * 1024
EXPLORE_FALLBACK = "Explore the codebase and address open issues."
_MAX_LOG_OBJECTIVE = 500
_MAX_LOG_FIELD = 300


@dataclass
class LoopPosition:
    loop_name: str
    cycle: int
    step_index: int
    total_steps: int
    can_stop: bool = False
    can_message: bool = False
    can_pushover: bool = False


@dataclass
class PromptContext:
    role: RoleDefinition | None = None
    rules: list[PromptRule] = field(default_factory=list)
    profile_name: str = ""
    project_name: str = ""
    plan: PlanRow | None = None
    latest_log: SessionLogRow | None = None
    issues: list[IssueRow] = field(default_factory=list)
    notes: list[NoteRow] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)
    loop: LoopPosition | None = None
    delegation: Delegation | None = None
    profiles: dict[str, Profile] = field(default_factory=dict)
    workdir: str = ""
    instructions: str = ""
    read_only: bool = False
    read_only_rule: PromptRule | None = None


def summarize(text: str, limit: int) -> str:
    """Collapse whitespace and clip to *limit* characters."""
    flat = " ".join(text.split())
    if len(flat) <= limit:
        return flat
    return flat[: max(limit - 3, 0)] + "..."


def current_phase(plan: PlanRow | None) -> tuple[int, dict] | None:
    """First in-progress phase, else first not-started phase."""
    if not plan:
        return None
    phases = plan.get("phases") or []
    for wanted in ("in_progress", "not_started"):
        for idx, phase in enumerate(phases):
            if phase.get("status") == wanted:
                return idx, phase
    return None


def _section_messages(ctx: PromptContext) -> str:
    if not ctx.messages:
        return ""
    lines = ["# Messages from Previous Steps", ""]
    lines += [f"- {m}" for m in ctx.messages]
    return "\n".join(lines) + "\n\n"


def _section_role(ctx: PromptContext) -> str:
    if ctx.role is None:
        return ""
    out = f"# Role: {ctx.role.title or ctx.role.name.upper()}\n\n"
    if ctx.role.identity:
        out += ctx.role.identity.strip() + "\n\n"
    for rule in ctx.rules:
        out += rule.body.strip() + "\n\n"
    if ctx.read_only and ctx.read_only_rule is not None and ctx.read_only_rule not in ctx.rules:
        out += ctx.read_only_rule.body.strip() + "\n\n"
    return out


def _section_objective(ctx: PromptContext) -> str:
    out = "# Objective\n\n"
    if ctx.project_name:
        out += f"Project: {ctx.project_name}\n\n"
    found = current_phase(ctx.plan)
    if found is not None:
        _idx, phase = found
        out += f"Your task is to work on phase **{phase['id']}: {phase.get('title', '')}**.\n\n"
        if phase.get("description"):
            out += phase["description"].strip() + "\n\n"
    elif ctx.plan:
        out += "All planned phases are complete. Look for remaining open issues or improvements.\n\n"
    else:
        out += EXPLORE_FALLBACK + "\n\n"
    return out


def _section_rules() -> str:
    return (
        "# Rules\n\n"
        "- Write code, run tests, and make sure everything builds before you finish.\n"
        "- Focus on one coherent unit of work and stop when it is complete.\n"
        "- Never read or write the loopd data directory (`$LOOPD_HOME`, `.loopd/`) directly. "
        "Use `loopd` commands instead (`loopd status`, `loopd plan`, `loopd issue`, `loopd log`, "
        "`loopd doc`, `loopd note`).\n\n"
    )


def _section_context(ctx: PromptContext) -> str:
    parts: list[str] = []
    latest = ctx.latest_log
    if latest:
        lines = ["## Last Session"]
        if latest.get("objective"):
            lines.append(f"- Objective: {summarize(latest['objective'], _MAX_LOG_OBJECTIVE)}")
        for key, label in (
            ("what_was_built", "Built"),
            ("next_steps", "Next steps"),
            ("known_issues", "Known issues"),
        ):
            if latest.get(key):
                lines.append(f"- {label}: {summarize(latest[key], _MAX_LOG_FIELD)}")
        if len(lines) > 1:
            parts.append("\n".join(lines))

    open_issues = [i for i in ctx.issues if i.get("status") in OPEN_ISSUE_STATUSES]
    if open_issues:
        lines = ["## Open Issues"]
        for issue in open_issues:
            line = f"- #{issue['id']} [{issue.get('priority', 'medium')}] {issue['title']}"
            if issue.get("description"):
                line += f": {summarize(issue['description'], _MAX_LOG_FIELD)}"
            lines.append(line)
        parts.append("\n".join(lines))

    found = current_phase(ctx.plan)
    if found is not None and ctx.plan and len(ctx.plan.get("phases") or []) > 1:
        idx, phase = found
        phases = ctx.plan["phases"]
        lines = ["## Neighboring Phases"]
        if idx > 0:
            prev = phases[idx - 1]
            lines.append(f"- Previous: [{prev['status']}] {prev['id']}: {prev['title']}")
        lines.append(f"- **Current: [{phase['status']}] {phase['id']}: {phase['title']}**")
        if idx < len(phases) - 1:
            nxt = phases[idx + 1]
            lines.append(f"- Next: [{nxt['status']}] {nxt['id']}: {nxt['title']}")
        parts.append("\n".join(lines))

    if ctx.notes:
        lines = ["## Supervisor Notes"]
        for note in ctx.notes:
            lines.append(f"- [{note.get('created', '')}] {note.get('author', 'supervisor')}: {note['note']}")
        parts.append("\n".join(lines))

    if not parts:
        return ""
    return "# Context\n\n" + "\n\n".join(parts) + "\n\n"


def _section_loop(ctx: PromptContext) -> str:
    pos = ctx.loop
    if pos is None:
        return ""
    out = "# Loop Context\n\n"
    out += (
        f'You are running in loop "{pos.loop_name}", cycle {pos.cycle + 1}, '
        f"step {pos.step_index + 1} of {pos.total_steps}"
    )
    if ctx.profile_name:
        out += f' (profile "{ctx.profile_name}")'
    out += ".\n\n"
    if pos.can_stop:
        out += "You can stop this loop once its objectives are met: `loopd loop-stop`\n\n"
    if pos.can_message:
        out += (
            'You can leave a message for a later step: `loopd loop-message "text"` '
            "(defaults to the next step; `--to-step N` to pick one).\n\n"
        )
    if pos.can_pushover:
        out += (
            "## Push Notifications\n\n"
            'Notify the user\'s device with `loopd loop-notify "<title>" "<message>"` '
            "(`--priority` -2 to 1). Title max 250 characters, message max 1024. "
            "Only send when something genuinely needs attention.\n\n"
        )
    return out


def _render_node(node: DelegationNode, profiles: dict[str, Profile], depth: int) -> list[str]:
    indent = "  " * depth
    prof = profiles.get(node.profile.lower())
    line = f"{indent}- `{node.profile}` as {', '.join(node.roles)}"
    details = []
    if prof is not None and prof.description:
        details.append(prof.description)
    speed = node.speed or (prof.speed if prof is not None else "")
    if speed:
        details.append(f"speed: {speed}")
    limit = node.max_instances or (prof.max_instances if prof is not None else 0)
    if limit:
        details.append(f"max {limit} at once")
    if details:
        line += f" ({'; '.join(details)})"
    lines = [line]
    for child in node.children:
        lines.extend(_render_node(child, profiles, depth + 1))
    return lines


def _section_delegation(ctx: PromptContext) -> str:
    if ctx.delegation is None or not ctx.delegation.profiles:
        return ""
    lines = ["# Delegation", "", "You may spawn sub-agents with these profiles:"]
    for node in ctx.delegation.profiles:
        lines.extend(_render_node(node, ctx.profiles, 0))
    lines += [
        "",
        f"At most {ctx.delegation.max_parallel} children run at once.",
        'Spawn: `loopd spawn PROFILE "task" [--role ROLE] [--read-only] [--wait]`',
        "Then `loopd spawn-wait`, `loopd spawn-diff ID`, and `loopd spawn-merge ID` or `loopd spawn-reject ID`.",
    ]
    return "\n".join(lines) + "\n\n"


def _section_agents_md(ctx: PromptContext) -> str:
    if not ctx.workdir:
        return ""
    path = Path(ctx.workdir) / "AGENTS.md"
    try:
        size = path.stat().st_size
    except OSError:
        return ""
    if size > MAX_AGENTS_MD_BYTES:
        return (
            "# AGENTS.md\n\n"
            f"The repository has an AGENTS.md at `{path}`. Read it before starting work.\n\n"
        )
    try:
        body = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        log.warning("Cannot read %s: %s", path, exc)
        return ""
    return (
        "# AGENTS.md\n\n"
        "The repository includes instructions for agents. Follow them:\n\n"
        f"{body.rstrip()}\n\n"
    )


def compose(ctx: PromptContext) -> str:
    """Render the full turn prompt."""
    out = "".join(
        [
            _section_messages(ctx),
            _section_role(ctx),
            _section_objective(ctx),
            _section_rules(),
            _section_context(ctx),
            _section_loop(ctx),
            _section_delegation(ctx),
            _section_agents_md(ctx),
        ]
    )
    if ctx.instructions.strip():
        out += "# Instructions\n\n" + ctx.instructions.strip() + "\n"
    return out.rstrip() + "\n"


def gather(
    cfg: GlobalConfig,
    store: Store | None,
    *,
    profile: Profile | None = None,
    role_name: str = "",
    session_id: int = 0,
    workdir: str = "",
    instructions: str = "",
    read_only: bool = False,
    messages: list[str] | None = None,
    loop: LoopPosition | None = None,
    delegation: Delegation | None = None,
) -> PromptContext:
    """Collect prompt inputs; unreadable pieces are logged and left empty."""
    ctx = PromptContext(
        profile_name=profile.name if profile else "",
        workdir=workdir,
        instructions=instructions,
        read_only=read_only,
        messages=list(messages or []),
        loop=loop,
        delegation=delegation,
        profiles={p.name.lower(): p for p in cfg.profiles},
        read_only_rule=cfg.find_rule("read_only_discipline"),
    )
    try:
        ctx.role = cfg.effective_role(role_name or (profile.role if profile else ""))
    except LoopdError as exc:
        log.warning("Prompt without role section: %s", exc)
    if ctx.role is not None:
        ctx.rules = [r for r in (cfg.find_rule(rid) for rid in ctx.role.rule_ids) if r is not None]
        if not ctx.role.can_write_code:
            ctx.read_only = True

    if store is None:
        return ctx
    try:
        ctx.project_name = store.load_project()["name"]
        ctx.plan = store.active_plan()
        ctx.latest_log = store.latest_log()
        plan_id = ctx.plan["id"] if ctx.plan else None
        ctx.issues = store.list_issues(plan_id=plan_id, status=OPEN_ISSUE_STATUSES)
        if session_id:
            ctx.notes = store.list_notes(session_id)
    except (LoopdError, OSError) as exc:
        log.warning("Prompt context incomplete: %s", exc)
    return ctx


def build_prompt(cfg: GlobalConfig, store: Store | None, **kwargs) -> str:
    return compose(gather(cfg, store, **kwargs))
