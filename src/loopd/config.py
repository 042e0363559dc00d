"""Global configuration: profiles, roles, prompt rules, loops.

The config lives in ``<data-root>/profiles.yaml``::

    default_role: developer
    profiles:
      - name: fast
        agent: claude
        model: sonnet
        max_instances: 2
    loops:
      - name: build
        steps:
          - profile: fast
            turns: 3
            can_message: true
            delegation:
              max_parallel: 2
              profiles:
                - profile: scout
                  role: scout
    pushover:
      user_key: ...
      app_token: ...

Loading is strict: the document is checked against :data:`CONFIG_SCHEMA`
with jsonschema, then names are checked for case-insensitive uniqueness and
delegation trees for repeated profiles on a root-to-leaf path.  Reference
checks (a step naming a missing profile) happen at launch time in
:func:`resolve_loop` so a half-edited config never blocks unrelated loops.
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator

from loopd import paths
from loopd.errors import ConfigInvalid, LoopdError

log = logging.getLogger(__name__)

VALID_SPEEDS = {"fast", "medium", "slow"}
VALID_EFFORTS = {"minimal", "low", "medium", "high", "xhigh"}
DEFAULT_ROLE = "developer"
DEFAULT_MAX_PARALLEL = 4
LIVE_SESSION_STATUSES = {"starting", "running", "detached"}


# -- Data types -----------------------------------------------------------------


@dataclass(frozen=True)
class Profile:
    name: str
    agent: str
    model: str = ""
    reasoning_effort: str = ""
    role: str = ""
    intelligence: int = 0
    description: str = ""
    max_instances: int = 0
    speed: str = ""


@dataclass(frozen=True)
class PromptRule:
    id: str
    body: str


@dataclass(frozen=True)
class RoleDefinition:
    name: str
    title: str = ""
    identity: str = ""
    description: str = ""
    can_write_code: bool = True
    rule_ids: tuple[str, ...] = ()


@dataclass
class DelegationNode:
    profile: str
    roles: list[str] = field(default_factory=list)
    speed: str = ""
    handoff: bool = False
    max_instances: int = 0
    delegation: Delegation | None = None

    @property
    def children(self) -> list[DelegationNode]:
        return self.delegation.profiles if self.delegation else []


@dataclass
class Delegation:
    profiles: list[DelegationNode] = field(default_factory=list)
    max_parallel: int = DEFAULT_MAX_PARALLEL


@dataclass
class LoopStep:
    profile: str
    role: str = ""
    turns: int = 1
    instructions: str = ""
    can_stop: bool = False
    can_message: bool = False
    can_pushover: bool = False
    delegation: Delegation | None = None


@dataclass
class LoopDef:
    name: str
    steps: list[LoopStep]


@dataclass(frozen=True)
class PushoverConfig:
    user_key: str = ""
    app_token: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.user_key and self.app_token)


@dataclass(frozen=True)
class RuntimeSettings:
    cancel_grace: float = 5.0
    turn_timeout: float = 0.0
    retry_budget: int = 3
    ring_size: int = 4096
    spawn_queue_timeout: float = 30.0
    heartbeat: bool = True


@dataclass
class GlobalConfig:
    profiles: list[Profile] = field(default_factory=list)
    loops: list[LoopDef] = field(default_factory=list)
    roles: list[RoleDefinition] = field(default_factory=list)
    prompt_rules: list[PromptRule] = field(default_factory=list)
    default_role: str = DEFAULT_ROLE
    pushover: PushoverConfig = field(default_factory=PushoverConfig)
    runtime: RuntimeSettings = field(default_factory=RuntimeSettings)
    agents: dict[str, dict[str, Any]] = field(default_factory=dict)
    events_redis_url: str = ""

    def find_profile(self, name: str) -> Profile | None:
        key = name.strip().lower()
        return next((p for p in self.profiles if p.name.lower() == key), None)

    def find_loop(self, name: str) -> LoopDef | None:
        key = name.strip().lower()
        return next((lp for lp in self.loops if lp.name.lower() == key), None)

    def find_role(self, name: str) -> RoleDefinition | None:
        key = name.strip().lower()
        return next((r for r in self.roles if r.name.lower() == key), None)

    def find_rule(self, rule_id: str) -> PromptRule | None:
        key = rule_id.strip().lower()
        return next((r for r in self.prompt_rules if r.id.lower() == key), None)

    def effective_role(self, name: str = "") -> RoleDefinition:
        """Resolve a step or node role, treating empty as ``default_role``."""
        wanted = name.strip() or self.default_role
        role = self.find_role(wanted)
        if role is None:
            raise LoopdError(f"role '{wanted}' is not defined", kind="role_not_found")
        return role


# -- Built-in catalogue -------------------------------------------------------------

BUILTIN_RULES: tuple[PromptRule, ...] = (
    PromptRule(
        "state_via_cli",
        "## Shared State\n\n"
        "Plans, issues, docs and session logs are shared with other agents. Read and change them "
        "only through `loopd plan|issue|doc|log` commands so every writer sees a consistent record.",
    ),
    PromptRule(
        "commit_discipline",
        "## Commits\n\n"
        "Commit finished work in small, focused commits with descriptive messages. "
        "Never leave the tree broken between turns.",
    ),
    PromptRule(
        "delegation_etiquette",
        "## Delegating\n\n"
        "Spawn independent sub-tasks in parallel, then `loopd spawn-wait`. Review every writable "
        "child with `loopd spawn-diff` before `loopd spawn-merge`; reject work that does not meet the task.",
    ),
    PromptRule(
        "read_only_discipline",
        "## Read-Only Work\n\n"
        "Investigate, measure and report. Do not edit, create or delete files in the repository.",
    ),
    PromptRule(
        "report_back",
        "## Reporting\n\n"
        "Finish every turn with a short report: what you did, what you found, what is left.",
    ),
    PromptRule(
        "supervisor_commands",
        "## Supervisor Commands\n\n"
        "- `loopd note add --session N \"guidance\"` sends guidance to a running session\n"
        "- `loopd note list --session N` lists notes already sent",
    ),
)

BUILTIN_ROLES: tuple[RoleDefinition, ...] = (
    RoleDefinition(
        "developer",
        "DEVELOPER",
        "You are a DEVELOPER agent. Focus on implementation quality, test coverage and clean "
        "execution of the assigned scope.",
        "Execution-focused developer.",
        True,
        ("state_via_cli", "commit_discipline", "report_back"),
    ),
    RoleDefinition(
        "manager",
        "MANAGER",
        "You are a MANAGER agent. You do not write code yourself; your value comes from planning, "
        "delegating and reviewing.",
        "Planning and delegation; no direct coding.",
        False,
        ("state_via_cli", "delegation_etiquette"),
    ),
    RoleDefinition(
        "supervisor",
        "SUPERVISOR",
        "You are a SUPERVISOR agent. You review progress and steer other sessions through notes.",
        "Review and guidance; no direct coding.",
        False,
        ("state_via_cli", "supervisor_commands"),
    ),
    RoleDefinition(
        "reviewer",
        "REVIEWER",
        "You are a REVIEWER agent. Look for correctness problems, regressions, risks and missing tests, "
        "and cite files precisely.",
        "Code review.",
        False,
        ("state_via_cli", "report_back"),
    ),
    RoleDefinition(
        "scout",
        "SCOUT",
        "You are a SCOUT agent. Investigate quickly and report facts with evidence.",
        "Fast read-only investigation.",
        False,
        ("read_only_discipline", "report_back"),
    ),
    RoleDefinition(
        "qa",
        "QA",
        "You are a QA agent. Design and run reproducible checks with clear pass/fail criteria.",
        "Verification and regression hunting.",
        True,
        ("state_via_cli", "commit_discipline", "report_back"),
    ),
    RoleDefinition(
        "documentator",
        "DOCUMENTATOR",
        "You are a DOCUMENTATOR agent. Keep documentation concise, actionable and true to the code.",
        "Technical writing.",
        True,
        ("commit_discipline", "report_back"),
    ),
)


# -- Schema ---------------------------------------------------------------------------

_DELEGATION_NODE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["profile"],
    "properties": {
        "profile": {"type": "string", "minLength": 1},
        "role": {"type": "string"},
        "roles": {"type": "array", "items": {"type": "string"}},
        "speed": {"enum": ["", *sorted(VALID_SPEEDS)]},
        "handoff": {"type": "boolean"},
        "max_instances": {"type": "integer", "minimum": 0},
        "delegation": {"$ref": "#/$defs/delegation"},
    },
    "additionalProperties": False,
}

CONFIG_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "$defs": {
        "node": _DELEGATION_NODE_SCHEMA,
        "delegation": {
            "type": "object",
            "properties": {
                "profiles": {"type": "array", "items": {"$ref": "#/$defs/node"}},
                "max_parallel": {"type": "integer", "minimum": 0},
            },
            "additionalProperties": False,
        },
    },
    "properties": {
        "default_role": {"type": "string"},
        "profiles": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name", "agent"],
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "agent": {"type": "string", "minLength": 1},
                    "model": {"type": "string"},
                    "reasoning_effort": {"type": "string"},
                    "role": {"type": "string"},
                    "intelligence": {"type": "integer", "minimum": 0, "maximum": 10},
                    "description": {"type": "string"},
                    "max_instances": {"type": "integer", "minimum": 0},
                    "speed": {"enum": ["", *sorted(VALID_SPEEDS)]},
                },
                "additionalProperties": False,
            },
        },
        "loops": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name", "steps"],
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "steps": {
                        "type": "array",
                        "minItems": 1,
                        "items": {
                            "type": "object",
                            "required": ["profile"],
                            "properties": {
                                "profile": {"type": "string", "minLength": 1},
                                "role": {"type": "string"},
                                "turns": {"type": "integer"},
                                "instructions": {"type": "string"},
                                "can_stop": {"type": "boolean"},
                                "can_message": {"type": "boolean"},
                                "can_pushover": {"type": "boolean"},
                                "delegation": {"$ref": "#/$defs/delegation"},
                            },
                            "additionalProperties": False,
                        },
                    },
                },
                "additionalProperties": False,
            },
        },
        "roles": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name"],
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "title": {"type": "string"},
                    "identity": {"type": "string"},
                    "description": {"type": "string"},
                    "can_write_code": {"type": "boolean"},
                    "rule_ids": {"type": "array", "items": {"type": "string"}},
                },
                "additionalProperties": False,
            },
        },
        "prompt_rules": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "body"],
                "properties": {"id": {"type": "string", "minLength": 1}, "body": {"type": "string"}},
                "additionalProperties": False,
            },
        },
        "pushover": {
            "type": "object",
            "properties": {"user_key": {"type": "string"}, "app_token": {"type": "string"}},
            "additionalProperties": False,
        },
        "runtime": {
            "type": "object",
            "properties": {
                "cancel_grace": {"type": "number", "minimum": 0},
                "turn_timeout": {"type": "number", "minimum": 0},
                "retry_budget": {"type": "integer", "minimum": 1},
                "ring_size": {"type": "integer", "minimum": 1},
                "spawn_queue_timeout": {"type": "number", "minimum": 0},
                "heartbeat": {"type": "boolean"},
            },
            "additionalProperties": False,
        },
        "agents": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "command": {"type": "string"},
                    "args": {"type": "array", "items": {"type": "string"}},
                    "model_flag": {"type": "string"},
                    "effort": {"type": "object"},
                    "prompt": {"enum": ["stdin", "arg", "flag"]},
                    "prompt_flag": {"type": "string"},
                    "env": {"type": "object", "additionalProperties": {"type": "string"}},
                },
            },
        },
        "events": {
            "type": "object",
            "properties": {"redis_url": {"type": "string"}},
            "additionalProperties": False,
        },
    },
    "additionalProperties": False,
}

_VALIDATOR = Draft202012Validator(CONFIG_SCHEMA)


# -- Parsing ----------------------------------------------------------------------------


def _normalize_roles(raw: Mapping[str, Any], default_role: str) -> list[str]:
    roles: list[str] = []
    single = str(raw.get("role") or "").strip()
    if single:
        roles.append(single)
    for item in raw.get("roles") or []:
        name = str(item).strip()
        if name and name.lower() not in {r.lower() for r in roles}:
            roles.append(name)
    if not roles:
        roles.append(default_role)
    return roles


def delegation_from_dict(raw: Mapping[str, Any] | None, default_role: str) -> Delegation | None:
    if raw is None:
        return None
    return Delegation(
        profiles=[node_from_dict(n, default_role) for n in raw.get("profiles") or []],
        # 0 means the default, as in an omitted key.
        max_parallel=int(raw.get("max_parallel") or 0) or DEFAULT_MAX_PARALLEL,
    )


def node_from_dict(raw: Mapping[str, Any], default_role: str) -> DelegationNode:
    return DelegationNode(
        profile=str(raw["profile"]).strip(),
        roles=_normalize_roles(raw, default_role),
        speed=str(raw.get("speed") or ""),
        handoff=bool(raw.get("handoff", False)),
        max_instances=int(raw.get("max_instances") or 0),
        delegation=delegation_from_dict(raw.get("delegation"), default_role),
    )


def step_from_dict(raw: Mapping[str, Any], default_role: str) -> LoopStep:
    turns = int(raw.get("turns", 1) or 0)
    return LoopStep(
        profile=str(raw["profile"]).strip(),
        role=str(raw.get("role") or "").strip(),
        turns=turns if turns > 0 else 1,
        instructions=str(raw.get("instructions") or ""),
        can_stop=bool(raw.get("can_stop", False)),
        can_message=bool(raw.get("can_message", False)),
        can_pushover=bool(raw.get("can_pushover", False)),
        delegation=delegation_from_dict(raw.get("delegation"), default_role),
    )


def loop_from_dict(raw: Mapping[str, Any], default_role: str = DEFAULT_ROLE) -> LoopDef:
    return LoopDef(
        name=str(raw["name"]).strip(),
        steps=[step_from_dict(s, default_role) for s in raw.get("steps") or []],
    )


def _merge_by_key(builtins: Iterable[Any], overrides: Iterable[Any], key: str) -> list[Any]:
    merged: dict[str, Any] = {getattr(b, key).lower(): b for b in builtins}
    for item in overrides:
        merged[getattr(item, key).lower()] = item
    return list(merged.values())


def _check_unique(names: Iterable[str], what: str) -> None:
    seen: set[str] = set()
    for name in names:
        key = name.lower()
        if key in seen:
            raise ConfigInvalid(f"duplicate {what} '{name}' (names are case-insensitive)")
        seen.add(key)


def _check_acyclic(nodes: list[DelegationNode], lineage: tuple[str, ...], where: str) -> None:
    for node in nodes:
        key = node.profile.lower()
        if key in lineage:
            chain = " -> ".join([*lineage, key])
            raise ConfigInvalid(f"{where}: profile '{node.profile}' repeats on delegation path {chain}")
        _check_acyclic(node.children, (*lineage, key), where)


def parse_config(data: Mapping[str, Any] | None) -> GlobalConfig:
    """Validate and build a :class:`GlobalConfig` from a parsed document."""
    data = dict(data or {})
    errors = sorted(_VALIDATOR.iter_errors(data), key=lambda e: list(e.absolute_path))
    if errors:
        first = errors[0]
        location = "/".join(str(p) for p in first.absolute_path) or "<root>"
        raise ConfigInvalid(f"{location}: {first.message}")

    default_role = str(data.get("default_role") or DEFAULT_ROLE).strip()

    profiles = [Profile(**p) for p in data.get("profiles") or []]
    for prof in profiles:
        if prof.reasoning_effort and prof.reasoning_effort not in VALID_EFFORTS:
            raise ConfigInvalid(
                f"profile '{prof.name}': reasoning_effort must be one of {sorted(VALID_EFFORTS)}"
            )
    user_rules = [PromptRule(r["id"], r.get("body", "")) for r in data.get("prompt_rules") or []]
    user_roles = [
        RoleDefinition(
            name=r["name"],
            title=r.get("title", "") or r["name"].upper(),
            identity=r.get("identity", ""),
            description=r.get("description", ""),
            can_write_code=r.get("can_write_code", True),
            rule_ids=tuple(r.get("rule_ids") or ()),
        )
        for r in data.get("roles") or []
    ]
    loops = [loop_from_dict(lp, default_role) for lp in data.get("loops") or []]

    _check_unique((p.name for p in profiles), "profile")
    _check_unique((lp.name for lp in loops), "loop")
    _check_unique((r.name for r in user_roles), "role")
    _check_unique((r.id for r in user_rules), "prompt rule")

    for lp in loops:
        for idx, step in enumerate(lp.steps):
            if step.delegation:
                _check_acyclic(step.delegation.profiles, (), f"loop '{lp.name}' step {idx}")

    rules = _merge_by_key(BUILTIN_RULES, user_rules, "id")
    roles = _merge_by_key(BUILTIN_ROLES, user_roles, "name")
    known_rules = {r.id.lower() for r in rules}
    for role in roles:
        for rule_id in role.rule_ids:
            if rule_id.lower() not in known_rules:
                raise ConfigInvalid(f"role '{role.name}' references unknown prompt rule '{rule_id}'")
    if default_role.lower() not in {r.name.lower() for r in roles}:
        raise ConfigInvalid(f"default_role '{default_role}' is not a defined role")

    pushover_raw = data.get("pushover") or {}
    return GlobalConfig(
        profiles=profiles,
        loops=loops,
        roles=roles,
        prompt_rules=rules,
        default_role=default_role,
        pushover=PushoverConfig(
            user_key=pushover_raw.get("user_key", ""),
            app_token=pushover_raw.get("app_token", ""),
        ),
        runtime=RuntimeSettings(**(data.get("runtime") or {})),
        agents={k: dict(v) for k, v in (data.get("agents") or {}).items()},
        events_redis_url=(data.get("events") or {}).get("redis_url", ""),
    )


def load_config(path: Path | None = None) -> GlobalConfig:
    """Load the global config; a missing file yields the built-in defaults."""
    path = path or paths.config_path()
    if not path.exists():
        log.debug("No config at %s, using built-in defaults", path)
        return parse_config({})
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigInvalid(f"{path}: {exc}") from None
    if data is not None and not isinstance(data, dict):
        raise ConfigInvalid(f"{path}: top level must be a mapping")
    return parse_config(data)


# -- Serialization -------------------------------------------------------------------------


def node_to_dict(node: DelegationNode) -> dict[str, Any]:
    out: dict[str, Any] = {"profile": node.profile}
    if len(node.roles) == 1:
        out["role"] = node.roles[0]
    elif node.roles:
        out["roles"] = list(node.roles)
    if node.speed:
        out["speed"] = node.speed
    if node.handoff:
        out["handoff"] = True
    if node.max_instances:
        out["max_instances"] = node.max_instances
    if node.delegation is not None:
        out["delegation"] = delegation_to_dict(node.delegation)
    return out


def delegation_to_dict(delegation: Delegation) -> dict[str, Any]:
    out: dict[str, Any] = {"profiles": [node_to_dict(n) for n in delegation.profiles]}
    if delegation.max_parallel != DEFAULT_MAX_PARALLEL:
        out["max_parallel"] = delegation.max_parallel
    return out


def step_to_dict(step: LoopStep) -> dict[str, Any]:
    out: dict[str, Any] = {"profile": step.profile}
    if step.role:
        out["role"] = step.role
    out["turns"] = step.turns
    if step.instructions:
        out["instructions"] = step.instructions
    for flag in ("can_stop", "can_message", "can_pushover"):
        if getattr(step, flag):
            out[flag] = True
    if step.delegation is not None:
        out["delegation"] = delegation_to_dict(step.delegation)
    return out


def loop_to_dict(loop: LoopDef) -> dict[str, Any]:
    return {"name": loop.name, "steps": [step_to_dict(s) for s in loop.steps]}


def profile_to_dict(profile: Profile) -> dict[str, Any]:
    out: dict[str, Any] = {"name": profile.name, "agent": profile.agent}
    defaults = Profile(name="", agent="")
    for key in ("model", "reasoning_effort", "role", "intelligence", "description", "max_instances", "speed"):
        value = getattr(profile, key)
        if value != getattr(defaults, key):
            out[key] = value
    return out


def config_to_dict(cfg: GlobalConfig) -> dict[str, Any]:
    """Serialize user-facing config; built-in roles and rules are omitted unless overridden."""
    builtin_roles = {r.name.lower(): r for r in BUILTIN_ROLES}
    builtin_rules = {r.id.lower(): r for r in BUILTIN_RULES}
    out: dict[str, Any] = {"default_role": cfg.default_role}
    out["profiles"] = [profile_to_dict(p) for p in cfg.profiles]
    out["loops"] = [loop_to_dict(lp) for lp in cfg.loops]
    roles = [r for r in cfg.roles if builtin_roles.get(r.name.lower()) != r]
    if roles:
        out["roles"] = [
            {
                "name": r.name,
                "title": r.title,
                "identity": r.identity,
                "description": r.description,
                "can_write_code": r.can_write_code,
                "rule_ids": list(r.rule_ids),
            }
            for r in roles
        ]
    rules = [r for r in cfg.prompt_rules if builtin_rules.get(r.id.lower()) != r]
    if rules:
        out["prompt_rules"] = [{"id": r.id, "body": r.body} for r in rules]
    if cfg.pushover.configured:
        out["pushover"] = {"user_key": cfg.pushover.user_key, "app_token": cfg.pushover.app_token}
    if cfg.runtime != RuntimeSettings():
        out["runtime"] = {
            k: getattr(cfg.runtime, k)
            for k in RuntimeSettings.__dataclass_fields__
            if getattr(cfg.runtime, k) != getattr(RuntimeSettings(), k)
        }
    if cfg.agents:
        out["agents"] = cfg.agents
    if cfg.events_redis_url:
        out["events"] = {"redis_url": cfg.events_redis_url}
    return out


def dump_yaml(data: Any) -> str:
    return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)


def save_config(cfg: GlobalConfig, path: Path | None = None) -> Path:
    path = path or paths.config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".profiles-", suffix=".yaml")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(dump_yaml(config_to_dict(cfg)))
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
    return path


# -- Launch-time resolution --------------------------------------------------------------------


def _check_nodes_resolve(cfg: GlobalConfig, nodes: list[DelegationNode], where: str) -> None:
    for node in nodes:
        if cfg.find_profile(node.profile) is None:
            raise LoopdError(
                f"{where}: delegation profile '{node.profile}' is not defined",
                kind="profile_not_found",
            )
        for role in node.roles:
            cfg.effective_role(role)
        _check_nodes_resolve(cfg, node.children, where)


def resolve_loop(cfg: GlobalConfig, name: str) -> tuple[LoopDef, list[Profile]]:
    """Look up a loop and every profile it touches, failing before anything launches."""
    loop = cfg.find_loop(name)
    if loop is None:
        raise LoopdError(f"loop '{name}' is not defined", kind="loop_not_found")
    return loop, resolve_steps(cfg, loop)


def resolve_steps(cfg: GlobalConfig, loop: LoopDef) -> list[Profile]:
    """Profiles for each step of *loop*; raises if any step or delegation reference is dangling."""
    profiles: list[Profile] = []
    for idx, step in enumerate(loop.steps):
        prof = cfg.find_profile(step.profile)
        if prof is None:
            raise LoopdError(
                f"loop '{loop.name}' step {idx}: profile '{step.profile}' is not defined",
                kind="profile_not_found",
            )
        cfg.effective_role(step.role or prof.role)
        if step.delegation:
            _check_nodes_resolve(cfg, step.delegation.profiles, f"loop '{loop.name}' step {idx}")
        profiles.append(prof)
    return profiles


def single_step_loop(profile: Profile, *, role: str = "", instructions: str = "", name: str = "") -> LoopDef:
    """Wrap one profile into a one-turn loop (used for ``run <profile>`` and spawns)."""
    return LoopDef(
        name=name or profile.name,
        steps=[LoopStep(profile=profile.name, role=role, turns=1, instructions=instructions)],
    )


# -- Guarded mutation -------------------------------------------------------------------------


def _referencing_sessions(live_sessions: Iterable[Mapping[str, Any]], field_name: str, name: str) -> list[int]:
    key = name.lower()
    hits: list[int] = []
    for meta in live_sessions:
        if meta.get("status") not in LIVE_SESSION_STATUSES:
            continue
        value = meta.get(field_name)
        values = value if isinstance(value, list) else [value]
        if any(isinstance(v, str) and v.lower() == key for v in values):
            hits.append(int(meta.get("id", 0)))
    return hits


def _refuse_if_referenced(
    live_sessions: Iterable[Mapping[str, Any]], field_name: str, name: str, what: str
) -> None:
    hits = _referencing_sessions(live_sessions, field_name, name)
    if hits:
        ids = ", ".join(str(h) for h in hits)
        raise ConfigInvalid(f"{what} '{name}' is used by running session(s) {ids}")


def add_profile(cfg: GlobalConfig, profile: Profile) -> GlobalConfig:
    if cfg.find_profile(profile.name) is not None:
        raise ConfigInvalid(f"profile '{profile.name}' already exists")
    return replace(cfg, profiles=[*cfg.profiles, profile])


def remove_profile(
    cfg: GlobalConfig, name: str, live_sessions: Iterable[Mapping[str, Any]] = ()
) -> GlobalConfig:
    if cfg.find_profile(name) is None:
        raise LoopdError(f"profile '{name}' is not defined", kind="profile_not_found")
    _refuse_if_referenced(live_sessions, "profiles", name, "profile")
    return replace(cfg, profiles=[p for p in cfg.profiles if p.name.lower() != name.lower()])


def remove_loop(
    cfg: GlobalConfig, name: str, live_sessions: Iterable[Mapping[str, Any]] = ()
) -> GlobalConfig:
    if cfg.find_loop(name) is None:
        raise LoopdError(f"loop '{name}' is not defined", kind="loop_not_found")
    _refuse_if_referenced(live_sessions, "loop_name", name, "loop")
    return replace(cfg, loops=[lp for lp in cfg.loops if lp.name.lower() != name.lower()])


def remove_role(
    cfg: GlobalConfig, name: str, live_sessions: Iterable[Mapping[str, Any]] = ()
) -> GlobalConfig:
    if cfg.find_role(name) is None:
        raise LoopdError(f"role '{name}' is not defined", kind="role_not_found")
    if name.lower() == cfg.default_role.lower():
        raise ConfigInvalid(f"role '{name}' is the default role")
    if name.lower() in {r.name.lower() for r in BUILTIN_ROLES}:
        raise ConfigInvalid(f"role '{name}' is built in and cannot be removed")
    _refuse_if_referenced(live_sessions, "roles", name, "role")
    return replace(cfg, roles=[r for r in cfg.roles if r.name.lower() != name.lower()])
