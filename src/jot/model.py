"""Domain records: tenants, sessions, and parsed remote activities."""

from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any, Literal

from .errors import ActivityParseError

AutomationMode = Literal["INTERACTIVE", "PLAN", "AUTO"]

SESSION_ACTIVE = "ACTIVE"
SESSION_COMPLETED = "COMPLETED"
SESSION_MISSING = "MISSING"

# Structural event fields the remote attaches to an activity
EVENT_FIELDS: tuple[str, ...] = (
    "planGenerated",
    "planApproved",
    "progressUpdated",
    "sessionCompleted",
    "sessionFailed",
    "agentMessaged",
    "userMessaged",
)

_PLAN_LINE_RE = re.compile(r"^\s*\d+[.)]\s+(.+)$")
_DIFF_HEADER_RE = re.compile(r"^diff --git a/(\S+) b/(\S+)$", re.MULTILINE)
_DIGITS_RE = re.compile(r"(\d+)")


class ActivityKind(StrEnum):
    PLAN_GENERATED = "plan_generated"
    PLAN_APPROVED = "plan_approved"
    READY_FOR_REVIEW = "ready_for_review"
    PROGRESS_UPDATE = "progress_update"
    SESSION_COMPLETED = "session_completed"
    GENERIC = "generic"


@dataclass(frozen=True, slots=True)
class TenantConfig:
    """Per-group settings written by the admin commands."""

    tenant_id: str
    api_key: str | None = None
    source: str | None = None
    default_branch: str | None = None
    automation_mode: AutomationMode | None = None
    require_approval: bool = False


@dataclass(slots=True)
class SessionRecord:
    """A remote session bound to one forum topic."""

    session_id: str
    tenant_id: str
    thread_id: int
    source: str
    automation_mode: AutomationMode | None = None
    require_plan_approval: bool = False
    starting_branch: str | None = None
    status: str = SESSION_ACTIVE
    created_at: str = ""
    updated_at: str = ""

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "SessionRecord":
        data = json.loads(raw)
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True, slots=True)
class SessionIndexEntry:
    session_id: str
    thread_id: int


@dataclass(frozen=True, slots=True)
class BashOutput:
    command: str
    output: str
    exit_code: int


@dataclass(frozen=True, slots=True)
class ChangedFile:
    path: str
    change_type: str | None = None


@dataclass(frozen=True, slots=True)
class ChangeSet:
    files: tuple[ChangedFile, ...] = ()
    patch: str | None = None


@dataclass(frozen=True, slots=True)
class Media:
    data: str
    media_type: str = "image/png"


@dataclass(frozen=True, slots=True)
class PlanStep:
    title: str
    description: str = ""


@dataclass(frozen=True, slots=True)
class Activity:
    """One remote activity, normalized from either payload shape.

    The remote reports activities both with a list of artifacts
    (``artifacts: [{bashOutput: ...}]``) and with an artifacts object
    (``artifacts: {bashOutput: ...}``); both parse to the same record.
    """

    id: str
    create_time: str
    title: str = ""
    description: str = ""
    originator: str | None = None
    events: frozenset[str] = frozenset()
    bash_output: BashOutput | None = None
    change_set: ChangeSet | None = None
    media: Media | None = None
    plan_steps: tuple[PlanStep, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def sort_key(self) -> tuple[str, IdKey]:
        return (self.create_time, id_key(self.id))

    @property
    def text(self) -> str:
        return "\n".join(part for part in (self.title, self.description) if part)


IdKey = tuple[tuple[int, int, str], ...]


def id_key(ident: str) -> IdKey:
    """Ordering key for opaque ids: digit runs compare numerically.

    ``act_99`` sorts before ``act_100``; ids without digits compare as text.
    """
    return tuple(
        (0, int(part), "") if part.isdigit() else (1, 0, part)
        for part in _DIGITS_RE.split(ident)
        if part
    )


def ordering_key(raw: dict[str, Any]) -> tuple[str, IdKey]:
    """``(createTime, id)`` for a raw payload, before it is parsed."""
    created = raw.get("createTime")
    return (created if isinstance(created, str) else "", id_key(activity_id(raw) or ""))


def activity_id(raw: dict[str, Any]) -> str | None:
    """Opaque ordering id: ``id``, else the last segment of ``name``."""
    value = raw.get("id")
    if isinstance(value, str) and value:
        return value
    name = raw.get("name")
    if isinstance(name, str) and name:
        return name.rsplit("/", 1)[-1]
    return None


def _str(value: Any, what: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ActivityParseError(f"{what} must be a string, got {type(value).__name__}")
    return value


def _mapping(value: Any, what: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ActivityParseError(f"{what} must be an object, got {type(value).__name__}")
    return value


def _artifacts(raw: dict[str, Any]) -> dict[str, Any]:
    """Flatten artifacts to {kind: payload}, keeping the first of each kind."""
    value = raw.get("artifacts")
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    if not isinstance(value, list):
        raise ActivityParseError("artifacts must be a list or an object")
    merged: dict[str, Any] = {}
    for item in value:
        for kind, payload in _mapping(item, "artifact").items():
            merged.setdefault(kind, payload)
    return merged


def _parse_bash(payload: Any) -> BashOutput | None:
    if payload is None:
        return None
    data = _mapping(payload, "bashOutput")
    exit_code = data.get("exitCode", 0)
    try:
        exit_code = int(exit_code or 0)
    except (TypeError, ValueError) as exc:
        raise ActivityParseError(f"bad exitCode {exit_code!r}") from exc
    return BashOutput(
        command=_str(data.get("command"), "bashOutput.command") or "unknown",
        output=_str(data.get("output"), "bashOutput.output"),
        exit_code=exit_code,
    )


def _parse_change_set(payload: Any) -> ChangeSet | None:
    if payload is None:
        return None
    data = _mapping(payload, "changeSet")
    patch = _str(_mapping(data.get("gitPatch"), "gitPatch").get("unidiffPatch"), "patch")
    files: list[ChangedFile] = []
    raw_files = data.get("files")
    if raw_files is not None:
        if not isinstance(raw_files, list):
            raise ActivityParseError("changeSet.files must be a list")
        for item in raw_files:
            entry = _mapping(item, "changeSet.files[]")
            files.append(
                ChangedFile(
                    path=_str(entry.get("path"), "file.path") or "unknown",
                    change_type=entry.get("changeType"),
                )
            )
    elif patch:
        files = [ChangedFile(path=m.group(2)) for m in _DIFF_HEADER_RE.finditer(patch)]
    return ChangeSet(files=tuple(files), patch=patch or None)


def _parse_media(payload: Any) -> Media | None:
    if payload is None:
        return None
    data = _mapping(payload, "media")
    content = _str(data.get("data"), "media.data")
    if not content:
        return None
    media_type = data.get("mimeType") or data.get("mediaType") or "image/png"
    return Media(data=content, media_type=str(media_type))


def parse_plan_lines(text: str) -> tuple[PlanStep, ...]:
    """Numbered-list steps ("1. do x") from free text."""
    steps = []
    for line in text.splitlines():
        match = _PLAN_LINE_RE.match(line)
        if match:
            steps.append(PlanStep(title=match.group(1).strip()))
    return tuple(steps)


def _parse_plan(payload: Any, description: str) -> tuple[PlanStep, ...]:
    plan = _mapping(_mapping(payload, "planGenerated").get("plan"), "plan")
    raw_steps = plan.get("steps")
    if raw_steps is None:
        return parse_plan_lines(description)
    if not isinstance(raw_steps, list):
        raise ActivityParseError("plan.steps must be a list")
    steps = []
    for item in raw_steps:
        step = _mapping(item, "plan.steps[]")
        title = _str(step.get("title"), "step.title")
        detail = _str(step.get("description"), "step.description")
        steps.append(PlanStep(title=title or detail, description=detail if title else ""))
    return tuple(steps)


def parse_activity(raw: dict[str, Any]) -> Activity:
    """Normalize a raw activity payload.

    Raises:
        ActivityParseError: required fields are missing or have the wrong type.
    """
    if not isinstance(raw, dict):
        raise ActivityParseError("activity must be an object")
    ident = activity_id(raw)
    if ident is None:
        raise ActivityParseError("activity has neither id nor name")

    progress = _mapping(raw.get("progressUpdated"), "progressUpdated")
    agent = _mapping(raw.get("agentMessaged"), "agentMessaged")
    failed = _mapping(raw.get("sessionFailed"), "sessionFailed")

    title = _str(raw.get("title"), "title") or _str(progress.get("title"), "progress.title")
    description = (
        _str(raw.get("description"), "description")
        or _str(progress.get("description"), "progress.description")
        or _str(agent.get("agentMessage"), "agentMessage")
        or _str(failed.get("reason"), "sessionFailed.reason")
    )
    artifacts = _artifacts(raw)
    if not artifacts:
        # older payloads put artifacts inside progressUpdated
        artifacts = {k: progress[k] for k in ("bashOutput", "changeSet", "media") if k in progress}

    events = frozenset(name for name in EVENT_FIELDS if name in raw)
    plan_steps: tuple[PlanStep, ...] = ()
    if "planGenerated" in raw:
        plan_steps = _parse_plan(raw.get("planGenerated"), description)

    return Activity(
        id=ident,
        create_time=_str(raw.get("createTime"), "createTime"),
        title=title,
        description=description,
        originator=raw.get("originator"),
        events=events,
        bash_output=_parse_bash(artifacts.get("bashOutput")),
        change_set=_parse_change_set(artifacts.get("changeSet")),
        media=_parse_media(artifacts.get("media")),
        plan_steps=plan_steps,
        raw=raw,
    )
