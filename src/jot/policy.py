"""How loud, and how compact, each kind of activity is when posted."""

from __future__ import annotations

from dataclasses import dataclass

from .model import Activity, ActivityKind

ATTENTION_KEYWORDS: tuple[str, ...] = ("error", "failed", "question")


@dataclass(frozen=True, slots=True)
class Thresholds:
    """Fixed presentation limits, set from configuration."""

    collapse_chars: int = 200
    plan_steps: int = 5


DEFAULT_THRESHOLDS = Thresholds()


@dataclass(frozen=True, slots=True)
class Decision:
    audible: bool
    collapsed: bool
    as_media: bool = False


def progress_detail(activity: Activity) -> str:
    """The part of a progress update whose length decides collapsing."""
    if activity.bash_output is not None:
        return activity.bash_output.output
    if activity.change_set is not None and activity.change_set.files:
        return "\n".join(f.path for f in activity.change_set.files)
    return activity.text


def needs_attention(activity: Activity) -> bool:
    text = activity.text.lower()
    return any(word in text for word in ATTENTION_KEYWORDS)


def decide(
    kind: ActivityKind,
    activity: Activity,
    thresholds: Thresholds = DEFAULT_THRESHOLDS,
) -> Decision:
    """Pure decision table from (kind, payload shape) to presentation."""

    def too_long(text: str) -> bool:
        return len(text) > thresholds.collapse_chars

    if kind is ActivityKind.PLAN_GENERATED:
        return Decision(
            audible=True, collapsed=len(activity.plan_steps) > thresholds.plan_steps
        )
    if kind is ActivityKind.PLAN_APPROVED:
        return Decision(audible=False, collapsed=False)
    if kind is ActivityKind.READY_FOR_REVIEW:
        return Decision(audible=True, collapsed=False)
    if kind is ActivityKind.PROGRESS_UPDATE:
        collapsed = too_long(progress_detail(activity))
        if activity.media is not None:
            return Decision(audible=True, collapsed=collapsed, as_media=True)
        failed = activity.bash_output is not None and activity.bash_output.exit_code != 0
        return Decision(audible=failed, collapsed=collapsed)
    if kind is ActivityKind.SESSION_COMPLETED:
        return Decision(audible=True, collapsed=too_long(activity.description))
    return Decision(audible=needs_attention(activity), collapsed=too_long(activity.text))
