"""Map a remote activity to one of a closed set of kinds.

The remote API has no discriminated event type on older payloads, so the
decision is an ordered rule table: structural fields first, then
case-insensitive phrases in the title (and, for review, the description).
The first rule that matches wins, so a title carrying several trigger
phrases resolves by table order.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from .model import Activity, ActivityKind


def _has_event(name: str) -> Callable[[Activity], bool]:
    return lambda activity: name in activity.events


def _title_has(*phrases: str) -> Callable[[Activity], bool]:
    def match(activity: Activity) -> bool:
        title = activity.title.lower()
        return any(phrase in title for phrase in phrases)

    return match


def _text_has(phrase: str) -> Callable[[Activity], bool]:
    def match(activity: Activity) -> bool:
        return (
            phrase in activity.title.lower() or phrase in activity.description.lower()
        )

    return match


def _has_progress_payload(activity: Activity) -> bool:
    return (
        activity.bash_output is not None
        or activity.change_set is not None
        or activity.media is not None
        or "progressUpdated" in activity.events
    )


@dataclass(frozen=True, slots=True)
class Rule:
    name: str
    kind: ActivityKind
    matches: Callable[[Activity], bool]


RULES: tuple[Rule, ...] = (
    Rule("plan_generated_event", ActivityKind.PLAN_GENERATED, _has_event("planGenerated")),
    Rule("plan_approved_event", ActivityKind.PLAN_APPROVED, _has_event("planApproved")),
    Rule("ready_for_review_text", ActivityKind.READY_FOR_REVIEW, _text_has("ready for review")),
    Rule("session_completed_event", ActivityKind.SESSION_COMPLETED, _has_event("sessionCompleted")),
    Rule("progress_payload", ActivityKind.PROGRESS_UPDATE, _has_progress_payload),
    Rule(
        "plan_generated_title",
        ActivityKind.PLAN_GENERATED,
        _title_has("plan generated", "plan created"),
    ),
    Rule("plan_approved_title", ActivityKind.PLAN_APPROVED, _title_has("plan approved")),
    Rule("progress_title", ActivityKind.PROGRESS_UPDATE, _title_has("progress")),
    Rule(
        "completed_title",
        ActivityKind.SESSION_COMPLETED,
        _title_has("completed", "finished"),
    ),
)


def match_rule(activity: Activity) -> Rule | None:
    """The first rule that matches, or None for a generic activity."""
    for rule in RULES:
        if rule.matches(activity):
            return rule
    return None


def classify(activity: Activity) -> ActivityKind:
    rule = match_rule(activity)
    return rule.kind if rule is not None else ActivityKind.GENERIC
