"""Tests for activity classification and the presentation policy."""

from __future__ import annotations

import pytest

from jot.classify import RULES, classify, match_rule
from jot.model import ActivityKind, parse_activity
from jot.policy import Decision, Thresholds, decide

from factories import activity, bash_activity, plan_activity


def _kind(raw: dict) -> ActivityKind:
    return classify(parse_activity(raw))


class TestClassify:
    """Tests for classify and the rule table order."""

    def test_plan_event(self) -> None:
        assert _kind(plan_activity("a", 3)) is ActivityKind.PLAN_GENERATED

    def test_plan_approved_event(self) -> None:
        assert _kind(activity("a", planApproved={})) is ActivityKind.PLAN_APPROVED

    def test_ready_for_review_in_description(self) -> None:
        raw = activity("a", title="Update", description="The changes are Ready for Review.")
        assert _kind(raw) is ActivityKind.READY_FOR_REVIEW

    def test_completed_event(self) -> None:
        assert _kind(activity("a", sessionCompleted={})) is ActivityKind.SESSION_COMPLETED

    def test_bash_output_is_progress(self) -> None:
        assert _kind(bash_activity("a")) is ActivityKind.PROGRESS_UPDATE

    @pytest.mark.parametrize(
        ("title", "kind"),
        [
            ("Plan generated", ActivityKind.PLAN_GENERATED),
            ("PLAN CREATED for you", ActivityKind.PLAN_GENERATED),
            ("Plan approved by user", ActivityKind.PLAN_APPROVED),
            ("Progress on tests", ActivityKind.PROGRESS_UPDATE),
            ("Task completed", ActivityKind.SESSION_COMPLETED),
            ("Finished the refactor", ActivityKind.SESSION_COMPLETED),
            ("Thinking about it", ActivityKind.GENERIC),
        ],
    )
    def test_title_phrases(self, title: str, kind: ActivityKind) -> None:
        assert _kind(activity("a", title=title)) is kind

    def test_first_matching_rule_wins(self) -> None:
        # "plan approved" appears in the title, but the structural event comes first
        raw = plan_activity("a", 2)
        raw["title"] = "Plan approved and completed"
        assert _kind(raw) is ActivityKind.PLAN_GENERATED

    def test_title_order_between_phrases(self) -> None:
        raw = activity("a", title="Plan generated, progress completed")
        rule = match_rule(parse_activity(raw))
        assert rule is not None
        assert rule.name == "plan_generated_title"

    def test_review_beats_progress_payload(self) -> None:
        raw = bash_activity("a")
        raw["description"] = "ready for review"
        assert _kind(raw) is ActivityKind.READY_FOR_REVIEW

    def test_rule_names_unique(self) -> None:
        names = [rule.name for rule in RULES]
        assert len(names) == len(set(names))


class TestDecide:
    """Tests for the decide table."""

    def _decide(self, raw: dict) -> Decision:
        parsed = parse_activity(raw)
        return decide(classify(parsed), parsed)

    def test_failed_command_is_audible(self) -> None:
        assert self._decide(bash_activity("a", exit_code=1)).audible is True

    def test_passing_command_is_silent(self) -> None:
        assert self._decide(bash_activity("a", exit_code=0)).audible is False

    def test_long_output_collapses(self) -> None:
        assert self._decide(bash_activity("a", output="x" * 400)).collapsed is True
        assert self._decide(bash_activity("a", output="x" * 199)).collapsed is False

    def test_plan_always_audible(self) -> None:
        short = self._decide(plan_activity("a", 2))
        long = self._decide(plan_activity("a", 6))
        assert short == Decision(audible=True, collapsed=False)
        assert long == Decision(audible=True, collapsed=True)

    def test_plan_approved_silent(self) -> None:
        assert self._decide(activity("a", planApproved={})).audible is False

    def test_review_and_completion_audible(self) -> None:
        assert self._decide(activity("a", title="Ready for review")).audible is True
        assert self._decide(activity("a", sessionCompleted={})).audible is True

    def test_media_is_audible_photo(self) -> None:
        decision = self._decide(activity("a", artifacts=[{"media": {"data": "aGk="}}]))
        assert decision.as_media is True
        assert decision.audible is True

    @pytest.mark.parametrize("text", ["An error occurred", "Build FAILED", "I have a question"])
    def test_generic_keywords_audible(self, text: str) -> None:
        assert self._decide(activity("a", title="Note", description=text)).audible is True

    def test_generic_plain_silent(self) -> None:
        assert self._decide(activity("a", title="Note", description="all good")).audible is False

    def test_custom_thresholds(self) -> None:
        parsed = parse_activity(bash_activity("a", output="x" * 50))
        decision = decide(ActivityKind.PROGRESS_UPDATE, parsed, Thresholds(collapse_chars=10))
        assert decision.collapsed is True
