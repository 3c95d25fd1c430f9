"""Tests for jot.model parsing and ordering."""

from __future__ import annotations

import pytest

from jot.errors import ActivityParseError
from jot.model import (
    SessionRecord,
    activity_id,
    id_key,
    ordering_key,
    parse_activity,
    parse_plan_lines,
)

from factories import activity


class TestActivityId:
    """Tests for activity_id."""

    def test_prefers_id(self) -> None:
        assert activity_id({"id": "a1", "name": "sessions/s/activities/b2"}) == "a1"

    def test_falls_back_to_name(self) -> None:
        assert activity_id({"name": "sessions/s/activities/b2"}) == "b2"

    def test_none_without_either(self) -> None:
        assert activity_id({"title": "x"}) is None


class TestOrdering:
    """Tests for id_key and ordering_key."""

    def test_numeric_runs_compare_as_numbers(self) -> None:
        ids = ["act_100", "act_98", "act_102", "act_99", "act_101"]
        assert sorted(ids, key=id_key) == ["act_98", "act_99", "act_100", "act_101", "act_102"]

    def test_text_ids_compare_as_text(self) -> None:
        assert sorted(["beta", "alpha"], key=id_key) == ["alpha", "beta"]

    def test_create_time_comes_first(self) -> None:
        early = activity("z9", "2024-01-01T00:00:00Z")
        late = activity("a1", "2024-01-02T00:00:00Z")
        assert ordering_key(early) < ordering_key(late)

    def test_sort_key_matches_raw_ordering_key(self) -> None:
        raw = activity("act_7", "2024-01-01T00:00:07Z")
        assert parse_activity(raw).sort_key == ordering_key(raw)


class TestParseActivity:
    """Tests for parse_activity."""

    def test_artifact_list_and_object_shapes_agree(self) -> None:
        bash = {"command": "ls", "output": "a\nb", "exitCode": 2}
        as_list = parse_activity(activity("a", artifacts=[{"bashOutput": bash}]))
        as_object = parse_activity(activity("a", artifacts={"bashOutput": bash}))
        assert as_list.bash_output == as_object.bash_output
        assert as_list.bash_output is not None
        assert as_list.bash_output.exit_code == 2
        assert as_list.bash_output.command == "ls"

    def test_artifacts_inside_progress_update(self) -> None:
        parsed = parse_activity(
            activity(
                "a",
                progressUpdated={
                    "title": "Edited files",
                    "changeSet": {"files": [{"path": "src/app.py", "changeType": "MODIFIED"}]},
                },
            )
        )
        assert parsed.title == "Edited files"
        assert parsed.change_set is not None
        assert parsed.change_set.files[0].path == "src/app.py"
        assert "progressUpdated" in parsed.events

    def test_change_set_files_from_patch(self) -> None:
        patch = (
            "diff --git a/README.md b/README.md\n@@ -1 +1 @@\n-a\n+b\n"
            "diff --git a/src/x.py b/src/x.py\n"
        )
        parsed = parse_activity(
            activity("a", artifacts=[{"changeSet": {"gitPatch": {"unidiffPatch": patch}}}])
        )
        assert parsed.change_set is not None
        assert [f.path for f in parsed.change_set.files] == ["README.md", "src/x.py"]

    def test_plan_steps_from_payload(self) -> None:
        parsed = parse_activity(
            activity(
                "a",
                planGenerated={
                    "plan": {
                        "steps": [
                            {"title": "Read code", "description": "look around"},
                            {"description": "Write tests"},
                        ]
                    }
                },
            )
        )
        assert [s.title for s in parsed.plan_steps] == ["Read code", "Write tests"]
        assert parsed.plan_steps[0].description == "look around"

    def test_plan_steps_from_description(self) -> None:
        parsed = parse_activity(
            activity("a", description="Plan:\n1. First\n2) Second\nnot a step", planGenerated={})
        )
        assert [s.title for s in parsed.plan_steps] == ["First", "Second"]

    def test_agent_message_becomes_description(self) -> None:
        parsed = parse_activity(activity("a", agentMessaged={"agentMessage": "I have a question"}))
        assert parsed.description == "I have a question"
        assert "agentMessaged" in parsed.events

    def test_media(self) -> None:
        parsed = parse_activity(
            activity("a", artifacts=[{"media": {"data": "aGk=", "mimeType": "image/jpeg"}}])
        )
        assert parsed.media is not None
        assert parsed.media.media_type == "image/jpeg"

    def test_missing_id_raises(self) -> None:
        with pytest.raises(ActivityParseError):
            parse_activity({"createTime": "2024-01-01T00:00:00Z"})

    @pytest.mark.parametrize(
        "extra",
        [
            {"title": 5},
            {"artifacts": "nope"},
            {"artifacts": [{"bashOutput": {"command": "ls", "exitCode": "x"}}]},
            {"artifacts": [{"changeSet": {"files": "README.md"}}]},
            {"planGenerated": {"plan": {"steps": "one"}}},
        ],
    )
    def test_wrong_types_raise(self, extra: dict) -> None:
        with pytest.raises(ActivityParseError):
            parse_activity(activity("a", **extra))


class TestParsePlanLines:
    """Tests for parse_plan_lines."""

    def test_numbered_lines_only(self) -> None:
        steps = parse_plan_lines("intro\n  1. one\n2. two\n- bullet")
        assert [s.title for s in steps] == ["one", "two"]


class TestSessionRecord:
    """Tests for SessionRecord serialization."""

    def test_json_round_trip_ignores_unknown_fields(self) -> None:
        record = SessionRecord(
            session_id="s1", tenant_id="-100", thread_id=3, source="sources/x", status="COMPLETED"
        )
        raw = record.to_json().replace("{", '{"legacy": 1, ', 1)
        assert SessionRecord.from_json(raw) == record
