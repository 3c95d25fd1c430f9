"""Tests for user-driven actions and inline button routing."""

from __future__ import annotations

import pytest

from jot.actions import Actions
from jot.cache import SourceCatalogCache
from jot.errors import ConfigError, NoSessionError, RemoteApiError, SessionExistsError
from jot.remote import Source
from jot.store.state import SessionStateStore

from factories import API_KEY, TENANT, FakeChat, RemoteFactoryStub, bind_session


def _actions(
    state: SessionStateStore, chat: FakeChat, factory: RemoteFactoryStub, **kwargs
) -> Actions:
    return Actions(state, chat, factory, **kwargs)


class TestCreateSession:
    """Tests for session creation."""

    @pytest.mark.anyio
    async def test_creates_and_indexes(self, state: SessionStateStore) -> None:
        await state.set_config(TENANT, "api_key", API_KEY)
        await state.set_config(TENANT, "source", "sources/github/acme/api")
        await state.set_config(TENANT, "require_approval", True)
        factory = RemoteFactoryStub()
        chat = FakeChat()

        record = await _actions(state, chat, factory).create_session(TENANT, 7, "Fix the bug")

        assert record.session_id == "new-1"
        assert record.require_plan_approval is True
        stored = await state.get_session(TENANT, 7)
        assert stored is not None
        assert stored.session_id == "new-1"
        index = await state.get_sessions_index(TENANT)
        assert [(e.session_id, e.thread_id) for e in index] == [("new-1", 7)]
        remote = factory.for_key(API_KEY)
        assert remote.calls[0][0] == "create_session"
        assert remote.calls[0][1]["prompt"] == "Fix the bug"
        assert "Session created" in chat.texts[0]
        assert remote.closed == 1

    @pytest.mark.anyio
    async def test_existing_session_rejected(self, state: SessionStateStore) -> None:
        await bind_session(state)
        with pytest.raises(SessionExistsError):
            await _actions(state, FakeChat(), RemoteFactoryStub()).create_session(
                TENANT, 42, "again"
            )

    @pytest.mark.anyio
    async def test_no_source_rejected(self, state: SessionStateStore) -> None:
        await state.set_config(TENANT, "api_key", API_KEY)
        with pytest.raises(ConfigError):
            await _actions(state, FakeChat(), RemoteFactoryStub()).create_session(
                TENANT, 7, "hi"
            )


class TestHandleMessage:
    """Tests for handle_message."""

    @pytest.mark.anyio
    async def test_forwards_to_existing_session(self, state: SessionStateStore) -> None:
        await bind_session(state)
        factory = RemoteFactoryStub()

        result = await _actions(state, FakeChat(), factory).handle_message(TENANT, 42, "more")

        assert result.ok is True
        assert ("send_message", ("sess-1", "more")) in factory.for_key(API_KEY).calls

    @pytest.mark.anyio
    async def test_failure_reported_in_thread(self, state: SessionStateStore) -> None:
        await bind_session(state)
        factory = RemoteFactoryStub()
        factory.for_key(API_KEY).fail_with = RemoteApiError(401, "API key not valid")
        chat = FakeChat()

        result = await _actions(state, chat, factory).handle_message(TENANT, 42, "more")

        assert result.ok is False
        assert result.message == "the API key was rejected"
        dest, message = chat.messages[0]
        assert dest.thread_id == 42
        assert message.notify is True
        assert "Sending the message failed" in message.text

    @pytest.mark.anyio
    async def test_missing_source_reported(self, state: SessionStateStore) -> None:
        await state.set_config(TENANT, "api_key", API_KEY)
        chat = FakeChat()

        result = await _actions(state, chat, RemoteFactoryStub()).handle_message(
            TENANT, 7, "start"
        )

        assert result.ok is False
        assert "no source" in result.message
        assert "Creating the session failed" in chat.texts[0]


class TestDeleteSession:
    @pytest.mark.anyio
    async def test_delete(self, state: SessionStateStore) -> None:
        await bind_session(state)
        await state.set_cursor(TENANT, 42, "act_1")

        record = await _actions(state, FakeChat(), RemoteFactoryStub()).delete_session(
            TENANT, 42
        )

        assert record.session_id == "sess-1"
        assert await state.get_cursor(TENANT, 42) is None
        assert await state.get_sessions_index(TENANT) == []

    @pytest.mark.anyio
    async def test_delete_without_session(self, state: SessionStateStore) -> None:
        with pytest.raises(NoSessionError):
            await _actions(state, FakeChat(), RemoteFactoryStub()).delete_session(TENANT, 42)


class TestPlanAndPublish:
    """Tests for approve_plan and the publish actions."""

    @pytest.mark.anyio
    async def test_approve_requires_pending_plan(self, state: SessionStateStore) -> None:
        await bind_session(state)
        factory = RemoteFactoryStub()

        result = await _actions(state, FakeChat(), factory).approve_plan(TENANT, 42)

        assert result.ok is False
        assert factory.for_key(API_KEY).calls == []

    @pytest.mark.anyio
    async def test_approve_clears_flag(self, state: SessionStateStore) -> None:
        await bind_session(state)
        await state.set_flag(TENANT, 42, "pending_plan", True)
        factory = RemoteFactoryStub()
        chat = FakeChat()

        result = await _actions(state, chat, factory).approve_plan(TENANT, 42)

        assert result.ok is True
        assert ("approve_plan", "sess-1") in factory.for_key(API_KEY).calls
        assert await state.get_flag(TENANT, 42, "pending_plan") is False
        assert "Plan approved" in chat.texts[0]

    @pytest.mark.anyio
    async def test_approve_failure_keeps_flag(self, state: SessionStateStore) -> None:
        await bind_session(state)
        await state.set_flag(TENANT, 42, "pending_plan", True)
        factory = RemoteFactoryStub()
        factory.for_key(API_KEY).fail_with = RemoteApiError(500, "internal")

        result = await _actions(state, FakeChat(), factory).approve_plan(TENANT, 42)

        assert result.ok is False
        assert await state.get_flag(TENANT, 42, "pending_plan") is True

    @pytest.mark.anyio
    async def test_publish_pr_reports_link(self, state: SessionStateStore) -> None:
        await bind_session(state)
        await state.set_flag(TENANT, 42, "ready_for_review", True)
        factory = RemoteFactoryStub()
        factory.for_key(API_KEY).publish_result = {
            "pullRequestUrl": "https://github.com/acme/api/pull/5"
        }
        chat = FakeChat()

        result = await _actions(state, chat, factory).publish_pr(TENANT, 42)

        assert result.ok is True
        assert result.message == "https://github.com/acme/api/pull/5"
        assert await state.get_flag(TENANT, 42, "ready_for_review") is False
        assert "https://github.com/acme/api/pull/5" in chat.texts[0]

    @pytest.mark.anyio
    async def test_publish_requires_ready_flag(self, state: SessionStateStore) -> None:
        await bind_session(state)
        result = await _actions(state, FakeChat(), RemoteFactoryStub()).publish_branch(
            TENANT, 42
        )
        assert result.ok is False


class TestCallbacks:
    """Tests for dispatch_callback."""

    @pytest.mark.anyio
    async def test_approve_button_removes_keyboard(self, state: SessionStateStore) -> None:
        await bind_session(state)
        await state.set_flag(TENANT, 42, "pending_plan", True)
        chat = FakeChat()

        result = await _actions(state, chat, RemoteFactoryStub()).dispatch_callback(
            TENANT, 42, callback_query_id="cb1", data="approve_plan:sess-1", message_id=9
        )

        assert result.ok is True
        assert chat.markup_edits == [(int(TENANT), 9, None)]
        assert chat.answers[0][0] == "cb1"
        assert chat.answers[0][1].startswith("✅")

    @pytest.mark.anyio
    async def test_button_from_older_session(self, state: SessionStateStore) -> None:
        await bind_session(state)
        await state.set_flag(TENANT, 42, "pending_plan", True)
        factory = RemoteFactoryStub()
        chat = FakeChat()

        result = await _actions(state, chat, factory).dispatch_callback(
            TENANT, 42, callback_query_id="cb1", data="approve_plan:old-session"
        )

        assert result.ok is False
        assert "older session" in result.message
        assert factory.for_key(API_KEY).calls == []

    @pytest.mark.anyio
    async def test_unknown_button(self, state: SessionStateStore) -> None:
        chat = FakeChat()
        result = await _actions(state, chat, RemoteFactoryStub()).dispatch_callback(
            TENANT, 42, callback_query_id="cb1", data="bogus"
        )
        assert result.ok is False
        assert chat.answers == [("cb1", "⚠️ unknown button")]

    @pytest.mark.anyio
    async def test_no_session(self, state: SessionStateStore) -> None:
        result = await _actions(state, FakeChat(), RemoteFactoryStub()).dispatch_callback(
            TENANT, 42, callback_query_id="cb1", data="publish_pr:sess-1"
        )
        assert result.message == "this topic has no session"

    @pytest.mark.anyio
    async def test_select_source_by_index(self, state: SessionStateStore) -> None:
        await state.set_config(TENANT, "api_key", API_KEY)
        factory = RemoteFactoryStub()
        factory.for_key(API_KEY).sources = [
            Source(name="sources/github/acme/api", display_name="acme/api"),
            Source(name="sources/github/acme/web"),
        ]
        cache = SourceCatalogCache(state.kv, ttl_s=60, clock=lambda: 0.0)
        chat = FakeChat()

        result = await _actions(state, chat, factory, cache=cache).dispatch_callback(
            TENANT, 42, callback_query_id="cb1", data="select_source:1"
        )

        assert result.ok is True
        assert result.message == "web"
        config = await state.get_tenant_config(TENANT)
        assert config.source == "sources/github/acme/web"
        assert chat.text_edits == []

    @pytest.mark.anyio
    async def test_select_source_replaces_picker(self, state: SessionStateStore) -> None:
        await state.set_config(TENANT, "api_key", API_KEY)
        factory = RemoteFactoryStub()
        factory.for_key(API_KEY).sources = [Source(name="sources/github/acme/api")]
        cache = SourceCatalogCache(state.kv, ttl_s=60, clock=lambda: 0.0)
        chat = FakeChat()

        result = await _actions(state, chat, factory, cache=cache).dispatch_callback(
            TENANT, 42, callback_query_id="cb1", data="select_source:0", message_id=11
        )

        assert result.ok is True
        assert chat.text_edits == [(int(TENANT), 11, "📦 Source set to <code>api</code>")]
        assert chat.answers == [("cb1", "✅ api")]

    @pytest.mark.anyio
    async def test_select_source_out_of_range(self, state: SessionStateStore) -> None:
        await state.set_config(TENANT, "api_key", API_KEY)
        factory = RemoteFactoryStub()
        factory.for_key(API_KEY).sources = [Source(name="sources/github/acme/api")]
        cache = SourceCatalogCache(state.kv, ttl_s=60, clock=lambda: 0.0)

        result = await _actions(state, FakeChat(), factory, cache=cache).select_source(TENANT, 5)

        assert result.ok is False

    @pytest.mark.anyio
    async def test_sources_page_edits_keyboard(self, state: SessionStateStore) -> None:
        await state.set_config(TENANT, "api_key", API_KEY)
        factory = RemoteFactoryStub()
        factory.for_key(API_KEY).sources = [
            Source(name=f"sources/github/acme/r{i}") for i in range(10)
        ]
        cache = SourceCatalogCache(state.kv, ttl_s=60, clock=lambda: 0.0)
        chat = FakeChat()

        result = await _actions(state, chat, factory, cache=cache).dispatch_callback(
            TENANT, 42, callback_query_id="cb1", data="sources_page:1", message_id=3
        )

        assert result.ok is True
        (chat_id, message_id, markup), = chat.markup_edits
        assert message_id == 3
        assert markup is not None
        first = markup["inline_keyboard"][0][0]
        assert first["callback_data"] == "select_source:8"
