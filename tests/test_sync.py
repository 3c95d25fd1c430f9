"""Tests for the reconciliation pass."""

from __future__ import annotations

import pytest

from jot.errors import RemoteApiError
from jot.model import SessionIndexEntry
from jot.remote import RemoteSession
from jot.store.state import SessionStateStore
from jot.sync import REMOVED_NOTICE, Reconciler

from factories import API_KEY, TENANT, FakeChat, RemoteFactoryStub, bind_session


def _session(session_id: str, state: str = "IN_PROGRESS") -> RemoteSession:
    return RemoteSession(name=f"sessions/{session_id}", state=state)


class TestReconciler:
    """Tests for Reconciler.run."""

    @pytest.mark.anyio
    async def test_removes_session_absent_from_complete_listing(
        self, state: SessionStateStore
    ) -> None:
        await bind_session(state, session_id="kept")
        await bind_session(state, thread_id=43, session_id="dropped")
        await state.set_cursor(TENANT, 43, "act_1")
        factory = RemoteFactoryStub()
        factory.for_key(API_KEY).sessions = {"kept": _session("kept")}
        chat = FakeChat()

        report = await Reconciler(state, chat, factory).run()

        assert report.removed == ["dropped"]
        assert await state.get_session(TENANT, 43) is None
        assert await state.get_cursor(TENANT, 43) is None
        assert [e.session_id for e in await state.get_sessions_index(TENANT)] == ["kept"]
        assert chat.texts == [REMOVED_NOTICE]
        dest, message = chat.messages[0]
        assert dest.thread_id == 43
        assert message.notify is False

    @pytest.mark.anyio
    async def test_incomplete_listing_keeps_unlisted_sessions(
        self, state: SessionStateStore
    ) -> None:
        await bind_session(state, session_id="unlisted")
        factory = RemoteFactoryStub()
        remote = factory.for_key(API_KEY)
        remote.sessions_has_more = True

        report = await Reconciler(state, FakeChat(), factory).run()

        assert report.removed == []
        assert report.incomplete_listings == 1
        assert await state.get_session(TENANT, 42) is not None
        assert ("get_session", "unlisted") not in remote.calls

    @pytest.mark.anyio
    async def test_missing_session_confirmed_by_lookup(self, state: SessionStateStore) -> None:
        await bind_session(state, session_id="gone", status="MISSING")
        factory = RemoteFactoryStub()
        factory.for_key(API_KEY).sessions_has_more = True

        report = await Reconciler(state, FakeChat(), factory, notify_removed=False).run()

        assert report.removed == ["gone"]
        assert await state.get_session(TENANT, 42) is None

    @pytest.mark.anyio
    async def test_missing_session_that_still_exists_is_restored(
        self, state: SessionStateStore
    ) -> None:
        await bind_session(state, session_id="back", status="MISSING")
        factory = RemoteFactoryStub()
        remote = factory.for_key(API_KEY)
        remote.sessions_has_more = True

        # present, but on a page the listing never reached
        async def get_session(session_id: str) -> RemoteSession:
            return _session(session_id, "COMPLETED")

        remote.get_session = get_session  # type: ignore[method-assign]

        report = await Reconciler(state, FakeChat(), factory).run()

        assert report.removed == []
        assert report.updated == ["back"]
        record = await state.get_session(TENANT, 42)
        assert record is not None
        assert record.status == "COMPLETED"

    @pytest.mark.anyio
    async def test_status_refreshed(self, state: SessionStateStore) -> None:
        await bind_session(state, session_id="s1")
        factory = RemoteFactoryStub()
        factory.for_key(API_KEY).sessions = {"s1": _session("s1", "completed")}

        report = await Reconciler(state, FakeChat(), factory).run()

        assert report.updated == ["s1"]
        record = await state.get_session(TENANT, 42)
        assert record is not None
        assert record.status == "COMPLETED"

    @pytest.mark.anyio
    async def test_stale_index_entry_dropped(self, state: SessionStateStore) -> None:
        await bind_session(state, session_id="s1")
        await state.add_to_index(TENANT, SessionIndexEntry(session_id="orphan", thread_id=99))
        factory = RemoteFactoryStub()
        factory.for_key(API_KEY).sessions = {"s1": _session("s1")}

        report = await Reconciler(state, FakeChat(), factory).run()

        assert report.stale_index == ["orphan"]
        assert [e.session_id for e in await state.get_sessions_index(TENANT)] == ["s1"]

    @pytest.mark.anyio
    async def test_auth_failure_halts_tenant(self, state: SessionStateStore) -> None:
        await bind_session(state, session_id="s1")
        factory = RemoteFactoryStub()
        factory.for_key(API_KEY).fail_with = RemoteApiError(403, "forbidden")

        report = await Reconciler(state, FakeChat(), factory).run()

        assert report.tenants_halted == [TENANT]
        assert report.removed == []
        assert await state.get_session(TENANT, 42) is not None
