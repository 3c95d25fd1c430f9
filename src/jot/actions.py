"""State transitions driven by users in a topic.

The inbound webhook layer parses updates and calls into ``Actions``; this
module owns what each action does to the remote session and local state.
Failures the user should see go out as an audible message in the topic.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from .cache import SourceCatalogCache
from .errors import (
    ConfigError,
    JotError,
    NoSessionError,
    SessionExistsError,
    summarize_error,
)
from .logging import bind_run_context, get_logger
from .model import SessionIndexEntry, SessionRecord
from .paginate import Page
from .poller import chat_id_for
from .remote import RemoteApi, RemoteFactory, Source
from .render import (
    APPROVE_PLAN,
    PUBLISH_BRANCH,
    PUBLISH_PR,
    SELECT_SOURCE,
    SOURCES_PAGE,
    escape_html,
    parse_callback,
    render_failure,
    render_notice,
    sources_keyboard,
)
from .store.state import SessionStateStore
from .transport import ChatSender, Destination

logger = get_logger(__name__)

T = TypeVar("T")

SOURCES_PAGE_SIZE = 8


@dataclass(frozen=True, slots=True)
class ActionResult:
    ok: bool
    message: str


class Actions:
    def __init__(
        self,
        state: SessionStateStore,
        chat: ChatSender,
        remote_factory: RemoteFactory,
        *,
        cache: SourceCatalogCache | None = None,
        sources_budget_s: float = 8.0,
    ) -> None:
        self.state = state
        self.chat = chat
        self.remote_factory = remote_factory
        self.cache = cache
        self.sources_budget_s = sources_budget_s

    @staticmethod
    def _dest(tenant_id: str, thread_id: int) -> Destination:
        return Destination(chat_id=chat_id_for(tenant_id), thread_id=thread_id)

    async def _with_remote(
        self, tenant_id: str, call: Callable[[RemoteApi], Awaitable[T]]
    ) -> T:
        api_key = await self.state.get_api_key(tenant_id)
        if not api_key:
            raise ConfigError("no API key is configured for this group")
        remote = self.remote_factory(api_key)
        try:
            return await call(remote)
        finally:
            await remote.close()

    async def _require_session(self, tenant_id: str, thread_id: int) -> SessionRecord:
        record = await self.state.get_session(tenant_id, thread_id)
        if record is None:
            raise NoSessionError(f"thread {thread_id} has no session")
        return record

    async def _report_failure(
        self, tenant_id: str, thread_id: int, what: str, exc: Exception
    ) -> ActionResult:
        summary = str(exc) if isinstance(exc, ConfigError) else summarize_error(exc)
        logger.warning("action.failed", action=what, error=str(exc))
        try:
            await self.chat.send_message(
                self._dest(tenant_id, thread_id), render_failure(what, summary)
            )
        except JotError as send_exc:
            logger.error("action.failure_notice_failed", error=str(send_exc))
        return ActionResult(ok=False, message=summary)

    # --- sessions ---

    async def create_session(
        self,
        tenant_id: str,
        thread_id: int,
        prompt: str,
        *,
        media: dict[str, str] | None = None,
    ) -> SessionRecord:
        """Start a remote session for an empty thread.

        Raises:
            SessionExistsError: the thread already has a session.
            ConfigError: the group has no API key or source.
        """
        bind_run_context(tenant_id=tenant_id, thread_id=thread_id)
        if await self.state.get_session(tenant_id, thread_id) is not None:
            raise SessionExistsError(f"thread {thread_id} already has a session")
        config = await self.state.get_tenant_config(tenant_id)
        if not config.source:
            raise ConfigError("no source is configured for this group")

        remote_session = await self._with_remote(
            tenant_id,
            lambda remote: remote.create_session(
                prompt=prompt,
                source=config.source or "",
                automation_mode=config.automation_mode,
                require_plan_approval=config.require_approval,
                starting_branch=config.default_branch,
                media=media,
            ),
        )
        record = SessionRecord(
            session_id=remote_session.id,
            tenant_id=tenant_id,
            thread_id=thread_id,
            source=config.source,
            automation_mode=config.automation_mode,
            require_plan_approval=config.require_approval,
            starting_branch=config.default_branch,
        )
        await self.state.put_session(record)
        await self.state.add_to_index(
            tenant_id, SessionIndexEntry(session_id=record.session_id, thread_id=thread_id)
        )
        logger.info("action.session_created", session_id=record.session_id)
        await self.chat.send_message(
            self._dest(tenant_id, thread_id),
            render_notice(
                f"🚀 <b>Session created</b>\n\n<code>{escape_html(record.session_id)}</code>"
                f" on {escape_html(record.source)}"
            ),
        )
        return record

    async def handle_message(
        self,
        tenant_id: str,
        thread_id: int,
        text: str,
        *,
        media: dict[str, str] | None = None,
    ) -> ActionResult:
        """First message in a thread creates the session, later ones are forwarded."""
        bind_run_context(tenant_id=tenant_id, thread_id=thread_id)
        record = await self.state.get_session(tenant_id, thread_id)
        try:
            if record is None:
                record = await self.create_session(tenant_id, thread_id, text, media=media)
                return ActionResult(ok=True, message=f"created {record.session_id}")
            session_id = record.session_id
            await self._with_remote(
                tenant_id, lambda remote: remote.send_message(session_id, text, media=media)
            )
        except SessionExistsError:
            raise
        except JotError as e:
            what = "Creating the session" if record is None else "Sending the message"
            return await self._report_failure(tenant_id, thread_id, what, e)
        logger.info("action.message_sent", session_id=record.session_id)
        return ActionResult(ok=True, message="sent")

    async def delete_session(self, tenant_id: str, thread_id: int) -> SessionRecord:
        """Forget the thread's session locally. The remote session is left alone.

        Raises:
            NoSessionError: the thread has no session.
        """
        record = await self.state.delete_session(tenant_id, thread_id)
        if record is None:
            raise NoSessionError(f"thread {thread_id} has no session")
        logger.info("action.session_deleted", session_id=record.session_id)
        return record

    # --- plan and publishing ---

    async def approve_plan(self, tenant_id: str, thread_id: int) -> ActionResult:
        bind_run_context(tenant_id=tenant_id, thread_id=thread_id)
        record = await self._require_session(tenant_id, thread_id)
        if not await self.state.get_flag(tenant_id, thread_id, "pending_plan"):
            return ActionResult(ok=False, message="no plan is awaiting approval")
        try:
            await self._with_remote(
                tenant_id, lambda remote: remote.approve_plan(record.session_id)
            )
        except JotError as e:
            return await self._report_failure(tenant_id, thread_id, "Plan approval", e)
        await self.state.set_flag(tenant_id, thread_id, "pending_plan", False)
        await self.chat.send_message(
            self._dest(tenant_id, thread_id),
            render_notice("✅ <b>Plan approved!</b>\n\nWork on the implementation is starting."),
        )
        return ActionResult(ok=True, message="plan approved")

    async def _publish(
        self,
        tenant_id: str,
        thread_id: int,
        what: str,
        call: Callable[[RemoteApi, str], Awaitable[dict[str, Any]]],
    ) -> ActionResult:
        bind_run_context(tenant_id=tenant_id, thread_id=thread_id)
        record = await self._require_session(tenant_id, thread_id)
        if not await self.state.get_flag(tenant_id, thread_id, "ready_for_review"):
            return ActionResult(ok=False, message="nothing is ready to publish")
        try:
            result = await self._with_remote(
                tenant_id, lambda remote: call(remote, record.session_id)
            )
        except JotError as e:
            return await self._report_failure(tenant_id, thread_id, what, e)
        await self.state.set_flag(tenant_id, thread_id, "ready_for_review", False)
        link = next(
            (str(v) for k, v in result.items() if k.lower().endswith("url") and v), None
        )
        text = f"✅ <b>{escape_html(what)} done</b>"
        if link:
            text += f"\n\n{escape_html(link)}"
        await self.chat.send_message(
            self._dest(tenant_id, thread_id), render_notice(text, notify=True)
        )
        return ActionResult(ok=True, message=link or f"{what} done")

    async def publish_branch(self, tenant_id: str, thread_id: int) -> ActionResult:
        return await self._publish(
            tenant_id,
            thread_id,
            "Publishing the branch",
            lambda remote, session_id: remote.publish_branch(session_id),
        )

    async def publish_pr(self, tenant_id: str, thread_id: int) -> ActionResult:
        return await self._publish(
            tenant_id,
            thread_id,
            "Opening the pull request",
            lambda remote, session_id: remote.publish_pr(session_id),
        )

    # --- sources ---

    async def _cached_sources(self, tenant_id: str) -> list[Source]:
        if self.cache is None:
            raise ConfigError("source catalog is unavailable")
        api_key = await self.state.get_api_key(tenant_id)
        if not api_key:
            raise ConfigError("no API key is configured for this group")

        async def fetch() -> Page[Source]:
            remote = self.remote_factory(api_key)
            try:
                return await remote.list_sources(budget_s=self.sources_budget_s)
            finally:
                await remote.close()

        entry = await self.cache.get_or_fetch(tenant_id, api_key, fetch)
        return entry.sources

    async def select_source(self, tenant_id: str, index: int) -> ActionResult:
        sources = await self._cached_sources(tenant_id)
        if not 0 <= index < len(sources):
            return ActionResult(ok=False, message="that source list is out of date")
        chosen = sources[index]
        await self.state.set_config(tenant_id, "source", chosen.name)
        logger.info("action.source_selected", tenant_id=tenant_id, source=chosen.name)
        return ActionResult(ok=True, message=chosen.label)

    # --- inline buttons ---

    async def dispatch_callback(
        self,
        tenant_id: str,
        thread_id: int,
        *,
        callback_query_id: str,
        data: str,
        message_id: int | None = None,
    ) -> ActionResult:
        """Route an inline button press and acknowledge it."""
        callback = parse_callback(data)
        if callback is None:
            result = ActionResult(ok=False, message="unknown button")
        else:
            try:
                result = await self._route_callback(
                    tenant_id, thread_id, callback.action, callback.value, message_id
                )
            except NoSessionError:
                result = ActionResult(ok=False, message="this topic has no session")
            except JotError as e:
                result = ActionResult(ok=False, message=summarize_error(e))
        prefix = "✅" if result.ok else "⚠️"
        await self.chat.answer_callback_query(
            callback_query_id, f"{prefix} {result.message}"[:200]
        )
        return result

    async def _route_callback(
        self,
        tenant_id: str,
        thread_id: int,
        action: str,
        value: str,
        message_id: int | None,
    ) -> ActionResult:
        if action in (APPROVE_PLAN, PUBLISH_BRANCH, PUBLISH_PR):
            record = await self._require_session(tenant_id, thread_id)
            if record.session_id != value:
                return ActionResult(ok=False, message="this button belongs to an older session")
            if action == APPROVE_PLAN:
                result = await self.approve_plan(tenant_id, thread_id)
            elif action == PUBLISH_BRANCH:
                result = await self.publish_branch(tenant_id, thread_id)
            else:
                result = await self.publish_pr(tenant_id, thread_id)
            if result.ok and message_id is not None:
                await self.chat.edit_message_reply_markup(
                    chat_id_for(tenant_id), message_id, None
                )
            return result

        if not value.isdigit():
            return ActionResult(ok=False, message="unknown button")
        if action == SELECT_SOURCE:
            result = await self.select_source(tenant_id, int(value))
            if result.ok and message_id is not None:
                # the picker is replaced by the choice, dropping its keyboard
                await self.chat.edit_message_text(
                    chat_id_for(tenant_id),
                    message_id,
                    f"📦 Source set to <code>{escape_html(result.message)}</code>",
                )
            return result
        if action == SOURCES_PAGE:
            sources = await self._cached_sources(tenant_id)
            if message_id is not None:
                await self.chat.edit_message_reply_markup(
                    chat_id_for(tenant_id),
                    message_id,
                    sources_keyboard(
                        [s.label for s in sources],
                        page=int(value),
                        page_size=SOURCES_PAGE_SIZE,
                    ),
                )
            return ActionResult(ok=True, message=f"page {int(value) + 1}")
        return ActionResult(ok=False, message="unknown button")
