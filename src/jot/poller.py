"""The periodic activity poll.

For every registered tenant and every session in its index: fetch the
session's activities, pick the ones after the thread's cursor, and for each
in creation order classify, decide, render and send it, advancing the
cursor after every confirmed send. Nothing is kept in memory between runs.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .classify import classify
from .errors import RemoteApiError
from .logging import bind_run_context, clear_context, get_logger
from .model import (
    SESSION_COMPLETED,
    SESSION_MISSING,
    ActivityKind,
    SessionIndexEntry,
    SessionRecord,
    activity_id,
    ordering_key,
    parse_activity,
)
from .policy import Thresholds, decide
from .remote import RemoteApi, RemoteFactory
from .render import Limits, render_activity
from .settings import PollSettings
from .store.state import SessionStateStore
from .transport import ChatSender, Destination, deliver

logger = get_logger(__name__)


@dataclass(slots=True)
class PollReport:
    """What one run did, for logs and tests."""

    tenants: int = 0
    tenants_without_key: list[str] = field(default_factory=list)
    tenants_halted: list[str] = field(default_factory=list)
    sessions_polled: int = 0
    sessions_leased: int = 0
    sessions_missing: list[str] = field(default_factory=list)
    sessions_deferred: list[str] = field(default_factory=list)
    dispatched: int = 0
    failed: int = 0
    dead_lettered: int = 0
    budget_exhausted: bool = False


class TenantHalted(Exception):
    """The tenant's credential was rejected; skip its remaining sessions."""

    def __init__(self, cause: RemoteApiError) -> None:
        super().__init__(str(cause))
        self.cause = cause


def chat_id_for(tenant_id: str) -> int | str:
    """Telegram group ids are stored as text; send them back as integers."""
    return int(tenant_id) if tenant_id.lstrip("-").isdigit() else tenant_id


def select_new(
    raw_activities: list[dict[str, Any]],
    cursor: str | None,
    *,
    complete: bool = True,
) -> list[dict[str, Any]]:
    """Activities ordered after the cursor, ascending by (createTime, id).

    When a complete listing no longer holds the cursor, every activity counts
    as new: a duplicate is preferred over a lost notification. A listing cut
    short (``complete=False``) that lacks the cursor selects nothing, since the
    cursor may sit on a page that was never fetched.
    """
    with_ids = [raw for raw in raw_activities if activity_id(raw) is not None]
    dropped = len(raw_activities) - len(with_ids)
    if dropped:
        logger.warning("poll.activity.no_id", count=dropped)
    ordered = sorted(with_ids, key=ordering_key)
    if cursor is None:
        return ordered
    at_cursor = [raw for raw in ordered if activity_id(raw) == cursor]
    if not at_cursor:
        return ordered if complete else []
    floor = ordering_key(at_cursor[0])
    return [raw for raw in ordered if ordering_key(raw) > floor]


class Poller:
    """Runs one poll pass across all tenants."""

    def __init__(
        self,
        state: SessionStateStore,
        chat: ChatSender,
        remote_factory: RemoteFactory,
        *,
        settings: PollSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
        owner: str | None = None,
    ) -> None:
        self.state = state
        self.chat = chat
        self.remote_factory = remote_factory
        self.settings = settings or PollSettings()
        self.clock = clock
        self.owner = owner or uuid.uuid4().hex
        self.thresholds = Thresholds(
            collapse_chars=self.settings.collapse_threshold,
            plan_steps=self.settings.plan_step_threshold,
        )
        self.limits = Limits(
            message=self.settings.message_limit, caption=self.settings.caption_limit
        )
        self._deadline = 0.0

    def _out_of_time(self) -> bool:
        return self.clock() >= self._deadline

    async def run(self) -> PollReport:
        report = PollReport()
        self._deadline = self.clock() + self.settings.run_budget_s
        tenants = await self.state.list_tenants()
        logger.info("poll.start", tenants=len(tenants), owner=self.owner)
        for tenant_id in tenants:
            if self._out_of_time():
                report.budget_exhausted = True
                logger.warning("poll.budget_exhausted", remaining_from=tenant_id)
                break
            report.tenants += 1
            try:
                await self.poll_tenant(tenant_id, report)
            except Exception:
                logger.exception("poll.tenant.failed", tenant_id=tenant_id)
            finally:
                clear_context()
        logger.info(
            "poll.done",
            dispatched=report.dispatched,
            failed=report.failed,
            halted=len(report.tenants_halted),
            budget_exhausted=report.budget_exhausted,
        )
        return report

    async def poll_tenant(self, tenant_id: str, report: PollReport) -> None:
        bind_run_context(tenant_id=tenant_id)
        api_key = await self.state.get_api_key(tenant_id)
        if not api_key:
            logger.debug("poll.tenant.no_key")
            report.tenants_without_key.append(tenant_id)
            return

        index = await self.state.get_sessions_index(tenant_id)
        if not index:
            return

        remote = self.remote_factory(api_key)
        try:
            for entry in index:
                if self._out_of_time():
                    report.budget_exhausted = True
                    logger.warning("poll.budget_exhausted", remaining_from=entry.session_id)
                    return
                try:
                    await self.poll_session(tenant_id, entry, remote, report)
                except TenantHalted as halted:
                    logger.error(
                        "poll.tenant.auth_failed",
                        status=halted.cause.status,
                        session_id=entry.session_id,
                    )
                    report.tenants_halted.append(tenant_id)
                    return
                except Exception:
                    logger.exception("poll.session.failed", session_id=entry.session_id)
        finally:
            await remote.close()

    async def poll_session(
        self,
        tenant_id: str,
        entry: SessionIndexEntry,
        remote: RemoteApi,
        report: PollReport,
    ) -> None:
        bind_run_context(thread_id=entry.thread_id, session_id=entry.session_id)
        record = await self.state.get_session(tenant_id, entry.thread_id)
        if record is None or record.session_id != entry.session_id:
            logger.warning("poll.session.stale_index")
            return
        if record.status == SESSION_MISSING:
            return

        leased = await self.state.acquire_lease(
            tenant_id, entry.thread_id, self.owner, self.settings.lease_ttl_s
        )
        if not leased:
            logger.info("poll.session.leased_elsewhere")
            report.sessions_leased += 1
            return

        try:
            try:
                page = await remote.list_activities(
                    record.session_id, budget_s=self.settings.activities_budget_s
                )
            except RemoteApiError as e:
                if e.is_auth:
                    raise TenantHalted(e) from e
                if e.is_not_found:
                    logger.warning("poll.session.not_found")
                    record.status = SESSION_MISSING
                    await self.state.put_session(record)
                    report.sessions_missing.append(record.session_id)
                    return
                raise
            report.sessions_polled += 1
            await self._dispatch_batch(record, page.items, report, complete=not page.has_more)
        finally:
            await self.state.release_lease(tenant_id, entry.thread_id, self.owner)

    async def _dispatch_batch(
        self,
        record: SessionRecord,
        raw_activities: list[dict[str, Any]],
        report: PollReport,
        *,
        complete: bool = True,
    ) -> None:
        tenant_id, thread_id = record.tenant_id, record.thread_id
        cursor = await self.state.get_cursor(tenant_id, thread_id)
        ahead = await self.state.get_delivered_ahead(tenant_id, thread_id)
        ahead_before = list(ahead)
        candidates = select_new(raw_activities, cursor, complete=complete)
        if not candidates:
            if not complete:
                logger.warning("poll.session.partial_listing", cursor=cursor)
                report.sessions_deferred.append(record.session_id)
            return
        logger.info("poll.session.new_activities", count=len(candidates), cursor=cursor)

        # the cursor only moves forward within the listing it was found in
        floor = next(
            (ordering_key(raw) for raw in raw_activities if activity_id(raw) == cursor),
            None,
        )

        async def advance(ident: str, raw: dict[str, Any]) -> None:
            nonlocal floor
            position = ordering_key(raw)
            if floor is not None and position <= floor:
                logger.warning("poll.cursor.not_forward", activity_id=ident, cursor=cursor)
                return
            await self.state.set_cursor(tenant_id, thread_id, ident)
            floor = position

        # once one activity fails, later successes are remembered instead of
        # moving the cursor past the failed one
        blocked = False
        for raw in candidates:
            ident = activity_id(raw)
            if ident is None:
                continue
            if ident in ahead:
                if not blocked:
                    await advance(ident, raw)
                    ahead.remove(ident)
                continue
            if await self._dispatch_one(record, ident, raw, report):
                if blocked:
                    ahead.append(ident)
                else:
                    await advance(ident, raw)
            else:
                blocked = True

        if ahead != ahead_before:
            await self.state.set_delivered_ahead(tenant_id, thread_id, ahead)

    async def _dispatch_one(
        self,
        record: SessionRecord,
        ident: str,
        raw: dict[str, Any],
        report: PollReport,
    ) -> bool:
        """Send one activity. True when it is done with: sent, or dead-lettered."""
        tenant_id, thread_id = record.tenant_id, record.thread_id
        try:
            activity = parse_activity(raw)
            kind = classify(activity)
            decision = decide(kind, activity, self.thresholds)
            rendered = render_activity(
                kind,
                activity,
                decision,
                session_id=record.session_id,
                require_approval=record.require_plan_approval,
                limits=self.limits,
            )
            await deliver(
                self.chat,
                Destination(chat_id=chat_id_for(tenant_id), thread_id=thread_id),
                rendered,
            )
        except Exception as exc:
            report.failed += 1
            logger.exception("poll.activity.failed", activity_id=ident)
            attempts = await self.state.record_failure(tenant_id, thread_id, ident)
            limit = self.settings.max_activity_attempts
            if limit and attempts >= limit:
                await self.state.add_dead_letter(
                    tenant_id, thread_id, ident, f"{type(exc).__name__}: {exc}"
                )
                await self.state.clear_failure(tenant_id, thread_id, ident)
                report.dead_lettered += 1
                logger.error("poll.activity.dead_lettered", activity_id=ident, attempts=attempts)
                return True
            return False

        await self.state.clear_failure(tenant_id, thread_id, ident)
        report.dispatched += 1
        logger.info(
            "poll.activity.dispatched",
            activity_id=ident,
            kind=str(kind),
            audible=rendered.audible,
        )
        await self._apply_side_effects(record, kind)
        return True

    async def _apply_side_effects(self, record: SessionRecord, kind: ActivityKind) -> None:
        if kind is ActivityKind.PLAN_GENERATED and record.require_plan_approval:
            await self.state.set_flag(record.tenant_id, record.thread_id, "pending_plan", True)
        elif kind is ActivityKind.READY_FOR_REVIEW:
            await self.state.set_flag(
                record.tenant_id, record.thread_id, "ready_for_review", True
            )
        elif kind is ActivityKind.SESSION_COMPLETED and record.status != SESSION_COMPLETED:
            record.status = SESSION_COMPLETED
            await self.state.put_session(record)


async def run_poll(
    state: SessionStateStore,
    chat: ChatSender,
    remote_factory: RemoteFactory,
    *,
    settings: PollSettings | None = None,
) -> PollReport:
    return await Poller(state, chat, remote_factory, settings=settings).run()
