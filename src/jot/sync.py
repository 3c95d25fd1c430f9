"""Reconciliation pass: drop local sessions the remote no longer has.

A session is only removed when a complete remote listing lacks it, or when
it was flagged missing by the poller and a direct lookup still returns 404.
Sessions that are present get their status refreshed from the remote.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .errors import RemoteApiError
from .logging import bind_run_context, clear_context, get_logger
from .model import SESSION_ACTIVE, SESSION_MISSING, SessionIndexEntry, SessionRecord
from .poller import chat_id_for
from .remote import RemoteApi, RemoteFactory, RemoteSession
from .render import render_notice
from .store.state import SessionStateStore
from .transport import ChatSender, Destination

logger = get_logger(__name__)

REMOVED_NOTICE = "🗑 This session no longer exists remotely and was removed from the topic."


@dataclass(slots=True)
class SyncReport:
    tenants: int = 0
    tenants_halted: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    stale_index: list[str] = field(default_factory=list)
    incomplete_listings: int = 0


class Reconciler:
    def __init__(
        self,
        state: SessionStateStore,
        chat: ChatSender,
        remote_factory: RemoteFactory,
        *,
        budget_s: float = 8.0,
        notify_removed: bool = True,
    ) -> None:
        self.state = state
        self.chat = chat
        self.remote_factory = remote_factory
        self.budget_s = budget_s
        self.notify_removed = notify_removed

    async def run(self) -> SyncReport:
        report = SyncReport()
        for tenant_id in await self.state.list_tenants():
            report.tenants += 1
            try:
                await self.sync_tenant(tenant_id, report)
            except Exception:
                logger.exception("sync.tenant.failed", tenant_id=tenant_id)
            finally:
                clear_context()
        logger.info(
            "sync.done",
            removed=len(report.removed),
            updated=len(report.updated),
            halted=len(report.tenants_halted),
        )
        return report

    async def sync_tenant(self, tenant_id: str, report: SyncReport) -> None:
        bind_run_context(tenant_id=tenant_id)
        api_key = await self.state.get_api_key(tenant_id)
        if not api_key:
            return
        index = await self.state.get_sessions_index(tenant_id)
        if not index:
            return

        remote = self.remote_factory(api_key)
        try:
            try:
                page = await remote.list_sessions(budget_s=self.budget_s)
            except RemoteApiError as e:
                if e.is_auth:
                    logger.error("sync.tenant.auth_failed", status=e.status)
                    report.tenants_halted.append(tenant_id)
                    return
                raise
            if page.has_more:
                report.incomplete_listings += 1
                logger.info("sync.listing_incomplete", listed=len(page.items))
            listed = {s.id: s for s in page.items}

            for entry in index:
                try:
                    await self._reconcile(
                        tenant_id,
                        entry,
                        listed,
                        complete=not page.has_more,
                        remote=remote,
                        report=report,
                    )
                except RemoteApiError as e:
                    if e.is_auth:
                        logger.error("sync.tenant.auth_failed", status=e.status)
                        report.tenants_halted.append(tenant_id)
                        return
                    logger.warning(
                        "sync.session.failed", session_id=entry.session_id, error=str(e)
                    )
        finally:
            await remote.close()

    async def _reconcile(
        self,
        tenant_id: str,
        entry: SessionIndexEntry,
        listed: dict[str, RemoteSession],
        *,
        complete: bool,
        remote: RemoteApi,
        report: SyncReport,
    ) -> None:
        bind_run_context(thread_id=entry.thread_id, session_id=entry.session_id)
        record = await self.state.get_session(tenant_id, entry.thread_id)
        if record is None or record.session_id != entry.session_id:
            logger.warning("sync.session.stale_index")
            await self.state.remove_from_index(tenant_id, entry.session_id)
            report.stale_index.append(entry.session_id)
            return

        found = listed.get(record.session_id)
        if found is None and not complete:
            if record.status != SESSION_MISSING:
                return
            try:
                found = await remote.get_session(record.session_id)
            except RemoteApiError as e:
                if not e.is_not_found:
                    raise
        if found is None:
            await self._remove(record, report)
            return

        status = (found.state or SESSION_ACTIVE).upper()
        if status != record.status:
            logger.info("sync.session.status", old=record.status, new=status)
            record.status = status
            await self.state.put_session(record)
            report.updated.append(record.session_id)

    async def _remove(self, record: SessionRecord, report: SyncReport) -> None:
        await self.state.delete_session(record.tenant_id, record.thread_id)
        report.removed.append(record.session_id)
        logger.info("sync.session.removed")
        if not self.notify_removed:
            return
        dest = Destination(chat_id=chat_id_for(record.tenant_id), thread_id=record.thread_id)
        try:
            await self.chat.send_message(dest, render_notice(REMOVED_NOTICE))
        except Exception as e:
            logger.warning("sync.notify_failed", error=str(e))


async def run_sync(
    state: SessionStateStore,
    chat: ChatSender,
    remote_factory: RemoteFactory,
    *,
    budget_s: float = 8.0,
) -> SyncReport:
    return await Reconciler(state, chat, remote_factory, budget_s=budget_s).run()
