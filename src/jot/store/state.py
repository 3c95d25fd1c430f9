"""Per-tenant, per-thread state on top of a key-value backend."""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Literal

from ..logging import get_logger
from ..model import SessionIndexEntry, SessionRecord, TenantConfig
from . import keys
from .kv import KeyValueStore

logger = get_logger(__name__)

Flag = Literal["pending_plan", "ready_for_review"]

_THREAD_FIELDS: tuple[keys.ThreadField, ...] = (
    "session",
    "cursor",
    "delivered_ahead",
    "pending_plan",
    "ready_for_review",
    "failures",
    "dead_letter",
)


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, UTC).isoformat().replace("+00:00", "Z")


class SessionStateStore:
    """Typed accessors for everything Jot persists between invocations.

    There are no transactions: read-modify-write helpers (index, counters)
    can lose an update when two runs overlap on the same tenant.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.kv = kv
        self.clock = clock

    def now_iso(self) -> str:
        return _iso(self.clock())

    async def _get_json(self, key: keys.Key, default: Any) -> Any:
        raw = await self.kv.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("state.corrupt_value", key=key.render())
            return default

    async def _put_json(self, key: keys.Key, value: Any) -> None:
        await self.kv.put(key, json.dumps(value))

    # --- tenants ---

    async def list_tenants(self) -> list[str]:
        tenants = await self._get_json(keys.TENANTS_REGISTRY, [])
        return [str(t) for t in tenants]

    async def register_tenant(self, tenant_id: str) -> None:
        tenants = await self.list_tenants()
        if tenant_id not in tenants:
            tenants.append(tenant_id)
            await self._put_json(keys.TENANTS_REGISTRY, tenants)

    async def get_api_key(self, tenant_id: str) -> str | None:
        return await self.kv.get(keys.tenant_config(tenant_id, "api_key"))

    async def set_config(
        self, tenant_id: str, field: keys.ConfigField, value: str | bool
    ) -> None:
        if isinstance(value, bool):
            value = "true" if value else "false"
        await self.kv.put(keys.tenant_config(tenant_id, field), value)
        await self.register_tenant(tenant_id)

    async def get_tenant_config(self, tenant_id: str) -> TenantConfig:
        async def _get(field: keys.ConfigField) -> str | None:
            return await self.kv.get(keys.tenant_config(tenant_id, field))

        mode = await _get("automation_mode")
        return TenantConfig(
            tenant_id=tenant_id,
            api_key=await _get("api_key"),
            source=await _get("source"),
            default_branch=await _get("default_branch"),
            automation_mode=mode if mode in ("INTERACTIVE", "PLAN", "AUTO") else None,  # type: ignore[arg-type]
            require_approval=(await _get("require_approval")) == "true",
        )

    # --- sessions ---

    async def get_session(self, tenant_id: str, thread_id: int) -> SessionRecord | None:
        raw = await self.kv.get(keys.thread_key(tenant_id, thread_id, "session"))
        if raw is None:
            return None
        try:
            return SessionRecord.from_json(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning(
                "state.corrupt_session", tenant_id=tenant_id, thread_id=thread_id
            )
            return None

    async def put_session(self, record: SessionRecord) -> None:
        now = self.now_iso()
        if not record.created_at:
            record.created_at = now
        record.updated_at = now
        await self.kv.put(
            keys.thread_key(record.tenant_id, record.thread_id, "session"),
            record.to_json(),
        )

    async def delete_session(self, tenant_id: str, thread_id: int) -> SessionRecord | None:
        """Drop the thread's session and every per-thread value tied to it."""
        record = await self.get_session(tenant_id, thread_id)
        for field in _THREAD_FIELDS:
            await self.kv.delete(keys.thread_key(tenant_id, thread_id, field))
        if record is not None:
            await self.remove_from_index(tenant_id, record.session_id)
        return record

    async def get_sessions_index(self, tenant_id: str) -> list[SessionIndexEntry]:
        entries = await self._get_json(keys.sessions_index(tenant_id), [])
        index: list[SessionIndexEntry] = []
        for entry in entries:
            if not isinstance(entry, dict) or "session_id" not in entry:
                logger.warning("state.bad_index_entry", tenant_id=tenant_id, entry=entry)
                continue
            index.append(
                SessionIndexEntry(
                    session_id=str(entry["session_id"]),
                    thread_id=int(entry["thread_id"]),
                )
            )
        return index

    async def _put_index(self, tenant_id: str, index: list[SessionIndexEntry]) -> None:
        await self._put_json(
            keys.sessions_index(tenant_id),
            [{"session_id": e.session_id, "thread_id": e.thread_id} for e in index],
        )

    async def add_to_index(self, tenant_id: str, entry: SessionIndexEntry) -> None:
        index = await self.get_sessions_index(tenant_id)
        if any(e.session_id == entry.session_id for e in index):
            return
        index.append(entry)
        await self._put_index(tenant_id, index)

    async def remove_from_index(self, tenant_id: str, session_id: str) -> None:
        index = await self.get_sessions_index(tenant_id)
        remaining = [e for e in index if e.session_id != session_id]
        if len(remaining) != len(index):
            await self._put_index(tenant_id, remaining)

    # --- cursor ---

    async def get_cursor(self, tenant_id: str, thread_id: int) -> str | None:
        return await self.kv.get(keys.thread_key(tenant_id, thread_id, "cursor"))

    async def set_cursor(self, tenant_id: str, thread_id: int, activity_id: str) -> None:
        await self.kv.put(keys.thread_key(tenant_id, thread_id, "cursor"), activity_id)

    async def get_delivered_ahead(self, tenant_id: str, thread_id: int) -> list[str]:
        ids = await self._get_json(
            keys.thread_key(tenant_id, thread_id, "delivered_ahead"), []
        )
        return [str(i) for i in ids]

    async def set_delivered_ahead(
        self, tenant_id: str, thread_id: int, activity_ids: list[str]
    ) -> None:
        key = keys.thread_key(tenant_id, thread_id, "delivered_ahead")
        if activity_ids:
            await self._put_json(key, activity_ids)
        else:
            await self.kv.delete(key)

    # --- flags ---

    async def get_flag(self, tenant_id: str, thread_id: int, flag: Flag) -> bool:
        return (await self.kv.get(keys.thread_key(tenant_id, thread_id, flag))) == "true"

    async def set_flag(
        self, tenant_id: str, thread_id: int, flag: Flag, value: bool
    ) -> None:
        await self.kv.put(
            keys.thread_key(tenant_id, thread_id, flag), "true" if value else "false"
        )

    # --- malformed activity bookkeeping ---

    async def record_failure(self, tenant_id: str, thread_id: int, activity_id: str) -> int:
        """Bump and return the failed-attempt count for one activity."""
        key = keys.thread_key(tenant_id, thread_id, "failures")
        counts = await self._get_json(key, {})
        counts[activity_id] = int(counts.get(activity_id, 0)) + 1
        await self._put_json(key, counts)
        return counts[activity_id]

    async def clear_failure(self, tenant_id: str, thread_id: int, activity_id: str) -> None:
        key = keys.thread_key(tenant_id, thread_id, "failures")
        counts = await self._get_json(key, {})
        if activity_id in counts:
            del counts[activity_id]
            if counts:
                await self._put_json(key, counts)
            else:
                await self.kv.delete(key)

    async def get_dead_letters(self, tenant_id: str, thread_id: int) -> list[dict[str, Any]]:
        return await self._get_json(keys.thread_key(tenant_id, thread_id, "dead_letter"), [])

    async def add_dead_letter(
        self, tenant_id: str, thread_id: int, activity_id: str, error: str
    ) -> None:
        key = keys.thread_key(tenant_id, thread_id, "dead_letter")
        letters = await self._get_json(key, [])
        letters.append({"activity_id": activity_id, "error": error, "at": self.now_iso()})
        await self._put_json(key, letters)

    # --- lease ---

    async def acquire_lease(
        self, tenant_id: str, thread_id: int, owner: str, ttl_s: float
    ) -> bool:
        """Take the thread's lease unless another live owner holds it.

        Best effort: get then put, so two runs starting in the same instant
        can both succeed.
        """
        key = keys.thread_key(tenant_id, thread_id, "lease")
        now = self.clock()
        lease = await self._get_json(key, None)
        if (
            isinstance(lease, dict)
            and lease.get("owner") != owner
            and float(lease.get("expires_at", 0)) > now
        ):
            return False
        await self._put_json(key, {"owner": owner, "expires_at": now + ttl_s})
        return True

    async def release_lease(self, tenant_id: str, thread_id: int, owner: str) -> None:
        key = keys.thread_key(tenant_id, thread_id, "lease")
        lease = await self._get_json(key, None)
        if isinstance(lease, dict) and lease.get("owner") == owner:
            await self.kv.delete(key)
