"""Read-through cache for a tenant's source catalog.

Entries are keyed by tenant and a fingerprint of the credential, so a new
API key never sees the previous key's catalog. Time comes from an injected
clock.
"""

from __future__ import annotations

import json
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .errors import JotError
from .logging import get_logger
from .paginate import DEFAULT_MAX_PAGES, Page
from .remote import RemoteApi, RemoteFactory, Source
from .store import keys
from .store.kv import KeyValueStore
from .store.state import SessionStateStore

logger = get_logger(__name__)

DEFAULT_TTL_S = 3600.0

FetchSources = Callable[[], Awaitable[Page[Source]]]


@dataclass(frozen=True, slots=True)
class CachedSources:
    sources: list[Source]
    has_more: bool
    expires_at: float


class SourceCatalogCache:
    def __init__(
        self,
        kv: KeyValueStore,
        *,
        ttl_s: float = DEFAULT_TTL_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if ttl_s <= 0:
            raise ValueError("ttl_s must be positive")
        self._kv = kv
        self._ttl_s = ttl_s
        self._clock = clock

    async def get(self, tenant_id: str, credential: str) -> CachedSources | None:
        """Return the live entry, or None when missing, expired, or unreadable."""
        raw = await self._kv.get(keys.source_cache(tenant_id, credential))
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            entry = CachedSources(
                sources=[Source.from_payload(s) for s in data["sources"]],
                has_more=bool(data.get("has_more", False)),
                expires_at=float(data["expires_at"]),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("sources_cache.corrupt", tenant_id=tenant_id)
            return None
        if entry.expires_at <= self._clock():
            logger.debug("sources_cache.expired", tenant_id=tenant_id)
            return None
        return entry

    async def put(self, tenant_id: str, credential: str, page: Page[Source]) -> CachedSources:
        entry = CachedSources(
            sources=list(page.items),
            has_more=page.has_more,
            expires_at=self._clock() + self._ttl_s,
        )
        payload = {
            "expires_at": entry.expires_at,
            "has_more": entry.has_more,
            "sources": [s.to_payload() for s in entry.sources],
        }
        await self._kv.put(keys.source_cache(tenant_id, credential), json.dumps(payload))
        return entry

    async def invalidate(self, tenant_id: str, credential: str) -> None:
        await self._kv.delete(keys.source_cache(tenant_id, credential))

    async def refresh(
        self, tenant_id: str, credential: str, fetch: FetchSources
    ) -> CachedSources | None:
        """Fetch and store unconditionally. An empty result is not cached."""
        page = await fetch()
        if not page.items:
            logger.info("sources_cache.empty_fetch", tenant_id=tenant_id, has_more=page.has_more)
            return None
        entry = await self.put(tenant_id, credential, page)
        logger.info(
            "sources_cache.refreshed",
            tenant_id=tenant_id,
            count=len(entry.sources),
            has_more=entry.has_more,
        )
        return entry

    async def get_or_fetch(
        self, tenant_id: str, credential: str, fetch: FetchSources
    ) -> CachedSources:
        entry = await self.get(tenant_id, credential)
        if entry is not None:
            return entry
        refreshed = await self.refresh(tenant_id, credential, fetch)
        if refreshed is not None:
            return refreshed
        return CachedSources(sources=[], has_more=True, expires_at=self._clock())


async def refresh_all(
    state: SessionStateStore,
    cache: SourceCatalogCache,
    remote_factory: RemoteFactory,
    *,
    budget_s: float = 9.0,
    page_size: int = 100,
    max_pages: int = DEFAULT_MAX_PAGES,
) -> dict[str, int]:
    """Refresh every tenant's catalog; returns source counts per tenant.

    A tenant whose fetch fails keeps its previous entry and is reported
    with a count of -1.
    """
    counts: dict[str, int] = {}
    for tenant_id in await state.list_tenants():
        api_key = await state.get_api_key(tenant_id)
        if not api_key:
            continue
        remote = remote_factory(api_key)

        async def fetch(remote: RemoteApi = remote) -> Page[Source]:
            return await remote.list_sources(
                budget_s=budget_s, page_size=page_size, max_pages=max_pages
            )

        try:
            entry = await cache.refresh(tenant_id, api_key, fetch)
        except JotError as e:
            logger.warning("sources_cache.refresh_failed", tenant_id=tenant_id, error=str(e))
            counts[tenant_id] = -1
            continue
        finally:
            await remote.close()
        counts[tenant_id] = len(entry.sources) if entry is not None else 0
    return counts
