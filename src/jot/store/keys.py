"""Typed storage keys.

Every tenant-scoped value lives under
``tenant:<tenant_id>:<category>[:<qualifier>]:<field>``. Segments may not
contain the separator, so each rendered key maps back to exactly one
(tenant, category, qualifier, field) tuple, and a key cannot be built
without a tenant id.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Literal

SEPARATOR = ":"
TENANT_PREFIX = "tenant"
REGISTRY_PREFIX = "registry"

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_.\-]+$")

Category = Literal["config", "index", "thread", "cache"]

ConfigField = Literal[
    "api_key",
    "source",
    "default_branch",
    "automation_mode",
    "require_approval",
]

ThreadField = Literal[
    "session",
    "cursor",
    "delivered_ahead",
    "pending_plan",
    "ready_for_review",
    "lease",
    "failures",
    "dead_letter",
]

_CATEGORIES: frozenset[str] = frozenset({"config", "index", "thread", "cache"})


def _check_segment(name: str, value: str) -> None:
    if not value:
        raise ValueError(f"{name} must not be empty")
    if not _SEGMENT_RE.match(value):
        raise ValueError(f"invalid {name} {value!r}: must match {_SEGMENT_RE.pattern}")


@dataclass(frozen=True, slots=True)
class StoreKey:
    """A tenant-scoped key."""

    tenant_id: str
    category: Category
    field: str
    qualifier: str | None = None

    def __post_init__(self) -> None:
        _check_segment("tenant_id", self.tenant_id)
        if self.category not in _CATEGORIES:
            raise ValueError(f"unknown category {self.category!r}")
        _check_segment("field", self.field)
        if self.qualifier is not None:
            _check_segment("qualifier", self.qualifier)

    def render(self) -> str:
        parts = [TENANT_PREFIX, self.tenant_id, self.category]
        if self.qualifier is not None:
            parts.append(self.qualifier)
        parts.append(self.field)
        return SEPARATOR.join(parts)

    def __str__(self) -> str:
        return self.render()

    @classmethod
    def parse(cls, raw: str) -> "StoreKey":
        parts = raw.split(SEPARATOR)
        if len(parts) not in (4, 5) or parts[0] != TENANT_PREFIX:
            raise ValueError(f"not a tenant key: {raw!r}")
        if len(parts) == 4:
            _, tenant_id, category, field = parts
            qualifier = None
        else:
            _, tenant_id, category, qualifier, field = parts
        return cls(
            tenant_id=tenant_id,
            category=category,  # type: ignore[arg-type]
            field=field,
            qualifier=qualifier,
        )


@dataclass(frozen=True, slots=True)
class RegistryKey:
    """A process-wide key outside every tenant namespace."""

    name: str

    def __post_init__(self) -> None:
        _check_segment("name", self.name)

    def render(self) -> str:
        return f"{REGISTRY_PREFIX}{SEPARATOR}{self.name}"

    def __str__(self) -> str:
        return self.render()


Key = StoreKey | RegistryKey

TENANTS_REGISTRY = RegistryKey("tenants")


def tenant_config(tenant_id: str, field: ConfigField) -> StoreKey:
    return StoreKey(tenant_id=tenant_id, category="config", field=field)


def sessions_index(tenant_id: str) -> StoreKey:
    return StoreKey(tenant_id=tenant_id, category="index", field="sessions")


def thread_key(tenant_id: str, thread_id: int | str, field: ThreadField) -> StoreKey:
    return StoreKey(
        tenant_id=tenant_id,
        category="thread",
        qualifier=str(thread_id),
        field=field,
    )


def credential_fingerprint(credential: str) -> str:
    """Stable short digest of a credential, safe to embed in a key."""
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()[:16]


def source_cache(tenant_id: str, credential: str) -> StoreKey:
    return StoreKey(
        tenant_id=tenant_id,
        category="cache",
        qualifier=credential_fingerprint(credential),
        field="sources",
    )
