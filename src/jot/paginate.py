"""Time-budgeted pagination over page-token collections.

The remote catalog can span hundreds of pages while every invocation runs
under an outer execution ceiling. Walking it must stop on its own, keeping
whatever it has collected, instead of being killed halfway through a write.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

import anyio

from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_PAGES = 500

PageFetch = Callable[[str | None], Awaitable[tuple[list[T], str | None]]]


@dataclass(frozen=True, slots=True)
class Page(Generic[T]):
    """Items collected so far, and whether the collection has more."""

    items: list[T] = field(default_factory=list)
    has_more: bool = False


async def paginate(
    fetch_page: PageFetch[T],
    *,
    budget_s: float,
    max_pages: int = DEFAULT_MAX_PAGES,
    fallback_timeout_s: float | None = None,
    raise_on: Callable[[Exception], bool] | None = None,
    label: str = "paginate",
) -> Page[T]:
    """Fetch pages until exhausted, out of time, looping, or at the page cap.

    Args:
        fetch_page: Called with the page token (None for the first page),
            returns the page items and the next token.
        budget_s: Wall-clock ceiling for the whole walk.
        max_pages: Hard cap on the number of pages fetched.
        fallback_timeout_s: Ceiling for the single retry of the first page
            when the walk collected nothing. Defaults to ``budget_s``.
        raise_on: Errors it accepts propagate instead of ending the walk,
            for failures the caller must act on (bad credential, gone).
        label: Prefix for log events.

    Returns:
        A Page with the collected items. ``has_more`` is True whenever the
        walk stopped before the remote reported the last page.
    """
    items: list[T] = []
    has_more = False
    pages = 0
    seen_tokens: set[str] = set()

    with anyio.move_on_after(budget_s) as scope:
        token: str | None = None
        while True:
            try:
                batch, next_token = await fetch_page(token)
            except Exception as exc:
                if raise_on is not None and raise_on(exc):
                    raise
                logger.warning(f"{label}.page_failed", page=pages + 1, error=str(exc))
                has_more = True
                break
            pages += 1
            items.extend(batch)
            if not next_token:
                has_more = False
                break
            has_more = True
            if next_token in seen_tokens:
                logger.warning(f"{label}.token_loop", page=pages, token=next_token)
                break
            if pages >= max_pages:
                logger.warning(f"{label}.page_cap", pages=pages)
                break
            seen_tokens.add(next_token)
            token = next_token

    if scope.cancelled_caught:
        has_more = True
        logger.info(f"{label}.budget_elapsed", budget_s=budget_s, pages=pages)

    if not items:
        fallback: Page[T] = Page()
        with anyio.move_on_after(
            budget_s if fallback_timeout_s is None else fallback_timeout_s
        ) as fallback_scope:
            try:
                batch, next_token = await fetch_page(None)
                fallback = Page(items=list(batch), has_more=bool(next_token))
            except Exception as exc:
                if raise_on is not None and raise_on(exc):
                    raise
                logger.warning(f"{label}.fallback_failed", error=str(exc))
                fallback = Page(items=[], has_more=True)
        if fallback_scope.cancelled_caught:
            fallback = Page(items=[], has_more=True)
        logger.debug(
            f"{label}.fallback", items=len(fallback.items), has_more=fallback.has_more
        )
        return fallback

    logger.debug(f"{label}.done", items=len(items), pages=pages, has_more=has_more)
    return Page(items=items, has_more=has_more)
