"""Tests for jot.paginate."""

from __future__ import annotations

import anyio
import pytest

from jot.errors import RemoteApiError, RemoteUnavailableError
from jot.paginate import paginate


class _Pages:
    """A fake paged collection: ``pages`` lists of items chained by tokens."""

    def __init__(self, pages: list[list[int]], *, delay_s: float = 0.0) -> None:
        self.pages = pages
        self.delay_s = delay_s
        self.tokens: list[str | None] = []

    async def __call__(self, token: str | None) -> tuple[list[int], str | None]:
        self.tokens.append(token)
        if self.delay_s:
            await anyio.sleep(self.delay_s)
        index = int(token) if token else 0
        next_token = str(index + 1) if index + 1 < len(self.pages) else None
        return self.pages[index], next_token


def _ten_pages() -> list[list[int]]:
    return [list(range(p * 100, (p + 1) * 100)) for p in range(10)]


class TestPaginate:
    """Tests for paginate."""

    @pytest.mark.anyio
    async def test_collects_every_page(self) -> None:
        fetch = _Pages(_ten_pages())
        page = await paginate(fetch, budget_s=5)
        assert page.items == list(range(1000))
        assert page.has_more is False
        assert fetch.tokens[0] is None

    @pytest.mark.anyio
    async def test_budget_returns_partial_without_raising(self) -> None:
        fetch = _Pages(_ten_pages(), delay_s=0.05)
        with anyio.fail_after(0.4):
            page = await paginate(fetch, budget_s=0.12)
        assert 0 < len(page.items) < 1000
        assert page.has_more is True

    @pytest.mark.anyio
    async def test_page_cap(self) -> None:
        fetch = _Pages(_ten_pages())
        page = await paginate(fetch, budget_s=5, max_pages=3)
        assert page.items == list(range(300))
        assert page.has_more is True
        assert len(fetch.tokens) == 3

    @pytest.mark.anyio
    async def test_repeated_token_stops_walk(self) -> None:
        calls: list[str | None] = []

        async def fetch(token: str | None) -> tuple[list[int], str | None]:
            calls.append(token)
            return [len(calls)], "same"

        page = await paginate(fetch, budget_s=5)
        assert page.items == [1, 2]
        assert page.has_more is True
        assert calls == [None, "same"]

    @pytest.mark.anyio
    async def test_error_mid_walk_keeps_items(self) -> None:
        async def fetch(token: str | None) -> tuple[list[int], str | None]:
            if token is None:
                return [1, 2], "next"
            raise RemoteUnavailableError("timeout")

        page = await paginate(fetch, budget_s=5)
        assert page.items == [1, 2]
        assert page.has_more is True

    @pytest.mark.anyio
    async def test_fallback_fetches_first_page_again(self) -> None:
        calls: list[str | None] = []

        async def fetch(token: str | None) -> tuple[list[int], str | None]:
            calls.append(token)
            if len(calls) == 1:
                raise RemoteUnavailableError("flaky")
            return [7], None

        page = await paginate(fetch, budget_s=5)
        assert page.items == [7]
        assert page.has_more is False
        assert calls == [None, None]

    @pytest.mark.anyio
    async def test_fallback_failure_is_empty_and_incomplete(self) -> None:
        async def fetch(token: str | None) -> tuple[list[int], str | None]:
            raise RemoteUnavailableError("down")

        page = await paginate(fetch, budget_s=5)
        assert page.items == []
        assert page.has_more is True

    @pytest.mark.anyio
    async def test_empty_collection(self) -> None:
        async def fetch(token: str | None) -> tuple[list[int], str | None]:
            return [], None

        page = await paginate(fetch, budget_s=5)
        assert page.items == []
        assert page.has_more is False

    @pytest.mark.anyio
    async def test_raise_on_propagates(self) -> None:
        async def fetch(token: str | None) -> tuple[list[int], str | None]:
            raise RemoteApiError(401, "unauthenticated")

        with pytest.raises(RemoteApiError):
            await paginate(
                fetch,
                budget_s=5,
                raise_on=lambda e: isinstance(e, RemoteApiError) and e.is_auth,
            )
