"""Client for the remote coding-assistant REST API."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

import anyio
import httpx

from .errors import RemoteApiError, RemoteUnavailableError
from .logging import get_logger
from .model import AutomationMode
from .paginate import DEFAULT_MAX_PAGES, Page, paginate
from .retry import DEFAULT_POLICY, SINGLE_ATTEMPT, RetryPolicy, Sleep, retry_transient

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://jules.googleapis.com/v1alpha"
API_KEY_HEADER = "X-Goog-Api-Key"

# wire enum values for automation_mode
AUTOMATION_MODES: dict[str, int] = {"INTERACTIVE": 1, "PLAN": 2, "AUTO": 3}

_BODY_PREVIEW = 200


def _last_segment(name: str) -> str:
    return name.rsplit("/", 1)[-1]


@dataclass(frozen=True, slots=True)
class Source:
    """A repository the remote assistant can work on."""

    name: str
    display_name: str = ""
    description: str | None = None

    @property
    def label(self) -> str:
        return self.display_name or _last_segment(self.name)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "Source":
        repo = data.get("githubRepo") or data.get("repository") or {}
        display = data.get("displayName") or ""
        if not display and repo.get("owner") and repo.get("repo", repo.get("name")):
            display = f"{repo['owner']}/{repo.get('repo', repo.get('name'))}"
        return cls(
            name=str(data.get("name", "")),
            display_name=str(display),
            description=data.get("description"),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "displayName": self.display_name,
            "description": self.description,
        }


@dataclass(frozen=True, slots=True)
class RemoteSession:
    """A session as the remote reports it."""

    name: str
    state: str | None = None
    title: str | None = None
    source: str | None = None
    create_time: str | None = None
    update_time: str | None = None
    outputs: list[Any] = field(default_factory=list, compare=False, hash=False)

    @property
    def id(self) -> str:
        return _last_segment(self.name)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "RemoteSession":
        name = data.get("name") or data.get("id")
        if not name:
            raise RemoteApiError(200, "session payload has no name")
        context = data.get("sourceContext") or {}
        outputs = data.get("outputs") or []
        return cls(
            name=str(name),
            state=data.get("state"),
            title=data.get("title"),
            source=context.get("source") or data.get("source"),
            create_time=data.get("createTime"),
            update_time=data.get("updateTime"),
            outputs=list(outputs) if isinstance(outputs, list) else [outputs],
        )


class RemoteApi(Protocol):
    """The remote calls the triggers and user actions depend on."""

    async def close(self) -> None: ...

    async def list_sources(
        self,
        *,
        budget_s: float = ...,
        page_size: int = ...,
        max_pages: int = ...,
        fallback_timeout_s: float | None = ...,
    ) -> Page[Source]: ...

    async def list_sessions(
        self, *, budget_s: float = ..., page_size: int = ...
    ) -> Page[RemoteSession]: ...

    async def get_session(self, session_id: str) -> RemoteSession: ...

    async def create_session(
        self,
        *,
        prompt: str,
        source: str,
        automation_mode: AutomationMode | None = ...,
        require_plan_approval: bool | None = ...,
        starting_branch: str | None = ...,
        media: dict[str, str] | None = ...,
    ) -> RemoteSession: ...

    async def send_message(
        self, session_id: str, prompt: str, *, media: dict[str, str] | None = ...
    ) -> None: ...

    async def approve_plan(self, session_id: str) -> None: ...

    async def publish_branch(self, session_id: str) -> dict[str, Any]: ...

    async def publish_pr(self, session_id: str) -> dict[str, Any]: ...

    async def list_activities(
        self, session_id: str, *, budget_s: float = ..., page_size: int = ...
    ) -> Page[dict[str, Any]]: ...


RemoteFactory = Callable[[str], RemoteApi]


class RemoteClient:
    """Authenticated calls against one tenant's API key.

    Reads are retried on transient failures. Creating a session and sending
    a message are attempted once, since the remote does not deduplicate them.
    """

    def __init__(
        self,
        api_key: str,
        *,
        client: httpx.AsyncClient | None = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout_s: float = 30.0,
        policy: RetryPolicy = DEFAULT_POLICY,
        sleep: Sleep = anyio.sleep,
    ) -> None:
        if not api_key:
            raise ValueError("API key is empty")
        self._api_key = api_key
        self._base = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_client = client is None
        self._policy = policy
        self._sleep = sleep

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "RemoteClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._base}{path}"
        headers = {API_KEY_HEADER: self._api_key}
        try:
            resp = await self._client.request(
                method, url, params=params, json=body, headers=headers
            )
        except httpx.HTTPError as e:
            logger.warning("remote.network_error", method=method, path=path, error=str(e))
            raise RemoteUnavailableError(f"{method} {path}: {type(e).__name__}") from e

        if resp.status_code >= 400:
            text = resp.text
            message = _error_message(resp)
            logger.warning(
                "remote.http_error",
                method=method,
                path=path,
                status=resp.status_code,
                body=text[:_BODY_PREVIEW],
            )
            raise RemoteApiError(resp.status_code, message, body=text)

        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError as e:
            raise RemoteApiError(resp.status_code, "response is not JSON") from e
        return data if isinstance(data, dict) else {}

    async def _call(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        policy: RetryPolicy | None = None,
    ) -> dict[str, Any]:
        return await retry_transient(
            lambda: self._request(method, path, params=params, body=body),
            policy or self._policy,
            sleep=self._sleep,
        )

    # --- sources ---

    async def list_sources(
        self,
        *,
        budget_s: float = 8.0,
        page_size: int = 100,
        max_pages: int = DEFAULT_MAX_PAGES,
        fallback_timeout_s: float | None = None,
    ) -> Page[Source]:
        """Walk the source catalog under a time budget, one attempt per page."""

        async def fetch(token: str | None) -> tuple[list[Source], str | None]:
            params: dict[str, Any] = {"pageSize": page_size}
            if token:
                params["pageToken"] = token
            data = await self._call("GET", "/sources", params=params, policy=SINGLE_ATTEMPT)
            sources = [Source.from_payload(s) for s in data.get("sources") or []]
            return sources, data.get("nextPageToken")

        return await paginate(
            fetch,
            budget_s=budget_s,
            max_pages=max_pages,
            fallback_timeout_s=fallback_timeout_s,
            raise_on=_is_auth_error,
            label="remote.sources",
        )

    # --- sessions ---

    async def list_sessions(
        self, *, budget_s: float = 8.0, page_size: int = 100
    ) -> Page[RemoteSession]:
        async def fetch(token: str | None) -> tuple[list[RemoteSession], str | None]:
            params: dict[str, Any] = {"pageSize": page_size}
            if token:
                params["pageToken"] = token
            data = await self._call("GET", "/sessions", params=params)
            sessions = [RemoteSession.from_payload(s) for s in data.get("sessions") or []]
            return sessions, data.get("nextPageToken")

        return await paginate(
            fetch, budget_s=budget_s, raise_on=_is_auth_error, label="remote.sessions"
        )

    async def get_session(self, session_id: str) -> RemoteSession:
        data = await self._call("GET", f"/sessions/{session_id}")
        return RemoteSession.from_payload(data)

    async def create_session(
        self,
        *,
        prompt: str,
        source: str,
        automation_mode: AutomationMode | None = None,
        require_plan_approval: bool | None = None,
        starting_branch: str | None = None,
        media: dict[str, str] | None = None,
    ) -> RemoteSession:
        body: dict[str, Any] = {"prompt": prompt, "source_context": {"source": source}}
        if automation_mode:
            body["automation_mode"] = AUTOMATION_MODES[automation_mode]
        if require_plan_approval is not None:
            body["require_plan_approval"] = require_plan_approval
        if starting_branch and starting_branch.strip():
            body["starting_branch"] = starting_branch
        if media:
            body["media"] = media
        data = await self._call("POST", "/sessions", body=body, policy=SINGLE_ATTEMPT)
        return RemoteSession.from_payload(data)

    async def send_message(
        self, session_id: str, prompt: str, *, media: dict[str, str] | None = None
    ) -> None:
        body: dict[str, Any] = {"prompt": prompt}
        if media:
            body["media"] = media
        await self._call(
            "POST", f"/sessions/{session_id}:sendMessage", body=body, policy=SINGLE_ATTEMPT
        )

    async def approve_plan(self, session_id: str) -> None:
        await self._call("POST", f"/sessions/{session_id}:approvePlan", body={})

    async def publish_branch(self, session_id: str) -> dict[str, Any]:
        return await self._call(
            "POST", f"/sessions/{session_id}:publishBranch", body={}, policy=SINGLE_ATTEMPT
        )

    async def publish_pr(self, session_id: str) -> dict[str, Any]:
        return await self._call(
            "POST", f"/sessions/{session_id}:publishPr", body={}, policy=SINGLE_ATTEMPT
        )

    # --- activities ---

    async def list_activities(
        self, session_id: str, *, budget_s: float = 8.0, page_size: int = 100
    ) -> Page[dict[str, Any]]:
        """Raw activity payloads, all pages, under a time budget.

        Auth and not-found failures propagate so the caller can stop the
        tenant or flag the session; anything else ends the walk early.
        """

        async def fetch(token: str | None) -> tuple[list[dict[str, Any]], str | None]:
            params: dict[str, Any] = {"pageSize": page_size}
            if token:
                params["pageToken"] = token
            data = await self._call(
                "GET", f"/sessions/{session_id}/activities", params=params
            )
            activities = data.get("activities") or []
            return [a for a in activities if isinstance(a, dict)], data.get("nextPageToken")

        return await paginate(
            fetch,
            budget_s=budget_s,
            raise_on=_is_fatal_for_session,
            label="remote.activities",
        )


def _is_auth_error(exc: Exception) -> bool:
    return isinstance(exc, RemoteApiError) and exc.is_auth


def _is_fatal_for_session(exc: Exception) -> bool:
    return isinstance(exc, RemoteApiError) and (exc.is_auth or exc.is_not_found)


def _error_message(resp: httpx.Response) -> str:
    """The ``error.message`` of a Google-style error body, else the reason phrase."""
    fallback = resp.reason_phrase or "error"
    try:
        data = resp.json()
    except ValueError:
        return fallback
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return fallback
