"""Minimal Telegram Bot API client over httpx."""

from __future__ import annotations

import json
from typing import Any

import anyio
import httpx

from .errors import TelegramError
from .logging import get_logger
from .retry import DEFAULT_POLICY, RetryPolicy, Sleep, retry_transient, retry_with_backoff
from .transport import (
    PARSE_MODE,
    ChatId,
    Destination,
    OutgoingMessage,
    Photo,
    SentMessage,
)

logger = get_logger(__name__)

DEFAULT_API_URL = "https://api.telegram.org"


def retry_after_from_payload(payload: dict[str, Any]) -> float | None:
    params = payload.get("parameters")
    if isinstance(params, dict):
        value = params.get("retry_after")
        if isinstance(value, (int, float)):
            return float(value)
    return None


def _answered_transient(exc: Exception) -> bool:
    """Telegram replied with 429 or 5xx, so the request was not applied."""
    return isinstance(exc, TelegramError) and exc.status is not None and exc.is_transient


def _thread_params(dest: Destination) -> dict[str, Any]:
    params: dict[str, Any] = {"chat_id": dest.chat_id}
    if dest.thread_id is not None:
        params["message_thread_id"] = dest.thread_id
    return params


class TelegramClient:
    """Sends, edits and acknowledges messages for one bot token.

    Transient failures (network, 5xx, 429) are retried with backoff; a 429
    waits at least as long as Telegram's ``retry_after`` hint. Sends are
    only retried when Telegram answered, since a timed-out send may already
    have posted.
    """

    def __init__(
        self,
        token: str,
        *,
        client: httpx.AsyncClient | None = None,
        base_url: str = DEFAULT_API_URL,
        timeout_s: float = 30.0,
        policy: RetryPolicy = DEFAULT_POLICY,
        sleep: Sleep = anyio.sleep,
    ) -> None:
        if not token:
            raise ValueError("Telegram token is empty")
        self._base = f"{base_url.rstrip('/')}/bot{token}"
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_client = client is None
        self._policy = policy
        self._sleep = sleep

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(
        self,
        method: str,
        data: dict[str, Any],
        *,
        files: dict[str, tuple[str, bytes, str]] | None = None,
    ) -> Any:
        """Call one Bot API method once and return its ``result``.

        Raises:
            TelegramError: network failure, non-JSON reply, or ``ok: false``.
        """
        url = f"{self._base}/{method}"
        try:
            if files:
                form = {
                    k: json.dumps(v) if isinstance(v, (dict, list)) else str(v)
                    for k, v in data.items()
                }
                resp = await self._client.post(url, data=form, files=files)
            else:
                resp = await self._client.post(url, json=data)
        except httpx.HTTPError as e:
            logger.error("telegram.network_error", method=method, error=str(e))
            raise TelegramError(method, "network error") from e

        try:
            payload = resp.json()
        except ValueError as e:
            logger.error(
                "telegram.bad_response",
                method=method,
                status=resp.status_code,
                url=str(resp.request.url),
            )
            raise TelegramError(
                method, f"non-JSON response ({resp.status_code})", status=resp.status_code
            ) from e

        if not isinstance(payload, dict) or not payload.get("ok"):
            description = ""
            retry_after = None
            if isinstance(payload, dict):
                description = str(payload.get("description") or "")
                retry_after = retry_after_from_payload(payload)
            logger.warning(
                "telegram.api_error",
                method=method,
                status=resp.status_code,
                description=description,
                retry_after=retry_after,
            )
            raise TelegramError(
                method,
                description or "request failed",
                status=resp.status_code,
                retry_after=retry_after,
            )

        logger.debug("telegram.call", method=method)
        return payload.get("result")

    async def _call(
        self,
        method: str,
        data: dict[str, Any],
        *,
        files: dict[str, tuple[str, bytes, str]] | None = None,
        repeatable: bool = True,
    ) -> Any:
        async def operation() -> Any:
            return await self._post(method, data, files=files)

        if repeatable:
            return await retry_transient(operation, self._policy, sleep=self._sleep)
        return await retry_with_backoff(
            operation, self._policy, should_retry=_answered_transient, sleep=self._sleep
        )

    @staticmethod
    def _sent(chat_id: ChatId, result: Any) -> SentMessage:
        if not isinstance(result, dict) or "message_id" not in result:
            raise TelegramError("send", "response has no message_id")
        return SentMessage(chat_id=chat_id, message_id=int(result["message_id"]), raw=result)

    async def send_message(self, dest: Destination, message: OutgoingMessage) -> SentMessage:
        params = _thread_params(dest)
        params.update(
            text=message.text,
            parse_mode=PARSE_MODE,
            disable_notification=not message.notify,
            link_preview_options={"is_disabled": True},
        )
        if message.reply_markup is not None:
            params["reply_markup"] = message.reply_markup
        result = await self._call("sendMessage", params, repeatable=False)
        return self._sent(dest.chat_id, result)

    async def send_photo(
        self, dest: Destination, photo: Photo, *, notify: bool = True
    ) -> SentMessage:
        params = _thread_params(dest)
        params["disable_notification"] = not notify
        if photo.caption:
            params["caption"] = photo.caption
        files = {"photo": (photo.filename, photo.data, "application/octet-stream")}
        result = await self._call("sendPhoto", params, files=files, repeatable=False)
        return self._sent(dest.chat_id, result)

    async def edit_message_text(
        self,
        chat_id: ChatId,
        message_id: int,
        text: str,
        reply_markup: dict[str, Any] | None = None,
    ) -> None:
        params: dict[str, Any] = {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": text,
            "parse_mode": PARSE_MODE,
        }
        if reply_markup is not None:
            params["reply_markup"] = reply_markup
        await self._call("editMessageText", params)

    async def edit_message_reply_markup(
        self,
        chat_id: ChatId,
        message_id: int,
        reply_markup: dict[str, Any] | None = None,
    ) -> None:
        params: dict[str, Any] = {"chat_id": chat_id, "message_id": message_id}
        # an empty keyboard removes the buttons
        params["reply_markup"] = reply_markup or {"inline_keyboard": []}
        await self._call("editMessageReplyMarkup", params)

    async def answer_callback_query(
        self, callback_query_id: str, text: str | None = None
    ) -> None:
        params: dict[str, Any] = {"callback_query_id": callback_query_id}
        if text:
            params["text"] = text
        await self._call("answerCallbackQuery", params)
