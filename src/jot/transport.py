"""Outgoing chat messages and the sender interface the core talks to."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, TypeAlias

ChatId: TypeAlias = int | str

PARSE_MODE = "HTML"


@dataclass(frozen=True, slots=True)
class Destination:
    """A forum topic inside a group."""

    chat_id: ChatId
    thread_id: int | None = None


@dataclass(frozen=True, slots=True)
class Photo:
    """A binary image sent with sendPhoto, never inlined as text."""

    data: bytes
    caption: str = ""
    filename: str = "image.png"


@dataclass(frozen=True, slots=True)
class OutgoingMessage:
    """A rendered text message ready for delivery."""

    text: str
    notify: bool = False
    reply_markup: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class Rendered:
    """Everything one activity turns into, in send order: photo first."""

    messages: tuple[OutgoingMessage, ...] = ()
    photo: Photo | None = None
    photo_notify: bool = True

    @property
    def audible(self) -> bool:
        return any(m.notify for m in self.messages) or (
            self.photo is not None and self.photo_notify
        )


@dataclass(frozen=True, slots=True)
class SentMessage:
    chat_id: ChatId
    message_id: int
    raw: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


class ChatSender(Protocol):
    """What the orchestrator and actions need from a chat client."""

    async def send_message(
        self, dest: Destination, message: OutgoingMessage
    ) -> SentMessage: ...

    async def send_photo(
        self, dest: Destination, photo: Photo, *, notify: bool = True
    ) -> SentMessage: ...

    async def edit_message_text(
        self,
        chat_id: ChatId,
        message_id: int,
        text: str,
        reply_markup: dict[str, Any] | None = None,
    ) -> None: ...

    async def edit_message_reply_markup(
        self,
        chat_id: ChatId,
        message_id: int,
        reply_markup: dict[str, Any] | None = None,
    ) -> None: ...

    async def answer_callback_query(
        self, callback_query_id: str, text: str | None = None
    ) -> None: ...


async def deliver(sender: ChatSender, dest: Destination, rendered: Rendered) -> list[SentMessage]:
    """Send the photo (if any) then each text message, stopping on the first error."""
    sent: list[SentMessage] = []
    if rendered.photo is not None:
        sent.append(
            await sender.send_photo(dest, rendered.photo, notify=rendered.photo_notify)
        )
    for message in rendered.messages:
        sent.append(await sender.send_message(dest, message))
    return sent
