"""Render classified activities as Telegram HTML.

Collapsing, not truncation, is how long content is kept readable: a
collapsed presentation shows a bold title and puts the complete body in an
expandable blockquote. Inline text is cut only when it would exceed the
platform's hard message limit.
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from .errors import ActivityParseError
from .model import Activity, ActivityKind, BashOutput, ChangeSet, Media
from .policy import Decision
from .transport import OutgoingMessage, Photo, Rendered

MESSAGE_LIMIT = 4096
CAPTION_LIMIT = 1024
INLINE_FILES_MAX = 5
CALLBACK_DATA_LIMIT = 64

APPROVE_PLAN = "approve_plan"
PUBLISH_BRANCH = "publish_branch"
PUBLISH_PR = "publish_pr"
SELECT_SOURCE = "select_source"
SOURCES_PAGE = "sources_page"
CALLBACK_ACTIONS = frozenset(
    {APPROVE_PLAN, PUBLISH_BRANCH, PUBLISH_PR, SELECT_SOURCE, SOURCES_PAGE}
)

_ELLIPSIS = "..."
_PART_SUFFIX_RESERVE = " (999/999)"

_CHANGE_ICONS = {
    "ADDED": "➕",
    "MODIFIED": "✏️",
    "DELETED": "❌",
    "RENAMED": "🔄",
}

_MEDIA_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
}


def escape_html(text: str) -> str:
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: max(limit - len(_ELLIPSIS), 0)] + _ELLIPSIS


def expandable_block(title: str, content: str) -> str:
    return (
        f"<b>{escape_html(title)}</b>\n"
        f"<blockquote expandable>{escape_html(content)}</blockquote>"
    )


@dataclass(frozen=True, slots=True)
class Limits:
    message: int = MESSAGE_LIMIT
    caption: int = CAPTION_LIMIT


DEFAULT_LIMITS = Limits()


# --- callback data ---


@dataclass(frozen=True, slots=True)
class Callback:
    action: str
    value: str


def format_callback(action: str, value: str | int) -> str:
    if action not in CALLBACK_ACTIONS:
        raise ValueError(f"unknown callback action {action!r}")
    data = f"{action}:{value}"
    if len(data.encode("utf-8")) > CALLBACK_DATA_LIMIT:
        raise ValueError(f"callback data longer than {CALLBACK_DATA_LIMIT} bytes")
    return data


def parse_callback(data: str) -> Callback | None:
    action, sep, value = data.partition(":")
    if not sep or action not in CALLBACK_ACTIONS or not value:
        return None
    return Callback(action=action, value=value)


def _button(text: str, action: str, value: str | int) -> dict[str, str]:
    return {"text": text, "callback_data": format_callback(action, value)}


def approve_keyboard(session_id: str) -> dict[str, Any]:
    return {"inline_keyboard": [[_button("✅ Approve Plan", APPROVE_PLAN, session_id)]]}


def publish_keyboard(session_id: str) -> dict[str, Any]:
    return {
        "inline_keyboard": [
            [
                _button("📦 Publish Branch", PUBLISH_BRANCH, session_id),
                _button("🔀 Publish PR", PUBLISH_PR, session_id),
            ]
        ]
    }


def sources_keyboard(
    labels: Sequence[str], *, page: int, page_size: int = 8
) -> dict[str, Any]:
    """One button per source on ``page``, plus previous/next navigation.

    ``select_source`` carries the index into the cached catalog, since
    source names can exceed the callback data limit.
    """
    start = page * page_size
    rows: list[list[dict[str, str]]] = [
        [_button(truncate(label, 48), SELECT_SOURCE, start + offset)]
        for offset, label in enumerate(labels[start : start + page_size])
    ]
    nav: list[dict[str, str]] = []
    if page > 0:
        nav.append(_button("◀️ Prev", SOURCES_PAGE, page - 1))
    if start + page_size < len(labels):
        nav.append(_button("Next ▶️", SOURCES_PAGE, page + 1))
    if nav:
        rows.append(nav)
    return {"inline_keyboard": rows}


# --- layout helpers ---


def _fit_inline(prefix: str, body: str, suffix: str, limit: int) -> str:
    """``prefix + escape(body) + suffix``, trimming body only if over the limit."""
    text = prefix + escape_html(body) + suffix
    if len(text) <= limit:
        return text
    keep = len(body) - (len(text) - limit) - len(_ELLIPSIS)
    while keep > 0:
        text = prefix + escape_html(body[:keep] + _ELLIPSIS) + suffix
        if len(text) <= limit:
            return text
        keep -= max(len(text) - limit, 1)
    return truncate(prefix + suffix, limit)


def _split_escaped(body: str, budget: int) -> list[str]:
    """Split raw text so each chunk escapes to at most ``budget`` chars.

    Cuts at the last newline in a chunk when there is one.
    """
    budget = max(budget, 16)
    chunks: list[str] = []
    start = 0
    while start < len(body):
        size = 0
        end = start
        last_newline = -1
        while end < len(body):
            width = len(escape_html(body[end]))
            if size + width > budget:
                break
            size += width
            if body[end] == "\n":
                last_newline = end
            end += 1
        if end < len(body) and last_newline > start:
            end = last_newline + 1
        chunks.append(body[start:end])
        start = end
    return chunks or [""]


def _collapsed(prefix: str, title: str, body: str, suffix: str, limit: int) -> list[str]:
    """Expandable block(s) holding the complete body, split across messages if needed."""
    single = prefix + expandable_block(title, body) + suffix
    if len(single) <= limit:
        return [single]
    overhead = len(prefix) + len(suffix) + len(expandable_block(title + _PART_SUFFIX_RESERVE, ""))
    chunks = _split_escaped(body, limit - overhead)
    total = len(chunks)
    messages = []
    for index, chunk in enumerate(chunks, start=1):
        head = prefix if index == 1 else ""
        tail = suffix if index == total else ""
        messages.append(head + expandable_block(f"{title} ({index}/{total})", chunk) + tail)
    return messages


def _join_parts(parts: list[list[str]], limit: int) -> list[str]:
    flat = [text for part in parts for text in part if text]
    joined = "\n\n".join(flat)
    if len(joined) <= limit:
        return [joined] if joined else []
    return flat


# --- per-kind renderers ---


def _plan_lines(activity: Activity) -> str:
    lines = []
    for i, step in enumerate(activity.plan_steps, start=1):
        line = f"{i}. {step.title}"
        if step.description:
            line += f"\n   {step.description}"
        lines.append(line)
    return "\n".join(lines)


def _render_plan(
    activity: Activity,
    decision: Decision,
    *,
    session_id: str,
    require_approval: bool,
    limits: Limits,
) -> Rendered:
    prefix = "🎯 <b>PLAN CREATED</b>\n\n"
    if require_approval:
        prefix += "<b>⚠️ APPROVAL REQUIRED</b>\n\n"
        suffix = "\n\n<i>Use the button below to approve and start execution.</i>"
        markup = approve_keyboard(session_id)
    else:
        suffix = "\n\n<i>The plan will be executed automatically.</i>"
        markup = None

    steps = activity.plan_steps
    if steps and decision.collapsed:
        texts = _collapsed(prefix, f"🎯 PLAN - {len(steps)} steps", _plan_lines(activity), suffix, limits.message)
    elif steps:
        texts = [_fit_inline(prefix, _plan_lines(activity), suffix, limits.message)]
    else:
        body = activity.description or activity.title or "Plan generated"
        texts = [_fit_inline(prefix, body, suffix, limits.message)]
    return _messages(texts, notify=decision.audible, reply_markup=markup)


def _render_bash(bash: BashOutput, collapsed: bool, limit: int) -> list[str]:
    failed = bash.exit_code != 0
    emoji = "⚠️" if failed else "🔧"
    status = f" (exit code: {bash.exit_code})" if failed else ""
    if collapsed:
        return _collapsed("", f"{emoji} Command: {bash.command}{status}", bash.output, "", limit)
    prefix = (
        f"{emoji} <b>Command:</b> <code>{escape_html(bash.command)}</code>{status}\n\n<pre>"
    )
    return [_fit_inline(prefix, bash.output, "</pre>", limit)]


def _render_change_set(change_set: ChangeSet, collapsed: bool, limit: int) -> list[str]:
    files = change_set.files
    if not files:
        return []
    if collapsed or len(files) > INLINE_FILES_MAX:
        listing = "\n".join(
            f"{_CHANGE_ICONS.get(f.change_type or '', '📄')} {f.path}" for f in files
        )
        return _collapsed("", f"📁 Files modified ({len(files)} files)", listing, "", limit)
    lines = [
        f"{_CHANGE_ICONS.get(f.change_type or '', '📄')} <code>{escape_html(f.path)}</code>"
        for f in files
    ]
    return [f"📁 <b>Files modified ({len(files)}):</b>\n" + "\n".join(lines)]


def _media_filename(media: Media) -> str:
    return f"image.{_MEDIA_EXTENSIONS.get(media.media_type.lower(), 'png')}"


def render_photo(activity: Activity, media: Media, limits: Limits = DEFAULT_LIMITS) -> Photo:
    """Decode base64 media into a sendPhoto attachment.

    Raises:
        ActivityParseError: the media payload is not valid base64.
    """
    try:
        data = base64.b64decode(media.data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ActivityParseError("media data is not valid base64") from e
    caption = activity.title or activity.description or "Image from the session"
    return Photo(data=data, caption=truncate(caption, limits.caption), filename=_media_filename(media))


def _titled(activity: Activity, collapsed: bool, limit: int, *, fallback: str) -> list[str]:
    title = activity.title
    description = activity.description
    if collapsed:
        return _collapsed("", title or fallback, description or title, "", limit)
    if title and description:
        return [_fit_inline(f"<b>{escape_html(title)}</b>\n\n", description, "", limit)]
    if title:
        return [_fit_inline("<b>", title, "</b>", limit)]
    if description:
        return [_fit_inline("", description, "", limit)]
    return [escape_html(fallback)]


def _render_progress(activity: Activity, decision: Decision, limits: Limits) -> Rendered:
    parts: list[list[str]] = []
    if activity.bash_output is not None:
        parts.append(_render_bash(activity.bash_output, decision.collapsed, limits.message))
    if activity.change_set is not None:
        collapse_files = decision.collapsed and activity.bash_output is None
        parts.append(_render_change_set(activity.change_set, collapse_files, limits.message))

    photo = None
    if activity.media is not None and decision.as_media:
        photo = render_photo(activity, activity.media, limits)

    texts = _join_parts(parts, limits.message)
    if not texts and photo is None:
        texts = _titled(activity, decision.collapsed, limits.message, fallback="Progress update")
    rendered = _messages(texts, notify=decision.audible)
    return Rendered(messages=rendered.messages, photo=photo, photo_notify=True)


def _render_completed(activity: Activity, decision: Decision, limits: Limits) -> Rendered:
    prefix = "✅ <b>Session completed!</b>\n\n"
    body = activity.description or "The session has finished."
    if decision.collapsed:
        texts = _collapsed(prefix, "Details", body, "", limits.message)
    else:
        texts = [_fit_inline(prefix, body, "", limits.message)]
    return _messages(texts, notify=decision.audible)


def _messages(
    texts: list[str], *, notify: bool, reply_markup: dict[str, Any] | None = None
) -> Rendered:
    messages = [OutgoingMessage(text=t, notify=notify) for t in texts]
    if messages and reply_markup is not None:
        last = messages[-1]
        messages[-1] = OutgoingMessage(text=last.text, notify=last.notify, reply_markup=reply_markup)
    return Rendered(messages=tuple(messages))


def render_activity(
    kind: ActivityKind,
    activity: Activity,
    decision: Decision,
    *,
    session_id: str,
    require_approval: bool = False,
    limits: Limits = DEFAULT_LIMITS,
) -> Rendered:
    """Turn one classified activity into the messages to post."""
    if kind is ActivityKind.PLAN_GENERATED:
        return _render_plan(
            activity,
            decision,
            session_id=session_id,
            require_approval=require_approval,
            limits=limits,
        )
    if kind is ActivityKind.PLAN_APPROVED:
        return _messages(
            ["✅ <b>Plan approved!</b>\n\nWork on the implementation is starting."],
            notify=decision.audible,
        )
    if kind is ActivityKind.READY_FOR_REVIEW:
        return _messages(
            [
                "🎉 <b>Ready for review!</b>\n\nThe changes are finalized.\n\n"
                "<i>Use the buttons below to publish them.</i>"
            ],
            notify=decision.audible,
            reply_markup=publish_keyboard(session_id),
        )
    if kind is ActivityKind.PROGRESS_UPDATE:
        return _render_progress(activity, decision, limits)
    if kind is ActivityKind.SESSION_COMPLETED:
        return _render_completed(activity, decision, limits)
    return _messages(
        _titled(activity, decision.collapsed, limits.message, fallback="Activity received."),
        notify=decision.audible,
    )


def render_failure(what: str, summary: str) -> OutgoingMessage:
    """Audible in-thread notice for a failed user action."""
    return OutgoingMessage(
        text=f"❌ <b>{escape_html(what)} failed</b>\n\n{escape_html(summary)}",
        notify=True,
    )


def render_notice(text: str, *, notify: bool = False) -> OutgoingMessage:
    return OutgoingMessage(text=text, notify=notify)
