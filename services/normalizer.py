"""
Platform payload → CanonicalMessage.

``normalize`` dispatches on the source platform to one extraction function
per platform.  Each function reads an already-parsed native payload (Telegram
Bot API update, Discord gateway MESSAGE_CREATE, CometChat webhook body) and
never mutates it.

Outcomes:
  CanonicalMessage         – ready for the router
  None                     – nothing to route (no text and no attachments, or
                             an event that is not a new message)
  MalformedPayloadError    – no destination id / message id at all
"""
from __future__ import annotations

from typing import Any, Callable, Mapping

import services.logger as log
import services.util as u
from services.error import MalformedPayloadError
from services.message import Attachment, Author, CanonicalMessage, Channel, Content, Platform

l = log.get_logger()

UNKNOWN_USER = "Unknown User"


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def _dig(obj: Any, *path: str) -> Any:
    """Follow *path* through nested mappings; ``None`` as soon as a step is missing."""
    for key in path:
        if not isinstance(obj, Mapping):
            return None
        obj = obj.get(key)
    return obj


def _as_map(obj: Any) -> Mapping:
    return obj if isinstance(obj, Mapping) else {}


def _maps(obj: Any) -> list[Mapping]:
    """The mapping entries of a list field; anything else counts as empty."""
    if not isinstance(obj, (list, tuple)):
        return []
    return [item for item in obj if isinstance(item, Mapping)]


def _native_id(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _first_str(*candidates: Any, default: str = "") -> str:
    for c in candidates:
        if isinstance(c, str) and c.strip():
            return c.strip()
    return default


def _first_text(*candidates: Any) -> str:
    """First candidate with visible content, returned unstripped."""
    for c in candidates:
        if isinstance(c, str) and c.strip():
            return c
    return ""


def _size(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else -1


def _timestamp(value: Any) -> int:
    ms = u.to_millis(value)
    return ms if ms is not None else u.now_ms()


def _require(value: str | None, what: str, platform: Platform) -> str:
    if value is None:
        raise MalformedPayloadError(f"{platform} payload has no {what}")
    return value


# ---------------------------------------------------------------------------
# Telegram
# ---------------------------------------------------------------------------

_TELEGRAM_MESSAGE_KEYS = ("message", "edited_message", "channel_post", "edited_channel_post")

# (payload key, fallback filename, fallback MIME type), checked in order.
# "animation" must precede "document": Telegram sets both for GIFs.
_TELEGRAM_MEDIA = (
    ("video",     "video.mp4",     "video/mp4"),
    ("voice",     "voice.ogg",     "audio/ogg"),
    ("audio",     "audio.mp3",     "audio/mpeg"),
    ("animation", "animation.gif", "video/mp4"),
    ("document",  "document",      "application/octet-stream"),
)


def _telegram_message(payload: Mapping) -> Mapping | None:
    for key in _TELEGRAM_MESSAGE_KEYS:
        if isinstance(payload.get(key), Mapping):
            return payload[key]
    if "update_id" in payload:
        # callback_query, my_chat_member, ...
        return None
    return payload


def _telegram_file(obj: Mapping, name: str, content_type: str) -> Attachment:
    # No url: Bot API download links embed the bot token
    return Attachment(
        id=_first_str(obj.get("file_unique_id"), obj.get("file_id")),
        name=_first_str(obj.get("file_name"), default=name),
        size=_size(obj.get("file_size")),
        content_type=_first_str(obj.get("mime_type"), default=content_type),
    )


def _telegram_attachments(msg: Mapping) -> tuple[Attachment, ...]:
    photos = _maps(msg.get("photo"))
    if photos:
        largest = max(photos, key=lambda p: _size(p.get("file_size")))
        return (_telegram_file(largest, "photo.jpg", "image/jpeg"),)
    for key, name, content_type in _TELEGRAM_MEDIA:
        obj = msg.get(key)
        if isinstance(obj, Mapping):
            return (_telegram_file(obj, name, content_type),)
    return ()


def _telegram_author(msg: Mapping) -> Author:
    sender_chat = _as_map(msg.get("sender_chat"))
    frm = msg.get("from")
    if not isinstance(frm, Mapping):
        # Anonymous admin or channel post: no user, so no bot flag either
        return Author(
            id=_native_id(sender_chat.get("id")) or "",
            name=_first_str(sender_chat.get("title"), sender_chat.get("username"), default=UNKNOWN_USER),
            is_bot=True,
        )
    full_name = " ".join(
        p.strip() for p in (frm.get("first_name"), frm.get("last_name"))
        if isinstance(p, str) and p.strip()
    )
    return Author(
        id=_native_id(frm.get("id")) or "",
        name=_first_str(full_name, frm.get("username"), sender_chat.get("title"), default=UNKNOWN_USER),
        # The Bot API always sends is_bot; a missing flag is not read as human
        is_bot=frm.get("is_bot") is not False,
    )


def _normalize_telegram(payload: Mapping) -> CanonicalMessage | None:
    msg = _telegram_message(payload)
    if msg is None:
        l.debug(f"Telegram update {payload.get('update_id')} carries no message")
        return None

    platform = Platform.TELEGRAM
    chat = _as_map(msg.get("chat"))
    chat_id = _require(_native_id(chat.get("id")), "chat.id", platform)
    message_id = _require(_native_id(msg.get("message_id")), "message_id", platform)

    chat_full_name = " ".join(
        p.strip() for p in (chat.get("first_name"), chat.get("last_name"))
        if isinstance(p, str) and p.strip()
    )
    return CanonicalMessage(
        id=f"{platform}_{message_id}",
        source=platform,
        author=_telegram_author(msg),
        content=Content(
            # Media messages use caption instead of text
            text=_first_text(msg.get("text"), msg.get("caption")),
            attachments=_telegram_attachments(msg),
        ),
        channel=Channel(
            id=chat_id,
            name=_first_str(chat.get("title"), chat.get("username"), chat_full_name, default=chat_id),
            type=_first_str(chat.get("type")),
        ),
        timestamp=_timestamp(msg.get("date")),
    )


# ---------------------------------------------------------------------------
# Discord
# ---------------------------------------------------------------------------

def _discord_attachments(payload: Mapping) -> tuple[Attachment, ...]:
    return tuple(
        Attachment(
            id=_native_id(att.get("id")) or "",
            name=_first_str(att.get("filename")),
            url=_first_str(att.get("url")),
            size=_size(att.get("size")),
            content_type=_first_str(att.get("content_type")),
        )
        for att in _maps(payload.get("attachments"))
    )


def _normalize_discord(payload: Mapping) -> CanonicalMessage | None:
    platform = Platform.DISCORD
    channel_id = _require(_native_id(payload.get("channel_id")), "channel_id", platform)
    message_id = _require(_native_id(payload.get("id")), "message id", platform)

    author = payload.get("author")
    member = _as_map(payload.get("member"))
    if isinstance(author, Mapping):
        # The gateway omits "bot" for human users; webhook posts are never human
        is_bot = author.get("bot") is True or payload.get("webhook_id") is not None
    else:
        author, is_bot = {}, True

    in_guild = _native_id(payload.get("guild_id")) is not None
    return CanonicalMessage(
        id=f"{platform}_{message_id}",
        source=platform,
        author=Author(
            id=_native_id(author.get("id")) or "",
            name=_first_str(
                member.get("nick"), author.get("global_name"), author.get("username"),
                default=UNKNOWN_USER,
            ),
            is_bot=is_bot,
        ),
        content=Content(
            text=_first_text(payload.get("content")),
            attachments=_discord_attachments(payload),
        ),
        channel=Channel(
            id=channel_id,
            name=_first_str(
                payload.get("channel_name"),
                default=f"#{channel_id}" if in_guild else "Direct Message",
            ),
            type="guild" if in_guild else "dm",
        ),
        timestamp=_timestamp(payload.get("timestamp")),
    )


# ---------------------------------------------------------------------------
# CometChat
# ---------------------------------------------------------------------------

_COMETCHAT_MESSAGE_TRIGGERS = frozenset({"message_sent", "onMessageSent", "after_message"})


def _cometchat_message(payload: Mapping) -> Mapping | None:
    if "trigger" not in payload:
        return payload
    trigger = payload.get("trigger")
    if not isinstance(trigger, str) or trigger not in _COMETCHAT_MESSAGE_TRIGGERS:
        l.debug(f"CometChat trigger '{trigger}' is not a new message")
        return None
    data = payload.get("data")
    if not isinstance(data, Mapping):
        raise MalformedPayloadError(f"cometchat webhook '{trigger}' has no data")
    inner = data.get("message")
    return inner if isinstance(inner, Mapping) else data


def _cometchat_attachments(msg: Mapping, message_id: str) -> tuple[Attachment, ...]:
    data = _as_map(msg.get("data"))
    raw = _maps(data.get("attachments"))
    if not raw and _first_str(data.get("url")):
        raw = [{**data, "mimeType": data.get("mimeType") or msg.get("type")}]
    return tuple(
        Attachment(
            id=_first_str(att.get("id"), default=f"{message_id}_{i}"),
            name=_first_str(att.get("name")),
            url=_first_str(att.get("url")),
            size=_size(att.get("size")),
            content_type=_first_str(att.get("mimeType")),
        )
        for i, att in enumerate(raw)
    )


def _cometchat_receiver(msg: Mapping) -> tuple[str | None, Mapping]:
    entity = _as_map(_dig(msg, "data", "entities", "receiver", "entity"))
    receiver = msg.get("receiver")
    if isinstance(receiver, Mapping):
        receiver = receiver.get("guid") or receiver.get("uid")
    receiver_id = (
        _native_id(receiver)
        or _native_id(msg.get("receiverUid"))
        or _native_id(entity.get("guid"))
        or _native_id(entity.get("uid"))
    )
    return receiver_id, entity


def _normalize_cometchat(payload: Mapping) -> CanonicalMessage | None:
    msg = _cometchat_message(payload)
    if msg is None:
        return None

    platform = Platform.COMETCHAT
    receiver_id, receiver_entity = _cometchat_receiver(msg)
    channel_id = _require(receiver_id, "receiver", platform)
    message_id = _require(_native_id(msg.get("id")), "message id", platform)

    # "sender" is either the bare uid or a user object
    sender = msg.get("sender")
    sender_obj = _as_map(sender)
    entity = _as_map(_dig(msg, "data", "entities", "sender", "entity"))
    sender_uid = sender if isinstance(sender, str) else sender_obj.get("uid")

    is_bot = (
        "bot" in (sender_obj.get("role"), entity.get("role"))
        or _dig(msg, "metadata", "source") == "bridge"
        or _dig(msg, "data", "metadata", "source") == "bridge"
    )

    data = msg.get("data")
    receiver_type = _first_str(msg.get("receiverType"))
    return CanonicalMessage(
        id=f"{platform}_{message_id}",
        source=platform,
        author=Author(
            id=_native_id(sender_uid) or _native_id(entity.get("uid")) or "",
            name=_first_str(sender_obj.get("name"), entity.get("name"), default=UNKNOWN_USER),
            is_bot=is_bot,
        ),
        content=Content(
            text=_first_text(msg.get("text"), _dig(data, "text"), data if isinstance(data, str) else None),
            attachments=_cometchat_attachments(msg, message_id),
        ),
        channel=Channel(
            id=channel_id,
            name=_first_str(
                receiver_entity.get("name"),
                default="Group Chat" if receiver_type == "group" else "Direct Message",
            ),
            type=receiver_type,
        ),
        timestamp=_timestamp(msg.get("sentAt")),
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

_NORMALIZERS: dict[Platform, Callable[[Mapping], CanonicalMessage | None]] = {
    Platform.TELEGRAM:  _normalize_telegram,
    Platform.DISCORD:   _normalize_discord,
    Platform.COMETCHAT: _normalize_cometchat,
}


def normalize(payload: Mapping, platform: Platform | str) -> CanonicalMessage | None:
    """Convert a native *payload* from *platform* into a CanonicalMessage.

    Returns ``None`` when there is nothing to route.  Raises
    ``MalformedPayloadError`` when the payload lacks a destination id.
    """
    try:
        platform = Platform(platform)
    except ValueError:
        raise MalformedPayloadError(f"unsupported platform {platform!r}") from None
    if not isinstance(payload, Mapping):
        raise MalformedPayloadError(f"{platform} payload is {type(payload).__name__}, not a mapping")

    msg = _NORMALIZERS[platform](payload)
    if msg is None:
        return None
    if not msg.content.text and not msg.content.attachments:
        l.debug(f"{msg.id}: no text and no attachments, not routable")
        return None
    return msg
