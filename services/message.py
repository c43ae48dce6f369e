from dataclasses import dataclass, field
from enum import StrEnum


class Platform(StrEnum):
    DISCORD = "discord"
    TELEGRAM = "telegram"
    COMETCHAT = "cometchat"


@dataclass(frozen=True)
class Attachment:
    """A media attachment carried alongside a CanonicalMessage."""
    id: str
    name: str = ""          # filename hint
    url: str = ""           # download URL (may be empty when unavailable)
    size: int = -1          # bytes; -1 = unknown
    content_type: str = ""  # MIME type, e.g. "image/png"


@dataclass(frozen=True)
class Author:
    id: str
    name: str
    is_bot: bool


@dataclass(frozen=True)
class Content:
    text: str
    attachments: tuple[Attachment, ...] = ()


@dataclass(frozen=True)
class Channel:
    id: str     # chat / channel / group id, the bridge lookup key
    name: str
    type: str   # platform-specific, e.g. "supergroup", "guild", "group"


@dataclass(frozen=True)
class CanonicalMessage:
    """Platform-agnostic message passed through the bridge."""
    id: str             # "<platform>_<native-id>"
    source: Platform
    author: Author
    content: Content
    channel: Channel
    timestamp: int      # epoch milliseconds


@dataclass
class FormattedMessage:
    """Text ready for one target platform, as produced by a driver."""
    text: str
    parse_mode: str | None = None
    metadata: dict = field(default_factory=dict)


@dataclass
class DeliveryReceipt:
    delivered_id: str
