from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, ClassVar, Generic, Mapping, TypeVar

from pydantic import BaseModel

import services.logger as log
import services.util as u
from services.error import MalformedPayloadError
from services.message import Attachment, CanonicalMessage, DeliveryReceipt, FormattedMessage, Platform
from services.normalizer import normalize

if TYPE_CHECKING:
    from services.router import DeliveryOutcome, Router

T = TypeVar("T", bound=BaseModel)

l = log.get_logger()


def attachment_label(att: Attachment) -> str:
    """Plain-text stand-in for an attachment, e.g. ``[Image: cat.png](https://…)``."""
    ct = att.content_type or ""
    if ct.startswith("image/"):
        kind = "Image"
    elif ct.startswith("video/"):
        kind = "Video"
    elif ct.startswith("audio/"):
        kind = "Voice"
    else:
        kind = "File"
    label = att.name or att.url or att.id
    ref = f"({att.url})" if att.url else ""
    return f"[{kind}: {label}]{ref}"


class BaseDriver(ABC, Generic[T]):
    """Abstract base class for all platform drivers.

    A driver is both the receive side for its platform (it turns native events
    into calls to ``submit``) and the Sender the router delivers through.
    """

    platform: ClassVar[Platform]

    def __init__(self, config: T, router: "Router"):
        self.config: T = config
        self.router = router

    @property
    def name(self) -> str:
        return self.platform.value.capitalize()

    @abstractmethod
    async def start(self):
        """Register with the router and begin listening.
        Long-running drivers should loop indefinitely here."""

    @abstractmethod
    async def deliver(self, destination_id: str, formatted: FormattedMessage) -> DeliveryReceipt:
        """Send *formatted* to *destination_id*; raise ``DeliveryError`` on failure."""

    # ------------------------------------------------------------------
    # Formatting
    # ------------------------------------------------------------------

    def body_text(self, msg: CanonicalMessage, max_length: int | None = None) -> str:
        """Message text, cut to *max_length*, followed by attachment labels."""
        parts = [u.truncate(msg.content.text, max_length)] if msg.content.text else []
        parts.extend(attachment_label(att) for att in msg.content.attachments)
        return "\n".join(parts)

    def format_message(self, msg: CanonicalMessage, max_length: int | None = None) -> FormattedMessage:
        source = msg.source.value.capitalize()
        return FormattedMessage(text=f"[{source}] {msg.author.name}: {self.body_text(msg, max_length)}")

    # ------------------------------------------------------------------
    # Receive
    # ------------------------------------------------------------------

    async def submit(self, payload: Mapping) -> "list[DeliveryOutcome]":
        """Normalize a native *payload* and hand it to the router."""
        try:
            msg = normalize(payload, self.platform)
        except MalformedPayloadError as e:
            l.warning(f"{self.name} dropped malformed payload: {e}")
            return []
        if msg is None:
            return []
        return await self.router.route(msg)
