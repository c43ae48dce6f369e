from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Mapping, Protocol

import services.logger as log
from services.bridge_registry import BridgeRegistry, Target
from services.loop_guard import LoopGuard
from services.message import CanonicalMessage, DeliveryReceipt, FormattedMessage, Platform

l = log.get_logger()


class Sender(Protocol):
    """What the router needs from a platform driver."""

    def format_message(self, msg: CanonicalMessage, max_length: int | None = None) -> FormattedMessage: ...

    async def deliver(self, destination_id: str, formatted: FormattedMessage) -> DeliveryReceipt: ...


@dataclass(frozen=True)
class DeliveryOutcome:
    """Terminal result of one send to one destination."""
    platform: Platform
    destination_id: str
    delivered_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Router:
    """
    Core routing engine.

    Drivers register themselves as the Sender for their platform via
    ``register_sender``.  When a driver receives a message it normalizes it and
    calls ``route``; the router screens it, looks up the bridge and delivers
    to every other platform in that bridge concurrently.
    """

    def __init__(
        self,
        registry: BridgeRegistry,
        senders: Mapping[Platform, Sender] | None = None,
        loop_guard: LoopGuard | None = None,
    ):
        self._registry = registry
        self._senders: dict[Platform, Sender] = dict(senders or {})
        self._loop_guard = loop_guard if loop_guard is not None else LoopGuard()

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def register_sender(self, platform: Platform, sender: Sender):
        self._senders[Platform(platform)] = sender
        l.debug(f"Registered sender for platform: {platform}")

    @property
    def registry(self) -> BridgeRegistry:
        return self._registry

    def stats(self) -> dict:
        return {
            "bridges": self._registry.summary(),
            "senders": {str(p): p in self._senders for p in Platform},
        }

    # ------------------------------------------------------------------
    # Message routing
    # ------------------------------------------------------------------

    async def route(self, msg: CanonicalMessage) -> list[DeliveryOutcome]:
        if not isinstance(msg, CanonicalMessage):
            raise TypeError(f"route() expects a CanonicalMessage, got {type(msg).__name__}")

        problem = self._structural_problem(msg)
        if problem:
            l.warning(f"Dropping {msg.id}: {problem}")
            return []

        reason = self._loop_guard.check(msg)
        if reason:
            l.debug(f"[loop-guard] dropped {msg.id} from '{msg.author.name}': {reason}")
            return []

        targets = self._registry.targets_for(msg.source, msg.channel.id)
        if not targets:
            return []

        settings = self._registry.settings_for(msg.source, msg.channel.id)
        if settings is not None and not settings.sync_messages:
            l.debug(f"Bridge for {msg.source}:{msg.channel.id} has sync_messages off, skipping {msg.id}")
            return []
        max_length = settings.max_message_length if settings else None

        outcomes = await asyncio.gather(
            *(self._deliver(target, msg, max_length) for target in targets)
        )

        delivered = sum(1 for o in outcomes if o.ok)
        l.info(
            f"Routed {msg.id} from {msg.source}:{msg.channel.id} "
            f"({delivered}/{len(outcomes)} delivered)"
        )
        return list(outcomes)

    @staticmethod
    def _structural_problem(msg: CanonicalMessage) -> str | None:
        if msg.author is None:
            return "no author"
        if msg.channel is None or not msg.channel.id:
            return "no channel id"
        if msg.content is None or (not msg.content.text and not msg.content.attachments):
            return "no content"
        return None

    async def _deliver(
        self, target: Target, msg: CanonicalMessage, max_length: int | None
    ) -> DeliveryOutcome:
        sender = self._senders.get(target.platform)
        if sender is None:
            l.warning(f"No sender registered for platform '{target.platform}', {msg.id} not delivered")
            return DeliveryOutcome(target.platform, target.destination_id, error="no sender registered")

        try:
            formatted = sender.format_message(msg, max_length)
            receipt = await sender.deliver(target.destination_id, formatted)
        except Exception as e:
            l.error(
                f"Failed to send {msg.id} to {target.platform}:{target.destination_id} "
                f"(bridge '{target.bridge_id}'): {type(e).__name__}: {e}"
            )
            return DeliveryOutcome(target.platform, target.destination_id, error=str(e) or type(e).__name__)

        l.debug(f"Sent {msg.id} to {target.platform}:{target.destination_id} as {receipt.delivered_id}")
        return DeliveryOutcome(target.platform, target.destination_id, delivered_id=receipt.delivered_id)
