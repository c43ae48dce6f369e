import asyncio
import os
import tempfile

# Keep test runs from writing log files into the working tree
os.environ.setdefault("BRIDGE_LOG_DIR", tempfile.mkdtemp(prefix="cometbridge-logs-"))

import pytest

from services.bridge_registry import BridgeRegistry
from services.error import DeliveryError
from services.message import DeliveryReceipt, FormattedMessage, Platform
from services.router import Router


class FakeSender:
    """In-memory Sender that records every delivery."""

    def __init__(self, platform: Platform, fail: bool = False, delay: float = 0.0):
        self.platform = platform
        self.fail = fail
        self.delay = delay
        self.calls: list[tuple[str, FormattedMessage]] = []
        self.max_lengths: list[int | None] = []

    def format_message(self, msg, max_length=None):
        self.max_lengths.append(max_length)
        text = msg.content.text
        if max_length is not None:
            text = text[:max_length]
        return FormattedMessage(text=f"[{msg.source}] {msg.author.name}: {text}")

    async def deliver(self, destination_id, formatted):
        self.calls.append((destination_id, formatted))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise DeliveryError(self.platform, destination_id, "remote said no")
        return DeliveryReceipt(delivered_id=f"{self.platform}-{len(self.calls)}")


MAIN_BRIDGE = {
    "id": "main_bridge",
    "name": "Main Community Bridge",
    "platforms": {
        "telegram": "-100123",
        "discord": "555",
        "cometchat": "grp1",
    },
}


@pytest.fixture
def registry():
    return BridgeRegistry.from_config([MAIN_BRIDGE])


@pytest.fixture
def senders():
    return {p: FakeSender(p) for p in Platform}


@pytest.fixture
def router(registry, senders):
    return Router(registry, senders)


@pytest.fixture
def telegram_payload():
    return {
        "message_id": 42,
        "text": "hello",
        "from": {"id": 7, "username": "bob", "is_bot": False},
        "chat": {"id": -100123, "type": "supergroup"},
        "date": 1700000000,
    }


@pytest.fixture
def cometchat_webhook():
    return {
        "trigger": "after_message",
        "appId": "test-app",
        "data": {
            "message": {
                "id": "msg_123",
                "text": "hi from cometchat",
                "receiverType": "group",
                "receiver": "grp1",
                "sentAt": 1700000000,
                "data": {
                    "entities": {
                        "sender": {
                            "entity": {
                                "uid": "user_healthcare_test",
                                "name": "Healthcare Test User",
                            }
                        }
                    }
                },
            }
        },
    }


@pytest.fixture
def discord_payload():
    return {
        "id": "1100",
        "channel_id": "555",
        "guild_id": "900",
        "content": "hi from discord",
        "timestamp": "2023-11-14T22:13:20.000000+00:00",
        "author": {"id": "31", "username": "alice", "global_name": "Alice A."},
        "member": {"nick": None},
        "attachments": [],
    }
