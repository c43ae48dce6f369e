import asyncio
import json
import logging
from types import SimpleNamespace

import aiohttp
import pytest
from telegram.error import TelegramError

import services.logger as log
from drivers import attachment_label
from drivers.cometchat import CometChatConfig, CometChatDriver
from drivers.discord import DiscordConfig, DiscordDriver
from drivers.telegram import TelegramConfig, TelegramDriver
from services.error import DeliveryError
from services.message import Attachment, Author, CanonicalMessage, Channel, Content, FormattedMessage, Platform
from services.normalizer import normalize
from services.router import Router


class FakeResponse:
    def __init__(self, status=200, body=None):
        self.status = status
        self._body = body if body is not None else {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def text(self):
        return json.dumps(self._body)

    async def json(self):
        return self._body


class FakeSession:
    """Captures POSTs made through ``aiohttp.ClientSession.post``."""

    def __init__(self, response=None, raises=None):
        self.response = response or FakeResponse()
        self.raises = raises
        self.posts = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.posts.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.raises:
            raise self.raises
        return self.response


def _message(text="hello", source=Platform.TELEGRAM, name="bob", attachments=()):
    return CanonicalMessage(
        id=f"{source}_42",
        source=source,
        author=Author(id="7", name=name, is_bot=False),
        content=Content(text=text, attachments=attachments),
        channel=Channel(id="-100123", name="chat", type="group"),
        timestamp=0,
    )


@pytest.fixture
def discord_driver(registry):
    return DiscordDriver(DiscordConfig(bot_token="tok"), Router(registry))


@pytest.fixture
def cometchat_driver(registry):
    config = CometChatConfig(app_id="app1", region="eu", api_key="key")
    return CometChatDriver(config, Router(registry))


@pytest.fixture
def telegram_driver(registry):
    return TelegramDriver(TelegramConfig(bot_token="123:abc"), Router(registry))


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def test_attachment_labels():
    assert attachment_label(Attachment(id="1", name="cat.png", url="https://x/cat.png", content_type="image/png")) \
        == "[Image: cat.png](https://x/cat.png)"
    assert attachment_label(Attachment(id="2", name="a.ogg", content_type="audio/ogg")) == "[Voice: a.ogg]"
    assert attachment_label(Attachment(id="3")) == "[File: 3]"


def test_discord_format(discord_driver):
    formatted = discord_driver.format_message(_message())
    assert formatted.text == "📱 **[Telegram]** bob: hello"
    assert formatted.parse_mode is None


def test_discord_format_is_capped(discord_driver):
    formatted = discord_driver.format_message(_message(text="x" * 5000))
    assert len(formatted.text) == 2000


def test_format_respects_max_length(discord_driver):
    formatted = discord_driver.format_message(_message(text="abcdefghij"), max_length=4)
    assert formatted.text.endswith("bob: abc…")


def test_cometchat_format(cometchat_driver):
    formatted = cometchat_driver.format_message(_message(source=Platform.DISCORD, name="alice"))
    assert formatted.text == "🎮 **Discord** | alice:\nhello"
    assert formatted.metadata == {
        "source": "bridge",
        "originalPlatform": "discord",
        "originalAuthor": "alice",
        "originalMessageId": "discord_42",
    }


def test_telegram_format_escapes_html(telegram_driver):
    formatted = telegram_driver.format_message(_message(text="1 < 2 & <b>x</b>", source=Platform.DISCORD, name="<eve>"))
    assert formatted.parse_mode == "HTML"
    assert formatted.text == "<b>[Discord]</b> <i>&lt;eve&gt;:</i>\n1 &lt; 2 &amp; &lt;b&gt;x&lt;/b&gt;"


@pytest.mark.parametrize("text", ["x" * 9000, "<&>" * 3000])
def test_telegram_format_is_capped(telegram_driver, text):
    formatted = telegram_driver.format_message(_message(text=text), max_length=10000)
    assert len(formatted.text) <= 4096
    assert formatted.text.endswith("…")
    # no entity is cut in half
    assert not formatted.text.rstrip("…").endswith(("&", "&l", "&lt", "&a", "&am", "&amp", "&g", "&gt"))


def test_attachment_only_message_body(telegram_driver):
    att = Attachment(id="b", name="photo.jpg", content_type="image/jpeg")
    formatted = telegram_driver.format_message(_message(text="", attachments=(att,)))
    assert formatted.text.endswith("\n[Image: photo.jpg]")


# ---------------------------------------------------------------------------
# Discord delivery
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_discord_deliver(discord_driver):
    session = FakeSession(FakeResponse(200, {"id": "9001"}))
    discord_driver._session = session

    receipt = await discord_driver.deliver("555", FormattedMessage(text="hi"))

    assert receipt.delivered_id == "9001"
    post = session.posts[0]
    assert post["url"] == "https://discord.com/api/v10/channels/555/messages"
    assert post["json"] == {"content": "hi", "allowed_mentions": {"parse": []}}
    assert post["headers"] == {"Authorization": "Bot tok"}
    assert post["timeout"].total == 15.0


@pytest.mark.asyncio
async def test_discord_http_error(discord_driver):
    discord_driver._session = FakeSession(FakeResponse(403, {"message": "Missing Access"}))
    with pytest.raises(DeliveryError, match="HTTP 403"):
        await discord_driver.deliver("555", FormattedMessage(text="hi"))


@pytest.mark.asyncio
async def test_discord_transport_error(discord_driver):
    discord_driver._session = FakeSession(raises=aiohttp.ClientConnectionError("refused"))
    with pytest.raises(DeliveryError) as exc_info:
        await discord_driver.deliver("555", FormattedMessage(text="hi"))
    assert exc_info.value.destination_id == "555"


@pytest.mark.asyncio
async def test_deliver_before_start(discord_driver):
    with pytest.raises(DeliveryError, match="not started"):
        await discord_driver.deliver("555", FormattedMessage(text="hi"))


# ---------------------------------------------------------------------------
# CometChat delivery and webhook
# ---------------------------------------------------------------------------

def test_cometchat_base_url():
    config = CometChatConfig(app_id="app1", region="eu", api_key="key")
    assert config.base_url == "https://app1.api-eu.cometchat.io/v3"
    override = CometChatConfig(app_id="a", region="us", api_key="k", api_base="http://localhost:9000/v3/")
    assert override.base_url == "http://localhost:9000/v3"


@pytest.mark.asyncio
async def test_cometchat_deliver(cometchat_driver):
    session = FakeSession(FakeResponse(200, {"data": {"id": "77"}}))
    cometchat_driver._session = session
    formatted = cometchat_driver.format_message(_message())

    receipt = await cometchat_driver.deliver("grp1", formatted)

    assert receipt.delivered_id == "77"
    post = session.posts[0]
    assert post["url"] == "https://app1.api-eu.cometchat.io/v3/bots/cometchat_bot/messages"
    assert post["json"]["receiver"] == "grp1"
    assert post["json"]["receiverType"] == "group"
    assert post["json"]["data"]["metadata"]["source"] == "bridge"


@pytest.mark.asyncio
async def test_cometchat_http_error(cometchat_driver):
    cometchat_driver._session = FakeSession(FakeResponse(500, {"error": "down"}))
    with pytest.raises(DeliveryError, match="HTTP 500"):
        await cometchat_driver.deliver("grp1", FormattedMessage(text="hi"))


@pytest.mark.asyncio
async def test_cometchat_echo_of_bridge_post_is_not_routed(cometchat_driver):
    session = FakeSession(FakeResponse(200, {"data": {"id": "77"}}))
    cometchat_driver._session = session
    await cometchat_driver.deliver("grp1", cometchat_driver.format_message(_message()))

    sent = session.posts[0]["json"]
    echo = {
        "trigger": "after_message",
        "data": {
            "message": {
                "id": "77",
                "receiver": sent["receiver"],
                "sender": {"uid": "cometchat_bot", "name": "Bridge"},
                "text": sent["data"]["text"],
                "data": sent["data"],
            }
        },
    }
    msg = normalize(echo, Platform.COMETCHAT)
    assert msg.author.is_bot is True


@pytest.mark.asyncio
async def test_cometchat_webhook_routes_in_background(registry, senders, cometchat_webhook):
    driver = CometChatDriver(CometChatConfig(app_id="a", region="us", api_key="k"), Router(registry, senders))

    async def body():
        return cometchat_webhook

    resp = await driver._handle_webhook(SimpleNamespace(json=body))
    assert resp.status == 200
    await asyncio.gather(*driver._tasks)

    assert [dest for dest, _ in senders[Platform.TELEGRAM].calls] == ["-100123"]
    assert [dest for dest, _ in senders[Platform.DISCORD].calls] == ["555"]


@pytest.mark.asyncio
async def test_cometchat_webhook_with_scalar_attachments_still_routes(registry, senders):
    driver = CometChatDriver(CometChatConfig(app_id="a", region="us", api_key="k"), Router(registry, senders))

    async def body():
        return {"id": "m", "receiver": "grp1", "text": "hi", "data": {"attachments": 5}}

    await driver._handle_webhook(SimpleNamespace(json=body))
    results = await asyncio.gather(*driver._tasks, return_exceptions=True)

    assert not any(isinstance(r, Exception) for r in results)
    assert [dest for dest, _ in senders[Platform.DISCORD].calls] == ["555"]


@pytest.mark.asyncio
async def test_cometchat_background_failure_is_logged(cometchat_driver, monkeypatch):
    records = []

    class _Collect(logging.Handler):
        def emit(self, record):
            records.append(record)

    async def broken_submit(payload):
        raise RuntimeError("router exploded")

    monkeypatch.setattr(cometchat_driver, "submit", broken_submit)
    handler = _Collect(level=logging.ERROR)
    logger = log.get_logger()
    logger.addHandler(handler)
    try:
        async def body():
            return {"trigger": "after_message", "data": {}}

        await cometchat_driver._handle_webhook(SimpleNamespace(json=body))
        tasks = list(cometchat_driver._tasks)
        await asyncio.gather(*tasks, return_exceptions=True)
    finally:
        logger.removeHandler(handler)

    assert cometchat_driver._tasks == set()
    assert any("router exploded" in r.getMessage() for r in records)


@pytest.mark.asyncio
async def test_cometchat_webhook_rejects_bad_json(cometchat_driver):
    async def body():
        raise json.JSONDecodeError("bad", "", 0)

    resp = await cometchat_driver._handle_webhook(SimpleNamespace(json=body))
    assert resp.status == 400


# ---------------------------------------------------------------------------
# Telegram delivery
# ---------------------------------------------------------------------------

def _fake_app(send):
    return SimpleNamespace(bot=SimpleNamespace(send_message=send))


@pytest.mark.asyncio
async def test_telegram_deliver(telegram_driver):
    calls = []

    async def send_message(**kwargs):
        calls.append(kwargs)
        return SimpleNamespace(message_id=314)

    telegram_driver._app = _fake_app(send_message)
    receipt = await telegram_driver.deliver("-100123", FormattedMessage(text="<b>x</b>", parse_mode="HTML"))

    assert receipt.delivered_id == "314"
    assert calls[0]["chat_id"] == -100123
    assert calls[0]["parse_mode"] == "HTML"
    assert calls[0]["link_preview_options"].is_disabled is True


@pytest.mark.asyncio
async def test_telegram_invalid_chat_id(telegram_driver):
    async def send_message(**kwargs):
        raise AssertionError("should not be called")

    telegram_driver._app = _fake_app(send_message)
    with pytest.raises(DeliveryError, match="invalid chat id"):
        await telegram_driver.deliver("grp1", FormattedMessage(text="hi"))


@pytest.mark.asyncio
async def test_telegram_api_error(telegram_driver):
    async def send_message(**kwargs):
        raise TelegramError("Chat not found")

    telegram_driver._app = _fake_app(send_message)
    with pytest.raises(DeliveryError, match="Chat not found"):
        await telegram_driver.deliver("-100123", FormattedMessage(text="hi"))


# ---------------------------------------------------------------------------
# Receive path
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_submit_routes_native_payload(registry, senders, discord_payload):
    driver = DiscordDriver(DiscordConfig(bot_token="tok"), Router(registry, senders))
    outcomes = await driver.submit(discord_payload)

    assert {o.platform for o in outcomes} == {Platform.TELEGRAM, Platform.COMETCHAT}
    assert senders[Platform.DISCORD].calls == []


@pytest.mark.asyncio
async def test_submit_drops_malformed_payload(registry, senders):
    driver = DiscordDriver(DiscordConfig(bot_token="tok"), Router(registry, senders))
    assert await driver.submit({"content": "no ids"}) == []
    assert all(s.calls == [] for s in senders.values())


def test_unknown_driver_config_key_is_rejected():
    with pytest.raises(ValueError):
        DiscordConfig(bot_token="tok", colour="red")
