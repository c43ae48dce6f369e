import asyncio
import time

import pytest

from conftest import MAIN_BRIDGE, FakeSender
from services.bridge_registry import BridgeRegistry
from services.loop_guard import LoopGuard
from services.message import Author, CanonicalMessage, Channel, Content, Platform
from services.normalizer import normalize
from services.router import DeliveryOutcome, Router


def _message(text="hello", name="bob", is_bot=False, source=Platform.TELEGRAM, channel_id="-100123"):
    return CanonicalMessage(
        id=f"{source}_42",
        source=source,
        author=Author(id="7", name=name, is_bot=is_bot),
        content=Content(text=text),
        channel=Channel(id=channel_id, name="chat", type="group"),
        timestamp=1700000000000,
    )


@pytest.mark.asyncio
async def test_telegram_message_fans_out_to_other_platforms(router, senders, telegram_payload):
    msg = normalize(telegram_payload, Platform.TELEGRAM)
    outcomes = await router.route(msg)

    assert senders[Platform.TELEGRAM].calls == []
    assert [dest for dest, _ in senders[Platform.DISCORD].calls] == ["555"]
    assert [dest for dest, _ in senders[Platform.COMETCHAT].calls] == ["grp1"]
    assert senders[Platform.DISCORD].calls[0][1].text == "[telegram] bob: hello"

    assert len(outcomes) == 2
    assert all(o.ok for o in outcomes)
    assert {o.platform for o in outcomes} == {Platform.DISCORD, Platform.COMETCHAT}


@pytest.mark.asyncio
async def test_bot_author_is_not_routed(router, senders):
    assert await router.route(_message(is_bot=True)) == []
    assert all(s.calls == [] for s in senders.values())


@pytest.mark.asyncio
async def test_denylisted_name_is_not_routed(router, senders):
    assert await router.route(_message(name="CometChat Bot")) == []
    assert all(s.calls == [] for s in senders.values())


@pytest.mark.asyncio
async def test_unbridged_channel_is_not_routed(router, senders):
    assert await router.route(_message(channel_id="-999")) == []
    assert all(s.calls == [] for s in senders.values())


@pytest.mark.asyncio
async def test_empty_content_is_dropped(router, senders):
    assert await router.route(_message(text="")) == []
    assert all(s.calls == [] for s in senders.values())


@pytest.mark.asyncio
async def test_non_message_is_rejected(router):
    with pytest.raises(TypeError):
        await router.route({"text": "hello"})


@pytest.mark.asyncio
@pytest.mark.parametrize("failing", [Platform.DISCORD, Platform.COMETCHAT])
async def test_one_failed_destination_does_not_block_the_other(registry, failing):
    senders = {p: FakeSender(p, fail=(p == failing)) for p in Platform}
    router = Router(registry, senders)

    outcomes = await router.route(_message())

    by_platform = {o.platform: o for o in outcomes}
    assert by_platform[failing].ok is False
    assert by_platform[failing].error == "remote said no"
    healthy = Platform.COMETCHAT if failing == Platform.DISCORD else Platform.DISCORD
    assert by_platform[healthy].ok is True
    assert len(senders[healthy].calls) == 1


@pytest.mark.asyncio
async def test_unexpected_sender_exception_is_contained(registry, senders):
    class Exploding(FakeSender):
        async def deliver(self, destination_id, formatted):
            raise RuntimeError("boom")

    senders[Platform.DISCORD] = Exploding(Platform.DISCORD)
    outcomes = await Router(registry, senders).route(_message())

    by_platform = {o.platform: o for o in outcomes}
    assert by_platform[Platform.DISCORD].error == "boom"
    assert by_platform[Platform.COMETCHAT].ok


@pytest.mark.asyncio
async def test_missing_sender_yields_error_outcome(registry):
    router = Router(registry, {Platform.DISCORD: FakeSender(Platform.DISCORD)})
    outcomes = await router.route(_message())

    by_platform = {o.platform: o for o in outcomes}
    assert by_platform[Platform.DISCORD].ok
    assert by_platform[Platform.COMETCHAT] == DeliveryOutcome(
        Platform.COMETCHAT, "grp1", error="no sender registered"
    )


@pytest.mark.asyncio
async def test_deliveries_run_concurrently(registry):
    senders = {p: FakeSender(p, delay=0.2) for p in Platform}
    router = Router(registry, senders)

    started = time.monotonic()
    outcomes = await router.route(_message())
    elapsed = time.monotonic() - started

    assert len(outcomes) == 2
    assert elapsed < 0.35


@pytest.mark.asyncio
async def test_sync_disabled_bridge_skips_delivery(senders):
    registry = BridgeRegistry.from_config([{**MAIN_BRIDGE, "settings": {"sync_messages": False}}])
    router = Router(registry, senders)
    assert await router.route(_message()) == []
    assert all(s.calls == [] for s in senders.values())


@pytest.mark.asyncio
async def test_max_message_length_reaches_formatter(senders):
    registry = BridgeRegistry.from_config([{**MAIN_BRIDGE, "settings": {"max_message_length": 5}}])
    router = Router(registry, senders)
    await router.route(_message(text="abcdefghij"))

    assert senders[Platform.DISCORD].max_lengths == [5]
    assert senders[Platform.DISCORD].calls[0][1].text.endswith(": abcde")


@pytest.mark.asyncio
async def test_configured_identity_from_loop_guard(registry, senders):
    router = Router(registry, senders, LoopGuard(bot_user_ids={Platform.TELEGRAM: ["7"]}))
    assert await router.route(_message()) == []


@pytest.mark.asyncio
async def test_concurrent_routes_share_the_registry(router, senders):
    await asyncio.gather(*(router.route(_message(text=str(i))) for i in range(10)))
    assert len(senders[Platform.DISCORD].calls) == 10
    assert len(senders[Platform.COMETCHAT].calls) == 10


def test_register_sender_and_stats(registry):
    router = Router(registry)
    router.register_sender(Platform.DISCORD, FakeSender(Platform.DISCORD))

    stats = router.stats()
    assert stats["senders"] == {"discord": True, "telegram": False, "cometchat": False}
    assert stats["bridges"]["total_bridges"] == 1
