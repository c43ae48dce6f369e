# Discord driver.
#
# Receive: the bot listens for messages via discord.py's gateway and converts
#          each one into the gateway MESSAGE_CREATE shape before routing.
#          Bot and webhook authors are left to the router's loop guard.
#
# Send:    REST API, POST /channels/{id}/messages with the bot token.
#          Mentions are never parsed in bridged text.
#
# Config keys (under discord):
#   bot_token – Bot token (required)
#   api_base  – REST base URL (default "https://discord.com/api/v10")
#   receive   – Set to false for send-only (no gateway connection)
#   timeout   – Seconds allowed for one send (default 15)
#
# Bridge destination id:
#   Discord channel ID (numeric snowflake)

import asyncio

import aiohttp
import discord

import services.logger as log
import services.util as u
from services.config_schema import CoercedBool, _DriverConfig
from services.error import DeliveryError
from services.message import CanonicalMessage, DeliveryReceipt, FormattedMessage, Platform
from drivers import BaseDriver


class DiscordConfig(_DriverConfig):
    bot_token: str
    api_base:  str         = "https://discord.com/api/v10"
    receive:   CoercedBool = True

l = log.get_logger()

_MAX_CONTENT = 2000  # Discord message length limit

_PLATFORM_EMOJI = {
    Platform.TELEGRAM:  "📱",
    Platform.COMETCHAT: "💬",
    Platform.DISCORD:   "🎮",
}


def message_payload(message: discord.Message) -> dict:
    """Flatten a discord.py Message into the gateway MESSAGE_CREATE shape."""
    author = message.author
    return {
        "id": str(message.id),
        "channel_id": str(message.channel.id),
        "guild_id": str(message.guild.id) if message.guild else None,
        "channel_name": getattr(message.channel, "name", None),
        "content": message.content,
        "timestamp": message.created_at.isoformat(),
        "webhook_id": str(message.webhook_id) if message.webhook_id else None,
        "author": {
            "id": str(author.id),
            "username": author.name,
            "global_name": author.global_name,
            "bot": author.bot,
        },
        "member": {"nick": getattr(author, "nick", None)},
        "attachments": [
            {
                "id": str(att.id),
                "filename": att.filename,
                "url": att.url,
                "size": att.size,
                "content_type": att.content_type,
            }
            for att in message.attachments
        ],
    }


class DiscordDriver(BaseDriver[DiscordConfig]):

    platform = Platform.DISCORD

    def __init__(self, config: DiscordConfig, router):
        super().__init__(config, router)
        self._client: discord.Client | None = None
        self._session: aiohttp.ClientSession | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        self.router.register_sender(self.platform, self)
        self._session = aiohttp.ClientSession()

        try:
            if not self.config.receive:
                l.info("Discord receive disabled, send-only via REST")
                await asyncio.Event().wait()  # keep the session open until cancelled
                return

            intents = discord.Intents.default()
            intents.message_content = True
            self._client = discord.Client(intents=intents)

            @self._client.event
            async def on_ready():
                l.info(f"Discord logged in as {self._client.user}")

            @self._client.event
            async def on_message(message: discord.Message):
                await self.submit(message_payload(message))

            # Blocks until the bot disconnects
            await self._client.start(self.config.bot_token)
        finally:
            if self._client is not None and not self._client.is_closed():
                await self._client.close()
            await self._session.close()
            self._session = None

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    def format_message(self, msg: CanonicalMessage, max_length: int | None = None) -> FormattedMessage:
        emoji = _PLATFORM_EMOJI.get(msg.source, "🌐")
        source = msg.source.value.capitalize()
        text = f"{emoji} **[{source}]** {msg.author.name}: {self.body_text(msg, max_length)}"
        return FormattedMessage(text=u.truncate(text, _MAX_CONTENT))

    async def deliver(self, destination_id: str, formatted: FormattedMessage) -> DeliveryReceipt:
        if self._session is None:
            raise DeliveryError(self.platform, destination_id, "driver not started")

        url = f"{self.config.api_base.rstrip('/')}/channels/{destination_id}/messages"
        payload = {
            "content": formatted.text,
            "allowed_mentions": {"parse": []},
        }
        headers = {"Authorization": f"Bot {self.config.bot_token}"}

        try:
            async with self._session.post(
                url,
                json=payload,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
            ) as resp:
                if resp.status not in (200, 201):
                    body = await resp.text()
                    raise DeliveryError(
                        self.platform, destination_id, f"HTTP {resp.status}: {body[:200]}"
                    )
                data = await resp.json()
        except asyncio.TimeoutError:
            raise DeliveryError(
                self.platform, destination_id, f"timed out after {self.config.timeout}s"
            ) from None
        except aiohttp.ClientError as e:
            raise DeliveryError(self.platform, destination_id, str(e)) from e

        return DeliveryReceipt(delivered_id=str(data.get("id", "")))


from drivers.registry import register
register(Platform.DISCORD, DiscordConfig, DiscordDriver)
