# CometChat driver via webhook + REST API.
#
# Receive: CometChat pushes webhook events to an HTTP endpoint you expose.
#          Configure a webhook in the CometChat dashboard with the
#          "message sent" trigger pointing at
#            http(s)://<host>:<listen_port><listen_path>
#          Only new-message triggers are routed; delivery/read/presence
#          triggers are acknowledged and ignored.
#
# Send:    Bot Message API, POST /bots/{bot_uid}/messages.  Every message
#          carries data.metadata.source = "bridge" so that it is recognised
#          as a bridge post if CometChat echoes it back through the webhook.
#
# Config keys (under cometchat):
#   app_id        – CometChat app ID (required)
#   region        – App region, e.g. "us", "eu", "in" (required)
#   api_key       – REST API key (required)
#   bot_uid       – UID of the bot that posts bridged messages (default "cometchat_bot")
#   receiver_type – "group" (default) or "user"
#   api_base      – Override for the REST base URL
#   listen_port   – HTTP port for the webhook listener (default 8094)
#   listen_path   – HTTP path for the webhook listener (default "/cometchat")
#   timeout       – Seconds allowed for one send (default 15)
#
# Bridge destination id:
#   CometChat group GUID (or user UID when receiver_type = "user")

import asyncio
from typing import Literal

import aiohttp
from aiohttp import web

import services.logger as log
from services.config_schema import _DriverConfig
from services.error import DeliveryError
from services.message import CanonicalMessage, DeliveryReceipt, FormattedMessage, Platform
from drivers import BaseDriver


class CometChatConfig(_DriverConfig):
    app_id:        str
    region:        str
    api_key:       str
    bot_uid:       str                      = "cometchat_bot"
    receiver_type: Literal["group", "user"] = "group"
    api_base:      str                      = ""
    listen_port:   int                      = 8094
    listen_path:   str                      = "/cometchat"

    @property
    def base_url(self) -> str:
        if self.api_base:
            return self.api_base.rstrip("/")
        return f"https://{self.app_id}.api-{self.region}.cometchat.io/v3"


l = log.get_logger()

_PLATFORM_EMOJI = {
    Platform.DISCORD:   "🎮",
    Platform.TELEGRAM:  "✈️",
    Platform.COMETCHAT: "💬",
}


class CometChatDriver(BaseDriver[CometChatConfig]):

    platform = Platform.COMETCHAT

    def __init__(self, config: CometChatConfig, router):
        super().__init__(config, router)
        self._session: aiohttp.ClientSession | None = None
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        self._session = aiohttp.ClientSession(
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "apikey": self.config.api_key,
            }
        )
        self.router.register_sender(self.platform, self)

        app = web.Application()
        app.router.add_post(self.config.listen_path, self._handle_webhook)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, "0.0.0.0", self.config.listen_port)
        await site.start()
        l.info(
            f"CometChat listening on 0.0.0.0:{self.config.listen_port}{self.config.listen_path} "
            f"(app {self.config.app_id}, region {self.config.region})"
        )
        try:
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()
            await self._session.close()
            self._session = None

    # ------------------------------------------------------------------
    # Receive
    # ------------------------------------------------------------------

    async def _handle_webhook(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except Exception:
            return web.json_response({"error": "bad request"}, status=400)

        l.debug(f"CometChat webhook trigger={body.get('trigger') if isinstance(body, dict) else None}")

        # Acknowledge immediately; routing continues in the background
        task = asyncio.create_task(self.submit(body))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return web.json_response({"received": True})

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            l.error(f"CometChat webhook routing failed: {type(exc).__name__}: {exc}")

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    def format_message(self, msg: CanonicalMessage, max_length: int | None = None) -> FormattedMessage:
        emoji = _PLATFORM_EMOJI.get(msg.source, "🔗")
        source = msg.source.value.capitalize()
        return FormattedMessage(
            text=f"{emoji} **{source}** | {msg.author.name}:\n{self.body_text(msg, max_length)}",
            metadata={
                "source": "bridge",
                "originalPlatform": str(msg.source),
                "originalAuthor": msg.author.name,
                "originalMessageId": msg.id,
            },
        )

    async def deliver(self, destination_id: str, formatted: FormattedMessage) -> DeliveryReceipt:
        if self._session is None:
            raise DeliveryError(self.platform, destination_id, "driver not started")

        url = f"{self.config.base_url}/bots/{self.config.bot_uid}/messages"
        payload = {
            "category": "message",
            "type": "text",
            "receiver": destination_id,
            "receiverType": self.config.receiver_type,
            "data": {
                "text": formatted.text,
                "metadata": {"source": "bridge", **formatted.metadata},
            },
        }

        try:
            async with self._session.post(
                url,
                json=payload,
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

        message_id = (data.get("data") or {}).get("id", "")
        return DeliveryReceipt(delivered_id=str(message_id))


from drivers.registry import register
register(Platform.COMETCHAT, CometChatConfig, CometChatDriver)
