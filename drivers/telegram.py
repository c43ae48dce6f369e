# Telegram driver via python-telegram-bot (v20+).
# Uses long-polling to receive messages and the bot API to send.
#
# Config keys (under telegram):
#   bot_token – Telegram bot token from @BotFather (required)
#   timeout   – Seconds allowed for one send (default 15)
#
# Bridge destination id:
#   Telegram chat ID (negative for groups, e.g. "-100123456789")
#
# Outgoing text uses HTML parse mode; everything taken from the source
# message is escaped.

import asyncio
import html

from telegram import LinkPreviewOptions, Update
from telegram.error import TelegramError
from telegram.ext import Application, ContextTypes, MessageHandler, filters

import services.logger as log
import services.util as u
from services.config_schema import _DriverConfig
from services.error import DeliveryError
from services.message import CanonicalMessage, DeliveryReceipt, FormattedMessage, Platform
from drivers import BaseDriver


class TelegramConfig(_DriverConfig):
    bot_token: str

l = log.get_logger()

_MAX_TEXT = 4096  # Telegram message length limit

# Catch all non-command message types that may carry content
_CONTENT_FILTER = (
    filters.TEXT
    | filters.PHOTO
    | filters.VIDEO
    | filters.VOICE
    | filters.AUDIO
    | filters.Document.ALL
    | filters.ANIMATION
) & ~filters.COMMAND & ~filters.UpdateType.EDITED


class TelegramDriver(BaseDriver[TelegramConfig]):

    platform = Platform.TELEGRAM

    def __init__(self, config: TelegramConfig, router):
        super().__init__(config, router)
        self._app: Application | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        self.router.register_sender(self.platform, self)

        self._app = Application.builder().token(self.config.bot_token).build()
        self._app.add_handler(MessageHandler(_CONTENT_FILTER, self._on_message))

        # async-with handles initialize() / shutdown() automatically
        async with self._app:
            await self._app.start()
            await self._app.updater.start_polling(allowed_updates=Update.ALL_TYPES)
            l.info("Telegram polling started")
            try:
                await asyncio.Event().wait()  # keep running until cancelled
            finally:
                await self._app.updater.stop()
                await self._app.stop()

    # ------------------------------------------------------------------
    # Receive
    # ------------------------------------------------------------------

    async def _on_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not update.effective_message:
            return
        await self.submit(update.to_dict())

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    def format_message(self, msg: CanonicalMessage, max_length: int | None = None) -> FormattedMessage:
        source = html.escape(msg.source.value.capitalize())
        author = html.escape(msg.author.name)
        header = f"<b>[{source}]</b> <i>{author}:</i>\n"

        # Cut the raw text, not the escaped one, so no entity is split
        raw = self.body_text(msg, max_length)
        budget = _MAX_TEXT - len(header)
        body = html.escape(raw)
        while len(body) > budget and len(raw) > 1:
            raw = u.truncate(raw, max(1, len(raw) - (len(body) - budget)))
            body = html.escape(raw)

        return FormattedMessage(text=header + body, parse_mode="HTML")

    async def deliver(self, destination_id: str, formatted: FormattedMessage) -> DeliveryReceipt:
        if self._app is None:
            raise DeliveryError(self.platform, destination_id, "driver not started")
        try:
            chat_id = int(destination_id)
        except ValueError:
            raise DeliveryError(self.platform, destination_id, f"invalid chat id {destination_id!r}") from None

        try:
            sent = await asyncio.wait_for(
                self._app.bot.send_message(
                    chat_id=chat_id,
                    text=formatted.text,
                    parse_mode=formatted.parse_mode,
                    link_preview_options=LinkPreviewOptions(is_disabled=True),
                ),
                timeout=self.config.timeout,
            )
        except asyncio.TimeoutError:
            raise DeliveryError(
                self.platform, destination_id, f"timed out after {self.config.timeout}s"
            ) from None
        except TelegramError as e:
            raise DeliveryError(self.platform, destination_id, str(e)) from e

        return DeliveryReceipt(delivered_id=str(sent.message_id))


from drivers.registry import register
register(Platform.TELEGRAM, TelegramConfig, TelegramDriver)
