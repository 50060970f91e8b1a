import asyncio
import logging
from typing import Optional

from telegram import BotCommand, InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.constants import ChatAction, ParseMode
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from core.delivery import Delivery, Event, Keyboard, MessageHandle
from core.handlers import BOT_COMMANDS

log = logging.getLogger(__name__)


def to_markup(buttons: Optional[Keyboard]) -> Optional[InlineKeyboardMarkup]:
    if not buttons:
        return None
    return InlineKeyboardMarkup(
        [
            [InlineKeyboardButton(button.label, callback_data=button.payload) for button in row]
            for row in buttons
            if row
        ]
    )


class TelegramTransport(Delivery):
    def __init__(self, token: str):
        self.application = Application.builder().token(token).concurrent_updates(True).build()
        self.router = None
        self._register_handlers()
        self._stop_event = asyncio.Event()

    def bind(self, router) -> None:
        self.router = router

    @property
    def bot(self):
        return self.application.bot

    def _register_handlers(self):
        self.application.add_handler(MessageHandler(filters.TEXT, self.handle_text))
        self.application.add_handler(CallbackQueryHandler(self.handle_button))

    async def handle_text(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        message = update.effective_message
        user = update.effective_user
        chat = update.effective_chat
        if not message or not message.text or not user or user.is_bot or not chat:
            return
        event = Event(
            conversation_id=str(chat.id),
            user_id=str(user.id),
            kind="text",
            payload=message.text,
        )
        await self._dispatch(event)

    async def handle_button(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        query = update.callback_query
        user = update.effective_user
        chat = update.effective_chat
        if not query or not query.data or not user or not chat:
            return
        event = Event(
            conversation_id=str(chat.id),
            user_id=str(user.id),
            kind="button",
            payload=query.data,
            callback_id=query.id,
        )
        await self._dispatch(event)

    async def _dispatch(self, event: Event) -> None:
        if self.router is None:
            log.warning("Dropping update for %s: no router bound", event.conversation_id)
            return
        try:
            await self.router.dispatch(event)
        except Exception as exc:
            log.exception("Bot error: %s", exc)
            try:
                await self.send_message(event.conversation_id, "Sorry, an error occurred. Please try again later.")
            except Exception as send_exc:
                log.warning("Failed to report error to %s: %s", event.conversation_id, send_exc)

    # ----- delivery -----
    async def send_message(self, conversation_id, text, buttons=None, *, markdown=False) -> MessageHandle:
        sent = await self.bot.send_message(
            chat_id=int(conversation_id),
            text=text,
            reply_markup=to_markup(buttons),
            parse_mode=ParseMode.MARKDOWN if markdown else None,
        )
        return MessageHandle(conversation_id=conversation_id, message_id=sent.message_id)

    async def delete_message(self, handle: MessageHandle) -> None:
        await self.bot.delete_message(chat_id=int(handle.conversation_id), message_id=handle.message_id)

    async def send_image(self, conversation_id, content, caption, buttons=None, *, markdown=False) -> MessageHandle:
        sent = await self.bot.send_photo(
            chat_id=int(conversation_id),
            photo=content,
            caption=caption,
            reply_markup=to_markup(buttons),
            parse_mode=ParseMode.MARKDOWN if markdown else None,
        )
        return MessageHandle(conversation_id=conversation_id, message_id=sent.message_id)

    async def acknowledge(self, event: Event, text: Optional[str] = None) -> None:
        if not event.callback_id:
            return
        try:
            await self.bot.answer_callback_query(event.callback_id, text=text)
        except Exception as exc:
            log.debug("Failed to answer callback %s: %s", event.callback_id, exc)

    async def send_typing(self, conversation_id: str) -> None:
        await self.bot.send_chat_action(chat_id=int(conversation_id), action=ChatAction.TYPING)

    # ----- lifecycle -----
    async def start(self):
        await self.application.initialize()
        try:
            await self.bot.set_my_commands([BotCommand(name, description) for name, description in BOT_COMMANDS])
        except Exception as exc:
            log.warning("Failed to register bot commands: %s", exc)
        await self.application.start()
        await self.application.updater.start_polling()
        try:
            await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.application.updater.stop()
            await self.application.stop()
            await self.application.shutdown()

    async def stop(self):
        self._stop_event.set()
