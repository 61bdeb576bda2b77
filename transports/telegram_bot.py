import asyncio
import logging
from pathlib import Path
from typing import Optional

from telegram import ForceReply, InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from custody.protocol import Reply
from custody.service import CustodyService

log = logging.getLogger(__name__)

SEND_PREFIX = "send:"
TOKEN_EXTENSION = ".txf"


def is_token_document(file_name: Optional[str]) -> bool:
    return bool(file_name) and file_name.lower().endswith(TOKEN_EXTENSION)


def reply_markup_for(reply: Reply):
    if reply.send_handle:
        return InlineKeyboardMarkup(
            [[InlineKeyboardButton("Send", callback_data=f"{SEND_PREFIX}{reply.send_handle}")]]
        )
    if reply.force_reply:
        return ForceReply()
    return None


class TelegramTransport:
    def __init__(self, service: CustodyService, token: str):
        self.service = service
        self.application = Application.builder().token(token).concurrent_updates(True).build()
        self.service.attach_native_lookup(self._lookup_username)
        self._register_handlers()
        self._stop_event = asyncio.Event()

    def _register_handlers(self):
        self.application.add_handler(CommandHandler("start", self.start_command))
        self.application.add_handler(CommandHandler("getaddr", self.getaddr_command))
        self.application.add_handler(CommandHandler("sign", self.sign_command))
        self.application.add_handler(CommandHandler("mint", self.mint_command))
        self.application.add_handler(CommandHandler("cancel", self.cancel_command))
        self.application.add_handler(MessageHandler(filters.Document.ALL, self.handle_document))
        self.application.add_handler(
            CallbackQueryHandler(self.handle_send_action, pattern=f"^{SEND_PREFIX}")
        )
        self.application.add_handler(
            MessageHandler(filters.TEXT & (~filters.COMMAND), self.handle_text)
        )
        self.application.add_error_handler(self.handle_error)

    async def _lookup_username(self, username: str) -> int:
        chat = await self.application.bot.get_chat(username)
        return chat.id

    async def _send_reply(self, context: ContextTypes.DEFAULT_TYPE, chat_id: int, reply: Optional[Reply]):
        if reply is None or not reply.text:
            return
        await context.bot.send_message(
            chat_id=chat_id, text=reply.text, reply_markup=reply_markup_for(reply)
        )

    def _emitter(self, context: ContextTypes.DEFAULT_TYPE, chat_id: int):
        async def emit(path: Path, caption: str) -> None:
            with path.open("rb") as handle:
                await context.bot.send_document(
                    chat_id=chat_id, document=handle, filename=path.name, caption=caption
                )

        return emit

    async def start_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        message = update.effective_message
        if not message:
            return
        await message.reply_text(self.service.start_text())

    async def getaddr_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        message = update.effective_message
        user = update.effective_user
        if not message or not user:
            return
        argument = " ".join(context.args or []).strip() or None
        await message.reply_text(await self.service.get_address(user.id, argument))

    async def sign_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        message = update.effective_message
        user = update.effective_user
        if not message or not user:
            return
        argument = " ".join(context.args or []).strip()
        await message.reply_text(await self.service.sign(user.id, argument))

    async def mint_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        chat = update.effective_chat
        user = update.effective_user
        if not chat or not user:
            return
        try:
            reply = await self.service.mint(user.id, self._emitter(context, chat.id))
        except Exception as exc:
            log.exception("Mint delivery failed for %s: %s", user.id, exc)
            reply = Reply("Failed to deliver the minted token. Please try again.")
        await self._send_reply(context, chat.id, reply)

    async def cancel_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        chat = update.effective_chat
        user = update.effective_user
        if not chat or not user:
            return
        await self._send_reply(context, chat.id, await self.service.protocol.abandon(user.id))

    async def handle_document(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        message = update.effective_message
        user = update.effective_user
        chat = update.effective_chat
        if not message or not message.document or not user or not chat:
            return
        document = message.document
        if not is_token_document(document.file_name):
            return
        try:
            tg_file = await context.bot.get_file(document.file_id)
            raw = bytes(await tg_file.download_as_bytearray())
        except Exception as exc:
            log.error("Error downloading token file from %s: %s", user.id, exc)
            reply = Reply("Failed to process the file. Please try again.")
        else:
            reply = await self.service.protocol.receive_token_file(
                user.id, document.file_unique_id, raw
            )
        await self._send_reply(context, chat.id, reply)

    async def handle_send_action(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        query = update.callback_query
        user = update.effective_user
        chat = update.effective_chat
        if not query or not user or not chat:
            return
        await query.answer()
        file_handle = (query.data or "")[len(SEND_PREFIX):]
        reply = await self.service.protocol.request_send(user.id, file_handle)
        await self._send_reply(context, chat.id, reply)

    async def handle_text(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        message = update.effective_message
        user = update.effective_user
        chat = update.effective_chat
        if not message or not message.text or not user or user.is_bot or not chat:
            return
        reply = await self.service.protocol.receive_destination(
            user.id, message.text, self._emitter(context, chat.id)
        )
        await self._send_reply(context, chat.id, reply)

    async def handle_error(self, update: object, context: ContextTypes.DEFAULT_TYPE):
        log.error("Telegram handler error: %s", context.error, exc_info=context.error)
        if isinstance(update, Update) and update.effective_chat:
            try:
                await context.bot.send_message(
                    chat_id=update.effective_chat.id,
                    text="Something went wrong. Please try again.",
                )
            except Exception as exc:
                log.warning("Failed to report error to %s: %s", update.effective_chat.id, exc)

    async def start(self):
        await self.application.initialize()
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
