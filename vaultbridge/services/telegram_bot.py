"""Telegram bot for operator alerts and loop control."""

import asyncio
import logging
import threading
from typing import Optional

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import Application, CallbackQueryHandler, CommandHandler, ContextTypes

from vaultbridge.config import settings

logger = logging.getLogger(__name__)

_bot_instance: Optional["TelegramBot"] = None


def format_status(status: dict) -> str:
    if status["paused"]:
        state = "paused"
    elif status["halted_reason"]:
        state = f"halted ({status['halted_reason']})"
    else:
        state = "armed" if status["armed"] else "idle (not armed)"
    return (
        f"Loop: {state}\n"
        f"Round: {status['round']}\n"
        f"Pending (last round): {status['last_pending_count']}\n"
        f"Next run: {status['next_run_at'] or '-'}\n"
        f"Slots scheduled: {status['scheduled_slots']}\n"
        f"Fee balance: {status['fee_balance']} ({status['fee_per_run']} per run)"
    )


class TelegramBot:
    """Telegram bot running in a background thread with its own event loop."""

    def __init__(self, token: str, chat_ids: list[int]):
        self.token = token
        self.chat_ids = set(chat_ids)
        self._app: Optional[Application] = None
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _is_authorized(self, user_id: int) -> bool:
        return user_id in self.chat_ids

    async def _check_auth(self, update: Update) -> bool:
        if not update.effective_user or not self._is_authorized(update.effective_user.id):
            if update.message:
                await update.message.reply_text("Unauthorized.")
            return False
        return True

    async def _cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return
        from vaultbridge.engine.scheduler import get_loop

        await update.message.reply_text(format_status(get_loop().status()))

    async def _cmd_pending(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return
        from vaultbridge.engine.worker import get_worker

        ledger = get_worker().ledger
        requests = ledger.get_pending_requests(0, 10)
        if not requests:
            await update.message.reply_text("Queue is empty.")
            return

        lines = [f"{ledger.get_pending_request_count()} request(s) queued:"]
        for r in requests:
            target = f" pos={r.position_id}" if r.position_id is not None else ""
            lines.append(f"#{r.id} {r.kind.value} {r.amount} {r.status.value}{target}")
        await update.message.reply_text("\n".join(lines))

    async def _cmd_pause(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return
        keyboard = InlineKeyboardMarkup([
            [
                InlineKeyboardButton("Yes, pause", callback_data="confirm_pause"),
                InlineKeyboardButton("Cancel", callback_data="cancel"),
            ]
        ])
        await update.message.reply_text(
            "Pause request processing? Scheduled runs will stop the chain.",
            reply_markup=keyboard,
        )

    async def _cmd_resume(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return
        from vaultbridge.engine.scheduler import get_loop
        from vaultbridge.errors import SchedulingFailure

        loop = get_loop()
        loop.unpause()
        try:
            schedule_id = loop.arm()
        except SchedulingFailure as e:
            await update.message.reply_text(f"Unpaused but could not arm: {e}")
            return
        if schedule_id is None:
            await update.message.reply_text("Unpaused; loop was already armed.")
        else:
            await update.message.reply_text("Unpaused and re-armed.")

    async def _handle_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        query = update.callback_query
        if not query or not query.from_user or not self._is_authorized(query.from_user.id):
            return

        await query.answer()

        if query.data == "cancel":
            await query.edit_message_text("Cancelled.")
        elif query.data == "confirm_pause":
            from vaultbridge.engine.scheduler import get_loop

            get_loop().pause()
            await query.edit_message_text("Paused. Use /resume to unpause and re-arm.")

    async def send_notification(self, message: str):
        """Send a message to all whitelisted chat IDs."""
        if not self._app or not self._app.bot:
            return
        for chat_id in self.chat_ids:
            try:
                await self._app.bot.send_message(chat_id=chat_id, text=message)
            except Exception as e:
                logger.warning(f"Failed to send Telegram notification to {chat_id}: {e}")

    def _run_bot(self):
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)

        self._app = Application.builder().token(self.token).build()
        self._app.add_handler(CommandHandler("status", self._cmd_status))
        self._app.add_handler(CommandHandler("pending", self._cmd_pending))
        self._app.add_handler(CommandHandler("pause", self._cmd_pause))
        self._app.add_handler(CommandHandler("resume", self._cmd_resume))
        self._app.add_handler(CallbackQueryHandler(self._handle_callback))

        logger.info("Telegram bot starting...")
        self._loop.run_until_complete(self._app.initialize())
        self._loop.run_until_complete(self._app.start())
        self._loop.run_until_complete(self._app.updater.start_polling())
        self._loop.run_forever()

    def start(self):
        self._thread = threading.Thread(target=self._run_bot, daemon=True)
        self._thread.start()

    def stop(self):
        if self._loop and self._app:
            async def _shutdown():
                await self._app.updater.stop()
                await self._app.stop()
                await self._app.shutdown()

            asyncio.run_coroutine_threadsafe(_shutdown(), self._loop).result(timeout=10)
            self._loop.call_soon_threadsafe(self._loop.stop)


def init_bot() -> TelegramBot:
    global _bot_instance
    _bot_instance = TelegramBot(
        token=settings.telegram_bot_token,
        chat_ids=settings.telegram_chat_ids,
    )
    return _bot_instance


def get_bot() -> Optional[TelegramBot]:
    """The bot singleton, or None if Telegram is not configured."""
    return _bot_instance
