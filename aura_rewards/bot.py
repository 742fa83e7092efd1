"""Telegram transport: activity tracking and chat commands."""
import asyncio
import html
import logging
import signal
from decimal import Decimal
from functools import partial
from typing import List, Optional, Tuple

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update, WebAppInfo
from telegram.constants import ChatType, ParseMode
from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters
from web3 import Web3

from aura_rewards.errors import AuraError, InvalidInputError, UnauthorizedError
from aura_rewards.models.responses import TransferResult
from aura_rewards.runtime import Services
from aura_rewards.services.transfer import display_amount, parse_amount

log = logging.getLogger(__name__)

GROUP_CHAT_TYPES = (ChatType.GROUP, ChatType.SUPERGROUP)

HELP_TEXT = """<b>Aura rewards bot</b>

/wallet - your wallet address and balances
/balance - same as /wallet
/leaderboard - this week's most active members (groups only)
/rank - your position this week (groups only)
/stats - your activity statistics
/quest - today's quest and chest
/openchest - open today's chest
/claim - mint today's chest reward to your wallet
/transfer_core &lt;address&gt; &lt;amount&gt; - send native currency
/transfer_usdt &lt;address&gt; &lt;amount&gt; - send USDT
/tip @user &lt;amount&gt; [message] - admins only
/tiphistory - recent tips"""

GROUP_WELCOME_TEXT = """🎉 Thanks for adding me to {title}!

I'll start tracking chat activity for the weekly leaderboard. Use /help to see available commands.

Admins can use /tip to reward active users with USDT tokens! 💰"""


def is_trackable(chat_type: str, text: Optional[str], is_bot: bool) -> bool:
    """Only plain messages from people in group chats count as activity."""
    if is_bot or chat_type not in GROUP_CHAT_TYPES:
        return False
    return bool(text) and not text.startswith("/")


def parse_tip_arguments(args: List[str], max_tip: float = 1000) -> Tuple[str, Decimal, str]:
    """``/tip @alice 10 thanks`` -> ("@alice", Decimal("10"), "thanks")."""
    if len(args) < 2:
        raise InvalidInputError("Usage: /tip @username amount\nExample: /tip @alice 10")
    target, amount = args[0], args[1]
    if not target.startswith("@") and not target.isdigit():
        raise InvalidInputError("Please specify a user with @username or user ID")
    try:
        value = parse_amount(amount)
    except InvalidInputError:
        raise InvalidInputError("Please provide a valid positive amount")
    if value > max_tip:
        raise InvalidInputError(f"Maximum tip amount is {max_tip:g} USDT")
    return target, value, " ".join(args[2:]).strip()


def parse_transfer_arguments(args: List[str], command: str, max_amount: Optional[float] = None) -> Tuple[str, Decimal, str]:
    if len(args) < 2:
        raise InvalidInputError(f"Usage: /{command} <address> <amount>\nExample: /{command} 0x742d...8f3a 10")
    address, amount = args[0], args[1]
    if not Web3.is_address(address):
        raise InvalidInputError("Invalid wallet address format")
    try:
        value = parse_amount(amount)
    except InvalidInputError:
        raise InvalidInputError("Please provide a valid positive amount")
    if max_amount is not None and value > max_amount:
        raise InvalidInputError(f"Maximum transfer amount is {max_amount:g}")
    return address, value, " ".join(args[2:]).strip()


def format_user_name(username: Optional[str], first_name: Optional[str], last_name: Optional[str],
                     identity: Optional[str] = None) -> str:
    if username:
        return f"@{username}"
    if first_name and last_name:
        return f"{first_name} {last_name}"
    if first_name:
        return first_name
    return f"User {identity}" if identity else "Unknown user"


def format_transfer_result(result: TransferResult, symbol: str) -> str:
    if result.success:
        return (f"✅ Sent {result.amount} {symbol} to <code>{result.to_address}</code>\n"
                f"🔗 Transaction: <code>{result.tx_hash}</code>")
    text = f"❌ {html.escape(result.error or 'Transfer failed')}"
    if result.tx_hash:
        text += f"\n🔗 Transaction: <code>{result.tx_hash}</code>"
    return text


class TelegramBot:
    def __init__(self, services: Services, token: str):
        self.services = services
        self.application = Application.builder().token(token).build()
        self._register_handlers()
        self._stop_event: Optional[asyncio.Event] = None

    def _register_handlers(self):
        commands = {
            "start": self.start_command,
            "help": self.help_command,
            "wallet": self.wallet_command,
            "balance": self.wallet_command,
            "leaderboard": self.leaderboard_command,
            "rank": self.rank_command,
            "stats": self.stats_command,
            "tip": self.tip_command,
            "tiphistory": self.tip_history_command,
            "transfer_core": self.transfer_core_command,
            "transfer_usdt": self.transfer_usdt_command,
            "quest": self.quest_command,
            "openchest": self.open_chest_command,
            "claim": self.claim_command,
        }
        for name, handler in commands.items():
            self.application.add_handler(CommandHandler(name, partial(self._guarded, handler)))
        self.application.add_handler(MessageHandler(filters.TEXT & (~filters.COMMAND), self.handle_message))
        self.application.add_handler(MessageHandler(filters.StatusUpdate.NEW_CHAT_MEMBERS, self.handle_new_members))

    async def _run(self, fn, *args, **kwargs):
        # Services are synchronous; keep them off the event loop
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args, **kwargs))

    def _register_sender(self, update: Update) -> None:
        user = update.effective_user
        chat = update.effective_chat
        self.services.store.upsert_user(str(user.id), user.username, user.first_name, user.last_name)
        if chat.type in GROUP_CHAT_TYPES:
            self.services.store.upsert_group(str(chat.id), chat.title, chat.type)

    async def _guarded(self, handler, update: Update, context: ContextTypes.DEFAULT_TYPE):
        message = update.effective_message
        if not message or not update.effective_user or not update.effective_chat:
            return
        try:
            await self._run(self._register_sender, update)
            await handler(update, context)
        except AuraError as e:
            await message.reply_text(f"❌ {e.message}")
        except Exception as exc:
            log.exception("Command error: %s", exc)
            await message.reply_text("❌ An error occurred while processing your request. Please try again.")

    async def _submit(self, status, symbol: str, call, note: Optional[str] = None) -> None:
        """Run a transfer-like call and replace the "processing" reply with its outcome."""
        try:
            result = await self._run(call)
        except AuraError as e:
            await status.edit_text(f"❌ {html.escape(e.message)}")
            return
        text = format_transfer_result(result, symbol)
        if result.success and note:
            text += f"\n💬 {html.escape(note)}"
        await status.edit_text(text, parse_mode=ParseMode.HTML)

    async def handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        message = update.effective_message
        user = update.effective_user
        chat = update.effective_chat
        if not message or not user or not chat:
            return
        if not is_trackable(chat.type, message.text, user.is_bot):
            return
        try:
            await self._run(self._track, update)
        except Exception as exc:
            log.warning("Failed to track message from %s in %s: %s", user.id, chat.id, exc)

    def _track(self, update: Update) -> None:
        self._register_sender(update)
        identity, group = str(update.effective_user.id), str(update.effective_chat.id)
        self.services.buffer.record(identity, group)
        self.services.quests.record_activity(identity, group)

    async def handle_new_members(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        message = update.effective_message
        chat = update.effective_chat
        if not message or not chat or not message.new_chat_members:
            return
        if not any(member.id == context.bot.id for member in message.new_chat_members):
            return
        await self._run(self.services.store.upsert_group, str(chat.id), chat.title, chat.type)
        log.info(f"Added to chat {chat.id} ({chat.title})")
        await message.reply_text(GROUP_WELCOME_TEXT.format(title=chat.title or "this group"))

    async def start_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        user = update.effective_user
        wallet = await self._run(self.services.wallets.resolve, str(user.id))
        await self._run(self.services.store.set_wallet_address, str(user.id), wallet.address)
        text = (f"👋 Welcome, {html.escape(user.first_name or 'there')}!\n\n"
                f"Chat in groups with this bot to climb the weekly leaderboard and complete daily quests.\n\n"
                f"💼 Your wallet: <code>{wallet.address}</code>\n\nSend /help for all commands.")
        markup = None
        if self.services.settings.WEB_APP_URL and update.effective_chat.type == ChatType.PRIVATE:
            markup = InlineKeyboardMarkup([[
                InlineKeyboardButton("Open wallet", web_app=WebAppInfo(url=self.services.settings.WEB_APP_URL))
            ]])
        await update.effective_message.reply_text(text, parse_mode=ParseMode.HTML, reply_markup=markup)

    async def help_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await update.effective_message.reply_text(HELP_TEXT, parse_mode=ParseMode.HTML)

    def _wallet_summary(self, identity: str) -> str:
        settings = self.services.settings
        wallets = self.services.wallets
        wallet = wallets.resolve(identity)
        self.services.store.set_wallet_address(identity, wallet.address)
        lines = [
            "💼 <b>Your Wallet</b>",
            f"📍 Address: <code>{wallet.address}</code>",
            f"🔐 Type: {wallet.wallet_type}",
        ]
        if wallet.predicted_contract_address:
            deployed = "deployed" if wallet.is_deployed else "not deployed"
            lines.append(f"🏭 Smart account: <code>{wallet.predicted_contract_address}</code> ({deployed})")
        lines.append(f"💰 {settings.NATIVE_SYMBOL}: {wallets.balance_of(wallet.address)}")
        if settings.USDT_CONTRACT_ADDRESS:
            lines.append(f"💵 USDT: {wallets.balance_of(wallet.address, settings.USDT_CONTRACT_ADDRESS)}")
        if settings.AURA_TOKEN_CONTRACT_ADDRESS:
            lines.append(f"✨ AURA: {wallets.balance_of(wallet.address, settings.AURA_TOKEN_CONTRACT_ADDRESS)}")
        return "\n".join(lines)

    async def wallet_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        text = await self._run(self._wallet_summary, str(update.effective_user.id))
        await update.effective_message.reply_text(text, parse_mode=ParseMode.HTML)

    async def leaderboard_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        chat = update.effective_chat
        if chat.type not in GROUP_CHAT_TYPES:
            raise InvalidInputError("This command only works in group chats.")
        entries = await self._run(self.services.ranking.get_leaderboard, str(chat.id),
                                  self.services.settings.LEADERBOARD_LIMIT)
        if not entries:
            await update.effective_message.reply_text("📊 No activity recorded this week yet. Start chatting!")
            return
        medals = {1: "🥇", 2: "🥈", 3: "🥉"}
        lines = ["🏆 <b>Weekly Leaderboard</b>", ""]
        for entry in entries:
            name = format_user_name(entry.username, entry.first_name, entry.last_name, entry.telegram_user_id)
            prefix = medals.get(entry.rank_position, f"{entry.rank_position}.")
            lines.append(f"{prefix} {html.escape(name)}: {entry.total_messages} messages")
        await update.effective_message.reply_text("\n".join(lines), parse_mode=ParseMode.HTML)

    async def rank_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        chat = update.effective_chat
        if chat.type not in GROUP_CHAT_TYPES:
            raise InvalidInputError("This command only works in group chats.")
        rank = await self._run(self.services.ranking.get_user_rank, str(update.effective_user.id), str(chat.id))
        if rank is None:
            await update.effective_message.reply_text("📊 You have no messages this week yet. Start chatting!")
            return
        await update.effective_message.reply_text(
            f"📊 <b>Your Weekly Rank</b>\n\n"
            f"🏅 Position: #{rank.rank_position} of {rank.total_participants}\n"
            f"💬 Messages: {rank.total_messages}\n"
            f"📈 Percentile: {rank.percentile}",
            parse_mode=ParseMode.HTML,
        )

    async def stats_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        chat = update.effective_chat
        group = str(chat.id) if chat.type in GROUP_CHAT_TYPES else None
        await self._run(self.services.buffer.flush)
        stats = await self._run(self.services.store.get_user_stats, str(update.effective_user.id), group)
        if stats and stats["total_messages"]:
            text = (f"📊 <b>Your Activity</b>\n\n"
                    f"💬 Total messages: {stats['total_messages']}\n"
                    f"📅 Active days: {stats['active_days']}\n"
                    f"📈 Average per day: {stats['avg_messages_per_day']}\n"
                    f"🔥 Best day: {stats['max_messages_in_day']}")
        else:
            text = "📊 No activity recorded yet."

        chat_stats = await self._run(self.services.store.get_chat_stats, group) if group else None
        if chat_stats and chat_stats["total_messages"]:
            text += (f"\n\n👥 <b>{html.escape(chat.title or 'This chat')}</b>\n"
                     f"🙋 Active members: {chat_stats['total_users']}\n"
                     f"💬 Messages: {chat_stats['total_messages']}\n"
                     f"📅 Active days: {chat_stats['active_days']}")
        await update.effective_message.reply_text(text, parse_mode=ParseMode.HTML)

    async def tip_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        payments = self.services.payments
        admin = str(update.effective_user.id)
        if not payments.is_admin(admin):
            raise UnauthorizedError("This command is only available to administrators.")
        target, amount, note = parse_tip_arguments(context.args or [], payments.max_tip)
        chat = update.effective_chat
        group = str(chat.id) if chat.type in GROUP_CHAT_TYPES else None

        status = await update.effective_message.reply_text(f"⏳ Processing tip of {display_amount(amount)} USDT to {html.escape(target)}...")
        await self._submit(status, "USDT", partial(payments.tip, admin, target, amount, group, note), note)

    async def tip_history_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        records = await self._run(self.services.payments.tip_history, 10)
        if not records:
            await update.effective_message.reply_text("💸 No tips yet.")
            return
        lines = ["💸 <b>Recent Tips</b>", ""]
        for record in records:
            icon = {"confirmed": "✅", "failed": "❌"}.get(record.status, "⏳")
            lines.append(f"{icon} {record.amount} USDT to <code>{record.to_address}</code> "
                         f"({record.created_at:%Y-%m-%d})")
        await update.effective_message.reply_text("\n".join(lines), parse_mode=ParseMode.HTML)

    async def _transfer(self, update: Update, context: ContextTypes.DEFAULT_TYPE, command: str, symbol: str):
        payments = self.services.payments
        token = payments.resolve_token(symbol)
        address, amount, note = parse_transfer_arguments(
            context.args or [], command, payments.max_transfer if token else None
        )
        display_symbol = symbol if token else self.services.settings.NATIVE_SYMBOL
        status = await update.effective_message.reply_text(f"⏳ Sending {display_amount(amount)} {display_symbol}...")
        await self._submit(status, display_symbol, partial(payments.send, str(update.effective_user.id), address, amount, token, note))

    async def transfer_core_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._transfer(update, context, "transfer_core", "CORE")

    async def transfer_usdt_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._transfer(update, context, "transfer_usdt", "USDT")

    async def quest_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        identity = str(update.effective_user.id)
        status = await self._run(self.services.quests.get_status, identity)
        stats = await self._run(self.services.quests.get_stats, identity)
        if not status.completed:
            state = "⏳ Send a message in any tracked group to complete today's quest."
        elif not status.opened:
            state = "🎁 Quest complete! Open your chest with /openchest"
        elif status.claimable:
            state = f"✨ You won {status.reward_amount} AURA. Claim it with /claim"
        elif status.transaction_hash:
            state = f"✅ Claimed {status.reward_amount} AURA. Transaction: <code>{status.transaction_hash}</code>"
        else:
            state = "😅 The chest was empty today. Come back tomorrow!"
        await update.effective_message.reply_text(
            f"🎯 <b>Daily Quest</b> ({status.day:%Y-%m-%d})\n\n{state}\n\n"
            f"💬 Messages today: {status.message_count}\n"
            f"🏁 Quests completed: {stats['completed_quests']}\n"
            f"✨ AURA earned: {stats['total_aura_earned']} (claimed {stats['total_aura_claimed']})",
            parse_mode=ParseMode.HTML,
        )

    async def open_chest_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        opening = await self._run(self.services.quests.open_chest, str(update.effective_user.id))
        if opening.reward:
            text = f"🎉 You found {opening.reward} AURA! Claim it with /claim"
        else:
            text = "😅 The chest was empty today. Better luck tomorrow!"
        await update.effective_message.reply_text(text)

    async def claim_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        status = await update.effective_message.reply_text("⏳ Processing AURA claim...")
        await self._submit(status, "AURA", partial(self.services.quests.claim, str(update.effective_user.id)))

    async def start(self):
        self._stop_event = asyncio.Event()
        await self.application.initialize()
        await self.application.start()
        await self.application.updater.start_polling()
        log.info("Telegram bot polling")
        try:
            await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.application.updater.stop()
            await self.application.stop()
            await self.application.shutdown()
            log.info("Telegram bot stopped")

    def stop(self):
        if self._stop_event is not None:
            self._stop_event.set()

    async def serve(self):
        """Poll until ``stop()`` is called or the process gets SIGINT or SIGTERM."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except NotImplementedError:
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(self.stop))
        await self.start()
