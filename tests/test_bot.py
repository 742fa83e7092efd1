import asyncio
from datetime import date
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from aura_rewards.bot import (
    TelegramBot, format_user_name, is_trackable, parse_tip_arguments, parse_transfer_arguments,
)
from aura_rewards.errors import InvalidInputError

from conftest import EXTERNAL


class FakeMessage:
    def __init__(self, text):
        self.text = text
        self.replies = []

    async def reply_text(self, text, **kwargs):
        self.replies.append(text)
        return self


def make_update(text, user_id=42, chat_id=-100, chat_type="supergroup", is_bot=False):
    return SimpleNamespace(
        effective_message=FakeMessage(text),
        effective_user=SimpleNamespace(id=user_id, is_bot=is_bot, username="alice", first_name="Alice", last_name=None),
        effective_chat=SimpleNamespace(id=chat_id, type=chat_type, title="Farmers"),
    )


@pytest.fixture
def bot(services):
    return TelegramBot(services, services.settings.TELEGRAM_BOT_TOKEN)


@pytest.mark.parametrize("chat_type, text, is_bot, expected", [
    ("group", "hello", False, True),
    ("supergroup", "hello", False, True),
    ("private", "hello", False, False),
    ("channel", "hello", False, False),
    ("group", "/leaderboard", False, False),
    ("group", "hello", True, False),
    ("group", None, False, False),
])
def test_is_trackable(chat_type, text, is_bot, expected):
    assert is_trackable(chat_type, text, is_bot) is expected


def test_parse_tip_arguments():
    assert parse_tip_arguments(["@alice", "10", "great", "work"]) == ("@alice", Decimal("10"), "great work")
    assert parse_tip_arguments(["42", "0.5"]) == ("42", Decimal("0.5"), "")
    for args in (["@alice"], ["alice", "1"], ["@alice", "-1"], ["@alice", "ten"], ["@alice", "1001"]):
        with pytest.raises(InvalidInputError):
            parse_tip_arguments(args)


def test_parse_transfer_arguments():
    assert parse_transfer_arguments([EXTERNAL, "2.5"], "transfer_core") == (EXTERNAL, Decimal("2.5"), "")
    with pytest.raises(InvalidInputError, match="Usage: /transfer_usdt"):
        parse_transfer_arguments([EXTERNAL], "transfer_usdt")
    with pytest.raises(InvalidInputError):
        parse_transfer_arguments(["0x123", "1"], "transfer_core")
    with pytest.raises(InvalidInputError):
        parse_transfer_arguments([EXTERNAL, "20000"], "transfer_usdt", max_amount=10000)


def test_format_user_name():
    assert format_user_name("alice", "Alice", None) == "@alice"
    assert format_user_name(None, "Alice", "Smith") == "Alice Smith"
    assert format_user_name(None, "Alice", None) == "Alice"
    assert format_user_name(None, None, None, "42") == "User 42"


def test_group_message_is_tracked(services, bot):
    asyncio.run(bot.handle_message(make_update("gm"), None))
    asyncio.run(bot.handle_message(make_update("gm again"), None))

    assert services.buffer.pending("42", "-100") == 2
    assert services.store.get_user("42").username == "alice"
    assert services.store.get_group("-100").chat_title == "Farmers"
    assert services.store.get_quest("42", date(2024, 5, 15)).completed


def test_untracked_messages_are_ignored(services, bot):
    asyncio.run(bot.handle_message(make_update("hi", chat_type="private"), None))
    asyncio.run(bot.handle_message(make_update("beep", is_bot=True), None))

    assert len(services.buffer) == 0
    assert services.store.get_user("42") is None


def test_command_errors_are_replied_not_raised(bot):
    update = make_update("/tip @bob 5")
    context = SimpleNamespace(args=["@bob", "5"])

    asyncio.run(bot._guarded(bot.tip_command, update, context))

    assert update.effective_message.replies == ["❌ This command is only available to administrators."]


def test_leaderboard_command(services, bot):
    for _ in range(3):
        services.buffer.record("42", "-100")
    services.store.upsert_user("42", "alice", "Alice", None)
    update = make_update("/leaderboard")

    asyncio.run(bot._guarded(bot.leaderboard_command, update, SimpleNamespace(args=[])))

    reply = update.effective_message.replies[0]
    assert "@alice: 3 messages" in reply


def test_stats_in_a_group_include_the_chat_summary(services, bot):
    services.buffer.record("42", "-100")
    services.buffer.record("42", "-100")
    services.buffer.record("43", "-100")
    update = make_update("/stats")

    asyncio.run(bot._guarded(bot.stats_command, update, SimpleNamespace(args=[])))

    reply = update.effective_message.replies[0]
    assert "Total messages: 2" in reply
    assert "<b>Farmers</b>" in reply
    assert "Active members: 2" in reply
    assert "Messages: 3" in reply


def test_private_stats_have_no_chat_summary(services, bot):
    services.buffer.record("42", "-100")
    update = make_update("/stats", chat_id=42, chat_type="private")

    asyncio.run(bot._guarded(bot.stats_command, update, SimpleNamespace(args=[])))

    reply = update.effective_message.replies[0]
    assert "Total messages: 1" in reply
    assert "Active members" not in reply


def test_bot_greets_the_group_it_is_added_to(services, bot):
    update = make_update(None)
    context = SimpleNamespace(bot=SimpleNamespace(id=999))

    update.effective_message.new_chat_members = [SimpleNamespace(id=7)]
    asyncio.run(bot.handle_new_members(update, context))
    assert update.effective_message.replies == []

    update.effective_message.new_chat_members = [SimpleNamespace(id=7), SimpleNamespace(id=999)]
    asyncio.run(bot.handle_new_members(update, context))
    assert update.effective_message.replies[0].startswith("🎉 Thanks for adding me to Farmers!")
    assert services.store.get_group("-100").chat_title == "Farmers"


def test_serve_runs_until_stopped(bot):
    application = MagicMock()
    for name in ("initialize", "start", "stop", "shutdown"):
        setattr(application, name, AsyncMock())
    application.updater.start_polling = AsyncMock()
    application.updater.stop = AsyncMock()
    bot.application = application

    async def serve_then_stop():
        asyncio.get_running_loop().call_later(0.01, bot.stop)
        await asyncio.wait_for(bot.serve(), timeout=5)

    asyncio.run(serve_then_stop())

    application.updater.start_polling.assert_awaited_once()
    application.updater.stop.assert_awaited_once()
    application.shutdown.assert_awaited_once()
