"""SQLAlchemy database models for users, chat activity, quests and token transfers."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, Date, DateTime, Boolean, ForeignKey, Index, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()

TX_PENDING = "pending"
TX_CONFIRMED = "confirmed"
TX_FAILED = "failed"

TX_KIND_TIP = "tip"
TX_KIND_QUEST_REWARD = "quest-reward"
TX_KIND_PEER_TRANSFER = "peer-transfer"

QUEST_DAILY_CHAT = "daily_chat"


class User(Base):
    """
    A Telegram account seen by the bot. Display fields are refreshed on every interaction;
    wallet_address mirrors the derived address once it has been resolved.
    """
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, autoincrement=True)
    telegram_user_id = Column(String, unique=True, nullable=False, index=True)
    username = Column(String, nullable=True, index=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    wallet_address = Column(String(42), nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ChatGroup(Base):
    __tablename__ = 'chat_groups'

    id = Column(Integer, primary_key=True, autoincrement=True)
    telegram_chat_id = Column(String, unique=True, nullable=False, index=True)
    chat_title = Column(String, nullable=True)
    chat_type = Column(String, nullable=True)  # private, group, supergroup, channel
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ChatActivity(Base):
    """Messages per user per chat per calendar day."""
    __tablename__ = 'chat_activity'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    chat_group_id = Column(Integer, ForeignKey('chat_groups.id'), nullable=False)
    message_count = Column(Integer, default=0, nullable=False)
    date = Column(Date, nullable=False)
    week_start = Column(Date, nullable=False)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'chat_group_id', 'date', name='uq_chat_activity_user_chat_date'),
        Index('idx_chat_activity_user_date', 'user_id', 'date'),
        Index('idx_chat_activity_week', 'week_start', 'chat_group_id'),
    )


class WeeklyLeaderboard(Base):
    """
    Weekly message totals per user per chat with the rank assigned by the last recompute.
    updated_at only moves when total_messages changes; it is the tie-break for equal totals.
    """
    __tablename__ = 'weekly_leaderboard'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    chat_group_id = Column(Integer, ForeignKey('chat_groups.id'), nullable=False)
    week_start = Column(Date, nullable=False)
    total_messages = Column(Integer, default=0, nullable=False)
    rank_position = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'chat_group_id', 'week_start', name='uq_weekly_leaderboard_user_chat_week'),
        Index('idx_weekly_leaderboard_week', 'week_start', 'chat_group_id'),
    )


class DailyQuest(Base):
    __tablename__ = 'daily_quests'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)  # Telegram user id
    quest_date = Column(Date, nullable=False)
    quest_type = Column(String, nullable=False, default=QUEST_DAILY_CHAT)
    completed = Column(Boolean, default=False, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'quest_date', 'quest_type', name='uq_daily_quests_user_date_type'),
        Index('idx_daily_quests_user_date', 'user_id', 'quest_date'),
    )


class DailyChest(Base):
    """
    One chest per user per day. reward_amount is fixed when opened;
    transaction_hash is the claim reference and is written at most once.
    """
    __tablename__ = 'daily_chests'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)  # Telegram user id
    chest_date = Column(Date, nullable=False)
    eligible = Column(Boolean, default=False, nullable=False)
    opened = Column(Boolean, default=False, nullable=False)
    reward_amount = Column(Integer, default=0, nullable=False)
    opened_at = Column(DateTime, nullable=True)
    transaction_hash = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'chest_date', name='uq_daily_chests_user_date'),
        Index('idx_daily_chests_user_date', 'user_id', 'chest_date'),
    )


class QuestActivity(Base):
    __tablename__ = 'quest_activity'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)  # Telegram user id
    activity_date = Column(Date, nullable=False)
    chat_id = Column(String, nullable=False)  # Telegram chat id
    message_count = Column(Integer, default=1, nullable=False)
    last_message_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'activity_date', 'chat_id', name='uq_quest_activity_user_date_chat'),
        Index('idx_quest_activity_user_date', 'user_id', 'activity_date'),
    )


class Transaction(Base):
    """
    Token movement initiated by the bot. Created as pending before submission and
    moved to confirmed or failed exactly once.
    """
    __tablename__ = 'transactions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    from_user_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    to_user_id = Column(Integer, ForeignKey('users.id'), nullable=True)  # NULL for external addresses
    from_address = Column(String(42), nullable=True)
    to_address = Column(String(42), nullable=False)
    amount = Column(String, nullable=False)  # decimal string, human-scaled
    token_address = Column(String, nullable=False)  # contract address or 'native'
    tx_hash = Column(String, unique=True, nullable=True)
    tx_type = Column(String, nullable=False)  # tip, quest-reward, peer-transfer
    status = Column(String, nullable=False, default=TX_PENDING)
    chat_group_id = Column(Integer, ForeignKey('chat_groups.id'), nullable=True)
    admin_user_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    message = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('idx_transactions_to_user', 'to_user_id'),
        Index('idx_transactions_type_created', 'tx_type', 'created_at'),
    )
