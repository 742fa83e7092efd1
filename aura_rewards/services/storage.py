"""Database storage service for users, chats, activity, quests and transfer records."""
import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Dict, Generator, List, Optional

from sqlalchemy import case, delete, func, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from aura_rewards.clock import Clock, week_start
from aura_rewards.db import Database
from aura_rewards.models.db import (
    ChatActivity, ChatGroup, DailyChest, DailyQuest, QuestActivity, Transaction, User, WeeklyLeaderboard,
    QUEST_DAILY_CHAT, TX_PENDING, TX_CONFIRMED, TX_FAILED,
)
from aura_rewards.models.responses import QuestHistoryEntry

logger = logging.getLogger(__name__)

# Dialects with INSERT ... ON CONFLICT DO UPDATE
_UPSERT_INSERTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


def _upsert(session: Session, model, conflict_cols: List[str], values: Dict[str, Any], set_: Dict[str, Any]) -> None:
    """Insert ``values`` or, if a row with the same ``conflict_cols`` exists, apply ``set_`` to it."""
    dialect_insert = _UPSERT_INSERTS.get(session.get_bind().dialect.name)
    if dialect_insert is not None:
        stmt = dialect_insert(model).values(**values)
        session.execute(stmt.on_conflict_do_update(index_elements=conflict_cols, set_=set_))
        return

    where = [getattr(model, col) == values[col] for col in conflict_cols]
    result = session.execute(update(model).where(*where).values(**set_))
    if result.rowcount == 0:
        session.execute(insert(model).values(**values))


class PersistentStore:
    """Handles database operations for the activity, quest and wallet services."""

    def __init__(self, database: Database, clock: Optional[Clock] = None):
        self.database = database
        self.clock = clock or Clock()

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        with self.database.session() as session:
            yield session

    # --- users and chats -------------------------------------------------

    def _user_id(self, session: Session, identity: str, create: bool = True) -> Optional[int]:
        user_id = session.scalar(select(User.id).where(User.telegram_user_id == identity))
        if user_id is None and create:
            now = self.clock.stamp()
            _upsert(session, User, ["telegram_user_id"],
                    {"telegram_user_id": identity, "created_at": now, "updated_at": now},
                    {"telegram_user_id": identity})
            user_id = session.scalar(select(User.id).where(User.telegram_user_id == identity))
        return user_id

    def _group_id(self, session: Session, group: str, create: bool = True) -> Optional[int]:
        group_id = session.scalar(select(ChatGroup.id).where(ChatGroup.telegram_chat_id == group))
        if group_id is None and create:
            now = self.clock.stamp()
            _upsert(session, ChatGroup, ["telegram_chat_id"],
                    {"telegram_chat_id": group, "created_at": now, "updated_at": now},
                    {"telegram_chat_id": group})
            group_id = session.scalar(select(ChatGroup.id).where(ChatGroup.telegram_chat_id == group))
        return group_id

    def upsert_user(self, identity: str, username: Optional[str] = None, first_name: Optional[str] = None,
                    last_name: Optional[str] = None) -> User:
        """Create the user on first sight and refresh display metadata on every interaction."""
        try:
            now = self.clock.stamp()
            fields = {"username": username, "first_name": first_name, "last_name": last_name, "updated_at": now}
            with self.session() as session:
                _upsert(session, User, ["telegram_user_id"],
                        {"telegram_user_id": identity, "created_at": now, **fields}, fields)
                return session.scalars(select(User).where(User.telegram_user_id == identity)).one()
        except SQLAlchemyError as e:
            logger.error(f"DB error upserting user {identity}: {e}")
            raise

    def upsert_group(self, group: str, title: Optional[str] = None, kind: Optional[str] = None) -> ChatGroup:
        try:
            now = self.clock.stamp()
            fields = {"chat_title": title, "chat_type": kind, "updated_at": now}
            with self.session() as session:
                _upsert(session, ChatGroup, ["telegram_chat_id"],
                        {"telegram_chat_id": group, "created_at": now, **fields}, fields)
                return session.scalars(select(ChatGroup).where(ChatGroup.telegram_chat_id == group)).one()
        except SQLAlchemyError as e:
            logger.error(f"DB error upserting chat group {group}: {e}")
            raise

    def get_user(self, identity: str) -> Optional[User]:
        with self.session() as session:
            return session.scalars(select(User).where(User.telegram_user_id == identity)).first()

    def get_group(self, group: str) -> Optional[ChatGroup]:
        with self.session() as session:
            return session.scalars(select(ChatGroup).where(ChatGroup.telegram_chat_id == group)).first()

    def find_user_by_username(self, username: str) -> Optional[User]:
        username = username.lstrip("@")
        with self.session() as session:
            return session.scalars(select(User).where(func.lower(User.username) == username.lower())).first()

    def find_user_by_address(self, address: str) -> Optional[User]:
        with self.session() as session:
            return session.scalars(
                select(User).where(func.lower(User.wallet_address) == address.lower())
            ).first()

    def set_wallet_address(self, identity: str, address: str) -> bool:
        try:
            with self.session() as session:
                result = session.execute(
                    update(User)
                    .where(User.telegram_user_id == identity)
                    .values(wallet_address=address, updated_at=self.clock.stamp())
                )
                return result.rowcount > 0
        except SQLAlchemyError as e:
            logger.error(f"DB error updating wallet address for {identity}: {e}")
            raise

    def delete_user(self, identity: str) -> bool:
        """Erase a user and everything recorded about their activity and quests.

        Transfer records are kept for bookkeeping with the user reference cleared.
        """
        try:
            with self.session() as session:
                user_id = self._user_id(session, identity, create=False)
                if user_id is None:
                    return False
                session.execute(delete(ChatActivity).where(ChatActivity.user_id == user_id))
                session.execute(delete(WeeklyLeaderboard).where(WeeklyLeaderboard.user_id == user_id))
                session.execute(delete(QuestActivity).where(QuestActivity.user_id == identity))
                session.execute(delete(DailyQuest).where(DailyQuest.user_id == identity))
                session.execute(delete(DailyChest).where(DailyChest.user_id == identity))
                for column in (Transaction.from_user_id, Transaction.to_user_id, Transaction.admin_user_id):
                    session.execute(update(Transaction).where(column == user_id).values({column.key: None}))
                session.execute(delete(User).where(User.id == user_id))
            logger.info(f"Erased user {identity} and their activity")
            return True
        except SQLAlchemyError as e:
            logger.error(f"DB error deleting user {identity}: {e}")
            raise

    # --- chat activity ---------------------------------------------------

    def add_activity(self, identity: str, group: str, count: int, day: Optional[date] = None,
                     last_message_at: Optional[datetime] = None) -> None:
        """
        Add ``count`` messages to the (user, chat, day) row, creating it and its parents if absent.

        ``last_message_at`` is when the latest of those messages was sent; the row's
        updated_at takes it so buffered writes keep the order users were active in.
        """
        if count <= 0:
            return
        day = day or self.clock.today()
        now = self.clock.stamp()
        last_message_at = last_message_at or now
        try:
            with self.session() as session:
                user_id = self._user_id(session, identity)
                group_id = self._group_id(session, group)
                _upsert(
                    session, ChatActivity, ["user_id", "chat_group_id", "date"],
                    {
                        "user_id": user_id, "chat_group_id": group_id, "message_count": count,
                        "date": day, "week_start": week_start(day), "created_at": now, "updated_at": last_message_at,
                    },
                    {"message_count": ChatActivity.message_count + count, "updated_at": last_message_at},
                )
            logger.debug(f"Recorded {count} messages for user {identity} in chat {group} on {day}")
        except SQLAlchemyError as e:
            logger.error(f"DB error recording activity for {identity} in {group}: {e}")
            raise

    def get_activity_count(self, identity: str, group: str, day: Optional[date] = None) -> int:
        day = day or self.clock.today()
        with self.session() as session:
            count = session.scalar(
                select(ChatActivity.message_count)
                .join(User, ChatActivity.user_id == User.id)
                .join(ChatGroup, ChatActivity.chat_group_id == ChatGroup.id)
                .where(User.telegram_user_id == identity, ChatGroup.telegram_chat_id == group,
                       ChatActivity.date == day)
            )
            return int(count or 0)

    def get_user_stats(self, identity: str, group: Optional[str] = None) -> Optional[Dict[str, Any]]:
        with self.session() as session:
            user = session.scalars(select(User).where(User.telegram_user_id == identity)).first()
            if not user:
                return None
            query = (
                select(
                    func.count(func.distinct(ChatActivity.date)),
                    func.coalesce(func.sum(ChatActivity.message_count), 0),
                    func.coalesce(func.max(ChatActivity.message_count), 0),
                    func.min(ChatActivity.created_at),
                    func.max(ChatActivity.updated_at),
                )
                .select_from(ChatActivity)
                .join(ChatGroup, ChatActivity.chat_group_id == ChatGroup.id)
                .where(ChatActivity.user_id == user.id)
            )
            if group:
                query = query.where(ChatGroup.telegram_chat_id == group)
            active_days, total, best_day, first, last = session.execute(query).one()
            return {
                "user": user,
                "active_days": int(active_days or 0),
                "total_messages": int(total),
                "avg_messages_per_day": round(int(total) / active_days, 2) if active_days else 0.0,
                "max_messages_in_day": int(best_day),
                "first_activity": first,
                "last_activity": last,
            }

    def get_chat_stats(self, group: str) -> Optional[Dict[str, Any]]:
        with self.session() as session:
            chat = session.scalars(select(ChatGroup).where(ChatGroup.telegram_chat_id == group)).first()
            if not chat:
                return None
            users, total, days, avg = session.execute(
                select(
                    func.count(func.distinct(ChatActivity.user_id)),
                    func.coalesce(func.sum(ChatActivity.message_count), 0),
                    func.count(func.distinct(ChatActivity.date)),
                    func.coalesce(func.avg(ChatActivity.message_count), 0),
                ).where(ChatActivity.chat_group_id == chat.id)
            ).one()
            return {
                "chat_group": chat,
                "total_users": int(users or 0),
                "total_messages": int(total),
                "active_days": int(days or 0),
                "avg_messages_per_day": round(float(avg), 2),
            }

    # --- quests and chests -----------------------------------------------

    def record_quest_activity(self, identity: str, chat_id: str, day: date) -> None:
        now = self.clock.stamp()
        try:
            with self.session() as session:
                _upsert(
                    session, QuestActivity, ["user_id", "activity_date", "chat_id"],
                    {"user_id": identity, "activity_date": day, "chat_id": chat_id, "message_count": 1,
                     "last_message_at": now, "created_at": now},
                    {"message_count": QuestActivity.message_count + 1, "last_message_at": now},
                )
        except SQLAlchemyError as e:
            logger.error(f"DB error recording quest activity for {identity}: {e}")
            raise

    def quest_message_count(self, identity: str, day: date) -> int:
        with self.session() as session:
            total = session.scalar(
                select(func.coalesce(func.sum(QuestActivity.message_count), 0))
                .where(QuestActivity.user_id == identity, QuestActivity.activity_date == day)
            )
            return int(total or 0)

    def mark_quest_completed(self, identity: str, day: date) -> None:
        """Complete the daily quest and unlock the chest in one transaction."""
        now = self.clock.stamp()
        try:
            with self.session() as session:
                _upsert(
                    session, DailyQuest, ["user_id", "quest_date", "quest_type"],
                    {"user_id": identity, "quest_date": day, "quest_type": QUEST_DAILY_CHAT,
                     "completed": True, "completed_at": now, "created_at": now},
                    {"completed": True, "completed_at": func.coalesce(DailyQuest.completed_at, now)},
                )
                _upsert(
                    session, DailyChest, ["user_id", "chest_date"],
                    {"user_id": identity, "chest_date": day, "eligible": True, "opened": False,
                     "reward_amount": 0, "created_at": now},
                    {"eligible": True},
                )
        except SQLAlchemyError as e:
            logger.error(f"DB error completing quest for {identity} on {day}: {e}")
            raise

    def get_quest(self, identity: str, day: date) -> Optional[DailyQuest]:
        with self.session() as session:
            return session.scalars(
                select(DailyQuest).where(DailyQuest.user_id == identity, DailyQuest.quest_date == day,
                                         DailyQuest.quest_type == QUEST_DAILY_CHAT)
            ).first()

    def get_chest(self, identity: str, day: date) -> Optional[DailyChest]:
        with self.session() as session:
            return session.scalars(
                select(DailyChest).where(DailyChest.user_id == identity, DailyChest.chest_date == day)
            ).first()

    def open_chest(self, identity: str, day: date, reward: int) -> bool:
        """Store the draw only if the chest is eligible and still closed. Returns False if another call won."""
        try:
            with self.session() as session:
                result = session.execute(
                    update(DailyChest)
                    .where(DailyChest.user_id == identity, DailyChest.chest_date == day,
                           DailyChest.eligible.is_(True), DailyChest.opened.is_(False))
                    .values(opened=True, reward_amount=reward, opened_at=self.clock.stamp())
                )
                return result.rowcount == 1
        except SQLAlchemyError as e:
            logger.error(f"DB error opening chest for {identity} on {day}: {e}")
            raise

    def set_chest_claim_reference(self, identity: str, day: date, tx_hash: str) -> bool:
        """Attach the claim transaction to an opened chest; never overwrites an existing reference."""
        try:
            with self.session() as session:
                result = session.execute(
                    update(DailyChest)
                    .where(DailyChest.user_id == identity, DailyChest.chest_date == day,
                           DailyChest.opened.is_(True), DailyChest.reward_amount > 0,
                           DailyChest.transaction_hash.is_(None))
                    .values(transaction_hash=tx_hash)
                )
                return result.rowcount == 1
        except SQLAlchemyError as e:
            logger.error(f"DB error setting claim reference for {identity} on {day}: {e}")
            raise

    def quest_history(self, identity: str, limit: int = 7) -> List[QuestHistoryEntry]:
        with self.session() as session:
            rows = session.execute(
                select(DailyQuest, DailyChest)
                .outerjoin(DailyChest, (DailyChest.user_id == DailyQuest.user_id)
                           & (DailyChest.chest_date == DailyQuest.quest_date))
                .where(DailyQuest.user_id == identity)
                .order_by(DailyQuest.quest_date.desc())
                .limit(limit)
            ).all()
            return [
                QuestHistoryEntry(
                    quest_date=quest.quest_date,
                    completed=quest.completed,
                    completed_at=quest.completed_at,
                    opened=bool(chest and chest.opened),
                    reward_amount=chest.reward_amount if chest else 0,
                    opened_at=chest.opened_at if chest else None,
                    transaction_hash=chest.transaction_hash if chest else None,
                )
                for quest, chest in rows
            ]

    def quest_stats(self, identity: str) -> Dict[str, int]:
        with self.session() as session:
            total, completed = session.execute(
                select(func.count(DailyQuest.id),
                       func.coalesce(func.sum(case((DailyQuest.completed.is_(True), 1), else_=0)), 0))
                .where(DailyQuest.user_id == identity)
            ).one()
            earned = session.scalar(
                select(func.coalesce(func.sum(DailyChest.reward_amount), 0))
                .where(DailyChest.user_id == identity, DailyChest.opened.is_(True))
            )
            claimed = session.scalar(
                select(func.coalesce(func.sum(DailyChest.reward_amount), 0))
                .where(DailyChest.user_id == identity, DailyChest.transaction_hash.is_not(None))
            )
            return {
                "total_quests": int(total or 0),
                "completed_quests": int(completed or 0),
                "total_aura_earned": int(earned or 0),
                "total_aura_claimed": int(claimed or 0),
            }

    # --- transfer records ------------------------------------------------

    def create_transfer_record(self, kind: str, to_address: str, amount: str, token: str,
                               from_address: Optional[str] = None, from_identity: Optional[str] = None,
                               to_identity: Optional[str] = None, group: Optional[str] = None,
                               admin_identity: Optional[str] = None, message: Optional[str] = None) -> int:
        try:
            now = self.clock.stamp()
            with self.session() as session:
                record = Transaction(
                    from_user_id=self._user_id(session, from_identity, create=False) if from_identity else None,
                    to_user_id=self._user_id(session, to_identity, create=False) if to_identity else None,
                    from_address=from_address,
                    to_address=to_address,
                    amount=amount,
                    token_address=token,
                    tx_type=kind,
                    status=TX_PENDING,
                    chat_group_id=self._group_id(session, group, create=False) if group else None,
                    admin_user_id=self._user_id(session, admin_identity, create=False) if admin_identity else None,
                    message=message or None,
                    created_at=now,
                    updated_at=now,
                )
                session.add(record)
                session.flush()
                logger.info(f"Transfer record {record.id} created: {kind} {amount} {token} -> {to_address}")
                return record.id
        except SQLAlchemyError as e:
            logger.error(f"DB error creating {kind} transfer record: {e}")
            raise

    def finalize_transfer_record(self, record_id: int, status: str, tx_hash: Optional[str] = None,
                                 error: Optional[str] = None) -> bool:
        """Move a pending record to its terminal status. Terminal records are never changed again."""
        if status not in (TX_CONFIRMED, TX_FAILED):
            raise ValueError(f"Not a terminal transfer status: {status}")
        try:
            with self.session() as session:
                result = session.execute(
                    update(Transaction)
                    .where(Transaction.id == record_id, Transaction.status == TX_PENDING)
                    .values(status=status, tx_hash=tx_hash, error_message=error, updated_at=self.clock.stamp())
                )
                if result.rowcount == 0:
                    logger.warning(f"Transfer record {record_id} is not pending; {status} ignored")
                    return False
                return True
        except SQLAlchemyError as e:
            logger.error(f"DB error finalizing transfer record {record_id}: {e}")
            raise

    def get_transfer_record(self, record_id: int) -> Optional[Transaction]:
        with self.session() as session:
            return session.get(Transaction, record_id)

    def list_transfers(self, kind: Optional[str] = None, to_identity: Optional[str] = None,
                       limit: int = 20) -> List[Transaction]:
        with self.session() as session:
            query = select(Transaction).order_by(Transaction.created_at.desc(), Transaction.id.desc()).limit(limit)
            if kind:
                query = query.where(Transaction.tx_type == kind)
            if to_identity:
                user_id = self._user_id(session, to_identity, create=False)
                if user_id is None:
                    return []
                query = query.where(Transaction.to_user_id == user_id)
            return list(session.scalars(query).all())
