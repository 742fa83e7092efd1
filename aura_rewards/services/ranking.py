"""Weekly leaderboard: aggregate totals and dense rank positions per chat."""
import logging
import threading
from datetime import date
from typing import Callable, Iterable, List, Optional

from sqlalchemy import func, select

from aura_rewards.clock import Clock
from aura_rewards.models.db import ChatActivity, ChatGroup, User, WeeklyLeaderboard
from aura_rewards.models.responses import LeaderboardEntry, UserRank
from aura_rewards.services.storage import PersistentStore

logger = logging.getLogger(__name__)


class RankingEngine:
    def __init__(self, store: PersistentStore, clock: Optional[Clock] = None,
                 flush: Optional[Callable[[], object]] = None):
        self.store = store
        self.clock = clock or store.clock
        # Called before every read so leaderboards include buffered messages
        self.flush = flush
        self._lock = threading.Lock()

    def recompute(self, group: str, week: Optional[date] = None) -> bool:
        """
        Rebuild the weekly totals and ranks of one chat from its daily activity.

        Totals are re-summed from chat_activity. A row's updated_at only moves when
        its total changes, and then to the time of the user's latest message of
        the week, so running this twice without new activity changes nothing and
        users flushed together still rank by who got there first. Rows are ordered by total descending, then by earliest update,
        then by insertion order, and ranked 1..N without gaps.

        Only the current week is recomputed. Returns False when nothing was done.
        """
        current = self.clock.current_week_start()
        week = week or current
        if week != current:
            logger.info(f"Skipping rank recompute for chat {group}: week {week} is not the current week {current}")
            return False

        with self._lock, self.store.session() as session:
            group_id = session.scalar(select(ChatGroup.id).where(ChatGroup.telegram_chat_id == group))
            if group_id is None:
                return False

            totals = {
                user_id: (int(total or 0), last_message_at)
                for user_id, total, last_message_at in session.execute(
                    select(ChatActivity.user_id, func.sum(ChatActivity.message_count), func.max(ChatActivity.updated_at))
                    .where(ChatActivity.chat_group_id == group_id, ChatActivity.week_start == week)
                    .group_by(ChatActivity.user_id)
                )
            }
            rows = {
                row.user_id: row
                for row in session.scalars(
                    select(WeeklyLeaderboard)
                    .where(WeeklyLeaderboard.chat_group_id == group_id, WeeklyLeaderboard.week_start == week)
                )
            }

            now = self.clock.stamp()
            for user_id, (total, last_message_at) in totals.items():
                row = rows.get(user_id)
                if row is None:
                    row = WeeklyLeaderboard(user_id=user_id, chat_group_id=group_id, week_start=week,
                                            total_messages=total, created_at=now, updated_at=last_message_at)
                    session.add(row)
                    rows[user_id] = row
                elif row.total_messages != total:
                    row.total_messages = total
                    row.updated_at = last_message_at

            for user_id in set(rows) - set(totals):
                session.delete(rows.pop(user_id))
            session.flush()

            ordered = sorted(rows.values(), key=lambda r: (-r.total_messages, r.updated_at, r.id))
            for position, row in enumerate(ordered, start=1):
                if row.rank_position != position:
                    row.rank_position = position

            logger.debug(f"Recomputed {len(ordered)} ranks for chat {group}, week {week}")
            return True

    def recompute_groups(self, groups: Iterable[str]) -> None:
        for group in groups:
            self.recompute(group)

    def _refresh(self) -> None:
        if self.flush:
            self.flush()

    def get_leaderboard(self, group: str, limit: int = 10, week: Optional[date] = None) -> List[LeaderboardEntry]:
        self._refresh()
        week = week or self.clock.current_week_start()
        with self.store.session() as session:
            rows = session.execute(
                select(WeeklyLeaderboard.rank_position, WeeklyLeaderboard.total_messages, User.telegram_user_id,
                       User.username, User.first_name, User.last_name)
                .join(User, WeeklyLeaderboard.user_id == User.id)
                .join(ChatGroup, WeeklyLeaderboard.chat_group_id == ChatGroup.id)
                .where(ChatGroup.telegram_chat_id == group, WeeklyLeaderboard.week_start == week)
                .order_by(WeeklyLeaderboard.rank_position.asc())
                .limit(limit)
            ).all()
            return [LeaderboardEntry(**row._asdict()) for row in rows]

    def get_user_rank(self, identity: str, group: str, week: Optional[date] = None) -> Optional[UserRank]:
        """The user's weekly position in a chat together with the number of ranked users."""
        self._refresh()
        week = week or self.clock.current_week_start()
        with self.store.session() as session:
            scope = (
                select(WeeklyLeaderboard)
                .join(ChatGroup, WeeklyLeaderboard.chat_group_id == ChatGroup.id)
                .where(ChatGroup.telegram_chat_id == group, WeeklyLeaderboard.week_start == week)
            )
            row = session.execute(
                scope.add_columns(User.username, User.first_name, User.last_name)
                .join(User, WeeklyLeaderboard.user_id == User.id)
                .where(User.telegram_user_id == identity)
            ).first()
            if row is None:
                return None
            participants = session.scalar(select(func.count()).select_from(scope.subquery()))
            entry, username, first_name, last_name = row
            return UserRank(
                rank_position=entry.rank_position,
                total_messages=entry.total_messages,
                total_participants=int(participants or 0),
                username=username,
                first_name=first_name,
                last_name=last_name,
            )
