"""Daily chat quest, chest draw and reward claim."""
import logging
import random
import threading
from datetime import date
from typing import Callable, Dict, List, Optional

from aura_rewards.clock import Clock
from aura_rewards.errors import AlreadyOpenedError, NotEligibleError, NothingToClaimError
from aura_rewards.models.db import TX_CONFIRMED, TX_FAILED, TX_KIND_QUEST_REWARD
from aura_rewards.models.responses import ChestOpening, QuestHistoryEntry, QuestStatus, TransferResult
from aura_rewards.services.storage import PersistentStore
from aura_rewards.services.transfer import TransferEngine

logger = logging.getLogger(__name__)


class QuestEngine:
    """
    One quest per user per day: any message in a tracked chat completes it and
    unlocks the day's chest. The chest is opened once for a random reward in
    [0, max_reward] which can then be claimed as a token mint.
    """

    def __init__(self, store: PersistentStore, transfers: Optional[TransferEngine] = None,
                 clock: Optional[Clock] = None, max_reward: int = 5, rng: Optional[Callable[[], int]] = None):
        self.store = store
        self.transfers = transfers
        self.clock = clock or store.clock
        self.max_reward = max_reward
        self._rng = rng or (lambda: random.SystemRandom().randint(0, self.max_reward))
        self._claim_locks: Dict[str, threading.Lock] = {}
        self._claim_guard = threading.Lock()

    def record_activity(self, identity: str, chat_id: str) -> bool:
        """Count a message towards today's quest. Returns True once the quest is complete."""
        day = self.clock.today()
        self.store.record_quest_activity(identity, chat_id, day)
        return self.check_completion(identity, day)

    def check_completion(self, identity: str, day: Optional[date] = None) -> bool:
        day = day or self.clock.today()
        if self.store.quest_message_count(identity, day) < 1:
            return False
        quest = self.store.get_quest(identity, day)
        if quest is None or not quest.completed:
            self.store.mark_quest_completed(identity, day)
            logger.info(f"User {identity} completed the daily quest for {day}, chest unlocked")
        return True

    def open_chest(self, identity: str) -> ChestOpening:
        day = self.clock.today()
        chest = self.store.get_chest(identity, day)
        if chest is None or not chest.eligible:
            raise NotEligibleError("Complete today's quest first: send a message in any tracked group")
        if chest.opened:
            raise AlreadyOpenedError("You already opened today's chest")

        reward = self._rng()
        if not 0 <= reward <= self.max_reward:
            raise ValueError(f"Chest draw {reward} outside 0..{self.max_reward}")
        if not self.store.open_chest(identity, day, reward):
            # Another request opened it between the read and the conditional update
            raise AlreadyOpenedError("You already opened today's chest")

        logger.info(f"User {identity} opened the chest for {day}: {reward}")
        return ChestOpening(reward=reward, day=day)

    def _claim_lock(self, identity: str) -> threading.Lock:
        with self._claim_guard:
            return self._claim_locks.setdefault(identity, threading.Lock())

    def claim(self, identity: str) -> TransferResult:
        """
        Mint today's chest reward to the user's wallet.

        On a failed mint nothing on the chest changes so the claim can be retried;
        the attempt stays visible as a failed transfer record.
        """
        day = self.clock.today()
        with self._claim_lock(identity):
            chest = self.store.get_chest(identity, day)
            if chest is None or not chest.opened:
                raise NotEligibleError("Open today's chest before claiming")
            if chest.reward_amount <= 0 or chest.transaction_hash:
                raise NothingToClaimError("No reward tokens to claim today, or already claimed")

            wallet = self.transfers.wallets.resolve(identity)
            self.store.set_wallet_address(identity, wallet.address)
            record_id = self.store.create_transfer_record(
                TX_KIND_QUEST_REWARD, wallet.address, str(chest.reward_amount),
                self.transfers.reward_token or "unconfigured", to_identity=identity,
            )
            result = self.transfers.mint_reward(identity, chest.reward_amount, day)
            if result.success:
                self.store.set_chest_claim_reference(identity, day, result.tx_hash)
                self.store.finalize_transfer_record(record_id, TX_CONFIRMED, tx_hash=result.tx_hash)
                logger.info(f"User {identity} claimed {chest.reward_amount} reward tokens for {day}")
            else:
                self.store.finalize_transfer_record(record_id, TX_FAILED, tx_hash=result.tx_hash, error=result.error)
            return result

    def get_status(self, identity: str) -> QuestStatus:
        day = self.clock.today()
        quest = self.store.get_quest(identity, day)
        chest = self.store.get_chest(identity, day)
        return QuestStatus(
            day=day,
            completed=bool(quest and quest.completed),
            completed_at=quest.completed_at if quest else None,
            eligible=bool(chest and chest.eligible),
            opened=bool(chest and chest.opened),
            reward_amount=chest.reward_amount if chest else 0,
            opened_at=chest.opened_at if chest else None,
            transaction_hash=chest.transaction_hash if chest else None,
            message_count=self.store.quest_message_count(identity, day),
        )

    def get_history(self, identity: str, limit: int = 7) -> List[QuestHistoryEntry]:
        return self.store.quest_history(identity, limit)

    def get_stats(self, identity: str) -> Dict[str, int]:
        return self.store.quest_stats(identity)
