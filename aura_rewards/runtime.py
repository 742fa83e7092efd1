"""Construction of the service graph shared by the bot and the web API."""
import logging
from dataclasses import dataclass
from typing import Optional

from aura_rewards.clock import Clock
from aura_rewards.config import Settings
from aura_rewards.db import Database
from aura_rewards.services.activity import ActivityBuffer
from aura_rewards.services.chain import ChainClient
from aura_rewards.services.payments import PaymentService
from aura_rewards.services.quest import QuestEngine
from aura_rewards.services.ranking import RankingEngine
from aura_rewards.services.storage import PersistentStore
from aura_rewards.services.transfer import TransferEngine
from aura_rewards.services.wallet import WalletDirectory, build_wallet_directory

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    clock: Clock
    store: PersistentStore
    buffer: ActivityBuffer
    ranking: RankingEngine
    chain: ChainClient
    wallets: WalletDirectory
    transfers: TransferEngine
    quests: QuestEngine
    payments: PaymentService


def build_services(settings: Settings, database: Database, chain: Optional[ChainClient] = None,
                   clock: Optional[Clock] = None) -> Services:
    clock = clock or Clock(settings.TIMEZONE)
    store = PersistentStore(database, clock)

    buffer = ActivityBuffer(
        store,
        clock,
        flush_interval=settings.ACTIVITY_FLUSH_INTERVAL_SECONDS,
        max_keys=settings.ACTIVITY_MAX_BUFFERED_KEYS,
    )
    ranking = RankingEngine(store, clock, flush=buffer.flush)
    buffer.on_groups_flushed = ranking.recompute_groups

    chain = chain or ChainClient(
        settings.RPC_URL,
        rpc_timeout=settings.RPC_TIMEOUT_SECONDS,
        confirmation_timeout=settings.CONFIRMATION_TIMEOUT_SECONDS,
    )
    wallets = build_wallet_directory(settings, chain)
    transfers = TransferEngine(
        wallets,
        chain,
        minter_key=settings.MINTER_PRIVATE_KEY,
        reward_token=settings.AURA_TOKEN_CONTRACT_ADDRESS,
        native_symbol=settings.NATIVE_SYMBOL,
    )
    quests = QuestEngine(store, transfers, clock, max_reward=settings.CHEST_MAX_REWARD)
    payments = PaymentService(
        store,
        transfers,
        admin_ids=settings.admin_ids,
        usdt_token=settings.USDT_CONTRACT_ADDRESS,
        max_tip=settings.MAX_TIP_AMOUNT,
        max_transfer=settings.MAX_TRANSFER_AMOUNT,
    )
    if not transfers.can_mint:
        logger.warning("Reward token or minter key not configured; chest claims will fail")

    return Services(settings, clock, store, buffer, ranking, chain, wallets, transfers, quests, payments)
