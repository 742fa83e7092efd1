"""Admin tips and user-initiated transfers, with their transfer records."""
import logging
from typing import Iterable, List, Optional

from aura_rewards.errors import (
    ChainSubmissionError, InvalidInputError, NotFoundError, SelfTransferError, UnauthorizedError,
)
from aura_rewards.models.db import TX_CONFIRMED, TX_FAILED, TX_KIND_PEER_TRANSFER, TX_KIND_TIP, Transaction, User
from aura_rewards.models.responses import TransferResult
from aura_rewards.services.storage import PersistentStore
from aura_rewards.services.transfer import TransferEngine, display_amount, parse_amount

logger = logging.getLogger(__name__)

NATIVE_TOKEN = "native"


class PaymentService:
    def __init__(self, store: PersistentStore, transfers: TransferEngine, admin_ids: Iterable[str] = (),
                 usdt_token: Optional[str] = None, max_tip: float = 1000, max_transfer: float = 10000):
        self.store = store
        self.transfers = transfers
        self.admin_ids = {str(a) for a in admin_ids}
        self.usdt_token = usdt_token
        self.max_tip = max_tip
        self.max_transfer = max_transfer

    def is_admin(self, identity: str) -> bool:
        return str(identity) in self.admin_ids

    def resolve_token(self, symbol: Optional[str]) -> Optional[str]:
        """Map a token symbol to its contract address; None means the native currency."""
        symbol = (symbol or "CORE").upper()
        if symbol in ("CORE", "TCORE", "NATIVE"):
            return None
        if symbol in ("USDT", "MUSDT"):
            if not self.usdt_token:
                raise ChainSubmissionError("USDT contract not configured")
            return self.usdt_token
        raise InvalidInputError(f"Unsupported token: {symbol}")

    def find_recipient(self, target: str) -> User:
        target = str(target).strip()
        if target.startswith("@"):
            user = self.store.find_user_by_username(target[1:])
        elif target.isdigit():
            user = self.store.get_user(target)
        else:
            raise InvalidInputError("Please specify a user with @username or user ID")
        if user is None:
            raise NotFoundError(f"User {target} not found. They need to interact with the bot first.")
        return user

    def _finalize(self, record_id: int, result: TransferResult) -> None:
        if result.success:
            self.store.finalize_transfer_record(record_id, TX_CONFIRMED, tx_hash=result.tx_hash)
        else:
            self.store.finalize_transfer_record(record_id, TX_FAILED, tx_hash=result.tx_hash, error=result.error)

    def tip(self, admin_identity: str, target: str, amount, group: Optional[str] = None,
            message: Optional[str] = None) -> TransferResult:
        """Send USDT from an admin's wallet to a known user."""
        if not self.is_admin(admin_identity):
            raise UnauthorizedError("This command is only available to administrators.")
        value = parse_amount(amount)
        if value > self.max_tip:
            raise InvalidInputError(f"Maximum tip amount is {self.max_tip:g} USDT")
        token = self.resolve_token("USDT")

        recipient = self.find_recipient(target)
        if recipient.telegram_user_id == str(admin_identity):
            raise SelfTransferError("You cannot tip yourself!")

        admin_wallet = self.transfers.wallets.resolve(admin_identity)
        target_wallet = self.transfers.wallets.resolve(recipient.telegram_user_id)
        self.store.set_wallet_address(admin_identity, admin_wallet.address)
        self.store.set_wallet_address(recipient.telegram_user_id, target_wallet.address)

        record_id = self.store.create_transfer_record(
            TX_KIND_TIP, target_wallet.address, display_amount(value), token,
            from_address=admin_wallet.address, from_identity=admin_identity,
            to_identity=recipient.telegram_user_id, group=group, admin_identity=admin_identity, message=message,
        )
        result = self.transfers.transfer(admin_identity, recipient.telegram_user_id, value, token)
        self._finalize(record_id, result)
        return result

    def send(self, identity: str, to_address: str, amount, token: Optional[str] = None,
             message: Optional[str] = None) -> TransferResult:
        """Send native currency or a token from the user's wallet to any address."""
        value = parse_amount(amount)
        if token is not None and value > self.max_transfer:
            raise InvalidInputError(f"Maximum transfer amount is {self.max_transfer:g}")
        to_address = str(to_address).strip()
        if not self.transfers.chain.is_address(to_address):
            raise InvalidInputError("Invalid wallet address format")

        wallet = self.transfers.wallets.resolve(identity)
        self.store.set_wallet_address(identity, wallet.address)
        recipient = self.store.find_user_by_address(to_address)

        record_id = self.store.create_transfer_record(
            TX_KIND_PEER_TRANSFER, to_address, display_amount(value), token or NATIVE_TOKEN,
            from_address=wallet.address, from_identity=identity,
            to_identity=recipient.telegram_user_id if recipient else None, message=message,
        )
        result = self.transfers.transfer(identity, to_address, value, token)
        self._finalize(record_id, result)
        return result

    def tip_history(self, limit: int = 10, to_identity: Optional[str] = None) -> List[Transaction]:
        return self.store.list_transfers(kind=TX_KIND_TIP, to_identity=to_identity, limit=limit)
