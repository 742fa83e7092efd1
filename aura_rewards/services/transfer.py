"""Balance-checked token movements between derived wallets and reward mints."""
import logging
import threading
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from eth_account import Account

from aura_rewards.errors import (
    AuraError, ChainSubmissionError, InsufficientBalanceError, InvalidInputError, SelfTransferError,
)
from aura_rewards.models.responses import TransferResult
from aura_rewards.services.chain import NATIVE_DECIMALS, ChainClient, to_base_units
from aura_rewards.services.wallet import WalletDirectory

logger = logging.getLogger(__name__)


def parse_amount(amount: Any) -> Decimal:
    """Positive, finite decimal amount or InvalidInputError."""
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise InvalidInputError(f"Invalid amount: {amount}")
    if not value.is_finite() or value <= 0:
        raise InvalidInputError("Amount must be a positive number")
    return value


def display_amount(value: Decimal) -> str:
    return format(value.normalize(), "f")


class TransferEngine:
    """
    Executes one on-chain transfer per call, never retrying.

    Submissions from the same sender address are serialized from the balance
    check through confirmation so concurrent requests cannot reuse a nonce or
    spend the same balance twice.
    """

    def __init__(self, wallets: WalletDirectory, chain: ChainClient, minter_key: Optional[str] = None,
                 reward_token: Optional[str] = None, native_symbol: str = "tCORE"):
        self.wallets = wallets
        self.chain = chain
        self.reward_token = reward_token
        self.native_symbol = native_symbol
        self._minter = Account.from_key(minter_key) if minter_key else None
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def can_mint(self) -> bool:
        return self._minter is not None and bool(self.reward_token)

    def _sender_lock(self, address: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(address.lower(), threading.Lock())

    def _recipient_address(self, to: str) -> str:
        to = str(to).strip()
        if to.lower().startswith("0x"):
            if not self.chain.is_address(to):
                raise InvalidInputError(f"Invalid address: {to}")
            return self.chain.checksum(to)
        return self.wallets.resolve(to).address

    def transfer(self, from_identity: str, to: str, amount: Any, token: Optional[str] = None) -> TransferResult:
        """
        Move ``amount`` (human units) of ``token`` (native currency when None) from a user's
        wallet to another user id or a raw address.
        """
        sender_address = recipient = tx_hash = None
        try:
            value = parse_amount(amount)
            recipient = self._recipient_address(to)
            sender = self.wallets.resolve(from_identity)
            sender_address = sender.address
            if sender_address.lower() == recipient.lower():
                raise SelfTransferError("You cannot transfer to yourself")

            with self._sender_lock(sender_address):
                available = self.wallets.balance_of(sender_address, token)
                if Decimal(available) < value:
                    raise InsufficientBalanceError(display_amount(value), available,
                                                   None if token else self.native_symbol)

                if token is None:
                    tx_hash = self.chain.send_native(sender.signer, recipient, to_base_units(value, NATIVE_DECIMALS))
                else:
                    units = to_base_units(value, self.chain.get_token_decimals(token))
                    tx_hash = self.chain.send_token(sender.signer, token, recipient, units)
                receipt = self.chain.wait_for_receipt(tx_hash)

            logger.info(f"Transfer of {display_amount(value)} from {sender_address} to {recipient} confirmed: {tx_hash}")
            return TransferResult(
                success=True,
                tx_hash=tx_hash,
                gas_used=receipt["gas_used"],
                from_address=sender_address,
                to_address=recipient,
                amount=display_amount(value),
            )
        except AuraError as e:
            logger.warning(f"Transfer from user {from_identity} to {to} failed ({e.kind.value}): {e.message}")
            return TransferResult.failure(e, tx_hash=tx_hash, from_address=sender_address, to_address=recipient)

    def mint_reward(self, identity: str, amount: int, day: date) -> TransferResult:
        """Mint a chest reward to the user's wallet with the minter key."""
        recipient = tx_hash = None
        try:
            if amount <= 0:
                raise InvalidInputError("Nothing to mint")
            if not self.can_mint:
                raise ChainSubmissionError("Reward minting is not configured")
            recipient = self.wallets.resolve(identity).address

            with self._sender_lock(self._minter.address):
                units = to_base_units(amount, self.chain.get_token_decimals(self.reward_token))
                tx_hash = self.chain.mint_chest_reward(self._minter, self.reward_token, recipient, units,
                                                       int(day.strftime("%Y%m%d")))
                receipt = self.chain.wait_for_receipt(tx_hash)

            logger.info(f"Minted {amount} reward tokens to {recipient} for {day}: {tx_hash}")
            return TransferResult(success=True, tx_hash=tx_hash, gas_used=receipt["gas_used"],
                                  from_address=self._minter.address, to_address=recipient, amount=str(amount))
        except AuraError as e:
            logger.warning(f"Reward mint for user {identity} failed ({e.kind.value}): {e.message}")
            return TransferResult.failure(e, tx_hash=tx_hash, to_address=recipient)
