"""JSON-RPC access to the chain: balances, token transfers, reward mints and receipts."""
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

import requests
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import TimeExhausted

from aura_rewards.errors import ChainConfirmationError, ChainSubmissionError, ChainTimeoutError, InvalidInputError

logger = logging.getLogger(__name__)

NATIVE_DECIMALS = 18

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [{"name": "_to", "type": "address"}, {"name": "_value", "type": "uint256"}],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
]

AURA_TOKEN_ABI = ERC20_ABI + [
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "day", "type": "uint256"},
        ],
        "name": "mintChestReward",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

ACCOUNT_FACTORY_ABI = [
    {
        "inputs": [{"name": "owner", "type": "address"}, {"name": "salt", "type": "uint256"}],
        "name": "getAddress",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
]


def to_base_units(amount: Any, decimals: int) -> int:
    """Scale a human amount ("1.5") to integer token units. Rejects more precision than the token has."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise InvalidInputError(f"Invalid amount: {amount}")
    if not value.is_finite():
        raise InvalidInputError(f"Invalid amount: {amount}")
    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise InvalidInputError(f"Amount {amount} has more than {decimals} decimal places")
    return int(scaled)


def format_units(value: int, decimals: int) -> str:
    """Integer token units as a plain decimal string: 1500000 with 6 decimals -> "1.5"."""
    scaled = Decimal(value).scaleb(-decimals).normalize()
    return format(scaled, "f")


class ChainClient:
    """
    Thin wrapper over a web3 HTTP provider.

    Every RPC request carries ``rpc_timeout``; waiting for a receipt is bounded by
    ``confirmation_timeout``. Provider errors surface as ChainTimeoutError,
    ChainSubmissionError or ChainConfirmationError, never as raw web3 exceptions.
    """

    def __init__(self, rpc_url: str, rpc_timeout: float = 15.0, confirmation_timeout: float = 120.0,
                 w3: Optional[Web3] = None):
        self.rpc_url = rpc_url
        self.confirmation_timeout = confirmation_timeout
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": rpc_timeout}))
        self._decimals: Dict[str, int] = {}

    @staticmethod
    def is_address(value: str) -> bool:
        return Web3.is_address(value)

    @staticmethod
    def checksum(address: str) -> str:
        if not Web3.is_address(address):
            raise InvalidInputError(f"Invalid address: {address}")
        return Web3.to_checksum_address(address)

    def _rpc(self, description: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except (requests.exceptions.Timeout, TimeExhausted) as e:
            logger.error(f"Timed out during {description}: {e}")
            raise ChainTimeoutError(f"Timed out during {description}")
        except Exception as e:
            logger.error(f"RPC error during {description}: {e}")
            raise ChainSubmissionError(f"{description} failed: {e}")

    def _token(self, token: str, abi=ERC20_ABI):
        return self.w3.eth.contract(address=self.checksum(token), abi=abi)

    # --- reads -----------------------------------------------------------

    def get_native_balance(self, address: str) -> int:
        address = self.checksum(address)
        return self._rpc("balance query", lambda: self.w3.eth.get_balance(address))

    def get_token_balance(self, token: str, address: str) -> int:
        contract = self._token(token)
        address = self.checksum(address)
        return self._rpc("token balance query", lambda: contract.functions.balanceOf(address).call())

    def get_token_decimals(self, token: str) -> int:
        key = token.lower()
        if key not in self._decimals:
            contract = self._token(token)
            self._decimals[key] = int(self._rpc("decimals query", lambda: contract.functions.decimals().call()))
        return self._decimals[key]

    def get_code(self, address: str) -> bytes:
        address = self.checksum(address)
        return bytes(self._rpc("code query", lambda: self.w3.eth.get_code(address)))

    def predict_account_address(self, factory: str, owner: str, salt: int) -> str:
        contract = self.w3.eth.contract(address=self.checksum(factory), abi=ACCOUNT_FACTORY_ABI)
        owner = self.checksum(owner)
        return self._rpc("account address prediction", lambda: contract.functions.getAddress(owner, salt).call())

    # --- writes ----------------------------------------------------------

    def _base_tx(self, sender: str) -> Dict[str, Any]:
        return {
            "from": sender,
            "nonce": self.w3.eth.get_transaction_count(sender, "pending"),
            "gasPrice": self.w3.eth.gas_price,
            "chainId": self.w3.eth.chain_id,
        }

    def _sign_and_send(self, signer: LocalAccount, tx: Dict[str, Any]) -> str:
        signed = signer.sign_transaction(tx)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return self.w3.to_hex(tx_hash)

    def send_native(self, signer: LocalAccount, to: str, value: int) -> str:
        to = self.checksum(to)

        def submit():
            tx = self._base_tx(signer.address)
            tx.update({"to": to, "value": value})
            tx["gas"] = self.w3.eth.estimate_gas(tx)
            return self._sign_and_send(signer, tx)

        tx_hash = self._rpc("native transfer submission", submit)
        logger.info(f"Native transfer sent from {signer.address} to {to}: {tx_hash}")
        return tx_hash

    def send_token(self, signer: LocalAccount, token: str, to: str, value: int) -> str:
        contract = self._token(token)
        to = self.checksum(to)

        def submit():
            tx = contract.functions.transfer(to, value).build_transaction(self._base_tx(signer.address))
            return self._sign_and_send(signer, tx)

        tx_hash = self._rpc("token transfer submission", submit)
        logger.info(f"Token transfer sent from {signer.address} to {to}: {tx_hash}")
        return tx_hash

    def mint_chest_reward(self, signer: LocalAccount, token: str, to: str, value: int, day: int) -> str:
        contract = self._token(token, AURA_TOKEN_ABI)
        to = self.checksum(to)

        def submit():
            tx = contract.functions.mintChestReward(to, value, day).build_transaction(self._base_tx(signer.address))
            return self._sign_and_send(signer, tx)

        tx_hash = self._rpc("chest reward mint submission", submit)
        logger.info(f"Chest reward mint sent to {to} (day {day}): {tx_hash}")
        return tx_hash

    def wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        """Block until one confirmation. Reverted transactions raise ChainConfirmationError."""
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.confirmation_timeout)
        except (requests.exceptions.Timeout, TimeExhausted) as e:
            logger.error(f"No receipt for {tx_hash} within {self.confirmation_timeout}s: {e}")
            raise ChainTimeoutError(f"Transaction {tx_hash} was not confirmed within {self.confirmation_timeout:g}s")
        except Exception as e:
            logger.error(f"Error waiting for receipt of {tx_hash}: {e}")
            raise ChainConfirmationError(f"Could not confirm transaction {tx_hash}: {e}")

        if receipt["status"] != 1:
            logger.error(f"Transaction {tx_hash} reverted in block {receipt['blockNumber']}")
            raise ChainConfirmationError(f"Transaction {tx_hash} reverted")
        logger.info(f"Transaction {tx_hash} confirmed in block {receipt['blockNumber']}")
        return {"tx_hash": tx_hash, "gas_used": receipt["gasUsed"], "block_number": receipt["blockNumber"]}
