"""Resolution of Telegram identities to their derived wallets, and balance lookups."""
import logging
from typing import Dict, Optional

from eth_account import Account

from aura_rewards.config import Settings
from aura_rewards.errors import AuraError, InvalidInputError
from aura_rewards.keys import CONTRACT_SIGNER_NAMESPACE, PLAIN_SIGNER_NAMESPACE, KeyDerivation
from aura_rewards.models.wallet import WalletHandle
from aura_rewards.services.chain import NATIVE_DECIMALS, ChainClient, format_units

logger = logging.getLogger(__name__)


class WalletDirectory:
    """Plain keypair wallets: the derived EOA holds funds and signs."""

    supports_contract_wallets = False

    def __init__(self, keys: KeyDerivation, chain: ChainClient):
        self.keys = keys
        self.chain = chain
        # Derivation is deterministic, so entries never go stale
        self._cache: Dict[str, WalletHandle] = {}

    def resolve(self, identity: str) -> WalletHandle:
        identity = str(identity).strip()
        if not identity:
            raise InvalidInputError("User id is required")
        handle = self._cache.get(identity)
        if handle is None:
            handle = self._build(identity)
            self._cache[identity] = handle
        return handle

    def _build(self, identity: str) -> WalletHandle:
        derived = self.keys.derive(identity)
        return WalletHandle(
            identity=identity,
            address=derived.address,
            signer=Account.from_key(derived.signing_key),
            salt=derived.salt,
        )

    def clear_cache(self) -> None:
        self._cache.clear()

    def balance_of(self, address: str, token: Optional[str] = None) -> str:
        """Balance as a human-scaled decimal string; native currency when ``token`` is None."""
        if token is None:
            return format_units(self.chain.get_native_balance(address), NATIVE_DECIMALS)
        raw = self.chain.get_token_balance(token, address)
        return format_units(raw, self.chain.get_token_decimals(token))


class ContractWalletDirectory(WalletDirectory):
    """
    Adds the counterfactual smart account address from an account factory.

    Funds still live on the derived EOA, which is what ``address`` returns; the
    contract wallet fields are informational until account abstraction is wired
    up end to end.
    """

    supports_contract_wallets = True

    def __init__(self, keys: KeyDerivation, chain: ChainClient, factory_address: str):
        super().__init__(keys, chain)
        self.factory_address = factory_address

    def _build(self, identity: str) -> WalletHandle:
        handle = super()._build(identity)
        try:
            predicted = self.chain.predict_account_address(self.factory_address, handle.address, handle.salt)
            handle.predicted_contract_address = predicted
            handle.is_deployed = len(self.chain.get_code(predicted)) > 0
        except AuraError as e:
            logger.warning(f"Could not predict smart account for user {identity}: {e.message}")
            handle.is_deployed = False
        return handle


def build_wallet_directory(settings: Settings, chain: ChainClient, keys: Optional[KeyDerivation] = None) -> WalletDirectory:
    contract_wallets = bool(settings.SIMPLE_ACCOUNT_FACTORY_ADDRESS)
    default_namespace = CONTRACT_SIGNER_NAMESPACE if contract_wallets else PLAIN_SIGNER_NAMESPACE
    keys = keys or KeyDerivation(
        pepper=settings.WALLET_PEPPER,
        signer_namespace=settings.SIGNER_NAMESPACE or default_namespace,
        salt_namespace=settings.SALT_NAMESPACE,
    )
    if contract_wallets:
        logger.info(f"Smart account metadata enabled via factory {settings.SIMPLE_ACCOUNT_FACTORY_ADDRESS}")
        return ContractWalletDirectory(keys, chain, settings.SIMPLE_ACCOUNT_FACTORY_ADDRESS)
    logger.info("Using plain keypair wallets")
    return WalletDirectory(keys, chain)
