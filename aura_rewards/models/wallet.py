"""Domain models for derived keys and resolved wallets."""
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class DerivedKey:
    signing_key: str = field(repr=False)  # 0x-prefixed 32-byte hex, never logged
    address: str  # checksummed EOA address
    salt: int  # uint256 CREATE2 salt


@dataclass
class WalletHandle:
    identity: str
    address: str  # address that holds funds and signs transfers
    signer: Any = field(repr=False)  # eth_account LocalAccount
    salt: int = 0
    is_contract_wallet: bool = False
    is_deployed: bool = True
    predicted_contract_address: Optional[str] = None

    @property
    def wallet_type(self) -> str:
        return "Smart Contract" if self.is_contract_wallet else "EOA"
