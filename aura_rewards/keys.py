"""Deterministic per-identity keypairs and CREATE2 salts.

A Telegram user id is hashed into a secp256k1 private key, so no private key
material is ever stored: the same identity always yields the same wallet. The
only secret is the deployment pepper. Rotating the pepper (or either namespace)
is unsupported because it moves every user to a new, empty address.
"""
import hashlib
import logging

from eth_account import Account

from aura_rewards.models.wallet import DerivedKey

logger = logging.getLogger(__name__)

# Plain wallets keep the signer namespace of the first deployment; smart account owners use their own
PLAIN_SIGNER_NAMESPACE = "aura-farming-bot-"
CONTRACT_SIGNER_NAMESPACE = "aura-farming-signer-"
SALT_NAMESPACE = "aura-farming-salt-"

# Order of the secp256k1 group; valid private keys are in [1, N-1]
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


class KeyDerivation:
    def __init__(self, pepper: str = "", signer_namespace: str = PLAIN_SIGNER_NAMESPACE,
                 salt_namespace: str = SALT_NAMESPACE):
        if signer_namespace == salt_namespace:
            raise ValueError("Signer and salt namespaces must differ")
        self._pepper = pepper
        self.signer_namespace = signer_namespace
        self.salt_namespace = salt_namespace

    def __repr__(self) -> str:
        return f"KeyDerivation(signer_namespace={self.signer_namespace!r}, salt_namespace={self.salt_namespace!r})"

    def _digest(self, namespace: str, identity: str) -> bytes:
        # Without a pepper the material is namespace+identity, matching wallets created before peppers existed
        material = f"{namespace}{identity}"
        if self._pepper:
            material = f"{self._pepper}:{material}"
        return hashlib.sha256(material.encode("utf-8")).digest()

    def signing_key(self, identity: str) -> bytes:
        seed = self._digest(self.signer_namespace, identity)
        # Out-of-range seeds have probability ~2^-128; rehash rather than fail
        while not 0 < int.from_bytes(seed, "big") < SECP256K1_N:
            logger.warning("Derived seed outside the secp256k1 range, rehashing")
            seed = hashlib.sha256(seed).digest()
        return seed

    def salt(self, identity: str) -> int:
        return int.from_bytes(self._digest(self.salt_namespace, identity), "big")

    def derive(self, identity: str) -> DerivedKey:
        key = self.signing_key(identity)
        account = Account.from_key(key)
        return DerivedKey(
            signing_key="0x" + key.hex(),
            address=account.address,
            salt=self.salt(identity),
        )
