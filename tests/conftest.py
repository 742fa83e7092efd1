import hashlib
import itertools
from datetime import datetime, timedelta

import pytest
from web3 import Web3

from aura_rewards.clock import Clock
from aura_rewards.config import Settings
from aura_rewards.db import Database
from aura_rewards.errors import ChainSubmissionError
from aura_rewards.runtime import build_services
from aura_rewards.services.chain import ChainClient

USDT = "0x1111111111111111111111111111111111111111"
AURA = "0x2222222222222222222222222222222222222222"
FACTORY = "0x3333333333333333333333333333333333333333"
EXTERNAL = "0x742d35Cc6634C0532925a3b844Bc454e4438f44e"
MINTER_KEY = "0x" + "11" * 32
ADMIN_ID = "1000"


class FixedClock(Clock):
    """Clock frozen at a Wednesday noon; tests move it explicitly."""

    def __init__(self, start: datetime = datetime(2024, 5, 15, 12, 0, 0)):
        super().__init__("UTC")
        self.current = start

    def now(self) -> datetime:
        return self.current.replace(tzinfo=self.tz)

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeChain:
    """In-memory stand-in for ChainClient: balances are plain dicts and every submission succeeds."""

    is_address = staticmethod(ChainClient.is_address)
    checksum = staticmethod(ChainClient.checksum)

    def __init__(self):
        self.native = {}
        self.tokens = {}
        self.decimals = {USDT.lower(): 6, AURA.lower(): 18}
        self.code = {}
        self.sent = []
        self.submit_error = None
        self.receipt_error = None
        self._hashes = itertools.count(1)

    def fund(self, address, value, token=None):
        if token is None:
            self.native[address.lower()] = value
        else:
            self.tokens[(token.lower(), address.lower())] = value

    def get_native_balance(self, address):
        return self.native.get(address.lower(), 0)

    def get_token_balance(self, token, address):
        return self.tokens.get((token.lower(), address.lower()), 0)

    def get_token_decimals(self, token):
        return self.decimals.get(token.lower(), 18)

    def get_code(self, address):
        return self.code.get(address.lower(), b"")

    def predict_account_address(self, factory, owner, salt):
        digest = hashlib.sha256(f"{factory}{owner}{salt}".encode()).hexdigest()
        return Web3.to_checksum_address("0x" + digest[:40])

    def _submit(self, kind, **details):
        if self.submit_error:
            raise self.submit_error
        tx_hash = "0x" + format(next(self._hashes), "064x")
        self.sent.append(dict(kind=kind, tx_hash=tx_hash, **details))
        return tx_hash

    def send_native(self, signer, to, value):
        return self._submit("native", sender=signer.address, to=to, value=value)

    def send_token(self, signer, token, to, value):
        return self._submit("token", sender=signer.address, token=token, to=to, value=value)

    def mint_chest_reward(self, signer, token, to, value, day):
        return self._submit("mint", sender=signer.address, token=token, to=to, value=value, day=day)

    def wait_for_receipt(self, tx_hash):
        if self.receipt_error:
            raise self.receipt_error
        return {"tx_hash": tx_hash, "gas_used": 21000, "block_number": 1}


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        ADMIN_USER_IDS=ADMIN_ID,
        USDT_CONTRACT_ADDRESS=USDT,
        AURA_TOKEN_CONTRACT_ADDRESS=AURA,
        MINTER_PRIVATE_KEY=MINTER_KEY,
        TELEGRAM_BOT_TOKEN="123456:TEST-TOKEN",
        ACTIVITY_MAX_BUFFERED_KEYS=100,
    )


@pytest.fixture
def database():
    database = Database()
    database.init("sqlite://")
    yield database
    database.dispose()


@pytest.fixture
def services(settings, database, chain, clock):
    return build_services(settings, database, chain=chain, clock=clock)


@pytest.fixture
def store(services):
    return services.store


@pytest.fixture
def submission_failure():
    return ChainSubmissionError("token transfer submission failed: nonce too low")
