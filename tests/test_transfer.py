import threading
import time
from datetime import date
from unittest.mock import Mock

import pytest

from aura_rewards.errors import ChainConfirmationError, ChainTimeoutError, ErrorKind
from aura_rewards.services.transfer import TransferEngine

from conftest import AURA, EXTERNAL, USDT


@pytest.fixture
def transfers(services):
    return services.transfers


def address_of(services, identity):
    return services.wallets.resolve(identity).address


@pytest.mark.parametrize("amount", ["0", "-5", 0, "abc", "NaN", "Infinity", ""])
def test_invalid_amount_fails_before_any_io(amount):
    wallets, chain = Mock(), Mock()
    engine = TransferEngine(wallets, chain)

    result = engine.transfer("42", EXTERNAL, amount, USDT)

    assert not result.success
    assert result.error_kind == ErrorKind.INVALID_INPUT
    assert wallets.mock_calls == []
    assert chain.mock_calls == []


def test_malformed_address_is_invalid_input(transfers, chain):
    result = transfers.transfer("42", "0x1234", "1", USDT)
    assert result.error_kind == ErrorKind.INVALID_INPUT
    assert chain.sent == []


def test_self_transfer_is_rejected(services, transfers, chain):
    chain.fund(address_of(services, "42"), 10 ** 20)

    by_identity = transfers.transfer("42", "42", "1")
    by_address = transfers.transfer("42", address_of(services, "42").lower(), "1")

    assert by_identity.error_kind == ErrorKind.SELF_TRANSFER
    assert by_address.error_kind == ErrorKind.SELF_TRANSFER
    assert chain.sent == []


def test_insufficient_balance_reports_queried_balance(services, transfers, chain):
    chain.fund(address_of(services, "42"), 2_500_000, USDT)

    result = transfers.transfer("42", EXTERNAL, "10", USDT)

    assert not result.success
    assert result.error_kind == ErrorKind.INSUFFICIENT_BALANCE
    assert result.available == services.wallets.balance_of(address_of(services, "42"), USDT) == "2.5"
    assert result.attempted == "10"
    assert chain.sent == []


def test_token_transfer_to_external_address(services, transfers, chain):
    sender = address_of(services, "42")
    chain.fund(sender, 15_000_000, USDT)

    result = transfers.transfer("42", EXTERNAL, "12.5", USDT)

    assert result.success
    assert result.gas_used == 21000
    assert (result.from_address, result.to_address, result.amount) == (sender, EXTERNAL, "12.5")
    assert len(chain.sent) == 1
    assert chain.sent[0]["value"] == 12_500_000
    assert chain.sent[0]["token"] == USDT


def test_native_transfer_between_identities(services, transfers, chain):
    chain.fund(address_of(services, "42"), 3 * 10 ** 18)

    result = transfers.transfer("42", "43", "1.25")

    assert result.success
    assert chain.sent[0]["kind"] == "native"
    assert chain.sent[0]["to"] == address_of(services, "43")
    assert chain.sent[0]["value"] == 1_250_000_000_000_000_000


def test_exact_balance_can_be_sent(services, transfers, chain):
    chain.fund(address_of(services, "42"), 1_000_000, USDT)
    assert transfers.transfer("42", EXTERNAL, "1", USDT).success


def test_precision_beyond_token_decimals_is_invalid(services, transfers, chain):
    chain.fund(address_of(services, "42"), 10 ** 9, USDT)
    result = transfers.transfer("42", EXTERNAL, "0.0000001", USDT)
    assert result.error_kind == ErrorKind.INVALID_INPUT
    assert chain.sent == []


def test_submission_failure_is_typed(services, transfers, chain, submission_failure):
    chain.fund(address_of(services, "42"), 10 ** 7, USDT)
    chain.submit_error = submission_failure

    result = transfers.transfer("42", EXTERNAL, "1", USDT)

    assert result.error_kind == ErrorKind.CHAIN_SUBMISSION_FAILURE
    assert "nonce too low" in result.error
    assert result.tx_hash is None


@pytest.mark.parametrize("error, kind", [
    (ChainConfirmationError("Transaction reverted"), ErrorKind.CHAIN_CONFIRMATION_FAILURE),
    (ChainTimeoutError("Transaction was not confirmed within 120s"), ErrorKind.TIMEOUT),
])
def test_confirmation_failures_keep_the_submitted_hash(services, transfers, chain, error, kind):
    chain.fund(address_of(services, "42"), 10 ** 7, USDT)
    chain.receipt_error = error

    result = transfers.transfer("42", EXTERNAL, "1", USDT)

    assert result.error_kind == kind
    assert result.tx_hash == chain.sent[0]["tx_hash"]
    assert len(chain.sent) == 1


def test_submissions_from_one_sender_are_serialized(services, transfers, chain):
    chain.fund(address_of(services, "42"), 10 ** 7, USDT)
    active, overlaps = [], []
    original = chain.wait_for_receipt

    def slow_receipt(tx_hash):
        active.append(tx_hash)
        if len(active) > 1:
            overlaps.append(tuple(active))
        time.sleep(0.05)
        active.remove(tx_hash)
        return original(tx_hash)

    chain.wait_for_receipt = slow_receipt
    threads = [threading.Thread(target=transfers.transfer, args=("42", EXTERNAL, "1", USDT)) for _ in range(3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(chain.sent) == 3
    assert overlaps == []


def test_mint_reward_uses_minter_key(services, transfers, chain):
    result = transfers.mint_reward("42", 4, date(2024, 5, 15))

    assert result.success
    mint = chain.sent[0]
    assert mint["sender"] == result.from_address != address_of(services, "42")
    assert (mint["token"], mint["to"], mint["day"]) == (AURA, address_of(services, "42"), 20240515)


def test_mint_reward_needs_configuration(services, chain):
    engine = TransferEngine(services.wallets, chain)
    result = engine.mint_reward("42", 1, date(2024, 5, 15))
    assert result.error_kind == ErrorKind.CHAIN_SUBMISSION_FAILURE
    assert chain.sent == []
