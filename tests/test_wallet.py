import hashlib
from unittest.mock import Mock

import pytest
import requests
from eth_account import Account
from web3.exceptions import TimeExhausted

from aura_rewards.errors import (
    ChainConfirmationError, ChainSubmissionError, ChainTimeoutError, InvalidInputError,
)
from aura_rewards.keys import CONTRACT_SIGNER_NAMESPACE, KeyDerivation
from aura_rewards.services.chain import ChainClient, format_units, to_base_units
from aura_rewards.services.wallet import ContractWalletDirectory, WalletDirectory, build_wallet_directory

from conftest import EXTERNAL, FACTORY, USDT


def test_plain_directory_is_selected_without_factory(settings, chain):
    wallets = build_wallet_directory(settings, chain)
    assert type(wallets) is WalletDirectory
    assert wallets.supports_contract_wallets is False

    handle = wallets.resolve("42")
    assert handle.address == KeyDerivation().derive("42").address
    assert handle.signer.address == handle.address
    assert (handle.is_contract_wallet, handle.predicted_contract_address) == (False, None)
    assert handle.wallet_type == "EOA"


def test_contract_directory_predicts_but_keeps_funds_on_the_eoa(settings, chain):
    settings.SIMPLE_ACCOUNT_FACTORY_ADDRESS = FACTORY
    wallets = build_wallet_directory(settings, chain)
    assert isinstance(wallets, ContractWalletDirectory)
    assert wallets.supports_contract_wallets is True

    handle = wallets.resolve("42")
    derived = KeyDerivation(signer_namespace=CONTRACT_SIGNER_NAMESPACE).derive("42")
    assert handle.address == derived.address
    assert handle.predicted_contract_address == chain.predict_account_address(FACTORY, derived.address, derived.salt)
    assert handle.is_deployed is False


@pytest.mark.parametrize("factory, material", [
    (None, b"aura-farming-bot-42"),
    (FACTORY, b"aura-farming-signer-42"),
])
def test_each_wallet_mode_keeps_its_existing_addresses(settings, chain, factory, material):
    settings.SIMPLE_ACCOUNT_FACTORY_ADDRESS = factory
    handle = build_wallet_directory(settings, chain).resolve("42")
    assert handle.address == Account.from_key(hashlib.sha256(material).digest()).address


def test_signer_namespace_override(settings, chain):
    settings.SIGNER_NAMESPACE = "custom-"
    handle = build_wallet_directory(settings, chain).resolve("42")
    assert handle.address == Account.from_key(hashlib.sha256(b"custom-42").digest()).address


def test_deployed_contract_wallet(chain):
    keys = KeyDerivation()
    derived = keys.derive("42")
    chain.code[chain.predict_account_address(FACTORY, derived.address, derived.salt).lower()] = b"\x60\x80"

    assert ContractWalletDirectory(keys, chain, FACTORY).resolve("42").is_deployed is True


def test_prediction_failure_does_not_break_resolution(chain):
    chain.predict_account_address = Mock(side_effect=ChainTimeoutError("Timed out during account address prediction"))
    handle = ContractWalletDirectory(KeyDerivation(), chain, FACTORY).resolve("42")
    assert handle.address == KeyDerivation().derive("42").address
    assert handle.predicted_contract_address is None


def test_resolve_is_cached_and_cache_can_be_cleared(chain):
    keys = Mock(wraps=KeyDerivation())
    wallets = WalletDirectory(keys, chain)
    first = wallets.resolve("42")
    assert wallets.resolve("42") is first
    assert keys.derive.call_count == 1

    wallets.clear_cache()
    assert wallets.resolve("42").address == first.address
    assert keys.derive.call_count == 2


def test_empty_identity_is_rejected(chain):
    with pytest.raises(InvalidInputError):
        WalletDirectory(KeyDerivation(), chain).resolve("  ")


def test_balances_are_human_scaled(chain):
    wallets = WalletDirectory(KeyDerivation(), chain)
    chain.fund(EXTERNAL, 1_500_000_000_000_000_000)
    chain.fund(EXTERNAL, 2_000_500, USDT)

    assert wallets.balance_of(EXTERNAL) == "1.5"
    assert wallets.balance_of(EXTERNAL, USDT) == "2.0005"
    assert wallets.balance_of("0x" + "00" * 20, USDT) == "0"


@pytest.mark.parametrize("value, decimals, expected", [
    (0, 18, "0"),
    (1, 18, "0.000000000000000001"),
    (100_000_000, 6, "100"),
    (123_450_000, 6, "123.45"),
])
def test_format_units(value, decimals, expected):
    assert format_units(value, decimals) == expected


def test_to_base_units():
    assert to_base_units("1.5", 6) == 1_500_000
    assert to_base_units(3, 18) == 3 * 10 ** 18
    with pytest.raises(InvalidInputError):
        to_base_units("0.0000001", 6)
    with pytest.raises(InvalidInputError):
        to_base_units("one", 6)


def make_client():
    w3 = Mock()
    return ChainClient("http://localhost:8545", confirmation_timeout=5, w3=w3), w3


def test_rpc_timeout_is_distinct_from_other_failures():
    client, w3 = make_client()
    w3.eth.get_balance.side_effect = requests.exceptions.ReadTimeout("read timed out")
    with pytest.raises(ChainTimeoutError):
        client.get_native_balance(EXTERNAL)

    w3.eth.get_balance.side_effect = ValueError("header not found")
    with pytest.raises(ChainSubmissionError):
        client.get_native_balance(EXTERNAL)


def test_receipt_wait_is_bounded():
    client, w3 = make_client()
    w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("not in chain after 5 seconds")
    with pytest.raises(ChainTimeoutError):
        client.wait_for_receipt("0xabc")
    assert w3.eth.wait_for_transaction_receipt.call_args.kwargs["timeout"] == 5


def test_reverted_receipt_is_a_confirmation_failure():
    client, w3 = make_client()
    w3.eth.wait_for_transaction_receipt.return_value = {"status": 0, "blockNumber": 7, "gasUsed": 30000}
    with pytest.raises(ChainConfirmationError):
        client.wait_for_receipt("0xabc")

    w3.eth.wait_for_transaction_receipt.return_value = {"status": 1, "blockNumber": 7, "gasUsed": 30000}
    assert client.wait_for_receipt("0xabc") == {"tx_hash": "0xabc", "gas_used": 30000, "block_number": 7}


def test_decimals_are_cached():
    client, w3 = make_client()
    w3.eth.contract.return_value.functions.decimals.return_value.call.return_value = 6
    assert client.get_token_decimals(USDT) == 6
    assert client.get_token_decimals(USDT.upper().replace("0X", "0x")) == 6
    assert w3.eth.contract.return_value.functions.decimals.return_value.call.call_count == 1


def test_invalid_address_never_reaches_the_provider():
    client, w3 = make_client()
    with pytest.raises(InvalidInputError):
        client.get_native_balance("not-an-address")
    w3.eth.get_balance.assert_not_called()
