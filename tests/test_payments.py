import pytest

from aura_rewards.errors import (
    ErrorKind, InvalidInputError, NotFoundError, SelfTransferError, UnauthorizedError,
)
from aura_rewards.models.db import TX_CONFIRMED, TX_FAILED, TX_KIND_PEER_TRANSFER

from conftest import ADMIN_ID, EXTERNAL, USDT


@pytest.fixture
def payments(services):
    services.store.upsert_user(ADMIN_ID, "admin", "Ada", None)
    services.store.upsert_user("42", "alice", "Alice", None)
    return services.payments


def fund_usdt(services, identity, units):
    services.chain.fund(services.wallets.resolve(identity).address, units, USDT)


def test_admin_tip_by_username(services, payments, chain):
    fund_usdt(services, ADMIN_ID, 100_000_000)

    result = payments.tip(ADMIN_ID, "@alice", "10", group="g1", message="great answer")

    assert result.success
    assert chain.sent[0]["to"] == services.wallets.resolve("42").address
    record = payments.tip_history()[0]
    assert (record.status, record.amount, record.tx_hash, record.message) == (TX_CONFIRMED, "10", result.tx_hash, "great answer")
    assert services.store.get_user("42").wallet_address == services.wallets.resolve("42").address


def test_tip_by_numeric_id(services, payments):
    fund_usdt(services, ADMIN_ID, 100_000_000)
    assert payments.tip(ADMIN_ID, "42", "1").success


def test_only_admins_can_tip(payments, chain):
    with pytest.raises(UnauthorizedError):
        payments.tip("42", "@admin", "1")
    assert chain.sent == []


def test_tip_limits_and_targets(payments):
    with pytest.raises(InvalidInputError):
        payments.tip(ADMIN_ID, "@alice", "1000.01")
    with pytest.raises(InvalidInputError):
        payments.tip(ADMIN_ID, "alice", "1")
    with pytest.raises(NotFoundError):
        payments.tip(ADMIN_ID, "@bob", "1")
    with pytest.raises(SelfTransferError):
        payments.tip(ADMIN_ID, "@admin", "1")


def test_failed_tip_leaves_a_failed_record(payments):
    result = payments.tip(ADMIN_ID, "@alice", "5")

    assert result.error_kind == ErrorKind.INSUFFICIENT_BALANCE
    assert (result.attempted, result.available) == ("5", "0")
    record = payments.tip_history()[0]
    assert record.status == TX_FAILED
    assert "Insufficient balance" in record.error_message


def test_send_to_external_address(services, payments, chain):
    fund_usdt(services, "42", 50_000_000)

    result = payments.send("42", EXTERNAL, "20", USDT, message="rent")

    assert result.success
    record = services.store.list_transfers(kind=TX_KIND_PEER_TRANSFER)[0]
    assert (record.status, record.to_address, record.to_user_id) == (TX_CONFIRMED, EXTERNAL, None)


def test_send_to_a_known_wallet_links_the_recipient(services, payments):
    fund_usdt(services, "42", 50_000_000)
    admin_address = services.wallets.resolve(ADMIN_ID).address
    services.store.set_wallet_address(ADMIN_ID, admin_address)

    assert payments.send("42", admin_address.lower(), "1", USDT).success
    record = services.store.list_transfers(kind=TX_KIND_PEER_TRANSFER)[0]
    assert record.to_user_id == services.store.get_user(ADMIN_ID).id


def test_send_validation(payments, chain):
    with pytest.raises(InvalidInputError):
        payments.send("42", "0xnope", "1", USDT)
    with pytest.raises(InvalidInputError):
        payments.send("42", EXTERNAL, "10000.5", USDT)
    with pytest.raises(InvalidInputError):
        payments.send("42", EXTERNAL, "-1")
    assert chain.sent == []


def test_native_sends_are_not_capped(services, payments, chain):
    services.chain.fund(services.wallets.resolve("42").address, 20_000 * 10 ** 18)
    assert payments.send("42", EXTERNAL, "15000").success
    assert chain.sent[0]["kind"] == "native"


def test_resolve_token(payments):
    assert payments.resolve_token("core") is None
    assert payments.resolve_token(None) is None
    assert payments.resolve_token("USDT") == USDT
    with pytest.raises(InvalidInputError):
        payments.resolve_token("DOGE")
