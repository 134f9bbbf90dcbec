import pytest

from chaindeploy.errors import (
    NotAProxy,
    TransactionReverted,
    Unauthorized,
    UpgradeError,
    VerificationFailed,
)
from chaindeploy.params import ContractSpec


@pytest.fixture
def clock_auction(chain):
    return chain.deploy_proxy("ClockAuction")


@pytest.fixture
def clock_auction_v2():
    return ContractSpec.declare(
        contract_type="ClockAuctionV2", environment="live", record_name="ClockAuction"
    )


def test_binding(upgrader, chain, clock_auction):
    binding = upgrader.binding(clock_auction)
    assert binding.proxy_address == clock_auction
    assert binding.logic_address == chain.implementation(clock_auction)
    assert binding.is_transparent
    assert chain.contracts[binding.admin_address].contract_type == "ProxyAdmin"


def test_upgrade_transparent_proxy(upgrader, chain, clock_auction, clock_auction_v2):
    previous_logic = chain.implementation(clock_auction)

    result = upgrader.upgrade(clock_auction, clock_auction_v2)

    assert result.proxy_address == clock_auction
    assert result.previous_logic_address == previous_logic
    assert result.logic_address != previous_logic
    assert chain.implementation(clock_auction) == result.logic_address
    assert chain.contracts[result.logic_address].contract_type == "ClockAuctionV2"

    creation, upgrade = chain.submitted
    assert creation.is_creation
    assert upgrade.method == "upgradeAndCall"
    assert upgrade.args[:2] == (clock_auction, result.logic_address)


def test_upgrade_uups_proxy(upgrader, chain, clock_auction_v2):
    proxy = chain.deploy_proxy("ClockAuction", transparent=False)

    result = upgrader.upgrade(proxy, clock_auction_v2, data=b"\x01")

    assert not upgrader.binding(proxy).is_transparent
    assert chain.implementation(proxy) == result.logic_address
    upgrade = chain.submitted[-1]
    assert (upgrade.to, upgrade.method) == (proxy, "upgradeToAndCall")
    assert upgrade.args == (result.logic_address, b"\x01")


def test_not_a_proxy(upgrader, chain, clock_auction_v2):
    plain = chain.create("ClockAuction")
    with pytest.raises(NotAProxy) as exc_info:
        upgrader.upgrade(plain, clock_auction_v2)
    assert exc_info.value.address == plain
    assert chain.submitted == []


def test_unauthorized_signer(upgrader, chain, accounts, clock_auction, clock_auction_v2):
    logic = chain.implementation(clock_auction)
    chain.use(accounts[1])

    with pytest.raises(Unauthorized):
        upgrader.upgrade(clock_auction, clock_auction_v2)

    assert chain.submitted == []
    assert chain.implementation(clock_auction) == logic


def test_verification_failure(upgrader, chain, clock_auction, clock_auction_v2):
    previous_logic = chain.implementation(clock_auction)
    chain.ignore_upgrades = True

    with pytest.raises(VerificationFailed) as exc_info:
        upgrader.upgrade(clock_auction, clock_auction_v2)

    assert exc_info.value.actual == previous_logic
    assert exc_info.value.expected != previous_logic
    assert chain.implementation(clock_auction) == previous_logic


def test_upgrade_reuses_journaled_logic(upgrader, chain, journal, clock_auction, clock_auction_v2):
    chain.reverting_methods.add("upgradeAndCall")
    with pytest.raises(TransactionReverted):
        upgrader.upgrade(clock_auction, clock_auction_v2, pending_key="upgrade:ClockAuction")
    logic_tx = journal.get("live", "upgrade:ClockAuction:logic")
    assert journal.pending("live") == {"upgrade:ClockAuction:logic": logic_tx}

    chain.reverting_methods.clear()
    submitted = len(chain.submitted)
    result = upgrader.upgrade(clock_auction, clock_auction_v2, pending_key="upgrade:ClockAuction")

    # only the upgrade itself is resubmitted
    assert len(chain.submitted) == submitted + 1
    assert chain.receipts[logic_tx].contract_address == result.logic_address
    assert chain.implementation(clock_auction) == result.logic_address


def test_failed_upgrade_reports_new_logic(
    upgrader, chain, journal, clock_auction, clock_auction_v2
):
    previous_logic = chain.implementation(clock_auction)
    chain.reverting_methods.add("upgradeAndCall")

    with pytest.raises(TransactionReverted) as exc_info:
        upgrader.upgrade(clock_auction, clock_auction_v2, pending_key="upgrade:ClockAuction")

    logic_tx = journal.get("live", "upgrade:ClockAuction:logic")
    assert exc_info.value.address == chain.receipts[logic_tx].contract_address
    assert exc_info.value.address != previous_logic


def test_rejected_upgrade_is_wrapped(upgrader, chain, journal, clock_auction, clock_auction_v2):
    chain.failing_methods.add("upgradeAndCall")

    with pytest.raises(UpgradeError) as exc_info:
        upgrader.upgrade(clock_auction, clock_auction_v2, pending_key="upgrade:ClockAuction")

    logic_tx = journal.get("live", "upgrade:ClockAuction:logic")
    assert exc_info.value.address == chain.receipts[logic_tx].contract_address
    assert exc_info.value.environment == "live"
    assert isinstance(exc_info.value.__cause__, ValueError)
