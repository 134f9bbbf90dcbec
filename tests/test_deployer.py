import pytest

from chaindeploy.chain import Transaction, wait_for_receipt
from chaindeploy.constants import ZERO_ADDRESS
from chaindeploy.deployer import ContractDeployer
from chaindeploy.errors import (
    ConfirmationTimeout,
    TransactionReverted,
    UnresolvedDependency,
)
from chaindeploy.params import ContractSpec


def test_deploy_resolves_arguments_from_record(chain, store, deployer, accounts):
    dfy_token = chain.create("DFYToken")
    store.set("dev2", "DFYToken", dfy_token)

    factory_spec = ContractSpec.declare(
        contract_type="FarmingFactory", environment="dev2", arguments=[accounts[1], accounts[2]]
    )
    factory = deployer.deploy(factory_spec)
    assert chain.contracts[factory.address].contract_type == "FarmingFactory"
    # recording the result is left to the caller
    assert not store.has("dev2", "FarmingFactory")
    store.set("dev2", "FarmingFactory", factory.address)

    lottery_spec = ContractSpec.declare(
        contract_type="Lottery",
        environment="dev2",
        arguments=["$DFYToken", accounts[3], "$FarmingFactory", 1],
    )
    lottery = deployer.deploy(lottery_spec)

    assert lottery.name == "Lottery"
    assert lottery.arguments == [dfy_token, accounts[3], factory.address, 1]
    assert chain.contracts[lottery.address].args[2] == factory.address
    assert chain.contracts[lottery.address].owner == chain.sender


def test_unresolved_dependency_submits_nothing(chain, deployer):
    spec = ContractSpec.declare(
        contract_type="Lottery", environment="dev2", arguments=["$DFYToken", "$FarmingFactory"]
    )
    with pytest.raises(UnresolvedDependency):
        deployer.deploy(spec)
    assert chain.submitted == []


def test_reverted_deployment(chain, deployer, journal):
    chain.reverting_types.add("Lottery")
    spec = ContractSpec.declare(contract_type="Lottery", environment="dev2")

    with pytest.raises(TransactionReverted) as exc_info:
        deployer.deploy(spec, pending_key="deploy:Lottery")

    assert exc_info.value.tx_hash in chain.receipts
    assert journal.pending("dev2") == {}


def test_confirmation_timeout_then_reconciliation(chain, store, journal):
    deployer = ContractDeployer(
        chain, store, journal=journal, timeout=0, poll_interval=0, autosign=True
    )
    chain.auto_mine = False
    spec = ContractSpec.declare(contract_type="FarmingFactory", environment="dev2")

    with pytest.raises(ConfirmationTimeout) as exc_info:
        deployer.deploy(spec, pending_key="deploy:FarmingFactory")
    tx_hash = exc_info.value.tx_hash
    assert journal.get("dev2", "deploy:FarmingFactory") == tx_hash

    # the orphan transaction is eventually included
    chain.mine()
    result = deployer.deploy(spec, pending_key="deploy:FarmingFactory")

    assert len(chain.submitted) == 1
    assert result.tx_hash == tx_hash
    assert chain.contracts[result.address].contract_type == "FarmingFactory"


def test_reverted_orphan_is_resubmitted(chain, store, journal):
    deployer = ContractDeployer(
        chain, store, journal=journal, timeout=0, poll_interval=0, autosign=True
    )
    chain.auto_mine = False
    chain.reverting_types.add("FarmingFactory")
    spec = ContractSpec.declare(contract_type="FarmingFactory", environment="dev2")

    with pytest.raises(ConfirmationTimeout):
        deployer.deploy(spec, pending_key="deploy:FarmingFactory")
    chain.mine()

    chain.reverting_types.clear()
    chain.auto_mine = True
    result = deployer.deploy(spec, pending_key="deploy:FarmingFactory")

    assert len(chain.submitted) == 2
    assert chain.contracts[result.address].contract_type == "FarmingFactory"


def test_wait_for_receipt_timeout(chain):
    chain.auto_mine = False
    tx_hash = chain.submit_transaction(Transaction.creation("DFYToken"))

    with pytest.raises(ConfirmationTimeout) as exc_info:
        wait_for_receipt(chain, tx_hash, timeout=0, poll_interval=0)
    assert exc_info.value.tx_hash == tx_hash

    chain.mine()
    assert wait_for_receipt(chain, tx_hash, timeout=0).succeeded


def test_interactive_confirmation(chain, store, monkeypatch):
    deployer = ContractDeployer(chain, store, poll_interval=0)
    answers = iter(["y"])
    monkeypatch.setattr("builtins.input", lambda _: next(answers))

    spec = ContractSpec.declare(contract_type="DFYToken", environment="dev2")
    result = deployer.deploy(spec)
    assert result.address in chain.contracts


def test_zero_address_needs_second_confirmation(chain, store, monkeypatch):
    deployer = ContractDeployer(chain, store, poll_interval=0)
    answers = iter(["y", "n"])
    monkeypatch.setattr("builtins.input", lambda _: next(answers))

    spec = ContractSpec.declare(
        contract_type="Lottery", environment="dev2", arguments=[[ZERO_ADDRESS], 1]
    )
    with pytest.raises(SystemExit):
        deployer.deploy(spec)
    assert chain.submitted == []


def test_reconciled_deployment_is_not_confirmed_again(chain, store, journal, monkeypatch):
    deployer = ContractDeployer(chain, store, journal=journal, timeout=0, poll_interval=0)
    answers = iter(["y"])
    monkeypatch.setattr("builtins.input", lambda _: next(answers))
    chain.auto_mine = False
    spec = ContractSpec.declare(contract_type="DFYToken", environment="dev2")

    with pytest.raises(ConfirmationTimeout):
        deployer.deploy(spec, pending_key="deploy:DFYToken")
    chain.mine()

    # a second prompt would exhaust the answers
    result = deployer.deploy(spec, pending_key="deploy:DFYToken")

    assert len(chain.submitted) == 1
    assert chain.contracts[result.address].contract_type == "DFYToken"
