from collections import defaultdict
from typing import Dict, List, Optional, Set

import pytest
from eth_utils import keccak, to_bytes, to_checksum_address

from chaindeploy.chain import ChainClient, Receipt, Transaction
from chaindeploy.constants import (
    DEFAULT_ADMIN_ROLE,
    EIP1967_ADMIN_SLOT,
    EIP1967_IMPLEMENTATION_SLOT,
    EMPTY_BYTES32,
    PROXY_ADMIN_CONTRACT,
)
from chaindeploy.configurator import PostDeploymentConfigurator
from chaindeploy.deployer import ContractDeployer
from chaindeploy.pipeline import DeploymentOrchestrator
from chaindeploy.registry import DeploymentRecordStore, PendingTransactionJournal
from chaindeploy.upgrader import ProxyUpgrader


def _address(seed: str) -> str:
    return to_checksum_address(keccak(text=seed)[-20:])


def address_word(address: str) -> bytes:
    return to_bytes(hexstr=address).rjust(32, b"\x00")


class FakeContract:
    def __init__(self, contract_type: str, address: str, args: list, owner: str, roles=()):
        self.contract_type = contract_type
        self.address = address
        self.args = list(args)
        self.owner = owner
        self.storage: Dict[int, bytes] = dict()
        self.operators: Set[str] = set()
        self.role_getters = set(roles)
        self.roles: Dict[bytes, Set[str]] = defaultdict(set)
        self.roles[DEFAULT_ADMIN_ROLE].add(owner)


class FakeChain(ChainClient):
    """
    In-memory chain: executes creations, proxy upgrades, operator and role grants.
    Transactions are mined on submission unless ``auto_mine`` is off.
    """

    def __init__(self, accounts: List[str]):
        self.accounts = accounts
        self._sender = accounts[0]
        self.contracts: Dict[str, FakeContract] = dict()
        self.submitted: List[Transaction] = list()
        self.receipts: Dict[str, Receipt] = dict()
        self.pending: Dict[str, tuple] = dict()
        self.auto_mine = True
        self.ignore_upgrades = False
        self.reverting_types: Set[str] = set()
        self.reverting_methods: Set[str] = set()
        # submissions of these methods are rejected by the client itself
        self.failing_methods: Set[str] = set()
        self._counter = 0
        self.block_number = 0

    # ChainClient

    @property
    def sender(self):
        return self._sender

    def use(self, account: str) -> None:
        self._sender = account

    def submit_transaction(self, transaction: Transaction) -> str:
        if transaction.method in self.failing_methods:
            raise ValueError(f"{transaction.method}: execution reverted during gas estimation")
        self.submitted.append(transaction)
        self._counter += 1
        tx_hash = "0x" + keccak(text=f"tx-{self._counter}").hex()
        self.pending[tx_hash] = (transaction, self._sender)
        if self.auto_mine:
            self.mine()
        return tx_hash

    def call(self, address, contract_type, method, *args):
        contract = self.contracts[address]
        if method == "owner":
            return contract.owner
        if method == "operators":
            return args[0] in contract.operators
        if method == "hasRole":
            role, account = args
            return account in contract.roles[bytes(role)]
        if method == "getRoleAdmin":
            return DEFAULT_ADMIN_ROLE
        if method in contract.role_getters:
            return keccak(text=method)
        raise AttributeError(f"{contract_type} has no method '{method}'")

    def get_transaction_receipt(self, tx_hash: str) -> Optional[Receipt]:
        return self.receipts.get(tx_hash)

    def get_storage_at(self, address, slot: int) -> bytes:
        contract = self.contracts.get(address)
        if contract is None:
            return EMPTY_BYTES32
        return contract.storage.get(slot, EMPTY_BYTES32)

    # mining

    def mine(self) -> None:
        for tx_hash, (transaction, sender) in list(self.pending.items()):
            del self.pending[tx_hash]
            self.block_number += 1
            succeeded, contract_address = self._execute(transaction, sender)
            self.receipts[tx_hash] = Receipt(
                tx_hash=tx_hash,
                status=1 if succeeded else 0,
                block_number=self.block_number,
                contract_address=contract_address,
            )

    def _execute(self, transaction: Transaction, sender: str):
        if transaction.is_creation:
            if transaction.contract_type in self.reverting_types:
                return False, None
            address = self.create(transaction.contract_type, *transaction.args, owner=sender)
            return True, address

        contract = self.contracts.get(transaction.to)
        handler = getattr(self, f"_tx_{transaction.method}", None)
        if contract is None or handler is None or transaction.method in self.reverting_methods:
            return False, None
        return handler(contract, sender, *transaction.args), None

    def _tx_upgradeAndCall(self, proxy_admin, sender, proxy, logic, data):
        if sender != proxy_admin.owner:
            return False
        if not self.ignore_upgrades:
            self.contracts[proxy].storage[EIP1967_IMPLEMENTATION_SLOT] = address_word(logic)
        return True

    def _tx_upgradeToAndCall(self, proxy, sender, logic, data):
        if sender != proxy.owner:
            return False
        if not self.ignore_upgrades:
            proxy.storage[EIP1967_IMPLEMENTATION_SLOT] = address_word(logic)
        return True

    def _tx_setOperators(self, contract, sender, operators, flags):
        if sender != contract.owner:
            return False
        for operator, flag in zip(operators, flags):
            if flag:
                contract.operators.add(operator)
            else:
                contract.operators.discard(operator)
        return True

    def _tx_grantRole(self, contract, sender, role, account):
        if sender not in contract.roles[DEFAULT_ADMIN_ROLE]:
            return False
        contract.roles[bytes(role)].add(account)
        return True

    # helpers

    def create(self, contract_type: str, *args, owner: str = None, roles=()) -> str:
        self._counter += 1
        address = _address(f"contract-{self._counter}")
        self.contracts[address] = FakeContract(
            contract_type, address, args, owner or self._sender, roles
        )
        return address

    def deploy_proxy(self, logic_type: str, owner: str = None, transparent: bool = True) -> str:
        """Creates a logic contract behind an EIP1967 proxy, bypassing ``submitted``."""
        owner = owner or self._sender
        logic = self.create(logic_type, owner=owner)
        proxy = self.create(logic_type, owner=owner)
        self.contracts[proxy].storage[EIP1967_IMPLEMENTATION_SLOT] = address_word(logic)
        if transparent:
            proxy_admin = self.create(PROXY_ADMIN_CONTRACT, owner=owner)
            self.contracts[proxy].storage[EIP1967_ADMIN_SLOT] = address_word(proxy_admin)
        return proxy

    def implementation(self, proxy: str) -> str:
        word = self.get_storage_at(proxy, EIP1967_IMPLEMENTATION_SLOT)
        return to_checksum_address(word[-20:])


@pytest.fixture
def accounts():
    return [_address(f"account-{i}") for i in range(5)]


@pytest.fixture
def owner(accounts):
    return accounts[0]


@pytest.fixture
def chain(accounts):
    return FakeChain(accounts)


@pytest.fixture
def record_filepath(tmp_path):
    return tmp_path / "deploy.json"


@pytest.fixture
def store(record_filepath):
    return DeploymentRecordStore(record_filepath)


@pytest.fixture
def journal(store):
    return PendingTransactionJournal.beside(store)


@pytest.fixture
def deployer(chain, store, journal):
    return ContractDeployer(chain, store, journal=journal, autosign=True, poll_interval=0)


@pytest.fixture
def upgrader(deployer):
    return ProxyUpgrader(deployer)


@pytest.fixture
def configurator(deployer):
    return PostDeploymentConfigurator(deployer)


@pytest.fixture
def orchestrator(chain, store, journal):
    return DeploymentOrchestrator(chain, store, journal=journal, autosign=True, poll_interval=0)
