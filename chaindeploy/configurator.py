from abc import ABC, abstractmethod
from typing import Iterable, List, NamedTuple, Optional, Tuple

from eth_typing import ChecksumAddress
from web3 import Web3

from chaindeploy.chain import ChainClient, Transaction, TxHash
from chaindeploy.constants import OPERATOR_PRIVILEGE, ROLE_SUFFIX
from chaindeploy.deployer import Transactor
from chaindeploy.errors import ConfigError, TransactionReverted, Unauthorized
from chaindeploy.utils import checksum


class Privilege(ABC):
    """A named privilege that a contract grants to a set of addresses."""

    name: str

    @abstractmethod
    def is_granted(
        self, client: ChainClient, contract: ChecksumAddress, contract_type: str, target
    ) -> bool:
        raise NotImplementedError

    @abstractmethod
    def is_admin(
        self, client: ChainClient, contract: ChecksumAddress, contract_type: str, account
    ) -> bool:
        """Returns True if ``account`` may grant this privilege."""
        raise NotImplementedError

    @abstractmethod
    def grant_transactions(
        self, client: ChainClient, contract: ChecksumAddress, contract_type: str, targets
    ) -> List[Tuple[str, Transaction]]:
        """Returns the grant transactions, each labelled for the pending journal."""
        raise NotImplementedError


class OperatorPrivilege(Privilege):
    """Owner-managed ``operators`` mapping, granted in bulk with ``setOperators``."""

    name = OPERATOR_PRIVILEGE

    def is_granted(self, client, contract, contract_type, target) -> bool:
        return bool(client.call(contract, contract_type, "operators", target))

    def is_admin(self, client, contract, contract_type, account) -> bool:
        owner = client.call(contract, contract_type, "owner")
        return checksum(owner) == checksum(account)

    def grant_transactions(self, client, contract, contract_type, targets):
        targets = list(targets)
        flags = [True for _ in targets]
        transaction = Transaction.invocation(
            contract, contract_type, "setOperators", targets, flags
        )
        return [("setOperators", transaction)]


class RolePrivilege(Privilege):
    """OpenZeppelin ``AccessControl`` role, e.g. ``INITIATOR_ROLE``."""

    def __init__(self, role_name: str):
        role_name = role_name.upper()
        if not role_name.endswith(ROLE_SUFFIX):
            role_name = f"{role_name}{ROLE_SUFFIX}"
        self.name = role_name

    def role_hash(self, client: ChainClient, contract, contract_type) -> bytes:
        try:
            return bytes(client.call(contract, contract_type, self.name))
        except (AttributeError, ValueError):
            # no public getter for the role; fall back to the conventional hash
            return bytes(Web3.keccak(text=self.name))

    def is_granted(self, client, contract, contract_type, target) -> bool:
        role = self.role_hash(client, contract, contract_type)
        return bool(client.call(contract, contract_type, "hasRole", role, target))

    def is_admin(self, client, contract, contract_type, account) -> bool:
        role = self.role_hash(client, contract, contract_type)
        admin_role = client.call(contract, contract_type, "getRoleAdmin", role)
        return bool(client.call(contract, contract_type, "hasRole", admin_role, account))

    def grant_transactions(self, client, contract, contract_type, targets):
        role = self.role_hash(client, contract, contract_type)
        return [
            (
                f"grantRole-{target}",
                Transaction.invocation(contract, contract_type, "grantRole", role, target),
            )
            for target in targets
        ]


def privilege_from_name(name: str) -> Privilege:
    if name.lower() == OPERATOR_PRIVILEGE:
        return OperatorPrivilege()
    return RolePrivilege(name)


class GrantResult(NamedTuple):
    privilege: str
    granted: List[ChecksumAddress]
    already_granted: List[ChecksumAddress]
    tx_hashes: List[TxHash]


class PostDeploymentConfigurator:
    """
    Issues administrative transactions against deployed contracts.
    Grants are idempotent: targets already holding the privilege are left alone,
    and a grant with nothing left to do submits no transaction.
    """

    def __init__(self, transactor: Transactor):
        self.transactor = transactor
        self.client = transactor.client

    def grant_privilege(
        self,
        contract_address: str,
        privilege: str,
        targets: Iterable[str],
        contract_type: str,
        environment: Optional[str] = None,
        pending_key: Optional[str] = None,
    ) -> GrantResult:
        contract_address = checksum(contract_address)
        handler = privilege_from_name(privilege)

        sender = checksum(self.client.sender)
        if not handler.is_admin(self.client, contract_address, contract_type, sender):
            raise Unauthorized(
                f"{sender} is not allowed to grant {handler.name} on {contract_type}",
                environment=environment,
                address=contract_address,
            )

        # de-duplicate, keeping order
        unique_targets = list(dict.fromkeys(checksum(t) for t in targets))
        already_granted, to_grant = list(), list()
        for target in unique_targets:
            if handler.is_granted(self.client, contract_address, contract_type, target):
                already_granted.append(target)
            else:
                to_grant.append(target)

        if already_granted:
            print(f"(i) {', '.join(already_granted)} already granted {handler.name}")
        if not to_grant:
            return GrantResult(handler.name, [], already_granted, [])

        tx_hashes = list()
        transactions = handler.grant_transactions(
            self.client, contract_address, contract_type, to_grant
        )
        for label, transaction in transactions:
            key = f"{pending_key}:{label}" if pending_key else None
            try:
                receipt = self.transactor.transact(
                    transaction, environment=environment, pending_key=key
                )
            except TransactionReverted as e:
                raise ConfigError(
                    f"Granting {handler.name} on {contract_type} reverted ({e.tx_hash})",
                    environment=environment,
                    address=contract_address,
                ) from e
            tx_hashes.append(receipt.tx_hash)

        print(f"{', '.join(to_grant)} has been granted {handler.name} role")
        return GrantResult(handler.name, to_grant, already_granted, tx_hashes)
