from typing import Any, List, NamedTuple, Optional

from eth_typing import ChecksumAddress

from chaindeploy.chain import ChainClient, Receipt, Transaction, TxHash, wait_for_receipt
from chaindeploy.confirm import _confirm_resolution, _continue
from chaindeploy.constants import DEFAULT_POLL_INTERVAL
from chaindeploy.errors import DeployError, TransactionReverted
from chaindeploy.params import ContractSpec
from chaindeploy.registry import DeploymentRecordStore, PendingTransactionJournal


class DeployResult(NamedTuple):
    name: str
    environment: str
    address: ChecksumAddress
    tx_hash: TxHash
    arguments: List[Any]


class Transactor:
    """
    Represents a chain client plus annotated, confirmed transaction execution.

    When a journal and a pending key are given, the transaction hash is journaled
    right after submission. A later call with the same key first reconciles the
    journaled transaction: a successful receipt is reused instead of resubmitting,
    a reverted one is dropped and the transaction is submitted again.
    """

    def __init__(
        self,
        client: ChainClient,
        journal: Optional[PendingTransactionJournal] = None,
        timeout: Optional[float] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        autosign: bool = False,
    ):
        self.client = client
        self.journal = journal
        self.timeout = timeout
        self.poll_interval = poll_interval
        if autosign:
            print("WARNING: Autosign is enabled. Transactions will be signed automatically.")
        self.autosign = autosign

    def _reconcile(self, environment: str, pending_key: str) -> Optional[Receipt]:
        tx_hash = self.journal.get(environment, pending_key)
        if tx_hash is None:
            return None

        print(f"(i) Reconciling pending transaction {tx_hash} for {pending_key}")
        receipt = wait_for_receipt(
            self.client, tx_hash, timeout=self.timeout, poll_interval=self.poll_interval
        )
        if receipt.succeeded:
            print(f"(i) Reusing confirmed transaction {tx_hash}")
            return receipt

        print(f"(i) Pending transaction {tx_hash} reverted; resubmitting")
        self.journal.clear(environment, pending_key)
        return None

    def transact(
        self,
        transaction: Transaction,
        environment: Optional[str] = None,
        pending_key: Optional[str] = None,
    ) -> Receipt:
        """Submits a transaction and blocks until it is confirmed on-chain."""
        journaled = self.journal is not None and pending_key is not None
        if journaled:
            receipt = self._reconcile(environment, pending_key)
            if receipt is not None:
                return receipt

        print(f"\nTransacting {transaction.describe()}")
        if transaction.args and not transaction.is_creation:
            pretty_args = "\n\t".join(str(arg) for arg in transaction.args)
            print(f"with arguments:\n\t{pretty_args}")
        if not self.autosign and not transaction.is_creation:
            _continue()

        tx_hash = self.client.submit_transaction(transaction)
        print(f"(i) Submitted {tx_hash}")
        if journaled:
            self.journal.set(environment, pending_key, tx_hash)

        receipt = wait_for_receipt(
            self.client, tx_hash, timeout=self.timeout, poll_interval=self.poll_interval
        )
        if not receipt.succeeded:
            if journaled:
                self.journal.clear(environment, pending_key)
            raise TransactionReverted(
                f"Transaction {tx_hash} ({transaction.describe()}) reverted",
                tx_hash=tx_hash,
                environment=environment,
                address=transaction.to,
            )
        return receipt


class ContractDeployer(Transactor):
    """
    Deploys a single contract described by a ``ContractSpec``, resolving its
    constructor arguments against the deployment record. Writing the resulting
    address back to the record is left to the caller.
    """

    def __init__(self, client: ChainClient, store: DeploymentRecordStore, **kwargs):
        super().__init__(client, **kwargs)
        self.store = store

    def resolve(self, spec: ContractSpec) -> List[Any]:
        return spec.resolve(store=self.store, sender=self.client.sender)

    def deploy(self, spec: ContractSpec, pending_key: Optional[str] = None) -> DeployResult:
        # resolution fails closed before anything is submitted
        resolved_args = self.resolve(spec)

        receipt = None
        if self.journal is not None and pending_key is not None:
            # an orphan creation that was confirmed meanwhile needs no new approval
            receipt = self._reconcile(spec.environment, pending_key)

        if receipt is None:
            if not self.autosign:
                _confirm_resolution(resolved_args, spec.contract_type, spec.parameter_names)
            print(f"\nDeploying {spec.contract_type} as {spec.name} in {spec.environment}...")
            receipt = self.transact(
                Transaction.creation(spec.contract_type, *resolved_args),
                environment=spec.environment,
                pending_key=pending_key,
            )

        if receipt.contract_address is None:
            raise DeployError(
                f"Transaction {receipt.tx_hash} did not create a contract",
                environment=spec.environment,
            )

        print(f"(i) {spec.name} deployed at {receipt.contract_address}")
        return DeployResult(
            name=spec.name,
            environment=spec.environment,
            address=receipt.contract_address,
            tx_hash=receipt.tx_hash,
            arguments=resolved_args,
        )
