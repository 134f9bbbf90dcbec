import time
from abc import ABC, abstractmethod
from typing import Any, NamedTuple, Optional, Tuple

from eth_typing import ChecksumAddress

from chaindeploy.constants import DEFAULT_POLL_INTERVAL
from chaindeploy.errors import ConfirmationTimeout

TxHash = str


class Transaction(NamedTuple):
    """
    A state-changing operation to submit: either the creation of ``contract_type``
    (``to`` is None) or a call of ``method`` on the contract at ``to``.
    """

    contract_type: str
    args: Tuple[Any, ...] = ()
    to: Optional[ChecksumAddress] = None
    method: Optional[str] = None

    @classmethod
    def creation(cls, contract_type: str, *args) -> "Transaction":
        return cls(contract_type=contract_type, args=tuple(args))

    @classmethod
    def invocation(
        cls, to: ChecksumAddress, contract_type: str, method: str, *args
    ) -> "Transaction":
        return cls(contract_type=contract_type, args=tuple(args), to=to, method=method)

    @property
    def is_creation(self) -> bool:
        return self.to is None

    def describe(self) -> str:
        if self.is_creation:
            return f"create {self.contract_type}"
        return f"{self.contract_type}[{self.to[:10]}].{self.method}"


class Receipt(NamedTuple):
    tx_hash: TxHash
    status: int
    block_number: int
    contract_address: Optional[ChecksumAddress] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class ChainClient(ABC):
    """
    The chain primitives the orchestration core depends on. Signing is an
    injected capability of the client; ``sender`` is the signer's address.
    """

    @property
    @abstractmethod
    def sender(self) -> ChecksumAddress:
        raise NotImplementedError

    @abstractmethod
    def submit_transaction(self, transaction: Transaction) -> TxHash:
        """Signs and broadcasts a transaction without waiting for inclusion."""
        raise NotImplementedError

    @abstractmethod
    def call(self, address: ChecksumAddress, contract_type: str, method: str, *args) -> Any:
        """Read-only call."""
        raise NotImplementedError

    @abstractmethod
    def get_transaction_receipt(self, tx_hash: TxHash) -> Optional[Receipt]:
        """Returns the receipt of an included transaction, or None if not (yet) included."""
        raise NotImplementedError

    @abstractmethod
    def get_storage_at(self, address: ChecksumAddress, slot: int) -> bytes:
        raise NotImplementedError


def wait_for_receipt(
    client: ChainClient,
    tx_hash: TxHash,
    timeout: Optional[float] = None,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> Receipt:
    """
    Blocks until ``tx_hash`` is included on-chain.

    There is no timeout unless the caller imposes one; on expiry
    :class:`ConfirmationTimeout` is raised carrying the transaction hash,
    which must be re-checked before anything is resubmitted.
    """
    started_at = time.monotonic()
    while True:
        receipt = client.get_transaction_receipt(tx_hash)
        if receipt is not None:
            return receipt

        if timeout is not None and time.monotonic() - started_at >= timeout:
            raise ConfirmationTimeout(
                f"Transaction {tx_hash} not confirmed after {timeout}s", tx_hash=tx_hash
            )
        time.sleep(poll_interval)
