import typing
from typing import Any, List, Optional

from ape import networks, project
from ape.api import AccountAPI
from ape.contracts import ContractContainer
from ape.exceptions import ApeException, ContractLogicError
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address, to_hex
from ethpm_types import MethodABI
from web3 import Web3
from web3.auto import w3
from web3.exceptions import TransactionNotFound, Web3Exception

from chaindeploy.chain import ChainClient, Receipt, Transaction, TxHash
from chaindeploy.errors import DeployError, TransactionReverted


def _get_dependency_contract_container(contract: str) -> ContractContainer:
    for dependency_name, dependency_versions in project.dependencies.items():
        if len(dependency_versions) > 1:
            raise ValueError(f"Ambiguous {dependency_name} dependency for {contract}")
        try:
            dependency_api = list(dependency_versions.values())[0]
            contract_container = getattr(dependency_api, contract)
            return contract_container
        except AttributeError:
            continue
    raise ValueError(f"No contract found with name '{contract}'.")


def get_contract_container(contract: str) -> ContractContainer:
    try:
        contract_container = getattr(project, contract)
    except AttributeError:
        # not in root project; check dependencies
        contract_container = _get_dependency_contract_container(contract)

    return contract_container


def _validate_method_args(
    method_abis: List[MethodABI], args: typing.Sequence[Any]
) -> typing.Dict[str, Any]:
    """Validates the transaction arguments against the function ABI."""
    if len(method_abis) == 0:
        raise ValueError("No method abis provided for validation of args")

    abis_matching_args_length = [abi for abi in method_abis if len(abi.inputs) == len(args)]
    for abi in abis_matching_args_length:
        named_args = {}
        for arg, abi_input in zip(args, abi.inputs):
            if not w3.is_encodable(abi_input.type, arg):
                break
            named_args[abi_input.name] = arg
        else:
            return named_args
    raise ValueError(
        f"Could not find ABI for '{method_abis[0].name}' with {len(args)} arg(s) and given type(s)"
    )


def _validate_constructor_args(contract_name: str, abi_inputs: List[Any], args) -> None:
    """Validates resolved constructor arguments against the constructor ABI."""
    if len(args) != len(abi_inputs):
        raise DeployError(
            f"Constructor parameters length mismatch - "
            f"{contract_name} ABI requires {len(abi_inputs)}, Got {len(args)}."
        )
    for position, (abi_input, value) in enumerate(zip(abi_inputs, args)):
        if not w3.is_encodable(abi_input.type, value):
            raise DeployError(
                f"{contract_name} constructor parameter '{abi_input.name}' at position {position} "
                f"has a value '{value}' whose type does not match expected ABI type "
                f"'{abi_input.type}'"
            )


class ApeChainClient(ChainClient):
    """
    Chain client backed by the connected ape provider. Signing is done by the
    injected ape account; contract types are looked up in the ape project and
    its dependencies. Signed transactions are broadcast as raw payloads, so
    submission never waits for inclusion.
    """

    def __init__(
        self, account: AccountAPI, web3: Optional[Web3] = None, required_confirmations: int = 0
    ):
        self._account = account
        self._web3 = web3
        self.required_confirmations = required_confirmations

    @property
    def web3(self) -> Web3:
        return self._web3 or networks.provider.web3

    @property
    def sender(self) -> ChecksumAddress:
        return to_checksum_address(self._account.address)

    def _serialize(self, transaction: Transaction):
        container = get_contract_container(transaction.contract_type)
        if transaction.is_creation:
            _validate_constructor_args(
                transaction.contract_type,
                container.constructor.abi.inputs,
                transaction.args,
            )
            return container.constructor.serialize_transaction(*transaction.args)

        instance = container.at(transaction.to)
        method = getattr(instance, transaction.method)
        _validate_method_args(method_abis=method.abis, args=transaction.args)
        return method.as_transaction(*transaction.args, sender=self._account)

    def _sign(self, transaction: Transaction):
        try:
            txn = self._serialize(transaction)
            txn = self._account.prepare_transaction(txn)
            return self._account.sign_transaction(txn)
        except ContractLogicError as e:
            # gas estimation hit a revert
            raise TransactionReverted(
                f"{transaction.describe()} would revert: {e}", address=transaction.to
            ) from e
        except (ValueError, AttributeError, ApeException) as e:
            raise DeployError(
                f"Could not prepare {transaction.describe()}: {e}", address=transaction.to
            ) from e

    def submit_transaction(self, transaction: Transaction) -> TxHash:
        signed_txn = self._sign(transaction)
        if signed_txn is None:
            raise DeployError(f"Signing of {transaction.describe()} was declined")
        try:
            tx_hash = self.web3.eth.send_raw_transaction(signed_txn.serialize_transaction())
        except (ValueError, Web3Exception) as e:
            raise DeployError(
                f"Could not broadcast {transaction.describe()}: {e}", address=transaction.to
            ) from e
        return to_hex(tx_hash)

    def call(self, address: ChecksumAddress, contract_type: str, method: str, *args) -> Any:
        instance = get_contract_container(contract_type).at(address)
        return getattr(instance, method)(*args)

    def get_transaction_receipt(self, tx_hash: TxHash) -> Optional[Receipt]:
        try:
            receipt = self.web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

        block_number = receipt["blockNumber"]
        if self.required_confirmations > 1:
            confirmations = self.web3.eth.block_number - block_number + 1
            if confirmations < self.required_confirmations:
                return None

        contract_address = receipt.get("contractAddress")
        return Receipt(
            tx_hash=tx_hash,
            status=int(receipt["status"]),
            block_number=block_number,
            contract_address=to_checksum_address(contract_address) if contract_address else None,
        )

    def get_storage_at(self, address: ChecksumAddress, slot: int) -> bytes:
        return bytes(self.web3.eth.get_storage_at(address, slot))
