from typing import NamedTuple, Optional

from eth_typing import ChecksumAddress

from chaindeploy.chain import Transaction, TxHash
from chaindeploy.constants import (
    EIP1967_ADMIN_SLOT,
    EIP1967_IMPLEMENTATION_SLOT,
    PROXY_ADMIN_CONTRACT,
)
from chaindeploy.deployer import ContractDeployer
from chaindeploy.errors import (
    DeploymentError,
    NotAProxy,
    Unauthorized,
    UpgradeError,
    VerificationFailed,
)
from chaindeploy.params import ContractSpec
from chaindeploy.utils import address_from_word, checksum


class ProxyBinding(NamedTuple):
    """A proxy and the logic contract its EIP1967 implementation slot points at."""

    proxy_address: ChecksumAddress
    logic_address: ChecksumAddress
    admin_address: Optional[ChecksumAddress] = None

    @property
    def is_transparent(self) -> bool:
        """Transparent proxies are upgraded through their ProxyAdmin; UUPS proxies directly."""
        return self.admin_address is not None


class UpgradeResult(NamedTuple):
    proxy_address: ChecksumAddress
    logic_address: ChecksumAddress
    previous_logic_address: ChecksumAddress
    tx_hash: TxHash


class ProxyUpgrader:
    """
    Repoints an EIP1967 proxy at a newly deployed logic contract.

    The proxy keeps its address and storage; only the implementation slot changes.
    The new logic's storage layout must be append-compatible with the old one.
    That is not verified here (see ``chaindeploy.layout`` for a best-effort check).
    """

    def __init__(self, deployer: ContractDeployer):
        self.deployer = deployer
        self.client = deployer.client

    def binding(self, proxy_address: str) -> ProxyBinding:
        proxy_address = checksum(proxy_address)
        implementation_slot = self.client.get_storage_at(
            proxy_address, EIP1967_IMPLEMENTATION_SLOT
        )
        logic_address = address_from_word(implementation_slot)
        if logic_address is None:
            raise NotAProxy(
                f"Implementation slot for contract at {proxy_address} is empty. "
                "Are you sure this is an EIP1967-compatible proxy?",
                address=proxy_address,
            )
        admin_slot = self.client.get_storage_at(proxy_address, EIP1967_ADMIN_SLOT)
        return ProxyBinding(
            proxy_address=proxy_address,
            logic_address=logic_address,
            admin_address=address_from_word(admin_slot),
        )

    def implementation(self, proxy_address: str) -> ChecksumAddress:
        return self.binding(proxy_address).logic_address

    def _upgrade_admin(self, binding: ProxyBinding, contract_type: str) -> ChecksumAddress:
        if binding.is_transparent:
            owner = self.client.call(binding.admin_address, PROXY_ADMIN_CONTRACT, "owner")
        else:
            owner = self.client.call(binding.proxy_address, contract_type, "owner")
        return checksum(owner)

    def _check_authorized(self, binding: ProxyBinding, contract_type: str) -> None:
        upgrade_admin = self._upgrade_admin(binding, contract_type)
        sender = checksum(self.client.sender)
        if upgrade_admin != sender:
            raise Unauthorized(
                f"{sender} cannot upgrade the proxy at {binding.proxy_address}; "
                f"upgrades are restricted to {upgrade_admin}",
                address=binding.proxy_address,
            )

    def _upgrade_transaction(
        self, binding: ProxyBinding, logic_address: ChecksumAddress, contract_type: str, data
    ) -> Transaction:
        if binding.is_transparent:
            return Transaction.invocation(
                binding.admin_address,
                PROXY_ADMIN_CONTRACT,
                "upgradeAndCall",
                binding.proxy_address,
                logic_address,
                data,
            )
        return Transaction.invocation(
            binding.proxy_address, contract_type, "upgradeToAndCall", logic_address, data
        )

    def upgrade(
        self,
        proxy_address: str,
        logic_spec: ContractSpec,
        data: bytes = b"",
        pending_key: Optional[str] = None,
    ) -> UpgradeResult:
        binding = self.binding(proxy_address)
        self._check_authorized(binding, logic_spec.contract_type)

        logic = self.deployer.deploy(
            logic_spec, pending_key=f"{pending_key}:logic" if pending_key else None
        )
        try:
            return self._point_proxy_at(binding, logic.address, logic_spec, data, pending_key)
        except DeploymentError as e:
            # the new logic stays deployed and journaled; report where it lives
            e.address = logic.address
            raise
        except Exception as e:
            raise UpgradeError(
                f"Upgrade of {binding.proxy_address} to {logic.address} failed: {e}",
                address=logic.address,
                environment=logic_spec.environment,
            ) from e

    def _point_proxy_at(
        self,
        binding: ProxyBinding,
        logic_address: ChecksumAddress,
        logic_spec: ContractSpec,
        data: bytes,
        pending_key: Optional[str],
    ) -> UpgradeResult:
        print(
            f"\nUpgrading {logic_spec.name} at {binding.proxy_address} "
            f"from {binding.logic_address} to {logic_address}"
        )
        receipt = self.deployer.transact(
            self._upgrade_transaction(binding, logic_address, logic_spec.contract_type, data),
            environment=logic_spec.environment,
            pending_key=f"{pending_key}:upgrade" if pending_key else None,
        )

        current_logic_address = self.implementation(binding.proxy_address)
        if current_logic_address != logic_address:
            raise VerificationFailed(
                f"Implementation slot of {binding.proxy_address} points at "
                f"{current_logic_address}, expected {logic_address}",
                expected=logic_address,
                actual=current_logic_address,
                address=logic_address,
                environment=logic_spec.environment,
            )

        print(f"{logic_spec.name} proxy address: {binding.proxy_address}")
        print(f"{logic_spec.name} logic address: {current_logic_address}")
        return UpgradeResult(
            proxy_address=binding.proxy_address,
            logic_address=current_logic_address,
            previous_logic_address=binding.logic_address,
            tx_hash=receipt.tx_hash,
        )
