from typing import Optional


class DeploymentError(Exception):
    """
    Base class for failures of a deployment, upgrade or configuration step.
    Carries the step, environment and on-chain address involved (when known)
    so that a re-run can be targeted precisely.
    """

    def __init__(
        self,
        message: str,
        environment: Optional[str] = None,
        step: Optional[str] = None,
        address: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.environment = environment
        self.step = step
        self.address = address

    def annotate(
        self, step: Optional[str] = None, environment: Optional[str] = None
    ) -> "DeploymentError":
        """Fills in the step and environment, keeping values already set."""
        self.step = self.step or step
        self.environment = self.environment or environment
        return self

    def __str__(self) -> str:
        details = list()
        if self.step:
            details.append(f"step={self.step}")
        if self.environment:
            details.append(f"environment={self.environment}")
        if self.address:
            details.append(f"address={self.address}")
        if not details:
            return self.message
        return f"{self.message} [{', '.join(details)}]"


class RecordNotFound(DeploymentError, KeyError):
    """Raised when a name is not present in an environment's deployment record."""


class RecordWriteFailed(DeploymentError):
    """
    Raised when a contract was confirmed on-chain but its address
    could not be persisted to the deployment record.
    """


class EnvironmentLocked(DeploymentError):
    """Raised when another run already holds an environment."""


class InvalidPipeline(DeploymentError, ValueError):
    """Raised when a pipeline file is malformed."""


class DeployError(DeploymentError):
    """Raised when a contract deployment fails."""


class UnresolvedDependency(DeployError):
    """Raised when a referenced record entry, constant or variable is missing."""

    def __init__(self, message: str, reference: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.reference = reference


class TransactionReverted(DeploymentError):
    """Raised when a transaction was included on-chain but reverted."""

    def __init__(self, message: str, tx_hash: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.tx_hash = tx_hash


class ConfirmationTimeout(DeploymentError):
    """
    Raised when a submitted transaction was not confirmed within the
    caller-imposed window. The transaction may still be included later;
    re-check ``tx_hash`` before resubmitting.
    """

    def __init__(self, message: str, tx_hash: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.tx_hash = tx_hash


class UpgradeError(DeploymentError):
    """Raised when a proxy upgrade fails."""


class NotAProxy(UpgradeError):
    """Raised when the target address has no EIP1967 implementation slot set."""


class VerificationFailed(UpgradeError):
    """Raised when the implementation slot does not point at the new logic after an upgrade."""

    def __init__(
        self, message: str, expected: Optional[str] = None, actual: Optional[str] = None, **kwargs
    ):
        super().__init__(message, **kwargs)
        self.expected = expected
        self.actual = actual


class Unauthorized(DeploymentError):
    """Raised when the signer lacks the privilege required for an operation."""


class ConfigError(DeploymentError):
    """Raised when a post-deployment configuration transaction fails."""
