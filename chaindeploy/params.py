import os
import typing
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, List, NamedTuple, Optional, Tuple

from eth_typing import ChecksumAddress

from chaindeploy.constants import ZERO_ADDRESS
from chaindeploy.errors import InvalidPipeline, UnresolvedDependency
from chaindeploy.registry import DeploymentRecordStore


class VariableContext:
    def __init__(self, environment: str, constants: typing.Dict[str, Any] = None):
        self.environment = environment
        self.constants = constants or dict()


# Variables


class Variable(ABC):
    VARIABLE_PREFIX = "$"

    @abstractmethod
    def resolve(
        self, store: DeploymentRecordStore, sender: Optional[ChecksumAddress] = None
    ) -> Any:
        raise NotImplementedError

    @classmethod
    def is_variable(cls, param: Any) -> bool:
        """Returns True if the param is a variable."""
        result = isinstance(param, str) and param.startswith(cls.VARIABLE_PREFIX)
        return result


class DeployerAccount(Variable):
    DEPLOYER_INDICATOR = "deployer"

    @classmethod
    def is_deployer(cls, value: str) -> bool:
        """Returns True if the variable is a special deployer variable."""
        return value == cls.DEPLOYER_INDICATOR

    def resolve(self, store, sender=None) -> Any:
        if sender is None:
            return ZERO_ADDRESS
        return sender

    def __repr__(self):
        return f"${self.DEPLOYER_INDICATOR}"


class Constant(Variable):
    def __init__(self, constant_name: str, context: VariableContext):
        self.constant_name = constant_name
        self.constant_value = context.constants[constant_name]

    @classmethod
    def is_constant(cls, value: str, context: VariableContext) -> bool:
        """Returns True if the variable names a constant of the pipeline file."""
        return value.isupper() and value in context.constants

    def resolve(self, store, sender=None) -> Any:
        return self.constant_value

    def __repr__(self):
        return f"${self.constant_name}"


class EnvironmentVariable(Variable):
    ENV_PREFIX = "env:"

    def __init__(self, variable: str):
        self.variable_name = variable[len(self.ENV_PREFIX) :]
        if not self.variable_name:
            raise InvalidPipeline(f"Empty environment variable name in '${variable}'")

    @classmethod
    def is_environment_variable(cls, value: str) -> bool:
        return value.startswith(cls.ENV_PREFIX)

    def resolve(self, store, sender=None) -> Any:
        try:
            return os.environ[self.variable_name]
        except KeyError:
            raise UnresolvedDependency(
                f"Environment variable {self.variable_name} is not set",
                reference=repr(self),
            )

    def __repr__(self):
        return f"${self.ENV_PREFIX}{self.variable_name}"


class RecordReference(Variable):
    """
    Refers to the current address of a record entry, either in the
    environment being deployed (``$Name``) or in another one (``$live.Name``).
    """

    ENVIRONMENT_SEPARATOR = "."

    def __init__(self, reference: str, context: VariableContext):
        environment, separator, name = reference.partition(self.ENVIRONMENT_SEPARATOR)
        if not separator:
            environment, name = context.environment, reference
        if not environment or not name:
            raise InvalidPipeline(f"Malformed contract reference '${reference}'")
        self.environment = environment
        self.name = name

    def resolve(self, store, sender=None) -> ChecksumAddress:
        address = store.find(self.environment, self.name)
        if address is None:
            raise UnresolvedDependency(
                f"'{self.name}' is not recorded in environment '{self.environment}'",
                reference=repr(self),
                environment=self.environment,
            )
        return address

    def __repr__(self):
        return f"${self.environment}{self.ENVIRONMENT_SEPARATOR}{self.name}"


def _resolve_param(value: Any, store: DeploymentRecordStore, sender=None) -> Any:
    """Resolves a single parameter value or a list of parameter values."""
    if isinstance(value, (list, tuple)):
        return [_resolve_param(v, store, sender) for v in value]

    if isinstance(value, Variable):
        return value.resolve(store, sender)

    return value  # literally a value


def _collect_variables(value: Any) -> List[Variable]:
    if isinstance(value, (list, tuple)):
        return [variable for v in value for variable in _collect_variables(v)]
    if isinstance(value, Variable):
        return [value]
    return []


def _variable_from_value(variable: str, context: VariableContext) -> Variable:
    variable = variable[len(Variable.VARIABLE_PREFIX) :]
    if DeployerAccount.is_deployer(variable):
        return DeployerAccount()
    elif EnvironmentVariable.is_environment_variable(variable):
        return EnvironmentVariable(variable)
    elif Constant.is_constant(variable, context):
        return Constant(variable, context)
    else:
        return RecordReference(variable, context)


def _process_raw_value(value: Any, variable_context: VariableContext) -> Any:
    if isinstance(value, list):
        return [_process_raw_value(v, variable_context) for v in value]

    if Variable.is_variable(value):
        value = _variable_from_value(value, variable_context)

    return value


def _process_raw_arguments(
    raw_arguments: Any, variable_context: VariableContext
) -> Tuple[Tuple[Any, ...], Tuple[str, ...]]:
    """Accepts constructor arguments as a list or as an ordered name -> value mapping."""
    if raw_arguments is None:
        return (), ()
    if isinstance(raw_arguments, dict):
        parameters = OrderedDict(raw_arguments)
        names = tuple(str(name) for name in parameters)
        values = tuple(_process_raw_value(v, variable_context) for v in parameters.values())
        return values, names
    if isinstance(raw_arguments, (list, tuple)):
        return tuple(_process_raw_value(v, variable_context) for v in raw_arguments), ()
    raise InvalidPipeline(f"Malformed constructor parameters: {raw_arguments!r}")


class ContractSpec(NamedTuple):
    """A contract to deploy into an environment, with its (unresolved) constructor arguments."""

    contract_type: str
    environment: str
    arguments: Tuple[Any, ...] = ()
    parameter_names: Tuple[str, ...] = ()
    record_name: Optional[str] = None

    @classmethod
    def declare(
        cls,
        contract_type: str,
        environment: str,
        arguments: Any = None,
        record_name: Optional[str] = None,
        constants: typing.Dict[str, Any] = None,
    ) -> "ContractSpec":
        """Builds a spec from raw values, turning ``$`` strings into variables."""
        context = VariableContext(environment=environment, constants=constants)
        values, names = _process_raw_arguments(arguments, context)
        return cls(
            contract_type=contract_type,
            environment=environment,
            arguments=values,
            parameter_names=names,
            record_name=record_name,
        )

    @property
    def name(self) -> str:
        """The logical name the contract is recorded under."""
        return self.record_name or self.contract_type

    def variables(self) -> List[Variable]:
        return _collect_variables(self.arguments)

    def resolve(
        self, store: DeploymentRecordStore, sender: Optional[ChecksumAddress] = None
    ) -> List[Any]:
        """
        Resolves every argument, failing with ``UnresolvedDependency`` on the first
        one that cannot be resolved. Nothing is partially returned.
        """
        resolved = list()
        for value in self.arguments:
            resolved.append(_resolve_param(value, store, sender))
        return resolved
