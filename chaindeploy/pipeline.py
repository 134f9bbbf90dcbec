import typing
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Set, Tuple

from eth_utils import to_bytes

from chaindeploy.chain import ChainClient
from chaindeploy.configurator import PostDeploymentConfigurator
from chaindeploy.constants import DEFAULT_POLL_INTERVAL
from chaindeploy.deployer import ContractDeployer
from chaindeploy.errors import DeploymentError, InvalidPipeline, UnresolvedDependency
from chaindeploy.layout import optional_layout_check
from chaindeploy.params import (
    ContractSpec,
    RecordReference,
    Variable,
    VariableContext,
    _collect_variables,
    _process_raw_value,
    _resolve_param,
)
from chaindeploy.registry import DeploymentRecordStore, PendingTransactionJournal, logic_name
from chaindeploy.upgrader import ProxyUpgrader
from chaindeploy.utils import _load_yaml, checksum

CONTRACT_CONSTRUCTOR_PARAMETER_KEY = "constructor"
CONTRACT_UPGRADE_PARAMETER_KEY = "upgrade"
CONTRACT_TYPE_KEY = "contract_type"


class StepStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepResult(NamedTuple):
    step: str
    status: StepStatus
    addresses: Optional[Dict[str, str]] = None
    error: Optional[DeploymentError] = None


class PipelineReport:
    """Outcome of running a pipeline against one environment."""

    def __init__(self, environment: str):
        self.environment = environment
        self.results: List[StepResult] = list()

    def add(self, result: StepResult) -> None:
        self.results.append(result)

    @property
    def failed(self) -> Optional[StepResult]:
        for result in self.results:
            if result.status == StepStatus.FAILED:
                return result
        return None

    @property
    def succeeded(self) -> bool:
        return self.failed is None

    def raise_for_failure(self) -> None:
        failure = self.failed
        if failure is not None:
            raise failure.error

    def __repr__(self):
        summary = ", ".join(f"{r.step}={r.status.value}" for r in self.results)
        return f"PipelineReport({self.environment}: {summary})"


# Steps


class Step(ABC):
    kind: str

    def __init__(self, name: str, environment: str):
        self.name = name
        self.environment = environment

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.name}"

    def produces(self) -> List[str]:
        """Record names this step writes into its environment."""
        return []

    @abstractmethod
    def variables(self) -> List[Variable]:
        raise NotImplementedError

    @abstractmethod
    def run(self, orchestrator: "DeploymentOrchestrator") -> StepResult:
        raise NotImplementedError

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.key}>"


class DeployStep(Step):
    kind = "deploy"

    def __init__(self, spec: ContractSpec, redeploy: bool = False):
        super().__init__(name=spec.name, environment=spec.environment)
        self.spec = spec
        self.redeploy = redeploy

    def produces(self) -> List[str]:
        return [self.spec.name]

    def variables(self) -> List[Variable]:
        return self.spec.variables()

    def run(self, orchestrator):
        store = orchestrator.store
        existing = store.find(self.environment, self.name)
        if existing is not None and not self.redeploy:
            print(f"(i) {self.name} already deployed at {existing}; skipping")
            return StepResult(self.key, StepStatus.SKIPPED, {self.name: existing})

        result = orchestrator.deployer.deploy(self.spec, pending_key=self.key)
        orchestrator.persist(self, self.name, result.address)
        orchestrator.journal.clear(self.environment, self.key)
        return StepResult(self.key, StepStatus.SUCCEEDED, {self.name: result.address})


class UpgradeStep(Step):
    kind = "upgrade"

    def __init__(
        self,
        spec: ContractSpec,
        proxy: Any,
        data: bytes = b"",
        layout: Optional[Tuple[Path, Path]] = None,
        redeploy: bool = False,
    ):
        super().__init__(name=spec.name, environment=spec.environment)
        self.spec = spec
        self.proxy = proxy
        self.data = data
        self.layout = layout
        self.redeploy = redeploy

    @property
    def completion_key(self) -> str:
        return f"{self.key}@{self.spec.contract_type}"

    def produces(self) -> List[str]:
        return [self.name, logic_name(self.name)]

    def variables(self) -> List[Variable]:
        return [*_collect_variables(self.proxy), *self.spec.variables()]

    def _completed(self, orchestrator, proxy_address: str) -> Optional[str]:
        """Returns the logic this upgrade installed if the proxy still points at it."""
        upgraded_to = orchestrator.journal.completed(self.environment, self.completion_key)
        if upgraded_to is None:
            return None
        if orchestrator.upgrader.implementation(proxy_address) != upgraded_to:
            return None
        return upgraded_to

    def run(self, orchestrator):
        proxy_address = _resolve_param(self.proxy, orchestrator.store)
        upgraded_to = None if self.redeploy else self._completed(orchestrator, proxy_address)
        if upgraded_to is not None:
            print(f"(i) {self.name} already upgraded to {upgraded_to}; skipping")
            addresses = {self.name: proxy_address, logic_name(self.name): upgraded_to}
            return StepResult(self.key, StepStatus.SKIPPED, addresses)

        if self.layout is not None:
            optional_layout_check(*self.layout)

        result = orchestrator.upgrader.upgrade(
            proxy_address, self.spec, data=self.data, pending_key=self.key
        )
        orchestrator.persist(self, self.name, result.proxy_address)
        orchestrator.persist(self, logic_name(self.name), result.logic_address)
        orchestrator.journal.clear(self.environment, self.key)
        orchestrator.journal.complete(self.environment, self.completion_key, result.logic_address)
        addresses = {self.name: result.proxy_address, logic_name(self.name): result.logic_address}
        return StepResult(self.key, StepStatus.SUCCEEDED, addresses)


class ConfigureStep(Step):
    kind = "configure"

    def __init__(
        self,
        name: str,
        environment: str,
        contract: Any,
        contract_type: str,
        privilege: str,
        targets: List[Any],
    ):
        super().__init__(name=name, environment=environment)
        self.contract = contract
        self.contract_type = contract_type
        self.privilege = privilege
        self.targets = targets

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.name}:{self.privilege}"

    def variables(self) -> List[Variable]:
        return [*_collect_variables(self.contract), *_collect_variables(self.targets)]

    def run(self, orchestrator):
        store = orchestrator.store
        sender = orchestrator.client.sender
        contract_address = _resolve_param(self.contract, store, sender)
        targets = _resolve_param(self.targets, store, sender)
        orchestrator.configurator.grant_privilege(
            contract_address,
            self.privilege,
            targets,
            contract_type=self.contract_type,
            environment=self.environment,
            pending_key=self.key,
        )
        orchestrator.journal.clear(self.environment, self.key)
        return StepResult(self.key, StepStatus.SUCCEEDED, {self.name: contract_address})


# Declaration


def _single_entry(entry: Any, section: str) -> Tuple[str, dict]:
    if isinstance(entry, str):
        return entry, dict()
    if isinstance(entry, dict) and len(entry) == 1:
        name = list(entry.keys())[0]  # only one entry
        return name, entry[name] or dict()
    raise InvalidPipeline(f"Malformed '{section}' entry: {entry!r}")


def _proxy_value(value: Any, default_name: str, context: VariableContext) -> Any:
    """
    Returns a reference to a recorded contract (``$Name`` by default) or, for
    contracts that were never recorded, a literal checksummed address.
    """
    value = value or f"{Variable.VARIABLE_PREFIX}{default_name}"
    if not Variable.is_variable(value):
        return checksum(value)
    reference = _process_raw_value(value, context)
    if not isinstance(reference, RecordReference):
        raise InvalidPipeline(f"'{value}' does not refer to a recorded contract")
    return reference


def _upgrade_data(value: Any) -> bytes:
    if not value:
        return b""
    if isinstance(value, bytes):
        return value
    return to_bytes(hexstr=value)


def validate_config(config: typing.Dict) -> str:
    """Checks the top level structure of a pipeline file and returns its environment."""
    if not isinstance(config, dict):
        raise InvalidPipeline("Pipeline file is empty or not a mapping.")

    deployment = config.get("deployment")
    if not deployment:
        raise InvalidPipeline("deployment is not set in pipeline file.")

    environment = deployment.get("environment")
    if not environment:
        raise InvalidPipeline("environment is not set in pipeline file.")

    if not config.get("contracts") and not config.get("configure"):
        raise InvalidPipeline("Pipeline file has neither 'contracts' nor 'configure' entries.")

    return str(environment)


def _contract_step(name: str, data: dict, environment: str, constants: dict) -> Step:
    context = VariableContext(environment=environment, constants=constants)
    spec = ContractSpec.declare(
        contract_type=data.get(CONTRACT_TYPE_KEY, name),
        environment=environment,
        arguments=data.get(CONTRACT_CONSTRUCTOR_PARAMETER_KEY),
        record_name=name,
        constants=constants,
    )
    redeploy = bool(data.get("redeploy", False))
    if CONTRACT_UPGRADE_PARAMETER_KEY not in data:
        return DeployStep(spec, redeploy=redeploy)

    upgrade_data = data[CONTRACT_UPGRADE_PARAMETER_KEY] or dict()
    layout = upgrade_data.get("layout")
    if layout is not None:
        layout = (Path(layout["previous"]), Path(layout["current"]))
    return UpgradeStep(
        spec=spec,
        proxy=_proxy_value(upgrade_data.get("proxy"), name, context),
        data=_upgrade_data(upgrade_data.get("data")),
        layout=layout,
        redeploy=redeploy,
    )


def _configure_step(name: str, data: dict, environment: str, constants: dict) -> Step:
    context = VariableContext(environment=environment, constants=constants)
    privilege = data.get("privilege")
    if not privilege:
        raise InvalidPipeline(f"No privilege set for configuration of {name}")
    targets = data.get("targets")
    if not isinstance(targets, list) or not targets:
        raise InvalidPipeline(f"No targets listed for configuration of {name}")

    return ConfigureStep(
        name=name,
        environment=environment,
        contract=_proxy_value(data.get("contract"), name, context),
        contract_type=data.get(CONTRACT_TYPE_KEY, name),
        privilege=privilege,
        targets=_process_raw_value(targets, context),
    )


class Pipeline:
    """
    The ordered steps of one environment: deployments and upgrades in declaration
    order, followed by post-deployment configuration.
    """

    def __init__(self, environment: str, steps: List[Step], path: Optional[Path] = None):
        self.environment = environment
        self.steps = steps
        self.path = path

        keys = [step.key for step in steps]
        duplicates = {key for key in keys if keys.count(key) > 1}
        if duplicates:
            raise InvalidPipeline(f"Duplicate steps in pipeline: {', '.join(sorted(duplicates))}")

    @classmethod
    def from_config(cls, config: typing.Dict, path: Optional[Path] = None) -> "Pipeline":
        print("Processing pipeline...")
        environment = validate_config(config)
        constants = config.get("constants") or dict()

        steps = list()
        for entry in config.get("contracts") or []:
            name, data = _single_entry(entry, "contracts")
            steps.append(_contract_step(name, data, environment, constants))
        for entry in config.get("configure") or []:
            name, data = _single_entry(entry, "configure")
            steps.append(_configure_step(name, data, environment, constants))

        return cls(environment=environment, steps=steps, path=path)

    @classmethod
    def from_yaml(cls, filepath: Path) -> "Pipeline":
        config = _load_yaml(filepath)
        return cls.from_config(config, path=filepath)

    def steps_from(self, from_step: Optional[str] = None) -> Tuple[List[Step], List[Step]]:
        """Splits the steps into those skipped and those run when resuming at ``from_step``."""
        if from_step is None:
            return [], list(self.steps)
        for index, step in enumerate(self.steps):
            if from_step in (step.key, step.name):
                return self.steps[:index], self.steps[index:]
        raise InvalidPipeline(
            f"No step named '{from_step}' in pipeline", environment=self.environment
        )


# Orchestration


class DeploymentOrchestrator:
    """
    Runs pipelines against one record store: resolves each step's inputs from the
    record, deploys/upgrades/configures, and writes produced addresses back.

    A failed step halts the rest of the pipeline. Record entries written by
    earlier steps are kept, and a re-run resumes safely: recorded contracts are
    not redeployed, applied upgrades are not repeated, and journaled transactions are
    reconciled before resubmitting.
    """

    def __init__(
        self,
        client: ChainClient,
        store: DeploymentRecordStore,
        journal: Optional[PendingTransactionJournal] = None,
        timeout: Optional[float] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        autosign: bool = False,
    ):
        self.client = client
        self.store = store
        self.journal = journal or PendingTransactionJournal.beside(store)
        self.deployer = ContractDeployer(
            client,
            store,
            journal=self.journal,
            timeout=timeout,
            poll_interval=poll_interval,
            autosign=autosign,
        )
        self.upgrader = ProxyUpgrader(self.deployer)
        self.configurator = PostDeploymentConfigurator(self.deployer)

    def persist(self, step: Step, name: str, address: str) -> None:
        try:
            self.store.set(step.environment, name, address)
        except DeploymentError as e:
            print(
                f"(!) {name} is live at {address} but was not recorded; "
                f"record it with: chaindeploy set-record {step.environment} {name} {address}"
            )
            raise e.annotate(step=step.key)

    def validate(self, steps: List[Step], environment: str) -> None:
        """
        Checks every variable of every step before anything is submitted. Names in
        the step's own environment may also come from earlier steps of the pipeline.
        """
        print("Resolving dependencies...")
        available: Set[str] = set(self.store.snapshot(environment))
        for step in steps:
            for variable in step.variables():
                try:
                    if isinstance(variable, RecordReference):
                        planned = (
                            variable.environment == environment and variable.name in available
                        )
                        if not planned:
                            variable.resolve(self.store)
                    else:
                        variable.resolve(self.store, self.client.sender)
                except UnresolvedDependency as e:
                    raise e.annotate(step=step.key, environment=environment)
            available.update(step.produces())

    @staticmethod
    def _fail(report: PipelineReport, step: Step, error: DeploymentError) -> None:
        print(f"(!) {error}")
        report.add(StepResult(step.key, StepStatus.FAILED, error=error))

    def run(self, pipeline: Pipeline, from_step: Optional[str] = None) -> PipelineReport:
        environment = pipeline.environment
        report = PipelineReport(environment)
        skipped, steps = pipeline.steps_from(from_step)
        for step in skipped:
            report.add(StepResult(step.key, StepStatus.SKIPPED))

        with self.store.lock_environment(environment):
            try:
                self.validate(steps, environment)
            except UnresolvedDependency as e:
                report.add(StepResult(e.step, StepStatus.FAILED, error=e))
                return report

            for step in steps:
                print(f"\n=== {step.key} ({environment}) ===")
                try:
                    result = step.run(self)
                except DeploymentError as e:
                    self._fail(report, step, e.annotate(step=step.key, environment=environment))
                    break
                except Exception as e:
                    error = DeploymentError(
                        f"{type(e).__name__}: {e}", step=step.key, environment=environment
                    )
                    error.__cause__ = e
                    self._fail(report, step, error)
                    break
                report.add(result)

        return report


def run_environments(
    runs: List[Tuple[DeploymentOrchestrator, Pipeline]], max_workers: Optional[int] = None
) -> Dict[str, PipelineReport]:
    """Runs pipelines of distinct environments in parallel."""
    environments = [pipeline.environment for _, pipeline in runs]
    if len(set(environments)) != len(environments):
        raise InvalidPipeline("An environment can only be run by a single pipeline at a time.")

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {
            pipeline.environment: executor.submit(orchestrator.run, pipeline)
            for orchestrator, pipeline in runs
        }
        return {environment: future.result() for environment, future in futures.items()}
