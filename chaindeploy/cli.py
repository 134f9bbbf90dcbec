import json
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import click
import yaml

from chaindeploy.chain import ChainClient
from chaindeploy.errors import DeploymentError
from chaindeploy.options import (
    account_option,
    autosign_option,
    environment_option,
    network_option,
    proxy_option,
    records_option,
    targets_option,
    timeout_option,
)
from chaindeploy.params import ContractSpec, VariableContext
from chaindeploy.pipeline import (
    ConfigureStep,
    DeployStep,
    DeploymentOrchestrator,
    Pipeline,
    PipelineReport,
    StepStatus,
    UpgradeStep,
    _proxy_value,
    _upgrade_data,
)
from chaindeploy.registry import (
    DeploymentRecordStore,
    PendingTransactionJournal,
    merge_records,
    normalize_records,
)
from chaindeploy.types import ChecksumAddress

STATUS_COLORS = {
    StepStatus.SUCCEEDED: "green",
    StepStatus.SKIPPED: "yellow",
    StepStatus.FAILED: "red",
}


class ChainDeployGroup(click.Group):
    """Reports deployment errors on standard error and exits with status 1."""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except DeploymentError as e:
            click.secho(f"Error: {e}", fg="red", err=True)
            ctx.exit(1)


@contextmanager
def _connected_client(network: str, account_alias: str, autosign: bool) -> Iterator[ChainClient]:
    # ape is only needed by the commands that touch the chain
    from ape import accounts, networks

    from chaindeploy.provider import ApeChainClient

    with networks.parse_network_choice(network):
        account = accounts.load(account_alias)
        if autosign and hasattr(account, "set_autosign"):
            account.set_autosign(True)
        yield ApeChainClient(account)


def _parse_argument(value: str):
    """
    Constructor arguments from the command line are read as YAML scalars (1 -> int),
    except hex strings such as addresses, which stay strings.
    """
    if not value or value.startswith("0x"):
        return value
    return yaml.safe_load(value)


def _display_report(report: PipelineReport) -> None:
    click.secho(f"\n{report.environment}", fg="green")
    for result in report.results:
        click.secho(f"    {result.step}: {result.status.value}", fg=STATUS_COLORS[result.status])
        for name, address in (result.addresses or {}).items():
            click.echo(f"        {name} {address}")


def _run_pipeline(
    pipeline: Pipeline,
    records: Path,
    network: str,
    account: str,
    timeout: Optional[float],
    autosign: bool,
    from_step: Optional[str] = None,
) -> None:
    store = DeploymentRecordStore(records)
    with _connected_client(network, account, autosign) as client:
        orchestrator = DeploymentOrchestrator(
            client=client, store=store, timeout=timeout, autosign=autosign
        )
        report = orchestrator.run(pipeline, from_step=from_step)
    _display_report(report)
    report.raise_for_failure()


@click.group(cls=ChainDeployGroup)
def cli():
    """Deploy, upgrade and configure contracts across environments."""


@cli.command()
@click.argument(
    "pipeline_file", type=click.Path(dir_okay=False, exists=True, path_type=Path)
)
@click.option("--from-step", help="Resume the pipeline at this step", default=None)
@records_option
@network_option
@account_option
@timeout_option
@autosign_option
def run(pipeline_file, from_step, records, network, account, timeout, autosign):
    """Run every step of a pipeline file against its environment."""
    pipeline = Pipeline.from_yaml(pipeline_file)
    _run_pipeline(pipeline, records, network, account, timeout, autosign, from_step=from_step)


@cli.command("deploy-contract")
@click.argument("name")
@click.argument("arguments", nargs=-1)
@click.option("--contract-type", help="Contract to deploy (defaults to NAME)", default=None)
@click.option("--redeploy", help="Deploy even if NAME is already recorded", is_flag=True)
@environment_option
@records_option
@network_option
@account_option
@timeout_option
@autosign_option
def deploy_contract(
    name, arguments, contract_type, redeploy, environment, records, network, account, timeout,
    autosign,
):
    """Deploy a single contract and record it as NAME."""
    spec = ContractSpec.declare(
        contract_type=contract_type or name,
        environment=environment,
        arguments=[_parse_argument(a) for a in arguments],
        record_name=name,
    )
    pipeline = Pipeline(environment=environment, steps=[DeployStep(spec, redeploy=redeploy)])
    _run_pipeline(pipeline, records, network, account, timeout, autosign)


@cli.command("upgrade-proxy")
@click.argument("name")
@click.argument("arguments", nargs=-1)
@click.option("--contract-type", help="New logic contract (defaults to NAME)", default=None)
@click.option("--data", help="Hex encoded call data run after the upgrade", default=None)
@click.option("--redeploy", help="Upgrade even if this upgrade was already applied", is_flag=True)
@proxy_option
@environment_option
@records_option
@network_option
@account_option
@timeout_option
@autosign_option
def upgrade_proxy(
    name, arguments, contract_type, data, redeploy, proxy, environment, records, network,
    account, timeout, autosign,
):
    """Deploy new logic for the proxy recorded as NAME and upgrade the proxy to it."""
    spec = ContractSpec.declare(
        contract_type=contract_type or name,
        environment=environment,
        arguments=[_parse_argument(a) for a in arguments],
        record_name=name,
    )
    context = VariableContext(environment=environment)
    step = UpgradeStep(
        spec=spec,
        proxy=_proxy_value(proxy, name, context),
        data=_upgrade_data(data),
        redeploy=redeploy,
    )
    pipeline = Pipeline(environment=environment, steps=[step])
    _run_pipeline(pipeline, records, network, account, timeout, autosign)


@cli.command("grant-privilege")
@click.argument("name")
@click.option(
    "--privilege", help="Privilege to grant, e.g. operator or INITIATOR_ROLE", required=True
)
@click.option("--contract-type", help="Contract type of NAME (defaults to NAME)", default=None)
@targets_option
@environment_option
@records_option
@network_option
@account_option
@timeout_option
@autosign_option
def grant_privilege(
    name, privilege, contract_type, targets, environment, records, network, account, timeout,
    autosign,
):
    """Grant a privilege on the contract recorded as NAME (idempotent)."""
    context = VariableContext(environment=environment)
    step = ConfigureStep(
        name=name,
        environment=environment,
        contract=_proxy_value(None, name, context),
        contract_type=contract_type or name,
        privilege=privilege,
        targets=list(targets),
    )
    pipeline = Pipeline(environment=environment, steps=[step])
    _run_pipeline(pipeline, records, network, account, timeout, autosign)


@cli.command()
@click.option("--environment", "-e", help="Only show this environment", default=None)
@click.option("--json", "as_json", help="Print the record as JSON", is_flag=True)
@records_option
def show(environment, as_json, records):
    """Show the recorded addresses."""
    store = DeploymentRecordStore(records)
    environments = [environment] if environment else store.environments()
    data = {env: store.snapshot(env) for env in environments}
    if as_json:
        click.echo(json.dumps(data, indent=4, sort_keys=True))
        return
    for env, entries in data.items():
        click.secho(f"\n{env}", fg="green")
        for index, (name, address) in enumerate(sorted(entries.items()), start=1):
            click.secho(f"    {index}. {name} {address}", fg="cyan")


@cli.command("set-record")
@click.argument("environment")
@click.argument("name")
@click.argument("address", type=ChecksumAddress())
@records_option
def set_record(environment, name, address, records):
    """Record ADDRESS for NAME, e.g. after a deployment whose record write failed."""
    DeploymentRecordStore(records).set(environment, name, address)
    click.echo(f"{environment}.{name} = {address}")


@cli.command("forget-pending")
@click.argument("environment")
@click.argument("key", required=False)
@records_option
def forget_pending(environment, key, records):
    """Drop journaled transactions of ENVIRONMENT (all, or those of step KEY)."""
    journal = PendingTransactionJournal.beside(DeploymentRecordStore(records))
    keys = [key] if key else list(journal.pending(environment))
    for pending_key in keys:
        journal.clear(environment, pending_key)
        click.echo(f"Forgot pending {pending_key}")


@cli.command()
@click.option(
    "--records-1",
    help="Filepath to record file 1",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    required=True,
)
@click.option(
    "--records-2",
    help="Filepath to record file 2",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    required=True,
)
@click.option(
    "--output-records",
    "-o",
    help="Filepath of output record file",
    type=click.Path(dir_okay=False, exists=False, path_type=Path),
    required=True,
)
@click.option(
    "--deprecated-contract",
    "-d",
    "deprecated_contracts",
    help="Names of any deprecated contracts to exclude from the merge",
    required=False,
    multiple=True,
)
def merge(records_1, records_2, output_records, deprecated_contracts):
    """Merge two record files into one."""
    merge_records(
        record_1_filepath=records_1,
        record_2_filepath=records_2,
        output_filepath=output_records,
        deprecated_contracts=list(deprecated_contracts),
    )


@cli.command()
@click.argument("record_file", type=click.Path(dir_okay=False, exists=True, path_type=Path))
def normalize(record_file):
    """Normalize a (possibly legacy) record file."""
    normalize_records(record_file)


if __name__ == "__main__":
    cli()
