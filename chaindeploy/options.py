from pathlib import Path

import click

from chaindeploy.constants import DEFAULT_RECORD_FILEPATH
from chaindeploy.types import ChecksumAddress, MinFloat

records_option = click.option(
    "--records",
    "-r",
    help="Deployment record file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_RECORD_FILEPATH,
    show_default=True,
    envvar="CHAINDEPLOY_RECORDS",
)

environment_option = click.option(
    "--environment",
    "-e",
    help="Deployment environment (e.g. dev2, live)",
    required=True,
    envvar="CHAINDEPLOY_ENVIRONMENT",
)

network_option = click.option(
    "--network",
    "-n",
    help="Ape network choice, e.g. ethereum:sepolia:infura",
    required=True,
    envvar="CHAINDEPLOY_NETWORK",
)

account_option = click.option(
    "--account",
    "-a",
    help="Alias of the ape account signing transactions",
    required=True,
    envvar="CHAINDEPLOY_ACCOUNT",
)

timeout_option = click.option(
    "--timeout",
    "-t",
    help="Seconds to wait for each on-chain confirmation (waits indefinitely if unset)",
    type=MinFloat(0),
    default=None,
    envvar="CHAINDEPLOY_TIMEOUT",
)

autosign_option = click.option(
    "--autosign",
    help="Sign and submit without interactive confirmation",
    is_flag=True,
    default=False,
)

proxy_option = click.option(
    "--proxy",
    "-p",
    help="Address of the proxy to upgrade (defaults to the recorded address)",
    type=ChecksumAddress(),
    default=None,
)

targets_option = click.option(
    "--target",
    "targets",
    help="Address to grant the privilege to",
    multiple=True,
    required=True,
    type=ChecksumAddress(),
)
