from pathlib import Path

import click

from socket_deployment.constants import (
    ARTIFACTS_DIR,
    DEPLOYMENT_MODE_ENVVAR,
    SUPPORTED_MODES,
    DeploymentMode,
)
from socket_deployment.types import MinInt, TransactionHash

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]

mode_option = click.option(
    "--mode",
    "-m",
    help="Deployment mode",
    type=click.Choice(SUPPORTED_MODES),
    envvar=DEPLOYMENT_MODE_ENVVAR,
    default=DeploymentMode.DEV.value,
    show_default=True,
)

config_option = click.option(
    "--config",
    "-c",
    "config_filepath",
    help="Deployment config file; defaults to the bundled topology for the mode",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    required=False,
)

artifacts_dir_option = click.option(
    "--artifacts-dir",
    help="Directory holding the address and verification ledgers",
    type=click.Path(file_okay=False, path_type=Path),
    default=ARTIFACTS_DIR,
    show_default=True,
)

manifest_option = click.option(
    "--manifest",
    "manifests",
    help="Compiled package manifest; repeat for dependencies",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    multiple=True,
)

foundry_out_option = click.option(
    "--foundry-out",
    help="Read contract artifacts from a forge out/ directory instead of the package manifests",
    type=click.Path(file_okay=False, exists=True, path_type=Path),
    required=False,
)

log_level_option = click.option(
    "--log-level",
    "-l",
    help="Logging level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
)

chain_option = click.option(
    "--chain",
    "chain_id",
    help="Chain id",
    type=MinInt(1),
    required=True,
)

chains_option = click.option(
    "--chain",
    "chain_ids",
    help="Chain id; repeat for several chains. Defaults to every chain of the deployment",
    type=MinInt(1),
    multiple=True,
)

amount_option = click.option(
    "--amount",
    help="Most wei to rescue from each contract; everything when omitted",
    type=MinInt(1),
    required=False,
)

send_option = click.option(
    "--send",
    help="Send the rescue transactions instead of only reporting balances",
    is_flag=True,
    default=False,
)

tx_hash_argument = click.argument("tx_hash", type=TransactionHash())


DEPLOYMENT_OPTIONS = (
    mode_option,
    config_option,
    artifacts_dir_option,
    manifest_option,
    foundry_out_option,
)


def deployment_options(command):
    """Options shared by every command that talks to a deployment."""
    for option in reversed(DEPLOYMENT_OPTIONS):
        command = option(command)
    return command
