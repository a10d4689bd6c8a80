import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

import click

from socket_deployment.artifacts import ArtifactSource, FoundryArtifacts, ManifestArtifacts
from socket_deployment.config import DeploymentConfig
from socket_deployment.networks import ChainRegistry, NetworkConfigError
from socket_deployment.options import (
    amount_option,
    chain_option,
    chains_option,
    config_option,
    deployment_options,
    log_level_option,
    mode_option,
    send_option,
    tx_hash_argument,
)
from socket_deployment.orchestrator import FATAL_ERRORS, STEPS, Orchestrator

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logger = logging.getLogger(__name__)


def _load_config(mode: str, config_filepath: Optional[Path]) -> DeploymentConfig:
    if config_filepath:
        config = DeploymentConfig.from_yaml(config_filepath)
        if config.mode != mode:
            logger.warning("Config %s is for mode %s, not %s", config_filepath, config.mode, mode)
        return config
    return DeploymentConfig.for_mode(mode)


def _artifacts(options: dict) -> ArtifactSource:
    if options["foundry_out"]:
        return FoundryArtifacts(options["foundry_out"])
    return ManifestArtifacts(*options["manifests"])


def _run(main: Callable[[], Awaitable]):
    try:
        return asyncio.run(main())
    except FATAL_ERRORS as e:
        logger.error("%s", e)
        raise click.ClickException(str(e)) from e


def _orchestrator(options: dict, artifacts: ArtifactSource) -> Orchestrator:
    config = _load_config(options["mode"], options["config_filepath"])
    return Orchestrator.from_env(config, artifacts, directory=options["artifacts_dir"])


def _run_steps(options: dict, steps: Sequence[str], validate: bool = False) -> None:
    async def _main():
        artifacts = _artifacts(options)
        orchestrator = _orchestrator(options, artifacts)
        config = orchestrator.config
        logger.info(
            "Mode: %s, chains: %s, ledger: %s",
            config.mode,
            list(config.chains),
            orchestrator.store.filepath,
        )
        try:
            if validate:
                orchestrator.validate(artifacts)
            return await orchestrator.run(steps)
        finally:
            await orchestrator.close()

    failures = _run(_main)
    for step, step_failures in failures.items():
        for chain_id, error in step_failures.items():
            click.secho(f"{step} failed on {chain_id}: {error}", fg="yellow")


@click.group()
@log_level_option
def cli(log_level):
    """Deploy and reconcile Socket contracts across chains and EVMx."""
    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@cli.command()
@deployment_options
def deploy(**options):
    """Deploy or upgrade the contracts on EVMx and every chain."""
    _run_steps(options, ["deploy"], validate=True)


@cli.command()
@deployment_options
def roles(**options):
    """Grant the roles each deployed contract requires."""
    _run_steps(options, ["roles"])


@cli.command()
@deployment_options
def configure(**options):
    """Wire EVMx contracts and register every chain's contracts on EVMx."""
    _run_steps(options, ["configure"])


@cli.command()
@deployment_options
def connect(**options):
    """Connect plugs to their app gateways on each chain and on EVMx."""
    _run_steps(options, ["connect"])


@cli.command()
@deployment_options
def transmitter(**options):
    """Approve the auction manager and top up transmitter credits."""
    _run_steps(options, ["transmitter"])


@cli.command(name="all")
@deployment_options
def run_all(**options):
    """Run every step in order: deploy, roles, configure, connect, transmitter."""
    _run_steps(options, STEPS, validate=True)


def _with_orchestrator(options: dict, operation: Callable[[Orchestrator], Awaitable]):
    async def _main():
        orchestrator = _orchestrator(options, _artifacts(options))
        try:
            return await operation(orchestrator)
        finally:
            await orchestrator.close()

    return _run(_main)


@cli.command()
@deployment_options
@chains_option
def disconnect(chain_ids, **options):
    """Disconnect the fee plugs of the given chains on each chain and on EVMx."""
    if not chain_ids:
        raise click.UsageError("Pass --chain for every chain to disconnect")
    outcome = _with_orchestrator(options, lambda orchestrator: orchestrator.disconnect(chain_ids))
    for chain_id, result in outcome.items():
        if isinstance(result, Exception):
            click.secho(f"disconnect failed on {chain_id}: {result}", fg="yellow")


@cli.command(name="disable-switchboard")
@deployment_options
@chains_option
def disable_switchboard(chain_ids, **options):
    """Disable the fast switchboard of each chain and unregister it on EVMx."""
    outcome = _with_orchestrator(
        options, lambda orchestrator: orchestrator.disable_switchboards(chain_ids or None)
    )
    for chain_id, result in sorted(outcome.items()):
        if isinstance(result, Exception):
            click.secho(f"{chain_id}: failed: {result}", fg="yellow")
        else:
            click.echo(f"{chain_id}: {result} change(s)")


@cli.command()
@deployment_options
@chains_option
@amount_option
@send_option
def rescue(chain_ids, amount, send, **options):
    """Report, and with --send rescue, native funds held by the chain contracts."""
    outcome = _with_orchestrator(
        options, lambda orchestrator: orchestrator.rescue(chain_ids or None, amount, send)
    )
    for chain_id, result in sorted(outcome.items()):
        if isinstance(result, Exception):
            click.secho(f"{chain_id}: failed: {result}", fg="yellow")
            continue
        for contract_name, value in result.items():
            verb = "rescued" if send else "rescuable"
            click.echo(f"{chain_id} {contract_name}: {value} wei {verb}")


@cli.command(name="update-start-blocks")
@deployment_options
def update_start_blocks(**options):
    """Move every chain's start block to its latest block."""
    blocks = _with_orchestrator(options, lambda orchestrator: orchestrator.update_start_blocks())
    for chain_id, block in sorted(blocks.items()):
        click.echo(f"{chain_id}: {block}")


@cli.command()
@deployment_options
@chain_option
@tx_hash_argument
def attestations(chain_id, tx_hash, **options):
    """Print the messages emitted by TX_HASH and their attestations."""
    try:
        results = _with_orchestrator(
            options, lambda orchestrator: orchestrator.attestations(tx_hash, chain_id)
        )
    except (ValueError, TimeoutError) as e:
        raise click.ClickException(str(e)) from e
    for result in results:
        click.echo(f"message: 0x{result.message.hex()}")
        click.echo(f"hash: {result.message_hash}")
        click.echo(f"attestation: {result.attestation}")


@cli.command()
@mode_option
@config_option
def chains(mode, config_filepath):
    """List the chains of a deployment with their gas and finality settings."""
    try:
        config = _load_config(mode, config_filepath)
    except FATAL_ERRORS as e:
        raise click.ClickException(str(e)) from e
    registry = ChainRegistry(evmx_chain_id=config.evmx_chain_id)
    for chain_id in (config.evmx_chain_id, *config.chains):
        try:
            name = registry.chain_name(chain_id)
        except NetworkConfigError as e:
            raise click.ClickException(str(e)) from e
        overrides = registry.gas_overrides(chain_id)
        finality = {
            bucket.name: value for bucket, value in registry.finality_blocks(chain_id).items()
        }
        click.secho(f"{chain_id} {name}", fg="green")
        click.echo(f"\trpc: ${registry.rpc_key(chain_id)}")
        click.echo(f"\tgas: {overrides._asdict()}")
        click.echo(f"\tfinality: {finality}")
        click.echo(f"\tconfirmation timeout: {registry.confirmation_timeout(chain_id)}s")


if __name__ == "__main__":
    cli()
