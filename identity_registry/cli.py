"""Identity Registry CLI: deploy and inspect the registry, hash credentials, serve the API."""

import json
import sys
from pathlib import Path

import click
from eth_account import Account

from identity_registry import __version__
from identity_registry.config import config
from identity_registry.database import (
    init_database,
    load_events,
    make_journal_listener,
    save_deployment,
    get_latest_deployment,
    list_deployments,
)
from identity_registry.services.blockchain import BlockchainService, RegistryContractClient
from identity_registry.services.deployment import (
    CONTRACT_NAME,
    HINTS,
    classify_deployment_error,
    deploy_registry,
)
from identity_registry.services.encryption import content_hash, get_encryption_service
from identity_registry.services.errors import DeploymentError


@click.group()
@click.version_option(version=__version__)
def main():
    """Decentralized Identity Registry tooling."""


def _fail(message: str, hint: str = "", title: str = "Deployment failed!"):
    click.echo(title, err=True)
    click.echo(f"Error: {message}", err=True)
    if hint:
        click.echo(f"Solution: {hint}", err=True)
    sys.exit(1)


@main.command()
@click.option("--network", "-n", default=None, help="Target network (defaults to NETWORK)")
@click.option("--artifact", default=None, help="Hardhat artifact JSON for RPC networks")
@click.option("--output", "-o", default=None, type=click.Path(dir_okay=False), help="Write the deployment summary to a file")
@click.option("--db-path", default=None, help="SQLite database (defaults to DB_PATH)")
def deploy(network, artifact, output, db_path):
    """Deploy the identity registry and verify its initial state."""
    click.echo(f"Starting deployment of {CONTRACT_NAME} contract...")

    try:
        target = config.get_network(network)
    except ValueError as e:
        _fail(str(e))

    init_database(db_path)

    listeners = None
    private_key = None
    if target.is_local:
        try:
            encryption = get_encryption_service()
            existing = load_events(db_path, encryption)
        except ValueError as e:
            _fail(str(e), "Set MASTER_KEY to the 64 hex character key the journal was written with")
        if existing:
            _fail(
                "Registry journal is already initialized",
                "Serve the existing registry or remove the database to redeploy"
            )
        listeners = [make_journal_listener(db_path, encryption)]

        if not config.PRIVATE_KEY and not config.REGISTRY_OWNER:
            account = Account.create()
            private_key = "0x" + bytes(account.key).hex()
            click.echo("No PRIVATE_KEY or REGISTRY_OWNER set, generated a deployer account.")
            click.echo(f"Deployer private key (keep it, it owns the registry): {private_key}")

    try:
        _, result = deploy_registry(
            target, private_key=private_key, artifact_path=artifact, listeners=listeners
        )
    except DeploymentError as e:
        _fail(e.message, e.hint)

    click.echo(f"Deploying contracts with the account: {result.deployer_address}")
    if result.balance_eth is not None:
        click.echo(f"Account balance: {result.balance_eth} ETH")
    for warning in result.warnings:
        click.echo(f"Warning: {warning}")

    click.echo(f"\n{CONTRACT_NAME} contract deployed successfully!")
    click.echo(f"Contract Address: {result.contract_address}")
    click.echo(f"Network: {result.network}")
    click.echo(f"Deployer Address: {result.deployer_address}")
    click.echo(f"Deployment Transaction Hash: {result.transaction_hash}")
    click.echo(f"Gas Used: {result.gas_used}")

    click.echo("\nVerifying initial contract state...")
    click.echo(f"Contract Owner: {result.contract_owner}")
    click.echo(f"Deployer is Authorized Verifier: {result.deployer_is_verifier}")

    summary = result.to_dict()
    save_deployment(summary, db_path)
    if output:
        Path(output).write_text(json.dumps(summary, indent=2))

    click.echo("\nDeployment Summary:")
    click.echo(json.dumps(summary, indent=2))

    click.echo("\nContract Interaction Examples:")
    click.echo("1. Create Identity:")
    click.echo('   contract.createIdentity("John Doe", "john@example.com")')
    click.echo("\n2. Add Credential:")
    click.echo('   contract.addCredential("education", "0x123...hash")')
    click.echo("\n3. Request Verification:")
    click.echo('   contract.requestVerification("education", "0x123...hash")')

    if target.explorer_url:
        click.echo(f"\nExplorer URL: {target.explorer_url}")
        click.echo(f"View Contract: {target.get_address_url(result.contract_address)}")
        click.echo(f"View Transaction: {target.get_tx_url(result.transaction_hash)}")

    click.echo("\nDeployment completed successfully!")


@main.command()
@click.option("--db-path", default=None, help="SQLite database (defaults to DB_PATH)")
def deployments(db_path):
    """List recorded deployments, newest first."""
    init_database(db_path)
    records = list_deployments(db_path)
    if not records:
        click.echo("No deployments recorded.")
        return
    for record in records:
        click.echo(
            f"{record['timestamp']}  {record['network']:<14} {record['contractAddress']}  "
            f"owner={record['contractOwner']}"
        )


@main.command()
@click.option("--network", "-n", default=None, help="Network the contract lives on (defaults to NETWORK)")
@click.option("--address", default=None, help="Contract address (defaults to CONTRACT_ADDRESS, then the latest recorded deployment)")
@click.option("--verifier", default=None, help="Also report whether this address is an authorized verifier")
@click.option("--db-path", default=None, help="SQLite database (defaults to DB_PATH)")
def status(network, address, verifier, db_path):
    """Read the on-chain state of a deployed registry."""
    title = "Status check failed!"
    try:
        target = config.get_network(network)
    except ValueError as e:
        _fail(str(e), title=title)

    if target.is_local:
        _fail(
            f"{target.name} is the in-process network and has no deployed contract",
            "Use `identity-registry serve` and GET /api/registry instead",
            title=title
        )

    address = address or config.CONTRACT_ADDRESS
    if not address:
        init_database(db_path)
        latest = get_latest_deployment(target.name, db_path)
        address = latest["contractAddress"] if latest else None
    if not address:
        _fail(f"No contract address known for {target.name}", "Set CONTRACT_ADDRESS or pass --address", title=title)
    if not config.PRIVATE_KEY:
        _fail("PRIVATE_KEY is not configured", "Set PRIVATE_KEY in your .env file", title=title)

    service = BlockchainService(target, config.PRIVATE_KEY)
    if not service.is_connected():
        _fail(f"Cannot connect to {target.rpc_url}", HINTS[DeploymentError.NETWORK_ERROR], title=title)

    try:
        client = RegistryContractClient(service, address)
        owner = client.contract_owner()
        verifier_flag = client.authorized_verifiers(verifier) if verifier else None
    except Exception as e:
        error = classify_deployment_error(e)
        _fail(error.message, error.hint, title=title)

    click.echo(f"Contract Address: {client.address}")
    click.echo(f"Network: {target.name}")
    click.echo(f"Contract Owner: {owner}")
    if verifier:
        click.echo(f"Authorized Verifier {verifier}: {verifier_flag}")
    if target.explorer_url:
        click.echo(f"View Contract: {target.get_address_url(client.address)}")


@main.command("hash")
@click.argument("path", required=False, type=click.Path(exists=True, dir_okay=False))
@click.option("--text", default=None, help="Hash a string instead of a file")
def hash_command(path, text):
    """Print the content hash of a proof document."""
    if (path is None) == (text is None):
        raise click.UsageError("Pass exactly one of PATH or --text")
    data = text if text is not None else Path(path).read_bytes()
    click.echo(content_hash(data))


@main.command()
@click.option("--host", default=None, help="Bind address (defaults to API_HOST)")
@click.option("--port", default=None, type=int, help="Port (defaults to API_PORT)")
@click.option("--reload", is_flag=True, help="Reload on code changes")
def serve(host, port, reload):
    """Serve the registry API."""
    from identity_registry.main import run

    run(host=host, port=port, reload=reload)


if __name__ == "__main__":
    main()
