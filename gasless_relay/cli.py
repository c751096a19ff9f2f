"""
Command-line interface for the gasless relay.

All commands read the relayer configuration from the environment (see
``RelayerConfig.from_env``) and print JSON.
"""
import json
import logging
import sys
from typing import Any, Optional

import typer

from .client import RelayClient
from .config import RelayerConfig
from .exceptions import GaslessRelayError

app = typer.Typer(help="Build, relay and inspect gasless meta-transactions.", no_args_is_help=True)

logger = logging.getLogger(__name__)


@app.callback()
def _configure(
    ctx: typer.Context,
    network: Optional[str] = typer.Option(None, "--network", help="Network from networks.json to use for defaults"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug output"),
):
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    ctx.obj = {"network": network}


def _client(ctx: typer.Context) -> RelayClient:
    network = (ctx.obj or {}).get("network")
    try:
        return RelayClient.from_config(RelayerConfig.from_env(network=network))
    except GaslessRelayError as e:
        _fail(e)


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2))


def _fail(error: GaslessRelayError) -> None:
    logger.debug(f"Command failed: {error!r}")
    code = error.error_code.value if error.error_code else type(error).__name__
    typer.echo(f"Error [{code}]: {error}", err=True)
    raise typer.Exit(code=1)


@app.command()
def nonce(ctx: typer.Context, address: str = typer.Argument(..., help="Signer address")):
    """Print the next nonce for ADDRESS."""
    with _client(ctx) as client:
        try:
            _echo_json({"address": address, "nonce": str(client.get_nonce(address))})
        except GaslessRelayError as e:
            _fail(e)


@app.command("check-tx")
def check_tx(ctx: typer.Context, tx_hash: str = typer.Argument(..., help="Execution id (transaction hash)")):
    """Print the status and classified events of an execution."""
    with _client(ctx) as client:
        try:
            status = client.get_execution_status(tx_hash)
        except GaslessRelayError as e:
            _fail(e)
        _echo_json(status.model_dump(mode="json", exclude={"log_entries"}))


@app.command("build-mint")
def build_mint(
    ctx: typer.Context,
    signer: str = typer.Argument(..., metavar="FROM", help="Address that will sign the request"),
    to: str = typer.Argument(..., help="Recipient of the minted token"),
):
    """Build an unsigned mint request and print its typed data."""
    with _client(ctx) as client:
        try:
            built = client.build_mint(signer, to)
        except GaslessRelayError as e:
            _fail(e)
        _echo_json({
            "request": built.request.to_wire(),
            "signingPayload": "0x" + built.signing_payload.hex(),
            "typedData": built.typed_data,
        })


@app.command()
def relay(
    ctx: typer.Context,
    body: typer.FileText = typer.Argument("-", help="JSON file with {request, signature}; '-' reads stdin"),
):
    """Relay a signed request and print the outcome."""
    try:
        payload = json.load(body)
    except json.JSONDecodeError as e:
        typer.echo(f"Error: invalid JSON body: {e}", err=True)
        raise typer.Exit(code=1)
    with _client(ctx) as client:
        outcome = client.relay(payload)
    _echo_json(outcome.model_dump(mode="json"))
    if not outcome.ok:
        raise typer.Exit(code=1)


@app.command()
def nft(ctx: typer.Context, address: str = typer.Argument(..., help="Owner address")):
    """Print ADDRESS's NFT balance and the total supply."""
    with _client(ctx) as client:
        try:
            info = client.nft_info(address)
        except GaslessRelayError as e:
            _fail(e)
        _echo_json({
            "address": info["address"],
            "balance": str(info["balance"]),
            "totalSupply": str(info["totalSupply"]),
        })


@app.command()
def health(ctx: typer.Context):
    """Print relayer status and contract addresses."""
    with _client(ctx) as client:
        _echo_json(client.health())


def main() -> None:
    app(prog_name="gasless-relay")


if __name__ == "__main__":
    sys.exit(main())
