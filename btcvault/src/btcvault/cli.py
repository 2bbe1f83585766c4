"""
Command-line interface for vault peg-in tooling.
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Annotated

import typer
from loguru import logger

from btcvault.backends.mempool import MempoolBackend
from btcvault.broadcast import Broadcaster
from btcvault.config import get_settings
from btcvault.errors import InsufficientFunds, VaultError
from btcvault.fees import estimate_pegin_fee, get_max_pegin_fee
from btcvault.models import UTXO, NetworkType, ParticipantKeySet
from btcvault.state_machine import (
    ContractStatus,
    LocalStatus,
    derive_pegin_state,
    get_primary_action_button,
)
from btcvault.taproot import build_payout_connector
from btcvault.utxo import SelectionMode, select_utxos

app = typer.Typer(
    name="btcvault",
    help="BTC vault peg-in funding and payout co-signing tools",
    add_completion=False,
)


def setup_logging(level: str) -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def _parse_network(network: str) -> NetworkType:
    try:
        return NetworkType(network)
    except ValueError:
        logger.error(f"Invalid network: {network}")
        raise typer.Exit(1)


@app.command("payout-connector")
def payout_connector(
    depositor: Annotated[str, typer.Option("--depositor", "-d", help="Depositor public key")],
    vault_provider: Annotated[
        str, typer.Option("--vault-provider", "-v", help="Vault provider public key")
    ],
    liquidators: Annotated[
        list[str],
        typer.Option("--liquidator", "-l", help="Liquidator public key, in canonical order"),
    ],
    network: Annotated[str, typer.Option("--network", help="Bitcoin network")] = "mainnet",
    log_level: Annotated[str, typer.Option("--log-level", help="Log level")] = "WARNING",
) -> None:
    """Show the payout leaf and Taproot output for a key set."""
    setup_logging(log_level)
    network_type = _parse_network(network)

    try:
        keys = ParticipantKeySet(
            depositor=depositor, vault_provider=vault_provider, liquidators=liquidators
        )
        connector = build_payout_connector(keys, network_type)
    except (ValueError, VaultError) as e:
        logger.error(str(e))
        raise typer.Exit(1)

    typer.echo(f"Payout script:  {connector.script.hex()}")
    typer.echo(f"Leaf hash:      {connector.leaf_hash.hex()}")
    typer.echo(f"Control block:  {connector.control_block.hex()}")
    typer.echo(f"Output key:     {connector.output_key.hex()}")
    typer.echo(f"ScriptPubKey:   {connector.scriptpubkey.hex()}")
    typer.echo(f"Address:        {connector.address}")


@app.command("estimate-fee")
def estimate_fee(
    amount: Annotated[int, typer.Option("--amount", "-a", help="Peg-in amount in sats")],
    fee_rate: Annotated[float, typer.Option("--fee-rate", "-r", help="Fee rate in sat/vB")],
    deposit_value: Annotated[
        int | None,
        typer.Option("--deposit-value", help="Value of the single funding UTXO in sats"),
    ] = None,
) -> None:
    """Estimate peg-in fees."""
    try:
        max_fee = get_max_pegin_fee(fee_rate)
        typer.echo(f"Maximum fee (1 input, with change): {max_fee} sats")
        if deposit_value is not None:
            fee = estimate_pegin_fee(amount, deposit_value, fee_rate)
            typer.echo(f"Estimated fee from {deposit_value} sat UTXO: {fee} sats")
    except ValueError as e:
        logger.error(str(e))
        raise typer.Exit(1)


@app.command("select-utxos")
def select_utxos_command(
    utxos_file: Annotated[
        Path, typer.Argument(help="JSON list of {txid, vout, value, scriptpubkey[, confirmed]}")
    ],
    amount: Annotated[int, typer.Option("--amount", "-a", help="Peg-in amount in sats")],
    fee_rate: Annotated[float, typer.Option("--fee-rate", "-r", help="Fee rate in sat/vB")],
    mode: Annotated[
        SelectionMode, typer.Option("--mode", "-m", help="Selection policy")
    ] = SelectionMode.ITERATIVE,
    log_level: Annotated[str, typer.Option("--log-level", help="Log level")] = "WARNING",
) -> None:
    """Select funding UTXOs for a peg-in."""
    setup_logging(log_level)

    try:
        entries = json.loads(utxos_file.read_text())
        utxos = [
            UTXO(
                txid=e["txid"],
                vout=int(e["vout"]),
                value=int(e["value"]),
                scriptpubkey=e["scriptpubkey"],
                confirmed=bool(e.get("confirmed", True)),
            )
            for e in entries
        ]
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.error(f"Failed to load UTXOs from {utxos_file}: {e}")
        raise typer.Exit(1)

    try:
        selection = select_utxos(utxos, amount, fee_rate, mode=mode)
    except (InsufficientFunds, ValueError) as e:
        logger.error(str(e))
        raise typer.Exit(1)

    for utxo in selection.selected:
        typer.echo(f"{utxo.outpoint}  {utxo.value}")
    typer.echo(f"Fee:    {selection.fee} sats")
    typer.echo(f"Change: {selection.change} sats")


@app.command("vault-status")
def vault_status(
    status: Annotated[int, typer.Argument(help="On-chain contract status (0-4)")],
    local: Annotated[
        LocalStatus | None, typer.Option("--local", help="Locally cached overlay")
    ] = None,
    transactions_ready: Annotated[
        bool, typer.Option("--transactions-ready", help="Claim/payout transactions are ready")
    ] = False,
) -> None:
    """Show the display state and permitted action for a vault."""
    state = derive_pegin_state(status, local, transactions_ready)
    try:
        label = ContractStatus(status).name
    except ValueError:
        label = str(status)
    typer.echo(f"Contract status: {label}")
    typer.echo(f"State:           {state.display_label} ({state.display_variant.value})")
    button = get_primary_action_button(state)
    typer.echo(f"Next action:     {button[0] if button else 'none'}")
    if state.message:
        typer.echo(state.message)


@app.command()
def broadcast(
    tx_hex: Annotated[str, typer.Argument(help="Signed transaction hex")],
    network: Annotated[
        str | None, typer.Option("--network", help="Bitcoin network (defaults to settings)")
    ] = None,
    mempool_url: Annotated[
        str | None,
        typer.Option("--mempool-url", envvar="BTCVAULT_MEMPOOL_API_URL", help="Mempool API URL"),
    ] = None,
    log_level: Annotated[str | None, typer.Option("--log-level", help="Log level")] = None,
) -> None:
    """Broadcast a signed transaction through the mempool relay."""
    settings = get_settings()
    setup_logging(log_level or settings.log_level)
    network_type = _parse_network(network) if network else settings.network

    try:
        txid = asyncio.run(_broadcast(tx_hex, network_type, mempool_url))
    except VaultError as e:
        logger.error(f"Broadcast failed: {e}")
        raise typer.Exit(1)
    typer.echo(txid)


async def _broadcast(tx_hex: str, network: NetworkType, mempool_url: str | None) -> str:
    backend = MempoolBackend(base_url=mempool_url, network=network)
    try:
        return await Broadcaster(backend).broadcast(tx_hex)
    finally:
        await backend.close()


def main() -> None:
    """Entry point."""
    app()


if __name__ == "__main__":
    main()
