"""
Bitcoin Wallet CLI - Derive addresses, build and sign transactions, inspect PSBTs.
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import typer
from loguru import logger

from btcwallet.config import WalletConfig
from btcwallet.models import SpendTarget
from btcwallet.wallet.bip32 import mnemonic_to_seed
from btcwallet.wallet.coin_selection import UtxoServiceError
from btcwallet.wallet.deriver import DeriverError, SeedEntropyProvider
from btcwallet.wallet.manager import WalletError, WalletManager, create_wallet_manager
from btcwallet.wallet.psbt import PsbtBuilder, PsbtServiceError

app = typer.Typer(
    name="btc-wallet",
    help="Bitcoin HD wallet transaction engine",
    add_completion=False,
)

WALLET_ERRORS = (WalletError, DeriverError, UtxoServiceError, PsbtServiceError, ValueError)


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def _load_mnemonic(mnemonic: str | None, mnemonic_file: Path | None) -> str:
    if mnemonic_file:
        if not mnemonic_file.exists():
            logger.error(f"Mnemonic file not found: {mnemonic_file}")
            raise typer.Exit(1)
        mnemonic = mnemonic_file.read_text().strip()

    if not mnemonic:
        logger.error("Mnemonic required. Use --mnemonic, --mnemonic-file, or MNEMONIC env var")
        raise typer.Exit(1)
    return mnemonic


def _load_config(config_file: Path | None, network: str | None) -> WalletConfig:
    try:
        config = WalletConfig.from_file(config_file) if config_file else WalletConfig()
        if network:
            config = config.model_copy(update={"network": WalletConfig(network=network).network})
    except (OSError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(1)
    return config


def _create_manager(config: WalletConfig, mnemonic: str, passphrase: str) -> WalletManager:
    seed = mnemonic_to_seed(mnemonic, passphrase)
    return create_wallet_manager(config, SeedEntropyProvider(seed))


@app.command()
def address(
    mnemonic: str = typer.Option(None, "--mnemonic", envvar="MNEMONIC", help="BIP39 mnemonic"),
    mnemonic_file: Path | None = typer.Option(
        None, "--mnemonic-file", "-f", help="Path to mnemonic file"
    ),
    passphrase: str = typer.Option("", "--passphrase", envvar="BIP39_PASSPHRASE"),
    network: str | None = typer.Option(None, "--network", "-n", help="Bitcoin network"),
    script_type: str | None = typer.Option(
        None, "--script-type", "-t", help="p2wpkh | p2sh-p2wpkh | p2pkh"
    ),
    index: int = typer.Option(0, "--index", "-i", help="Address index"),
    config_file: Path | None = typer.Option(None, "--config", "-c", help="JSON config file"),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
) -> None:
    """Derive an account address."""
    setup_logging(log_level)
    mnemonic = _load_mnemonic(mnemonic, mnemonic_file)
    config = _load_config(config_file, network)

    try:
        account = asyncio.run(
            _create_manager(config, mnemonic, passphrase).unlock(
                index, script_type or config.default_script_type
            )
        )
    except WALLET_ERRORS as e:
        logger.error(f"Failed to derive address: {e}")
        raise typer.Exit(1)

    print(json.dumps(account.to_json(), indent=2))


@app.command()
def send(
    destination: str = typer.Argument(..., help="Destination address"),
    amount: int = typer.Argument(..., help="Amount in sats"),
    utxo_file: Path = typer.Option(..., "--utxos", "-u", help="JSON file with UTXOs and fees"),
    mnemonic: str = typer.Option(None, "--mnemonic", envvar="MNEMONIC", help="BIP39 mnemonic"),
    mnemonic_file: Path | None = typer.Option(
        None, "--mnemonic-file", "-f", help="Path to mnemonic file"
    ),
    passphrase: str = typer.Option("", "--passphrase", envvar="BIP39_PASSPHRASE"),
    network: str | None = typer.Option(None, "--network", "-n", help="Bitcoin network"),
    script_type: str | None = typer.Option(None, "--script-type", "-t"),
    index: int = typer.Option(0, "--index", "-i", help="Address index to spend from"),
    fee_rate: float | None = typer.Option(
        None, "--fee-rate", help="Fee rate in sat/vB (overrides --speed)"
    ),
    speed: str = typer.Option(
        "medium", "--speed", "-s", help="Provider fee estimate to use: fast | medium | slow"
    ),
    replaceable: bool | None = typer.Option(None, "--rbf/--no-rbf", help="Signal BIP125 RBF"),
    config_file: Path | None = typer.Option(None, "--config", "-c", help="JSON config file"),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """Build, sign and finalize a transaction paying AMOUNT sats to DESTINATION."""
    setup_logging(log_level)
    mnemonic = _load_mnemonic(mnemonic, mnemonic_file)
    config = _load_config(config_file, network)

    if not utxo_file.exists():
        logger.error(f"UTXO file not found: {utxo_file}")
        raise typer.Exit(1)

    try:
        asyncio.run(
            _send(
                config,
                mnemonic,
                passphrase,
                script_type or config.default_script_type,
                index,
                SpendTarget(destination, amount),
                utxo_file,
                fee_rate,
                speed,
                replaceable,
            )
        )
    except WALLET_ERRORS as e:
        logger.error(f"Failed to create transaction: {e}")
        raise typer.Exit(1)


async def _send(
    config: WalletConfig,
    mnemonic: str,
    passphrase: str,
    script_type: str,
    index: int,
    target: SpendTarget,
    utxo_file: Path,
    fee_rate: float | None,
    speed: str,
    replaceable: bool | None,
) -> None:
    """Send implementation."""
    from btcwallet.backends.static import StaticUtxoProvider

    manager = _create_manager(config, mnemonic, passphrase)
    account = await manager.unlock(index, script_type)

    provider = StaticUtxoProvider.from_file(utxo_file)
    try:
        utxos = await provider.get_utxos(account.address)
        if fee_rate is None:
            fee_rate = (await provider.get_fee_rates()).for_speed(speed)
        created = await manager.create_transaction(account, [target], utxos, fee_rate, replaceable)
    finally:
        await provider.close()

    print(json.dumps(created.tx_info.to_json(), indent=2))
    print(f"\nTXID: {created.txid}")
    print(f"Raw transaction:\n{created.raw_tx}")


def _read_psbt(psbt: str) -> str:
    path = Path(psbt)
    if len(psbt) < 256 and path.is_file():
        return path.read_text().strip()
    return psbt.strip()


@app.command()
def sign_psbt(
    psbt: str = typer.Argument(..., help="Base64 PSBT or path to a file containing one"),
    mnemonic: str = typer.Option(None, "--mnemonic", envvar="MNEMONIC", help="BIP39 mnemonic"),
    mnemonic_file: Path | None = typer.Option(
        None, "--mnemonic-file", "-f", help="Path to mnemonic file"
    ),
    passphrase: str = typer.Option("", "--passphrase", envvar="BIP39_PASSPHRASE"),
    network: str | None = typer.Option(None, "--network", "-n", help="Bitcoin network"),
    script_type: str | None = typer.Option(None, "--script-type", "-t"),
    index: int = typer.Option(0, "--index", "-i", help="Address index of the signing account"),
    config_file: Path | None = typer.Option(None, "--config", "-c", help="JSON config file"),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """Sign, verify and finalize a PSBT, printing the raw transaction."""
    setup_logging(log_level)
    mnemonic = _load_mnemonic(mnemonic, mnemonic_file)
    config = _load_config(config_file, network)

    async def _sign() -> str:
        manager = _create_manager(config, mnemonic, passphrase)
        account = await manager.unlock(index, script_type or config.default_script_type)
        return await manager.sign_transaction(account, _read_psbt(psbt))

    try:
        raw_tx = asyncio.run(_sign())
    except WALLET_ERRORS as e:
        logger.error(f"Failed to sign PSBT: {e}")
        raise typer.Exit(1)

    print(raw_tx)


@app.command()
def decode_psbt(
    psbt: str = typer.Argument(..., help="Base64 PSBT or path to a file containing one"),
    network: str = typer.Option("mainnet", "--network", "-n", help="Bitcoin network"),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
) -> None:
    """Summarise the inputs, outputs and fee of a PSBT."""
    setup_logging(log_level)

    try:
        builder = PsbtBuilder.from_base64(WalletConfig(network=network).network, _read_psbt(psbt))
    except WALLET_ERRORS as e:
        logger.error(f"Failed to decode PSBT: {e}")
        raise typer.Exit(1)

    print(json.dumps(builder.to_json(), indent=2))


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
