"""
Tests for the btc-wallet CLI.
"""

from __future__ import annotations

import asyncio
import json

import pytest
from loguru import logger
from typer.testing import CliRunner

from btcwallet.cli import app
from btcwallet.models import SpendTarget, Utxo
from btcwallet.wallet.deriver import Bip32Deriver
from btcwallet.wallet.manager import WalletManager
from btcwallet.wallet.transaction import deserialize_transaction

runner = CliRunner()

ACCOUNT_ADDRESS = "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    logger.remove()


@pytest.fixture
def utxo_file(tmp_path):
    path = tmp_path / "utxos.json"
    path.write_text(
        json.dumps(
            {
                "fee_rates": {"fast": 5, "medium": 2, "slow": 1},
                "utxos": {
                    ACCOUNT_ADDRESS: [
                        {"tx_hash": "aa" * 32, "output_index": 0, "value": 100_000}
                    ]
                },
            }
        )
    )
    return path


class TestAddressCommand:
    def test_address(self, sample_mnemonic):
        result = runner.invoke(app, ["address", "--mnemonic", sample_mnemonic])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["address"] == ACCOUNT_ADDRESS
        assert data["hd_path"] == "m/0'/0/0"

    def test_address_from_env(self, sample_mnemonic):
        result = runner.invoke(
            app,
            ["address", "--network", "testnet", "--script-type", "p2sh-p2wpkh"],
            env={"MNEMONIC": sample_mnemonic},
        )
        assert result.exit_code == 0
        assert json.loads(result.stdout)["address"] == "2Mww8dCYPUpKHofjgcXcBCEGmniw9CoaiD2"

    def test_address_from_file(self, sample_mnemonic, tmp_path):
        path = tmp_path / "mnemonic.txt"
        path.write_text(sample_mnemonic + "\n")
        result = runner.invoke(app, ["address", "--mnemonic-file", str(path), "--index", "0"])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["address"] == ACCOUNT_ADDRESS

    def test_missing_mnemonic(self):
        result = runner.invoke(app, ["address"], env={"MNEMONIC": ""})
        assert result.exit_code == 1

    def test_unsupported_script_type(self, sample_mnemonic):
        result = runner.invoke(
            app, ["address", "--mnemonic", sample_mnemonic, "--script-type", "p2tr"]
        )
        assert result.exit_code == 1


class TestSendCommand:
    def test_send(self, sample_mnemonic, utxo_file, recipient_address):
        result = runner.invoke(
            app,
            [
                "send",
                recipient_address,
                "50000",
                "--utxos",
                str(utxo_file),
                "--mnemonic",
                sample_mnemonic,
                "--log-level",
                "ERROR",
            ],
        )
        assert result.exit_code == 0
        assert "TXID:" in result.stdout
        raw_tx = result.stdout.strip().splitlines()[-1]
        tx = deserialize_transaction(bytes.fromhex(raw_tx))
        assert tx.outputs[0].value == 50_000

    def test_send_fee_speed(self, sample_mnemonic, utxo_file, recipient_address):
        result = runner.invoke(
            app,
            [
                "send",
                recipient_address,
                "50000",
                "--utxos",
                str(utxo_file),
                "--mnemonic",
                sample_mnemonic,
                "--speed",
                "fast",
                "--log-level",
                "ERROR",
            ],
        )
        assert result.exit_code == 0
        raw_tx = result.stdout.strip().splitlines()[-1]
        tx = deserialize_transaction(bytes.fromhex(raw_tx))
        # 141 vbytes at the fast estimate of 5 sat/vB
        assert tx.outputs[1].value == 100_000 - 50_000 - 705

    def test_send_unknown_speed(self, sample_mnemonic, utxo_file, recipient_address):
        result = runner.invoke(
            app,
            [
                "send",
                recipient_address,
                "50000",
                "--utxos",
                str(utxo_file),
                "--mnemonic",
                sample_mnemonic,
                "--speed",
                "instant",
            ],
        )
        assert result.exit_code == 1
        assert isinstance(result.exception, SystemExit)

    def test_send_utxo_missing_value(self, sample_mnemonic, tmp_path, recipient_address):
        path = tmp_path / "utxos.json"
        path.write_text(
            json.dumps({"utxos": {ACCOUNT_ADDRESS: [{"tx_hash": "aa" * 32, "output_index": 0}]}})
        )
        result = runner.invoke(
            app,
            [
                "send",
                recipient_address,
                "50000",
                "--utxos",
                str(path),
                "--mnemonic",
                sample_mnemonic,
            ],
        )
        assert result.exit_code == 1
        assert isinstance(result.exception, SystemExit)

    def test_send_insufficient_funds(self, sample_mnemonic, utxo_file, recipient_address):
        result = runner.invoke(
            app,
            [
                "send",
                recipient_address,
                "500000",
                "--utxos",
                str(utxo_file),
                "--mnemonic",
                sample_mnemonic,
            ],
        )
        assert result.exit_code == 1

    def test_send_missing_utxo_file(self, sample_mnemonic, tmp_path, recipient_address):
        result = runner.invoke(
            app,
            [
                "send",
                recipient_address,
                "1000",
                "--utxos",
                str(tmp_path / "missing.json"),
                "--mnemonic",
                sample_mnemonic,
            ],
        )
        assert result.exit_code == 1


class TestPsbtCommands:
    @pytest.fixture
    def unsigned_psbt(self, entropy_provider, recipient_address) -> str:
        async def build() -> str:
            manager = WalletManager(Bip32Deriver(entropy_provider, "mainnet"), "mainnet")
            account = await manager.unlock(0)
            psbt, _ = await manager.create_psbt(
                account,
                [SpendTarget(recipient_address, 50_000)],
                [Utxo(800_000, "aa" * 32, 0, 100_000)],
                1,
            )
            return psbt

        return asyncio.run(build())

    def test_decode_psbt(self, unsigned_psbt, recipient_address):
        result = runner.invoke(app, ["decode-psbt", unsigned_psbt])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["state"] == "ready"
        assert data["outputs"][0]["address"] == recipient_address
        assert data["fee"] == 141

    def test_decode_psbt_from_file(self, unsigned_psbt, tmp_path):
        path = tmp_path / "tx.psbt"
        path.write_text(unsigned_psbt)
        result = runner.invoke(app, ["decode-psbt", str(path)])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["fee"] == 141

    def test_decode_invalid_psbt(self):
        result = runner.invoke(app, ["decode-psbt", "bm90IGEgcHNidA=="])
        assert result.exit_code == 1

    def test_sign_psbt(self, unsigned_psbt, sample_mnemonic):
        result = runner.invoke(
            app,
            ["sign-psbt", unsigned_psbt, "--mnemonic", sample_mnemonic, "--log-level", "ERROR"],
        )
        assert result.exit_code == 0
        tx = deserialize_transaction(bytes.fromhex(result.stdout.strip()))
        assert len(tx.inputs[0].witness) == 2

    def test_sign_psbt_wrong_account(self, unsigned_psbt, sample_mnemonic):
        result = runner.invoke(
            app,
            ["sign-psbt", unsigned_psbt, "--mnemonic", sample_mnemonic, "--script-type", "p2pkh"],
        )
        assert result.exit_code == 1
