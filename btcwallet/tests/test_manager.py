"""
Tests for WalletManager: account unlocking and end-to-end transaction building.
"""

from __future__ import annotations

import pytest

from btcwallet.config import WalletConfig
from btcwallet.constants import DEFAULT_SEQUENCE, REPLACEABLE_SEQUENCE
from btcwallet.models import NetworkType, ScriptType, SpendTarget, Utxo
from btcwallet.wallet.bip32 import HDKey
from btcwallet.wallet.coin_selection import InsufficientFundsError, UtxoServiceError
from btcwallet.wallet.deriver import Bip32Deriver, Bip44Deriver
from btcwallet.wallet.manager import (
    AccountMgrError,
    TransactionValidationError,
    WalletError,
    WalletManager,
    create_wallet_manager,
)
from btcwallet.wallet.psbt import PsbtBuilder, PsbtServiceError, PsbtState
from btcwallet.wallet.transaction import deserialize_transaction


class DenyingProvider:
    async def get_bip32_entropy(self, path, curve):
        return None

    async def get_bip44_entropy(self, coin_type):
        return None


@pytest.fixture
def manager(entropy_provider) -> WalletManager:
    return WalletManager(Bip32Deriver(entropy_provider, "mainnet"), "mainnet")


@pytest.fixture
def testnet_manager(entropy_provider) -> WalletManager:
    return WalletManager(Bip32Deriver(entropy_provider, "testnet"), "testnet")


class TestUnlock:
    @pytest.mark.asyncio
    async def test_unlock_p2wpkh(self, manager, sample_seed):
        account = await manager.unlock(0)

        root = HDKey.from_seed(sample_seed).derive("m/84'/0'")
        assert account.address == "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"
        assert account.hd_path == "m/0'/0/0"
        assert account.master_fingerprint == root.fingerprint.hex()
        assert account.type == "bip122:p2wpkh"
        assert account.index == 0
        assert account.signer.fingerprint == root.fingerprint

    @pytest.mark.asyncio
    async def test_unlock_is_deterministic(self, manager):
        first = await manager.unlock(4)
        second = await manager.unlock(4)
        assert first.pubkey == second.pubkey
        assert first.address == second.address
        assert first.hd_path == "m/0'/0/4"

    @pytest.mark.asyncio
    async def test_unlock_capability_tag(self, testnet_manager):
        account = await testnet_manager.unlock(0, "bip122:p2sh-p2wpkh")
        assert account.address == "2Mww8dCYPUpKHofjgcXcBCEGmniw9CoaiD2"

    @pytest.mark.asyncio
    async def test_unlock_p2pkh(self, manager):
        account = await manager.unlock(0, ScriptType.P2PKH)
        assert account.address == "1LqBGSKuX5yYUonjxT5qGfpUsXKYYWeabA"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("script_type", ["p2tr", "p2wsh", "unknown"])
    async def test_invalid_script_type(self, manager, script_type):
        with pytest.raises(WalletError, match="Invalid script type"):
            await manager.unlock(0, script_type)

    @pytest.mark.asyncio
    async def test_negative_index(self, manager):
        with pytest.raises(AccountMgrError):
            await manager.unlock(-1)

    @pytest.mark.asyncio
    async def test_deriver_failure_wrapped(self):
        manager = WalletManager(Bip32Deriver(DenyingProvider(), "mainnet"), "mainnet")
        with pytest.raises(AccountMgrError, match="Deriver private key is missing") as exc_info:
            await manager.unlock(0)
        assert isinstance(exc_info.value, WalletError)

    @pytest.mark.asyncio
    async def test_bip44_deriver_differs_from_bip32(self, entropy_provider, manager):
        bip44 = WalletManager(Bip44Deriver(entropy_provider, "mainnet"), "mainnet")
        assert (await bip44.unlock(0)).pubkey != (await manager.unlock(0)).pubkey


class TestCreatePsbt:
    @pytest.mark.asyncio
    async def test_scenario_single_input(self, manager, funding_utxo, recipient_address):
        account = await manager.unlock(0)
        psbt, info = await manager.create_psbt(
            account, [SpendTarget(recipient_address, 50_000)], [funding_utxo], 1
        )

        builder = PsbtBuilder.from_base64("mainnet", psbt)
        assert len(builder.psbt.tx.inputs) == 1
        assert len(builder.psbt.tx.outputs) == 2
        assert 110 <= info.tx_fee <= 200
        assert builder.get_fee() == info.tx_fee

        assert info.sender == account.address
        assert [r.value for r in info.recipients] == [50_000]
        assert info.change is not None
        assert info.change.address == account.address
        assert info.total == funding_utxo.value

    @pytest.mark.asyncio
    async def test_fee_rate_clamped_to_minimum(self, manager, funding_utxo, recipient_address):
        account = await manager.unlock(0)
        _, info = await manager.create_psbt(
            account, [SpendTarget(recipient_address, 50_000)], [funding_utxo], 0
        )
        assert info.fee_rate == 1
        assert info.tx_fee > 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fee_rate", [float("nan"), float("inf")])
    async def test_non_finite_fee_rate(self, manager, funding_utxo, recipient_address, fee_rate):
        account = await manager.unlock(0)
        with pytest.raises(UtxoServiceError, match="Invalid fee rate"):
            await manager.create_transaction(
                account, [SpendTarget(recipient_address, 50_000)], [funding_utxo], fee_rate
            )

    @pytest.mark.asyncio
    async def test_dust_recipient(self, manager, funding_utxo, recipient_address):
        account = await manager.unlock(0)
        with pytest.raises(TransactionValidationError, match="Transaction amount too small"):
            await manager.create_psbt(
                account, [SpendTarget(recipient_address, 293)], [funding_utxo], 1
            )

    @pytest.mark.asyncio
    async def test_recipient_on_other_network(self, testnet_manager, funding_utxo, recipient_address):
        account = await testnet_manager.unlock(0)
        with pytest.raises(TransactionValidationError, match="Invalid recipient address"):
            await testnet_manager.create_psbt(
                account, [SpendTarget(recipient_address, 10_000)], [funding_utxo], 1
            )

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, manager, recipient_address):
        account = await manager.unlock(0)
        with pytest.raises(InsufficientFundsError, match="Not enough funds"):
            await manager.create_psbt(
                account,
                [SpendTarget(recipient_address, 5_000)],
                [Utxo(1, "aa" * 32, 0, 1_000)],
                1,
            )

    @pytest.mark.asyncio
    async def test_replaceable(self, manager, funding_utxo, recipient_address):
        account = await manager.unlock(0)
        psbt, _ = await manager.create_psbt(
            account, [SpendTarget(recipient_address, 50_000)], [funding_utxo], 1, replaceable=True
        )
        builder = PsbtBuilder.from_base64("mainnet", psbt)
        assert builder.psbt.tx.inputs[0].sequence == REPLACEABLE_SEQUENCE

    @pytest.mark.asyncio
    async def test_replaceable_from_config(self, entropy_provider, funding_utxo, recipient_address):
        config = WalletConfig(network="mainnet", replaceable=True)
        manager = create_wallet_manager(config, entropy_provider)
        account = await manager.unlock(0)

        psbt, _ = await manager.create_psbt(
            account, [SpendTarget(recipient_address, 50_000)], [funding_utxo], 1
        )
        assert PsbtBuilder.from_base64("mainnet", psbt).psbt.tx.inputs[0].sequence == (
            REPLACEABLE_SEQUENCE
        )
        psbt, _ = await manager.create_psbt(
            account, [SpendTarget(recipient_address, 50_000)], [funding_utxo], 1, replaceable=False
        )
        assert PsbtBuilder.from_base64("mainnet", psbt).psbt.tx.inputs[0].sequence == (
            DEFAULT_SEQUENCE
        )


class TestSignTransaction:
    @pytest.mark.asyncio
    async def test_sign_transaction(self, manager, funding_utxo, recipient_address):
        account = await manager.unlock(0)
        psbt, _ = await manager.create_psbt(
            account, [SpendTarget(recipient_address, 50_000)], [funding_utxo], 1
        )
        raw = await manager.sign_transaction(account, psbt)

        tx = deserialize_transaction(bytes.fromhex(raw))
        assert tx.inputs[0].witness[1] == account.pubkey_bytes
        assert tx.outputs[0].value == 50_000

    @pytest.mark.asyncio
    async def test_wrong_account_cannot_sign(self, manager, funding_utxo, recipient_address):
        account = await manager.unlock(0)
        other = await manager.unlock(0, ScriptType.P2PKH)
        psbt, _ = await manager.create_psbt(
            account, [SpendTarget(recipient_address, 50_000)], [funding_utxo], 1
        )
        with pytest.raises(PsbtServiceError):
            await manager.sign_transaction(other, psbt)

    @pytest.mark.asyncio
    async def test_invalid_psbt(self, manager):
        account = await manager.unlock(0)
        with pytest.raises(PsbtServiceError):
            await manager.sign_transaction(account, "not a psbt")


class TestCreateTransaction:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "script_type", [ScriptType.P2WPKH, ScriptType.P2SH_P2WPKH, ScriptType.P2PKH]
    )
    async def test_end_to_end(self, manager, recipient_address, script_type):
        account = await manager.unlock(2, script_type)
        utxos = [Utxo(800_000, "aa" * 32, 0, 30_000), Utxo(800_001, "bb" * 32, 1, 40_000)]

        created = await manager.create_transaction(
            account, [SpendTarget(recipient_address, 50_000)], utxos, 3
        )

        tx = deserialize_transaction(bytes.fromhex(created.raw_tx))
        assert tx.txid == created.txid
        assert len(tx.inputs) == 2
        assert tx.outputs[0].value == 50_000
        assert sum(o.value for o in tx.outputs) + created.tx_info.tx_fee == 70_000
        # Fee pays for at least the actual size at the requested rate
        assert created.tx_info.tx_fee >= tx.vsize * 3

        if script_type is ScriptType.P2PKH:
            assert not tx.has_witness
            assert all(i.script_sig for i in tx.inputs)
        elif script_type is ScriptType.P2SH_P2WPKH:
            assert all(i.script_sig == bytes([22]) + account.redeem_script for i in tx.inputs)
            assert all(len(i.witness) == 2 for i in tx.inputs)
        else:
            assert all(i.script_sig == b"" for i in tx.inputs)
            assert all(len(i.witness) == 2 for i in tx.inputs)

        unsigned = PsbtBuilder.from_base64("mainnet", created.psbt)
        assert unsigned.state is PsbtState.READY
        if script_type is ScriptType.P2WPKH:
            # No scriptSig, so signing does not change the txid
            assert unsigned.psbt.tx.txid == created.txid

    @pytest.mark.asyncio
    async def test_testnet(self, testnet_manager, funding_utxo):
        account = await testnet_manager.unlock(0)
        recipient = (await testnet_manager.unlock(1)).address
        assert recipient.startswith("tb1q")

        created = await testnet_manager.create_transaction(
            account, [SpendTarget(recipient, 25_000)], [funding_utxo], 2
        )
        assert created.tx_info.to_json()["recipients"][0]["address"] == recipient


class TestCreateWalletManager:
    def test_bip44_from_config(self, entropy_provider):
        manager = create_wallet_manager(
            WalletConfig(network="testnet", deriver="bip44"), entropy_provider
        )
        assert isinstance(manager.deriver, Bip44Deriver)
        assert manager.network is NetworkType.TESTNET
