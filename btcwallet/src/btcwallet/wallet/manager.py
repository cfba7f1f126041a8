"""
Wallet manager: unlocks accounts and turns spend requests into signed transactions.

Flow for a payment:

    unlock(index, script_type) -> Account
    create_psbt(account, recipients, utxos, fee_rate) -> (psbt, TxInfo)
    sign_transaction(account, psbt) -> raw transaction hex
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from btcwallet.config import WalletConfig
from btcwallet.constants import HARDENED_OFFSET
from btcwallet.models import NetworkType, ScriptType, SpendTarget, TxInfo, Utxo
from btcwallet.wallet.account import Account, create_account, get_account_definition
from btcwallet.wallet.address import address_to_scriptpubkey
from btcwallet.wallet.coin_selection import CoinSelector
from btcwallet.wallet.deriver import AccountDeriver, HostEntropyProvider, create_deriver
from btcwallet.wallet.psbt import PsbtBuilder
from btcwallet.wallet.signer import AccountSigner


class WalletError(Exception):
    pass


class AccountMgrError(WalletError):
    pass


class TransactionValidationError(WalletError):
    pass


@dataclass
class CreatedTransaction:
    raw_tx: str
    txid: str
    psbt: str  # unsigned PSBT the transaction was built from
    tx_info: TxInfo


class WalletManager:
    """Account unlocking and transaction building for one network."""

    def __init__(
        self,
        deriver: AccountDeriver,
        network: NetworkType | str,
        config: WalletConfig | None = None,
    ):
        self.deriver = deriver
        self.network = NetworkType(network)
        self.config = config or WalletConfig(network=self.network)

    async def unlock(
        self, index: int, script_type: ScriptType | str = ScriptType.P2WPKH
    ) -> Account:
        """
        Derive the account at address ``index`` for ``script_type``.

        Raises:
            WalletError: If the script type has no account definition
            AccountMgrError: If derivation fails
        """
        try:
            definition = get_account_definition(script_type)
        except ValueError as e:
            raise WalletError("Invalid script type") from e

        if not 0 <= index < HARDENED_OFFSET:
            raise AccountMgrError(f"Invalid account index: {index}")

        try:
            root = await self.deriver.get_root(definition.path(self.network))
            child = await self.deriver.get_child(root, index)
        except Exception as e:
            logger.error(f"Failed to unlock account {index}: {e}")
            raise AccountMgrError(f"Failed to unlock account {index}: {e}") from e

        account = create_account(
            definition,
            master_fingerprint=root.fingerprint,
            index=index,
            hd_path=f"m/0'/0/{index}",
            pubkey=child.get_public_key_bytes(),
            network=self.network,
            signer=AccountSigner(root, root.fingerprint),
        )
        logger.debug(f"Unlocked {account!r}")
        return account

    def _validate_recipients(self, account: Account, recipients: list[SpendTarget]) -> None:
        if not recipients:
            raise TransactionValidationError("No recipients given")

        dust_limit = self.config.dust_limit(account.script_type)
        for recipient in recipients:
            if recipient.value < dust_limit:
                raise TransactionValidationError("Transaction amount too small")
            try:
                address_to_scriptpubkey(recipient.address, self.network)
            except ValueError as e:
                raise TransactionValidationError(
                    f"Invalid recipient address: {recipient.address}"
                ) from e

    async def create_psbt(
        self,
        account: Account,
        recipients: list[SpendTarget],
        utxos: list[Utxo],
        fee_rate: float,
        replaceable: bool | None = None,
    ) -> tuple[str, TxInfo]:
        """
        Select coins and assemble an unsigned PSBT paying ``recipients``.

        Change goes back to the account's own address.

        Raises:
            TransactionValidationError: If a recipient is dust or undecodable
            InsufficientFundsError: If the UTXOs cannot cover amounts + fee
            PsbtServiceError: If PSBT assembly fails
        """
        self._validate_recipients(account, recipients)

        if replaceable is None:
            replaceable = self.config.replaceable
        if fee_rate < self.config.min_fee_rate:
            logger.debug(f"Raising fee rate {fee_rate} to minimum {self.config.min_fee_rate}")
            fee_rate = self.config.min_fee_rate

        selector = CoinSelector(
            fee_rate, account.script_type, self.config.dust_limit(account.script_type)
        )
        selection = selector.select_coins(utxos, recipients, account.address)

        builder = PsbtBuilder(self.network)
        builder.add_inputs(
            selection.inputs,
            account.master_fingerprint,
            account.pubkey,
            account.output_script,
            account.hd_path,
            replaceable,
        )
        builder.add_outputs(selection.outputs)

        tx_info = TxInfo(sender=account.address, fee_rate=selector.fee_rate)
        for output in selection.outputs[: len(recipients)]:
            tx_info.add_recipient(output)
        tx_info.change = selection.change
        tx_info.tx_fee = builder.get_fee()

        logger.info(
            f"Created PSBT spending {len(selection.inputs)} inputs, "
            f"fee {tx_info.tx_fee} sats at {tx_info.fee_rate} sat/vB"
        )
        return builder.to_base64(), tx_info

    async def _sign(self, account: Account, psbt: str) -> PsbtBuilder:
        builder = PsbtBuilder.from_base64(self.network, psbt)
        await builder.sign_and_verify(account.signer)
        return builder

    async def sign_transaction(self, account: Account, psbt: str) -> str:
        """Sign, verify and finalize a base64 PSBT, returning the raw transaction hex."""
        builder = await self._sign(account, psbt)
        return builder.finalize()

    async def create_transaction(
        self,
        account: Account,
        recipients: list[SpendTarget],
        utxos: list[Utxo],
        fee_rate: float,
        replaceable: bool | None = None,
    ) -> CreatedTransaction:
        psbt, tx_info = await self.create_psbt(account, recipients, utxos, fee_rate, replaceable)
        builder = await self._sign(account, psbt)
        raw_tx = builder.finalize()
        txid = builder.extract_transaction().txid
        logger.info(f"Built transaction {txid}")
        return CreatedTransaction(raw_tx=raw_tx, txid=txid, psbt=psbt, tx_info=tx_info)


def create_wallet_manager(config: WalletConfig, provider: HostEntropyProvider) -> WalletManager:
    """Create a WalletManager with the deriver named in ``config``."""
    deriver = create_deriver(config.deriver, provider, config.network)
    return WalletManager(deriver, config.network, config)
