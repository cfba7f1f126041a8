"""
Coin selection under a fee-rate constraint.

Selection runs in two deterministic passes over the candidates, ordered by
effective value (value minus the fee to spend it):

1. "blackjack": pick inputs that cover targets + fee without overshooting by
   more than a change output would cost, so no change output is needed.
2. "accumulative": add inputs in order until targets + fee are covered,
   skipping inputs that cost more in fees than they are worth.

The final result gets a change output back to the sender when the leftover,
after paying for that extra output, exceeds the dust threshold. Otherwise
the leftover is folded into the fee.
"""

from __future__ import annotations

import math

from loguru import logger

from btcwallet.constants import DUST_LIMITS
from btcwallet.models import ScriptType, SelectionResult, SpendTarget, Utxo
from btcwallet.wallet.address import address_to_scriptpubkey


class UtxoServiceError(Exception):
    pass


class InsufficientFundsError(UtxoServiceError):
    pass


# Transaction size model in weight units (vbytes = ceil(weight / 4))
TX_OVERHEAD_WEIGHT = 10 * 4  # version, locktime, input and output counts
SEGWIT_MARKER_WEIGHT = 2  # marker + flag, witness data only
# Witness: item count + <=72 byte signature + 33 byte pubkey, each length-prefixed
P2WPKH_WITNESS_WEIGHT = 1 + (1 + 72) + (1 + 33)
INPUT_WEIGHTS: dict[ScriptType, int] = {
    # outpoint + scriptSig length + sequence = 41 bytes
    ScriptType.P2PKH: (41 + 1 + 72 + 1 + 33) * 4,
    ScriptType.P2SH_P2WPKH: (41 + 23) * 4 + P2WPKH_WITNESS_WEIGHT,
    ScriptType.P2WPKH: 41 * 4 + P2WPKH_WITNESS_WEIGHT,
    ScriptType.P2TR: 41 * 4 + 1 + 1 + 64,
}


def output_weight(script_length: int) -> int:
    """value (8) + script length varint + script"""
    varint_size = 1 if script_length < 0xFD else 3
    return (8 + varint_size + script_length) * 4


def transaction_weight(input_type: ScriptType, input_count: int, output_scripts: list[int]) -> int:
    """Estimated weight of a signed transaction spending ``input_count`` inputs of one type."""
    weight = TX_OVERHEAD_WEIGHT
    if input_type.is_segwit and input_count:
        weight += SEGWIT_MARKER_WEIGHT
    weight += INPUT_WEIGHTS[input_type] * input_count
    weight += sum(output_weight(length) for length in output_scripts)
    return weight


def weight_to_vbytes(weight: int) -> int:
    return math.ceil(weight / 4)


class CoinSelector:
    """Selects UTXOs of one script type to pay a set of targets."""

    def __init__(
        self,
        fee_rate: float,
        script_type: ScriptType = ScriptType.P2WPKH,
        dust_threshold: int | None = None,
    ):
        if not math.isfinite(fee_rate) or fee_rate < 0:
            raise UtxoServiceError(f"Invalid fee rate: {fee_rate}")
        if script_type not in INPUT_WEIGHTS:
            raise UtxoServiceError(f"Cannot estimate inputs of type {script_type.value}")

        # Fee rates are whole sat/vbyte, rounded half up
        self.fee_rate = math.floor(fee_rate + 0.5)
        self.script_type = script_type
        self.dust_threshold = (
            dust_threshold if dust_threshold is not None else DUST_LIMITS[script_type.value]
        )

    def fee_for(self, input_count: int, output_scripts: list[int]) -> int:
        weight = transaction_weight(self.script_type, input_count, output_scripts)
        return weight_to_vbytes(weight) * self.fee_rate

    def input_fee(self) -> float:
        return INPUT_WEIGHTS[self.script_type] * self.fee_rate / 4

    def select_coins(
        self,
        utxos: list[Utxo],
        targets: list[SpendTarget],
        change_address: str,
    ) -> SelectionResult:
        """
        Select inputs paying ``targets``, with change back to ``change_address``.

        Raises:
            InsufficientFundsError: If no subset covers targets + fee
            UtxoServiceError: If the targets are invalid
        """
        if not targets:
            raise UtxoServiceError("No spend targets given")
        for target in targets:
            if target.value <= 0:
                raise UtxoServiceError(f"Invalid target value: {target.value}")

        target_scripts = [self._script_length(t.address) for t in targets]
        change_script = self._script_length(change_address)

        by_id: dict[str, Utxo] = {}
        for utxo in utxos:
            by_id.setdefault(utxo.utxo_id, utxo)

        # Highest effective value first; the id keeps equal-valued candidates stable
        input_fee = self.input_fee()
        candidates = sorted(
            by_id.items(), key=lambda item: (-(item[1].value - input_fee), item[0])
        )

        selected = self._blackjack(candidates, targets, target_scripts, change_script)
        if selected is None:
            selected = self._accumulative(candidates, targets, target_scripts)
        if selected is None:
            total = sum(u.value for u in by_id.values())
            needed = sum(t.value for t in targets)
            logger.debug(f"Coin selection failed: have {total} sats, need {needed} sats + fee")
            raise InsufficientFundsError("Not enough funds")

        inputs = [by_id[utxo_id] for utxo_id in selected]
        return self._finalize(inputs, targets, target_scripts, change_address, change_script)

    def _script_length(self, address: str) -> int:
        try:
            return len(address_to_scriptpubkey(address))
        except ValueError as e:
            raise UtxoServiceError(f"Invalid spend target address: {address}") from e

    def _blackjack(
        self,
        candidates: list[tuple[str, Utxo]],
        targets: list[SpendTarget],
        target_scripts: list[int],
        change_script: int,
    ) -> list[str] | None:
        out_total = sum(t.value for t in targets)
        selected: list[str] = []
        in_total = 0

        for utxo_id, utxo in candidates:
            fee = self.fee_for(len(selected) + 1, target_scripts)
            # Overshoot must stay below what one extra change output would cost
            change_cost = self.fee_for(len(selected) + 1, target_scripts + [change_script]) - fee
            if in_total + utxo.value > out_total + fee + change_cost:
                continue

            selected.append(utxo_id)
            in_total += utxo.value

            if in_total >= out_total + fee:
                return selected

        return None

    def _accumulative(
        self,
        candidates: list[tuple[str, Utxo]],
        targets: list[SpendTarget],
        target_scripts: list[int],
    ) -> list[str] | None:
        out_total = sum(t.value for t in targets)
        input_fee = self.input_fee()
        selected: list[str] = []
        in_total = 0

        for utxo_id, utxo in candidates:
            # Detrimental input: spending it costs more than it adds
            if input_fee > utxo.value:
                continue

            selected.append(utxo_id)
            in_total += utxo.value

            if in_total >= out_total + self.fee_for(len(selected), target_scripts):
                return selected

        return None

    def _finalize(
        self,
        inputs: list[Utxo],
        targets: list[SpendTarget],
        target_scripts: list[int],
        change_address: str,
        change_script: int,
    ) -> SelectionResult:
        in_total = sum(u.value for u in inputs)
        out_total = sum(t.value for t in targets)

        outputs = [SpendTarget(t.address, t.value) for t in targets]
        fee_with_change = self.fee_for(len(inputs), target_scripts + [change_script])
        remainder = in_total - out_total - fee_with_change

        change: SpendTarget | None = None
        if remainder > self.dust_threshold:
            change = SpendTarget(change_address, remainder)
            outputs.append(change)
        elif remainder > 0:
            logger.warning(f"Change of {remainder} sats is too small, adding to fees")

        fee = in_total - sum(o.value for o in outputs)
        logger.debug(
            f"Selected {len(inputs)} inputs ({in_total} sats), {len(outputs)} outputs, "
            f"fee {fee} sats at {self.fee_rate} sat/vB"
        )
        return SelectionResult(inputs=inputs, outputs=outputs, fee=fee, change=change)


def select_coins(
    utxos: list[Utxo],
    targets: list[SpendTarget],
    fee_rate: float,
    change_address: str,
    script_type: ScriptType = ScriptType.P2WPKH,
) -> SelectionResult:
    """Select coins with a one-off CoinSelector."""
    return CoinSelector(fee_rate, script_type).select_coins(utxos, targets, change_address)
