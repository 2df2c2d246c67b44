# /txpipe/core/builder.py
from decimal import ROUND_CEILING, Decimal

from txpipe.core.config import ResourceLimitTable, settings
from txpipe.core.errors import BuildError
from txpipe.core.types import BlockReference, TransactionRequest, TxType, UnsignedTransaction


def _bump(value: int, fraction: Decimal) -> int:
    bumped = int((Decimal(value) * (1 + fraction)).to_integral_value(rounding=ROUND_CEILING))
    return max(bumped, value + 1)


class TransactionBuilder:
    """Assembles unsigned transactions. No I/O: every input is passed in."""

    def __init__(
        self,
        chain_id: int | None = None,
        tx_type: TxType | str | None = None,
        limits: ResourceLimitTable | None = None,
        priority_fee: int | None = None,
        base_fee_multiplier: int | None = None,
        replacement_bump: float | None = None,
    ):
        self.chain_id = settings.chain_id if chain_id is None else chain_id
        self.tx_type = TxType(tx_type or settings.TX_TYPE)
        self.limits = limits or settings.GAS_LIMITS
        self.priority_fee = settings.PRIORITY_FEE_WEI if priority_fee is None else priority_fee
        self.base_fee_multiplier = settings.BASE_FEE_MULTIPLIER if base_fee_multiplier is None else base_fee_multiplier
        bump = settings.REPLACEMENT_FEE_BUMP if replacement_bump is None else replacement_bump
        self.replacement_bump = Decimal(str(bump))

    def gas_limit_for(self, request: TransactionRequest) -> int:
        if request.gas_limit is not None:
            return request.gas_limit
        limit = self.limits.lookup(request.category)
        if limit is None:
            raise BuildError(f"No gas limit for category '{request.category}' and no override given")
        return limit

    def build(self, request: TransactionRequest, nonce: int, block_reference: BlockReference) -> UnsignedTransaction:
        priority = request.max_priority_fee_per_gas
        if priority is None:
            priority = self.priority_fee
        return UnsignedTransaction(
            sender=request.sender,
            recipient=request.recipient,
            value=request.value,
            payload=request.payload,
            nonce=nonce,
            gas_limit=self.gas_limit_for(request),
            max_fee_per_gas=block_reference.base_fee * self.base_fee_multiplier + priority,
            max_priority_fee_per_gas=priority,
            chain_id=self.chain_id,
            block_reference=block_reference,
            tx_type=self.tx_type,
        )

    def rebuild(self, previous: UnsignedTransaction, block_reference: BlockReference) -> UnsignedTransaction:
        """Re-price an expired transaction against a newer block, keeping its nonce.

        Both fee fields rise by at least the replacement bump, which nodes
        require before accepting a same-nonce replacement.
        """
        if block_reference.hash == previous.block_reference.hash:
            raise BuildError(f"Rebuild needs a new block reference, got {block_reference.hash} again")
        priority = _bump(previous.max_priority_fee_per_gas, self.replacement_bump)
        max_fee = max(
            block_reference.base_fee * self.base_fee_multiplier + priority,
            _bump(previous.max_fee_per_gas, self.replacement_bump),
        )
        return previous.model_copy(update={
            "max_priority_fee_per_gas": priority,
            "max_fee_per_gas": max_fee,
            "block_reference": block_reference,
        })
