# /txpipe/core/codec.py
"""Wire codec for EIP-155 legacy and EIP-1559 (type 0x02) transactions.

The signer only ever sees a 32-byte digest, so the digest and the final
serialization are computed here rather than inside eth-account.
"""
import rlp
from eth_utils import keccak, to_canonical_address

from txpipe.core.types import SignatureTriple, SignedTransaction, TxType, UnsignedTransaction

DYNAMIC_FEE_TX_TYPE = b"\x02"


def _to_field(recipient: str | None) -> bytes:
    return to_canonical_address(recipient) if recipient else b""


def _legacy_fields(tx: UnsignedTransaction) -> list:
    return [
        tx.nonce,
        tx.max_fee_per_gas,
        tx.gas_limit,
        _to_field(tx.recipient),
        tx.value,
        tx.payload,
    ]


def _dynamic_fee_fields(tx: UnsignedTransaction) -> list:
    return [
        tx.chain_id,
        tx.nonce,
        tx.max_priority_fee_per_gas,
        tx.max_fee_per_gas,
        tx.gas_limit,
        _to_field(tx.recipient),
        tx.value,
        tx.payload,
        [],  # access list
    ]


def signing_payload(tx: UnsignedTransaction) -> bytes:
    if tx.tx_type == TxType.LEGACY:
        return rlp.encode(_legacy_fields(tx) + [tx.chain_id, 0, 0])
    return DYNAMIC_FEE_TX_TYPE + rlp.encode(_dynamic_fee_fields(tx))


def signing_digest(tx: UnsignedTransaction) -> bytes:
    return keccak(signing_payload(tx))


def encode_signed(tx: UnsignedTransaction, sig: SignatureTriple) -> bytes:
    if tx.tx_type == TxType.LEGACY:
        return rlp.encode(_legacy_fields(tx) + [sig.v, sig.r, sig.s])
    return DYNAMIC_FEE_TX_TYPE + rlp.encode(_dynamic_fee_fields(tx) + [sig.v, sig.r, sig.s])


def assemble(tx: UnsignedTransaction, sig: SignatureTriple) -> SignedTransaction:
    raw = encode_signed(tx, sig)
    return SignedTransaction(unsigned=tx, signature=sig, raw=raw, tx_hash="0x" + keccak(raw).hex())


def chain_id_for_signature(tx: UnsignedTransaction) -> int | None:
    """Chain id to fold into v. Only legacy transactions bind it there."""
    return tx.chain_id if tx.tx_type == TxType.LEGACY else None
