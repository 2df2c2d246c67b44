# /txpipe/core/types.py
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator
from web3 import Web3


class TxType(str, Enum):
    EIP1559 = "eip1559"
    LEGACY = "legacy"


class SigningSessionState(str, Enum):
    COLD = "cold"
    WARMING = "warming"
    WARM = "warm"


class OutcomeKind(str, Enum):
    ACCEPTED = "accepted"
    PENDING = "pending"
    REJECTED = "rejected"
    TRANSPORT_FAILURE = "transport_failure"


class RejectionReason(str, Enum):
    SEQUENCE_TOO_LOW = "sequence_too_low"
    SEQUENCE_ALREADY_USED = "sequence_already_used"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    RESOURCE_LIMIT_EXCEEDED = "resource_limit_exceeded"
    BLOCK_REFERENCE_EXPIRED = "block_reference_expired"
    MALFORMED = "malformed"
    UNKNOWN = "unknown"


class FinalKind(str, Enum):
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    REVERTED = "reverted"
    FAILED = "failed"
    TIMEOUT = "timeout"


class TransactionRequest(BaseModel):
    """What a caller wants done. Sequencing, pricing and signing are filled in by the pipeline."""
    sender: str
    recipient: Optional[str] = None  # None deploys a contract
    value: int = 0
    payload: bytes = b""
    category: str = "contract_call"
    gas_limit: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None
    estimate_remotely: bool = False

    class Config:
        frozen = True

    @field_validator("sender", "recipient")
    @classmethod
    def _checksum(cls, v):
        return Web3.to_checksum_address(v) if v is not None else v


class BlockReference(BaseModel):
    number: int
    hash: str
    base_fee: int
    timestamp: int = 0

    class Config:
        frozen = True


class UnsignedTransaction(BaseModel):
    sender: str
    recipient: Optional[str]
    value: int
    payload: bytes
    nonce: int
    gas_limit: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    chain_id: int
    block_reference: BlockReference
    tx_type: TxType = TxType.EIP1559

    class Config:
        frozen = True


class SignatureTriple(BaseModel):
    r: int
    s: int
    v: int  # y-parity for typed transactions, EIP-155 v for legacy

    class Config:
        frozen = True


class SignedTransaction(BaseModel):
    unsigned: UnsignedTransaction
    signature: SignatureTriple
    raw: bytes
    tx_hash: str

    class Config:
        frozen = True

    @property
    def sender(self) -> str:
        return self.unsigned.sender

    @property
    def nonce(self) -> int:
        return self.unsigned.nonce


class EndpointResponse(BaseModel):
    tx_hash: str
    receipt: Optional[Dict[str, Any]] = None


class SubmissionOutcome(BaseModel):
    kind: OutcomeKind
    sender: str
    nonce: int
    tx_hash: Optional[str] = None
    receipt: Optional[Dict[str, Any]] = None
    reason: Optional[RejectionReason] = None
    detail: str = ""
    attempts: int = 1
    # every hash this submission put on the wire, oldest first
    tx_hashes: List[str] = Field(default_factory=list)

    class Config:
        frozen = True

    @property
    def is_terminal_failure(self) -> bool:
        return self.kind in (OutcomeKind.REJECTED, OutcomeKind.TRANSPORT_FAILURE)


class FinalOutcome(BaseModel):
    kind: FinalKind
    sender: str
    nonce: int
    tx_hash: Optional[str] = None
    receipt: Optional[Dict[str, Any]] = None
    reason: Optional[RejectionReason] = None
    detail: str = ""

    class Config:
        frozen = True

    @property
    def is_unknown(self) -> bool:
        """A timeout says nothing about whether the transaction landed."""
        return self.kind == FinalKind.TIMEOUT


class AuditRecord(BaseModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    sender: str
    nonce: int
    outcome: OutcomeKind
    reason: Optional[RejectionReason] = None
    tx_hash: Optional[str] = None
    attempt: int
    latency_ms: float
