# /txpipe/adapters/mock.py
# In-memory endpoint and signer for simulation-first testing.
# MockEndpoint keeps a per-sender mempool with geth-like nonce rules, so
# pipeline tests exercise real sequencing instead of canned answers.
import asyncio
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

import rlp
from eth_account import Account
from eth_utils import big_endian_to_int, keccak
from web3 import Web3

from txpipe.adapters.signer import LocalKeySigner
from txpipe.core.errors import EndpointRejection, EndpointTransportError, SigningError
from txpipe.core.logger import get_logger
from txpipe.core.signing import WARMUP_DIGEST
from txpipe.core.types import BlockReference, EndpointResponse, RejectionReason

log = get_logger(__name__)

DROP = "drop"  # node accepts the bytes but the response never arrives

MOCK_KEY = "0x" + "11" * 32


def decode_sender_and_nonce(raw: bytes) -> Tuple[str, int]:
    sender = Account.recover_transaction(raw)
    fields = rlp.decode(raw[1:]) if raw[0] == 0x02 else rlp.decode(raw)
    nonce_field = fields[1] if raw[0] == 0x02 else fields[0]
    return Web3.to_checksum_address(sender), big_endian_to_int(nonce_field)


class MockEndpoint:
    """
    A mock chain endpoint.

    Accepted transactions are mined immediately when ``auto_mine`` is set,
    otherwise on ``mine()``. ``fail_next`` queues faults consumed one per
    send: an Exception instance is raised as-is, DROP accepts the bytes and
    then raises a transport error.
    """
    def __init__(self, base_fee: int = 10**8, auto_mine: bool = True, sync_submit: bool = False):
        self.base_fee = base_fee
        self.auto_mine = auto_mine
        self.sync_submit = sync_submit
        self.block_number = 100
        self.advance_blocks = True
        self.gas_estimate = 50_000
        self.revert_nonces: Set[Tuple[str, int]] = set()  # mined with status 0

        self.confirmed: Dict[str, int] = {}
        self.pool: Dict[Tuple[str, int], str] = {}
        self.transactions: Dict[str, bytes] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}

        self.sent: List[bytes] = []
        self.block_reads = 0
        self.nonce_queries = 0
        self.nonce_failures = 0
        self.nonce_delay = 0.0
        self.receipt_lookups: Dict[str, int] = {}
        self._faults: Deque[Any] = deque()

    # --- test controls ---

    def fail_next(self, *faults):
        self._faults.extend(faults)

    def set_confirmed_nonce(self, address: str, nonce: int):
        self.confirmed[Web3.to_checksum_address(address)] = nonce

    def pending_nonce(self, address: str) -> int:
        address = Web3.to_checksum_address(address)
        nonce = self.confirmed.get(address, 0)
        while (address, nonce) in self.pool:
            nonce += 1
        return nonce

    def mine(self):
        """Mine every pooled transaction that has no nonce gap in front of it."""
        for sender in {s for s, _ in self.pool}:
            nonce = self.confirmed.get(sender, 0)
            while (sender, nonce) in self.pool:
                tx_hash = self.pool[(sender, nonce)]
                if tx_hash not in self.receipts:
                    self.receipts[tx_hash] = {
                        "transactionHash": tx_hash,
                        "blockNumber": self.block_number,
                        "from": sender,
                        "nonce": nonce,
                        "status": 0 if (sender, nonce) in self.revert_nonces else 1,
                    }
                nonce += 1
            self.confirmed[sender] = nonce

    def receipts_for_nonce(self, address: str, nonce: int) -> List[Dict[str, Any]]:
        address = Web3.to_checksum_address(address)
        return [r for r in self.receipts.values() if r["from"] == address and r["nonce"] == nonce]

    # --- Endpoint protocol ---

    async def get_pending_nonce(self, address: str) -> int:
        self.nonce_queries += 1
        if self.nonce_delay:
            await asyncio.sleep(self.nonce_delay)
        if self.nonce_failures > 0:
            self.nonce_failures -= 1
            raise EndpointTransportError("mock nonce query failure")
        return self.pending_nonce(address)

    async def get_block_reference(self) -> BlockReference:
        self.block_reads += 1
        if self.advance_blocks:
            self.block_number += 1
        return BlockReference(
            number=self.block_number,
            hash="0x" + keccak(text=f"block-{self.block_number}").hex(),
            base_fee=self.base_fee,
            timestamp=1_700_000_000 + self.block_number,
        )

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return self.gas_estimate

    async def send_raw_transaction(self, raw: bytes) -> EndpointResponse:
        await asyncio.sleep(0)
        self.sent.append(raw)
        fault = self._faults.popleft() if self._faults else None
        if isinstance(fault, Exception):
            raise fault

        tx_hash = "0x" + keccak(raw).hex()
        sender, nonce = decode_sender_and_nonce(raw)
        if tx_hash in self.transactions:
            if tx_hash in self.receipts:
                raise EndpointRejection(RejectionReason.SEQUENCE_TOO_LOW, "nonce too low")
            log.info("MOCK_DUPLICATE_SUBMISSION", tx_hash=tx_hash)
        else:
            if nonce < self.confirmed.get(sender, 0):
                raise EndpointRejection(RejectionReason.SEQUENCE_TOO_LOW, "nonce too low")
            if (sender, nonce) in self.pool:
                raise EndpointRejection(RejectionReason.SEQUENCE_ALREADY_USED, "replacement transaction underpriced")
            self.transactions[tx_hash] = raw
            self.pool[(sender, nonce)] = tx_hash
            if self.auto_mine:
                self.mine()

        if fault == DROP:
            raise EndpointTransportError("mock connection reset after accept")
        receipt = self.receipts.get(tx_hash) if self.sync_submit else None
        return EndpointResponse(tx_hash=tx_hash, receipt=receipt)

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        self.receipt_lookups[tx_hash] = self.receipt_lookups.get(tx_hash, 0) + 1
        return self.receipts.get(tx_hash)


class MockSigner:
    """
    Real eth_keys signatures with a scriptable cold start and failures.
    """
    def __init__(self, private_key: str = MOCK_KEY, fail_times: int = 0, cold_delay: float = 0.0,
                 recovery_offset: int = 0):
        self._inner = LocalKeySigner(private_key)
        self.address = self._inner.address
        self.fail_times = fail_times
        self.cold_delay = cold_delay
        self.recovery_offset = recovery_offset  # 27 mimics signers that emit 27/28
        self.calls = 0
        self.warmup_calls = 0
        self.digests: Set[bytes] = set()

    async def sign_digest(self, digest: bytes) -> bytes:
        self.calls += 1
        if digest == WARMUP_DIGEST:
            self.warmup_calls += 1
        if self.cold_delay and self.calls == 1:
            await asyncio.sleep(self.cold_delay)
        else:
            await asyncio.sleep(0)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise SigningError("mock signer unavailable")
        self.digests.add(digest)
        raw = await self._inner.sign_digest(digest)
        return raw[:64] + bytes([raw[64] + self.recovery_offset])
