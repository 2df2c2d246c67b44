# /txpipe/adapters/endpoint.py
# Chain endpoint access: the typed remote-call set the pipeline consumes,
# and an AsyncWeb3 implementation that fails over across several RPC URLs.
import asyncio
from typing import Any, Dict, List, Optional, Protocol

import aiohttp
from eth_utils import keccak
from web3 import AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound, Web3Exception

from txpipe.core.config import settings
from txpipe.core.decorators import retriable_network_call
from txpipe.core.errors import EndpointRejection, EndpointTransportError
from txpipe.core.logger import get_logger
from txpipe.core.types import BlockReference, EndpointResponse, RejectionReason

log = get_logger(__name__)

TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError)

# First match wins, so "replacement transaction underpriced" must precede "transaction underpriced".
_REJECTION_PATTERNS = (
    (RejectionReason.SEQUENCE_TOO_LOW, ("nonce too low", "nonce is too low", "invalid nonce")),
    (RejectionReason.SEQUENCE_ALREADY_USED, ("replacement transaction underpriced", "nonce already used")),
    (RejectionReason.INSUFFICIENT_BALANCE, ("insufficient funds", "insufficient balance")),
    (RejectionReason.RESOURCE_LIMIT_EXCEEDED, (
        "intrinsic gas too low", "exceeds block gas limit", "gas limit reached", "gas required exceeds", "out of gas",
    )),
    (RejectionReason.BLOCK_REFERENCE_EXPIRED, (
        "max fee per gas less than block base fee", "fee cap less than block base fee",
        "transaction underpriced", "block reference expired", "blockhash not found",
    )),
    (RejectionReason.MALFORMED, ("rlp", "invalid sender", "invalid signature", "malformed", "too short")),
)
_DUPLICATE_MARKERS = ("already known", "known transaction", "alreadyknown")


def classify_error(message: str) -> RejectionReason:
    text = message.lower()
    for reason, needles in _REJECTION_PATTERNS:
        if any(n in text for n in needles):
            return reason
    return RejectionReason.UNKNOWN


def is_duplicate_submission(message: str) -> bool:
    """The node already holds these exact bytes; resubmission is a no-op."""
    text = message.lower()
    return any(m in text for m in _DUPLICATE_MARKERS)


class Endpoint(Protocol):
    async def get_pending_nonce(self, address: str) -> int: ...

    async def get_block_reference(self) -> BlockReference: ...

    async def estimate_gas(self, tx: Dict[str, Any]) -> int: ...

    async def send_raw_transaction(self, raw: bytes) -> EndpointResponse: ...

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]: ...


class Web3Endpoint:
    def __init__(self, rpc_urls: List[str] | None = None, timeout: float | None = None, sync_submit: bool | None = None):
        self.rpc_urls = rpc_urls or settings.get_rpc_urls()
        if not self.rpc_urls:
            raise ConnectionError("No RPC URLs configured.")
        if len(self.rpc_urls) < 2:
            log.warning("RESILIENCE_DEGRADED_LT_2_RPCS", count=len(self.rpc_urls))
        timeout = settings.RPC_TIMEOUT if timeout is None else timeout
        self.sync_submit = settings.SYNC_SUBMIT if sync_submit is None else sync_submit
        self.providers = [
            AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(url, request_kwargs={"timeout": timeout}))
            for url in self.rpc_urls
        ]
        self.idx = 0
        log.info("WEB3_ENDPOINT_INITIALIZED", rpc_count=len(self.providers), sync_submit=self.sync_submit)

    @property
    def w3(self) -> AsyncWeb3:
        return self.providers[self.idx]

    def _rotate(self):
        if len(self.providers) > 1:
            self.idx = (self.idx + 1) % len(self.providers)
            log.warning("RPC_FAILOVER", url_index=self.idx)

    async def _call(self, method: str, coro_fn):
        try:
            return await coro_fn(self.w3)
        except TRANSPORT_ERRORS as e:
            log.warning("RPC_TRANSPORT_ERROR", method=method, error=str(e) or type(e).__name__)
            self._rotate()
            raise EndpointTransportError(f"{method}: {e or type(e).__name__}") from e

    async def get_pending_nonce(self, address: str) -> int:
        address = Web3.to_checksum_address(address)
        return await self._call(
            "eth_getTransactionCount", lambda w3: w3.eth.get_transaction_count(address, "pending")
        )

    @retriable_network_call
    async def get_block_reference(self) -> BlockReference:
        block = await self._call("eth_getBlockByNumber", lambda w3: w3.eth.get_block("latest"))
        return BlockReference(
            number=block["number"],
            hash=Web3.to_hex(block["hash"]),
            base_fee=block.get("baseFeePerGas", 0),
            timestamp=block.get("timestamp", 0),
        )

    @retriable_network_call
    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return await self._call("eth_estimateGas", lambda w3: w3.eth.estimate_gas(tx))

    async def send_raw_transaction(self, raw: bytes) -> EndpointResponse:
        local_hash = Web3.to_hex(keccak(raw))
        try:
            if self.sync_submit:
                return await self._send_sync(raw)
            tx_hash = await self._call(
                "eth_sendRawTransaction", lambda w3: w3.eth.send_raw_transaction(raw)
            )
            return EndpointResponse(tx_hash=Web3.to_hex(tx_hash))
        except (Web3Exception, ValueError) as e:
            message = str(e)
            if is_duplicate_submission(message):
                log.info("RPC_DUPLICATE_SUBMISSION", tx_hash=local_hash)
                return EndpointResponse(tx_hash=local_hash)
            raise EndpointRejection(classify_error(message), message) from e

    async def _send_sync(self, raw: bytes) -> EndpointResponse:
        """eth_sendRawTransactionSync: the node answers with the receipt itself."""
        response = await self._call(
            "eth_sendRawTransactionSync",
            lambda w3: w3.provider.make_request("eth_sendRawTransactionSync", [Web3.to_hex(raw)]),
        )
        if response.get("error"):
            raise ValueError(response["error"].get("message", str(response["error"])))
        receipt = dict(response["result"])
        return EndpointResponse(tx_hash=Web3.to_hex(hexstr=receipt["transactionHash"]), receipt=receipt)

    @retriable_network_call
    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        try:
            receipt = await self._call(
                "eth_getTransactionReceipt", lambda w3: w3.eth.get_transaction_receipt(tx_hash)
            )
        except TransactionNotFound:
            return None
        return dict(receipt) if receipt is not None else None
