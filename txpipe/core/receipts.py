# /txpipe/core/receipts.py
import asyncio
import time

from txpipe.core.config import settings
from txpipe.core.errors import EndpointTransportError
from txpipe.core.logger import get_logger
from txpipe.core.types import FinalKind, FinalOutcome, OutcomeKind, SubmissionOutcome

log = get_logger(__name__)


def is_reverted(receipt) -> bool:
    """Nodes report status as an int or, over raw JSON-RPC, a hex string."""
    status = receipt.get("status", 1)
    if isinstance(status, str):
        status = int(status, 16)
    return status == 0


class ReceiptTracker:
    """Turns a submission outcome into a final answer.

    A TIMEOUT result means "unknown": the transaction may still land, and
    callers moving value must not resubmit on the strength of it.
    """

    def __init__(self, endpoint, poll_interval: float | None = None):
        self.endpoint = endpoint
        self.poll_interval = settings.RECEIPT_POLL_INTERVAL if poll_interval is None else poll_interval

    async def await_final(self, handle: SubmissionOutcome, deadline: float | None = None) -> FinalOutcome:
        base = {"sender": handle.sender, "nonce": handle.nonce, "tx_hash": handle.tx_hash,
                "reason": handle.reason, "detail": handle.detail}

        if handle.kind == OutcomeKind.ACCEPTED and handle.receipt is not None:
            return self._settled(handle, handle.receipt, base)
        if handle.kind == OutcomeKind.REJECTED:
            return FinalOutcome(kind=FinalKind.REJECTED, **base)
        if handle.kind == OutcomeKind.TRANSPORT_FAILURE:
            return FinalOutcome(kind=FinalKind.FAILED, **base)

        timeout = settings.RECEIPT_TIMEOUT if deadline is None else deadline
        receipt = await self._poll(handle.tx_hash, timeout)
        if receipt is None:
            log.warning("RECEIPT_TIMEOUT", nonce=handle.nonce, tx_hash=handle.tx_hash, deadline=timeout)
            return FinalOutcome(kind=FinalKind.TIMEOUT, **{**base, "detail": f"no receipt within {timeout}s"})
        return self._settled(handle, receipt, base)

    @staticmethod
    def _settled(handle: SubmissionOutcome, receipt, base: dict) -> FinalOutcome:
        if is_reverted(receipt):
            log.error("RECEIPT_REVERTED", nonce=handle.nonce, tx_hash=handle.tx_hash, block=receipt.get("blockNumber"))
            return FinalOutcome(kind=FinalKind.REVERTED, receipt=receipt, **{**base, "detail": "execution reverted"})
        log.info("RECEIPT_CONFIRMED", nonce=handle.nonce, tx_hash=handle.tx_hash,
                 block=receipt.get("blockNumber"), status=receipt.get("status"))
        return FinalOutcome(kind=FinalKind.CONFIRMED, receipt=receipt, **base)

    async def _poll(self, tx_hash: str, timeout: float):
        end = time.monotonic() + timeout
        while True:
            remaining = end - time.monotonic()
            if remaining <= 0:
                return None
            try:
                receipt = await asyncio.wait_for(self.endpoint.get_receipt(tx_hash), timeout=remaining)
            except asyncio.TimeoutError:
                return None
            except EndpointTransportError as e:
                log.warning("RECEIPT_POLL_FAILED", tx_hash=tx_hash, error=str(e))
                receipt = None
            if receipt is not None:
                return receipt
            await asyncio.sleep(min(self.poll_interval, max(end - time.monotonic(), 0)))
