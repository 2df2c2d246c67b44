# /txpipe/core/nonce_manager.py
"""Per-sender nonce sequencing.

Each sender owns an asyncio.Lock, so concurrent reservations for the same
address queue up while other addresses proceed untouched. The lock covers
only the query-compare-increment step; signing and submission run after it
is released, which lets several transactions per sender be in flight.
"""
import asyncio
from typing import Dict, Optional, Set

from web3 import Web3

from txpipe.core.config import settings
from txpipe.core.errors import EndpointError, SequencingError
from txpipe.core.logger import NONCE_RECONCILE_MISSES, get_logger

log = get_logger(__name__)


class _SenderSlot:
    __slots__ = ("lock", "next_nonce", "released")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.next_nonce: Optional[int] = None
        self.released: Set[int] = set()


class NonceSequencer:
    def __init__(self, endpoint, query_timeout: float | None = None):
        self.endpoint = endpoint
        self.query_timeout = settings.NONCE_QUERY_TIMEOUT if query_timeout is None else query_timeout
        self._slots: Dict[str, _SenderSlot] = {}

    def _slot(self, sender: str) -> _SenderSlot:
        key = Web3.to_checksum_address(sender)
        slot = self._slots.get(key)
        if slot is None:
            slot = self._slots[key] = _SenderSlot()
        return slot

    async def _query_pending(self, sender: str) -> Optional[int]:
        try:
            return await asyncio.wait_for(self.endpoint.get_pending_nonce(sender), timeout=self.query_timeout)
        except (asyncio.TimeoutError, EndpointError) as e:
            log.warning("NONCE_QUERY_FAILED", sender=sender, error=str(e) or type(e).__name__)
            return None

    @staticmethod
    def _apply_observed(slot: _SenderSlot, observed: int):
        # The network may lag transactions we already issued: the higher value wins.
        if slot.next_nonce is None or observed > slot.next_nonce:
            slot.next_nonce = observed
        # Released nonces below the pending count were filled by someone; forget them.
        slot.released = {n for n in slot.released if n >= observed}

    async def reserve(self, sender: str) -> int:
        """Assign the next nonce for sender.

        A released nonce is handed out again only when the network pending
        count has just confirmed it was never accepted. If the pending-count
        query fails, the local value is used and a reconcile miss is logged;
        the very first reservation for a sender has no local value and raises.
        """
        slot = self._slot(sender)
        async with slot.lock:
            observed = await self._query_pending(sender)
            if observed is None:
                if slot.next_nonce is None:
                    raise SequencingError(f"No local nonce for {sender} and the pending-count query failed")
                NONCE_RECONCILE_MISSES.inc()
                log.warning("NONCE_RECONCILE_MISS", sender=sender, local_next=slot.next_nonce)
            else:
                self._apply_observed(slot, observed)
                if slot.released:
                    nonce = min(slot.released)
                    slot.released.discard(nonce)
                    log.info("NONCE_REUSED", sender=sender, nonce=nonce, network_pending=observed)
                    return nonce
            nonce = slot.next_nonce
            slot.next_nonce = nonce + 1
        log.debug("NONCE_RESERVED", sender=sender, nonce=nonce, network_pending=observed)
        return nonce

    async def reconcile(self, sender: str, observed_pending: int):
        """Fold a network-observed pending count into local state. Never lowers the local value."""
        slot = self._slot(sender)
        async with slot.lock:
            before = slot.next_nonce
            self._apply_observed(slot, observed_pending)
        if before != slot.next_nonce:
            log.info("NONCE_RECONCILED", sender=sender, before=before, after=slot.next_nonce)

    async def release(self, sender: str, nonce: int):
        """Mark nonce as permanently failed so a later reserve may reuse it."""
        slot = self._slot(sender)
        async with slot.lock:
            if slot.next_nonce is None or nonce >= slot.next_nonce:
                log.warning("NONCE_RELEASE_IGNORED", sender=sender, nonce=nonce, local_next=slot.next_nonce)
                return
            slot.released.add(nonce)
        log.info("NONCE_RELEASED", sender=sender, nonce=nonce)

    async def reset(self, sender: str):
        """Forget the sender; the next reserve starts from the network value."""
        slot = self._slot(sender)
        async with slot.lock:
            slot.next_nonce = None
            slot.released.clear()
        log.info("NONCE_RESET", sender=sender)

    def peek(self, sender: str) -> Optional[int]:
        return self._slot(sender).next_nonce
