# /txpipe/core/submission.py
"""Submission with bounded retries.

Transport failures resend the same signed bytes, which the node treats as a
no-op if it already has them. A block-reference expiry invalidates the
signature, so the transaction is rebuilt against a fresh block and re-signed
through the caller-supplied ``rebuild`` callback before resending. Every
other rejection is terminal and returned on the spot.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional

from tenacity import AsyncRetrying, before_sleep_log, retry_if_result, stop_after_attempt, wait_exponential

from txpipe.core.audit import AuditLog
from txpipe.core.config import settings
from txpipe.core.errors import EndpointRejection, EndpointTransportError
from txpipe.core.logger import ENDPOINT_LATENCY, EXPIRY_REBUILDS, SUBMISSION_ATTEMPTS, get_logger
from txpipe.core.types import AuditRecord, OutcomeKind, RejectionReason, SignedTransaction, SubmissionOutcome

log = get_logger(__name__)

RebuildFn = Callable[[SignedTransaction], Awaitable[SignedTransaction]]

_SEQUENCE_CONFLICTS = (RejectionReason.SEQUENCE_ALREADY_USED, RejectionReason.SEQUENCE_TOO_LOW)


def _is_expiry(outcome: SubmissionOutcome) -> bool:
    return outcome.kind == OutcomeKind.REJECTED and outcome.reason == RejectionReason.BLOCK_REFERENCE_EXPIRED


class SubmissionClient:
    def __init__(
        self,
        endpoint,
        audit_log: AuditLog | None = None,
        max_attempts: int | None = None,
        backoff_min: float | None = None,
        backoff_max: float | None = None,
        submit_timeout: float | None = None,
    ):
        self.endpoint = endpoint
        self.audit_log = audit_log or AuditLog()
        self.max_attempts = settings.SUBMIT_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.backoff_min = settings.SUBMIT_BACKOFF_MIN if backoff_min is None else backoff_min
        self.backoff_max = settings.SUBMIT_BACKOFF_MAX if backoff_max is None else backoff_max
        self.submit_timeout = settings.RPC_TIMEOUT if submit_timeout is None else submit_timeout

    def _retrying(self, can_rebuild: bool) -> AsyncRetrying:
        def should_retry(outcome: SubmissionOutcome) -> bool:
            return outcome.kind == OutcomeKind.TRANSPORT_FAILURE or (can_rebuild and _is_expiry(outcome))

        return AsyncRetrying(
            retry=retry_if_result(should_retry),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_min, min=self.backoff_min, max=self.backoff_max),
            before_sleep=before_sleep_log(log, logging.WARNING),
            # hand the last outcome back instead of raising RetryError
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
        )

    async def submit(self, signed: SignedTransaction, rebuild: Optional[RebuildFn] = None) -> SubmissionOutcome:
        current = signed
        hashes: List[str] = []
        outcome: SubmissionOutcome | None = None
        needs_rebuild = False
        attempt_number = 0

        async for attempt in self._retrying(can_rebuild=rebuild is not None):
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                if needs_rebuild:
                    try:
                        current = await rebuild(current)
                        needs_rebuild = False
                        EXPIRY_REBUILDS.inc()
                        log.warning("TX_REBUILT_AFTER_EXPIRY", nonce=current.nonce, tx_hash=current.tx_hash,
                                    block=current.unsigned.block_reference.number)
                    except EndpointTransportError as e:
                        outcome = self._outcome(current, OutcomeKind.TRANSPORT_FAILURE, detail=f"rebuild: {e}")
                if not needs_rebuild:
                    outcome = await self._attempt(current, attempt_number, hashes)
                    needs_rebuild = _is_expiry(outcome)
            if not attempt.retry_state.outcome.failed:
                attempt.retry_state.set_result(outcome)

        final = outcome.model_copy(update={"attempts": attempt_number, "tx_hashes": list(hashes)})
        if rebuild is not None and _is_expiry(final):
            # Still expiring after the last attempt: the retry budget is spent.
            final = final.model_copy(update={
                "kind": OutcomeKind.TRANSPORT_FAILURE,
                "reason": None,
                "detail": f"retries exhausted: {final.reason.value}: {final.detail}",
            })
        if final.is_terminal_failure:
            log.error("SUBMISSION_FAILED", sender=final.sender, nonce=final.nonce, kind=final.kind.value,
                      reason=final.reason.value if final.reason else None, detail=final.detail,
                      attempts=final.attempts)
        return final

    @staticmethod
    def _outcome(signed: SignedTransaction, kind: OutcomeKind, **fields) -> SubmissionOutcome:
        return SubmissionOutcome(kind=kind, sender=signed.sender, nonce=signed.nonce, **fields)

    async def _attempt(self, signed: SignedTransaction, attempt: int, hashes: List[str]) -> SubmissionOutcome:
        if signed.tx_hash not in hashes:
            hashes.append(signed.tx_hash)
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self.endpoint.send_raw_transaction(signed.raw), timeout=self.submit_timeout
            )
            kind = OutcomeKind.ACCEPTED if response.receipt is not None else OutcomeKind.PENDING
            outcome = self._outcome(signed, kind, tx_hash=response.tx_hash, receipt=response.receipt)
        except EndpointRejection as e:
            outcome = self._outcome(signed, OutcomeKind.REJECTED, tx_hash=signed.tx_hash,
                                    reason=e.reason, detail=e.message)
        except (EndpointTransportError, asyncio.TimeoutError) as e:
            outcome = self._outcome(signed, OutcomeKind.TRANSPORT_FAILURE, tx_hash=signed.tx_hash,
                                    detail=str(e) or "submit timed out")
        latency = time.monotonic() - start

        ENDPOINT_LATENCY.observe(latency)
        SUBMISSION_ATTEMPTS.labels(outcome.kind.value).inc()
        await self.audit_log.append(AuditRecord(
            sender=signed.sender,
            nonce=signed.nonce,
            outcome=outcome.kind,
            reason=outcome.reason,
            tx_hash=outcome.tx_hash,
            attempt=attempt,
            latency_ms=round(latency * 1000, 3),
        ))
        log.info("SUBMISSION_ATTEMPT", nonce=signed.nonce, attempt=attempt, kind=outcome.kind.value,
                 reason=outcome.reason.value if outcome.reason else None, tx_hash=outcome.tx_hash)

        if attempt > 1 and outcome.reason in _SEQUENCE_CONFLICTS:
            return await self._resolve_sequence_conflict(outcome, hashes)
        return outcome

    async def _resolve_sequence_conflict(self, outcome: SubmissionOutcome, hashes: List[str]) -> SubmissionOutcome:
        """After a retry the nonce may be "used" by our own earlier attempt. Only a receipt proves it."""
        for tx_hash in hashes:
            try:
                receipt = await self.endpoint.get_receipt(tx_hash)
            except EndpointTransportError as e:
                log.warning("SEQUENCE_CONFLICT_RECEIPT_LOOKUP_FAILED", tx_hash=tx_hash, error=str(e))
                continue
            if receipt is not None:
                log.info("SEQUENCE_CONFLICT_RESOLVED_AS_LANDED", nonce=outcome.nonce, tx_hash=tx_hash)
                return outcome.model_copy(update={
                    "kind": OutcomeKind.ACCEPTED, "tx_hash": tx_hash, "receipt": receipt, "reason": None,
                    "detail": f"earlier attempt landed ({outcome.reason.value} on resubmit)",
                })
        log.warning("SEQUENCE_CONFLICT_AMBIGUOUS", nonce=outcome.nonce, reason=outcome.reason.value)
        return outcome.model_copy(update={"detail": f"ambiguous: {outcome.detail}"})
