# /txpipe/core/pipeline.py
# Caller-facing entry point: reserve, build, sign, submit, confirm.
import asyncio
from typing import Dict

from web3 import Web3

from txpipe.core import codec
from txpipe.core.builder import TransactionBuilder
from txpipe.core.config import settings
from txpipe.core.errors import EndpointError, EndpointTransportError, PipelineError, SigningError
from txpipe.core.gas_estimator import GasEstimator
from txpipe.core.kill import check
from txpipe.core.logger import bind_sender, get_logger, unbind_sender
from txpipe.core.nonce_manager import NonceSequencer
from txpipe.core.receipts import ReceiptTracker
from txpipe.core.signing import SigningSession
from txpipe.core.submission import SubmissionClient
from txpipe.core.types import (
    FinalOutcome,
    OutcomeKind,
    RejectionReason,
    SignedTransaction,
    SubmissionOutcome,
    TransactionRequest,
    UnsignedTransaction,
)

log = get_logger(__name__)

_NONCE_CONSUMED = (RejectionReason.SEQUENCE_TOO_LOW, RejectionReason.SEQUENCE_ALREADY_USED)


class TransactionPipeline:
    """Manages the full lifecycle of transactions for every sender it holds a signer for."""

    def __init__(
        self,
        endpoint,
        signers,
        builder: TransactionBuilder | None = None,
        sequencer: NonceSequencer | None = None,
        submitter: SubmissionClient | None = None,
        tracker: ReceiptTracker | None = None,
        estimator: GasEstimator | None = None,
        warmup_backoff: float | None = None,
    ):
        self.endpoint = endpoint
        if not isinstance(signers, (list, tuple)):
            signers = [signers]
        self.signers = list(signers)
        self.sessions: Dict[str, SigningSession] = {
            Web3.to_checksum_address(s.address): SigningSession(s, warmup_backoff=warmup_backoff)
            for s in self.signers
        }
        self.builder = builder or TransactionBuilder()
        self.sequencer = sequencer or NonceSequencer(endpoint)
        self.submitter = submitter or SubmissionClient(endpoint)
        self.tracker = tracker or ReceiptTracker(endpoint)
        self.estimator = estimator or GasEstimator(endpoint)
        log.info("TRANSACTION_PIPELINE_INITIALIZED", senders=list(self.sessions))

    def session_for(self, sender: str) -> SigningSession:
        session = self.sessions.get(Web3.to_checksum_address(sender))
        if session is None:
            raise SigningError(f"No signer configured for {sender}")
        return session

    async def warmup(self):
        """Pay every signer's cold start now rather than on the first real transaction."""
        await asyncio.gather(*(s.ensure_warm() for s in self.sessions.values()))

    async def submit_transaction(self, request: TransactionRequest) -> SubmissionOutcome:
        check()
        self.session_for(request.sender)
        bind_sender(request.sender)
        try:
            outcome = await self._submit_once(request)
            if outcome.kind == OutcomeKind.REJECTED and outcome.reason in _NONCE_CONSUMED \
                    and outcome.attempts == 1:
                # Stale or duplicate nonce: re-reconcile with the network and reassign once.
                log.warning("NONCE_CONFLICT_REASSIGN", nonce=outcome.nonce, reason=outcome.reason.value)
                if await self._reconcile(request.sender):
                    outcome = await self._submit_once(request)
            if outcome.is_terminal_failure and outcome.reason not in _NONCE_CONSUMED:
                await self.sequencer.release(request.sender, outcome.nonce)
            return outcome
        finally:
            unbind_sender()

    async def _reconcile(self, sender: str) -> bool:
        try:
            observed = await self.endpoint.get_pending_nonce(sender)
        except EndpointError as e:
            log.warning("NONCE_RECONCILE_AFTER_REJECTION_FAILED", error=str(e))
            return False
        await self.sequencer.reconcile(sender, observed)
        return True

    async def _submit_once(self, request: TransactionRequest) -> SubmissionOutcome:
        nonce = await self.sequencer.reserve(request.sender)
        try:
            if request.estimate_remotely and request.gas_limit is None:
                request = request.model_copy(update={"gas_limit": await self.estimator.estimate_gas_limit(request)})
            block_reference = await self.endpoint.get_block_reference()
            signed = await self._sign(self.builder.build(request, nonce, block_reference))
        except (PipelineError, asyncio.CancelledError):
            # Nothing reached the network; the nonce can be handed out again.
            await self.sequencer.release(request.sender, nonce)
            raise
        log.info("TX_SIGNED", nonce=nonce, tx_hash=signed.tx_hash, block=block_reference.number)
        return await self.submitter.submit(signed, rebuild=self._rebuild)

    async def _sign(self, unsigned: UnsignedTransaction) -> SignedTransaction:
        digest = codec.signing_digest(unsigned)
        signature = await self.session_for(unsigned.sender).sign(digest, codec.chain_id_for_signature(unsigned))
        return codec.assemble(unsigned, signature)

    async def _rebuild(self, expired: SignedTransaction) -> SignedTransaction:
        block_reference = await self.endpoint.get_block_reference()
        if block_reference.hash == expired.unsigned.block_reference.hash:
            # Surfaces as a transport failure, so the client backs off and asks again.
            raise EndpointTransportError(f"no block newer than {block_reference.number} yet")
        return await self._sign(self.builder.rebuild(expired.unsigned, block_reference))

    async def await_final(self, outcome: SubmissionOutcome, deadline: float | None = None) -> FinalOutcome:
        return await self.tracker.await_final(outcome, deadline)

    async def send_and_wait(self, request: TransactionRequest, deadline: float | None = None) -> FinalOutcome:
        outcome = await self.submit_transaction(request)
        return await self.await_final(outcome, deadline)

    async def close(self):
        for signer in self.signers:
            if hasattr(signer, "close"):
                await signer.close()


def build_pipeline(signers=None) -> TransactionPipeline:
    """Wires the production adapters from settings."""
    from txpipe.adapters.endpoint import Web3Endpoint
    from txpipe.adapters.signer import LocalKeySigner, RemoteSigner
    from txpipe.core.config_validator import validate

    validate()

    if signers is None:
        signers = RemoteSigner() if settings.SIGNER_URL else LocalKeySigner()
    return TransactionPipeline(Web3Endpoint(), signers)
