import asyncio

import pytest
import rlp
from eth_account import Account

from txpipe.adapters.mock import MockEndpoint, MockSigner, decode_sender_and_nonce
from txpipe.core.builder import TransactionBuilder
from txpipe.core.errors import EndpointRejection, KillSwitchActiveError, SigningError
from txpipe.core.kill import activate_kill_switch, deactivate_kill_switch
from txpipe.core.pipeline import TransactionPipeline
from txpipe.core.receipts import ReceiptTracker
from txpipe.core.submission import SubmissionClient
from txpipe.core.types import FinalKind, OutcomeKind, RejectionReason, SigningSessionState, TransactionRequest

RECIPIENT = "0x000000000000000000000000000000000000dEaD"


def _transfer(sender, **fields):
    return TransactionRequest(sender=sender, recipient=RECIPIENT, value=1, category="transfer", **fields)


def _gas(raw):
    return int.from_bytes(rlp.decode(raw[1:])[4], "big")


@pytest.mark.asyncio
async def test_send_and_wait_confirms(pipeline, signer):
    await pipeline.warmup()
    final = await pipeline.send_and_wait(_transfer(signer.address), deadline=1)
    assert final.kind == FinalKind.CONFIRMED
    assert final.nonce == 0
    assert final.receipt["from"] == signer.address


@pytest.mark.asyncio
async def test_concurrent_submissions_get_distinct_nonces(pipeline, endpoint, signer):
    outcomes = await asyncio.gather(*(pipeline.submit_transaction(_transfer(signer.address)) for _ in range(5)))
    assert sorted(o.nonce for o in outcomes) == [0, 1, 2, 3, 4]
    assert all(o.kind == OutcomeKind.PENDING for o in outcomes)
    for nonce in range(5):
        assert len(endpoint.receipts_for_nonce(signer.address, nonce)) == 1


@pytest.mark.asyncio
async def test_pipelined_submissions_while_unmined(signer, builder, audit_log):
    endpoint = MockEndpoint(auto_mine=False)
    pipeline = TransactionPipeline(
        endpoint, signer, builder=builder,
        submitter=SubmissionClient(endpoint, audit_log=audit_log, backoff_min=0, backoff_max=0),
        warmup_backoff=0,
    )
    outcomes = await asyncio.gather(*(pipeline.submit_transaction(_transfer(signer.address)) for _ in range(3)))
    assert sorted(o.nonce for o in outcomes) == [0, 1, 2]
    assert endpoint.pending_nonce(signer.address) == 3
    endpoint.mine()
    assert endpoint.confirmed[signer.address] == 3


@pytest.mark.asyncio
async def test_expired_block_reference_is_rebuilt(pipeline, endpoint, signer):
    endpoint.fail_next(EndpointRejection(RejectionReason.BLOCK_REFERENCE_EXPIRED, "transaction underpriced"))
    outcome = await pipeline.submit_transaction(_transfer(signer.address))
    assert outcome.kind == OutcomeKind.PENDING
    assert outcome.attempts == 2
    first, second = endpoint.sent
    assert first != second
    assert decode_sender_and_nonce(first) == decode_sender_and_nonce(second) == (signer.address, 0)
    final = await pipeline.await_final(outcome, deadline=1)
    assert final.kind == FinalKind.CONFIRMED
    assert final.tx_hash == outcome.tx_hashes[-1]


@pytest.mark.asyncio
async def test_stale_nonce_is_reconciled_and_retried(pipeline, endpoint, signer):
    await pipeline.submit_transaction(_transfer(signer.address))
    # another process advanced the account while our nonce query is failing
    endpoint.set_confirmed_nonce(signer.address, 5)
    endpoint.nonce_failures = 1
    outcome = await pipeline.submit_transaction(_transfer(signer.address))
    assert outcome.kind == OutcomeKind.PENDING
    assert outcome.nonce == 5
    assert pipeline.sequencer.peek(signer.address) == 6


@pytest.mark.asyncio
async def test_terminal_failure_releases_nonce(pipeline, endpoint, signer):
    endpoint.fail_next(EndpointRejection(RejectionReason.INSUFFICIENT_BALANCE, "insufficient funds"))
    rejected = await pipeline.submit_transaction(_transfer(signer.address))
    assert rejected.kind == OutcomeKind.REJECTED
    assert rejected.nonce == 0
    accepted = await pipeline.submit_transaction(_transfer(signer.address))
    assert accepted.nonce == 0
    assert accepted.kind == OutcomeKind.PENDING


@pytest.mark.asyncio
async def test_signing_failure_releases_nonce(endpoint, builder, submitter):
    signer = MockSigner(fail_times=1)
    pipeline = TransactionPipeline(endpoint, signer, builder=builder, submitter=submitter, warmup_backoff=0)
    with pytest.raises(SigningError):
        await pipeline.submit_transaction(_transfer(signer.address))
    assert endpoint.sent == []
    outcome = await pipeline.submit_transaction(_transfer(signer.address))
    assert outcome.nonce == 0


@pytest.mark.asyncio
async def test_kill_switch_blocks_before_reserving(pipeline, endpoint, signer):
    activate_kill_switch("test")
    with pytest.raises(KillSwitchActiveError):
        await pipeline.submit_transaction(_transfer(signer.address))
    assert endpoint.nonce_queries == 0
    deactivate_kill_switch()
    assert (await pipeline.submit_transaction(_transfer(signer.address))).nonce == 0


@pytest.mark.asyncio
async def test_unknown_sender_is_refused(pipeline):
    with pytest.raises(SigningError):
        await pipeline.submit_transaction(_transfer("0x1563915e194D8CfBA1943570603F7606A3115508"))


@pytest.mark.asyncio
async def test_remote_gas_estimate_is_opt_in(pipeline, endpoint, signer):
    endpoint.gas_estimate = 40_000
    await pipeline.submit_transaction(_transfer(signer.address))
    await pipeline.submit_transaction(_transfer(signer.address, estimate_remotely=True))
    fixed, estimated = endpoint.sent
    assert _gas(fixed) == 21_000
    assert _gas(estimated) == 48_000


@pytest.mark.asyncio
async def test_sync_submit_confirms_without_polling(signer, builder, audit_log):
    endpoint = MockEndpoint(sync_submit=True)
    pipeline = TransactionPipeline(
        endpoint, signer, builder=builder,
        submitter=SubmissionClient(endpoint, audit_log=audit_log, backoff_min=0, backoff_max=0),
        tracker=ReceiptTracker(endpoint, poll_interval=0.01),
        warmup_backoff=0,
    )
    final = await pipeline.send_and_wait(_transfer(signer.address))
    assert final.kind == FinalKind.CONFIRMED
    assert endpoint.receipt_lookups == {}


@pytest.mark.asyncio
async def test_legacy_transactions(endpoint, submitter):
    signer = MockSigner(recovery_offset=27)
    pipeline = TransactionPipeline(
        endpoint, signer, builder=TransactionBuilder(chain_id=8453, tx_type="legacy"),
        submitter=submitter, warmup_backoff=0,
    )
    outcome = await pipeline.submit_transaction(_transfer(signer.address))
    assert outcome.kind == OutcomeKind.PENDING
    assert Account.recover_transaction(endpoint.sent[0]) == signer.address


@pytest.mark.asyncio
async def test_senders_sequence_independently(endpoint, builder, submitter):
    alice = MockSigner(private_key="0x" + "22" * 32)
    bob = MockSigner(private_key="0x" + "33" * 32)
    pipeline = TransactionPipeline(endpoint, [alice, bob], builder=builder, submitter=submitter, warmup_backoff=0)
    await pipeline.warmup()
    assert all(s.state == SigningSessionState.WARM for s in pipeline.sessions.values())
    outcomes = await asyncio.gather(
        *(pipeline.submit_transaction(_transfer(a.address)) for a in (alice, bob, alice, bob))
    )
    by_sender = {}
    for o in outcomes:
        by_sender.setdefault(o.sender, []).append(o.nonce)
    assert sorted(by_sender[alice.address]) == [0, 1]
    assert sorted(by_sender[bob.address]) == [0, 1]


@pytest.mark.asyncio
async def test_expiry_then_accepted_in_sync_mode(signer, builder, audit_log):
    endpoint = MockEndpoint(sync_submit=True)
    pipeline = TransactionPipeline(
        endpoint, signer, builder=builder,
        submitter=SubmissionClient(endpoint, audit_log=audit_log, backoff_min=0, backoff_max=0),
        warmup_backoff=0,
    )
    endpoint.fail_next(EndpointRejection(RejectionReason.BLOCK_REFERENCE_EXPIRED, "fee cap less than block base fee"))
    outcome = await pipeline.submit_transaction(_transfer(signer.address))
    assert outcome.kind == OutcomeKind.ACCEPTED
    assert outcome.receipt["nonce"] == 0
    assert endpoint.sent[0] != endpoint.sent[1]


@pytest.mark.asyncio
async def test_duplicate_nonce_is_reconciled_and_reassigned(signer, builder, audit_log):
    endpoint = MockEndpoint(auto_mine=False)
    pipeline = TransactionPipeline(
        endpoint, signer, builder=builder,
        submitter=SubmissionClient(endpoint, audit_log=audit_log, backoff_min=0, backoff_max=0),
        warmup_backoff=0,
    )
    get_block_reference = endpoint.get_block_reference

    async def outside_tx_lands_first():
        # another process takes nonce 0 after we reserved it
        endpoint.pool.setdefault((signer.address, 0), "0x" + "ee" * 32)
        return await get_block_reference()

    endpoint.get_block_reference = outside_tx_lands_first
    outcome = await pipeline.submit_transaction(_transfer(signer.address))
    assert outcome.kind == OutcomeKind.PENDING
    assert outcome.nonce == 1
    assert len(endpoint.sent) == 2
    assert decode_sender_and_nonce(endpoint.sent[1]) == (signer.address, 1)
    assert pipeline.sequencer.peek(signer.address) == 2


@pytest.mark.asyncio
async def test_exhausted_expiry_releases_nonce(pipeline, endpoint, signer):
    endpoint.fail_next(*(
        EndpointRejection(RejectionReason.BLOCK_REFERENCE_EXPIRED, "transaction underpriced") for _ in range(3)
    ))
    failed = await pipeline.submit_transaction(_transfer(signer.address))
    assert failed.kind == OutcomeKind.TRANSPORT_FAILURE
    assert (await pipeline.await_final(failed)).kind == FinalKind.FAILED
    assert (await pipeline.submit_transaction(_transfer(signer.address))).nonce == 0


@pytest.mark.asyncio
async def test_reverted_transaction_is_not_confirmed(pipeline, endpoint, signer):
    endpoint.revert_nonces.add((signer.address, 0))
    final = await pipeline.send_and_wait(_transfer(signer.address), deadline=1)
    assert final.kind == FinalKind.REVERTED
    assert final.detail == "execution reverted"
    assert final.receipt["status"] == 0
    assert (await pipeline.send_and_wait(_transfer(signer.address), deadline=1)).kind == FinalKind.CONFIRMED
